"""
Unit tests for SqlPacketStore against in-memory SQLite:
- Conditional transitions (claim, complete, fail, reclaim, reset)
- Versioning through create_next_version
- Notification log deduplication
"""
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.packet import NotificationType, PacketErrorType, PacketStatus, PacketType
from app.models.packet_db import ClientDB, UserDB
from app.services.db import init_db
from app.services.packet_store import PacketConflictError, PacketNotFoundError, SqlPacketStore


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    db = factory()
    db.add(UserDB(id="user-1", email="jane@example.com", name="Jane", role="CLIENT"))
    db.add(UserDB(id="admin-1", email="admin@example.com", name="Ada", role="ADMIN"))
    db.add(UserDB(id="admin-2", email="gone@example.com", name="Gone", role="ADMIN", status="INACTIVE"))
    db.add(ClientDB(id="client-1", user_id="user-1", full_name="Jane Doe", email="jane@example.com",
                    intake_responses={"weight_lbs": 180}))
    db.commit()
    db.close()
    yield factory
    engine.dispose()


@pytest.fixture
def sql_store(session_factory, clock):
    return SqlPacketStore(session_factory=session_factory, clock=clock)


class TestPacketCreation:

    def test_create_packet_starts_pending(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)

        assert packet.status == PacketStatus.PENDING
        assert packet.version == 1
        assert packet.retry_count == 0
        assert packet.pdf_url is None
        assert packet.created_at == clock.now
        assert sql_store.get_packet(packet.id) == packet

    def test_get_unknown_packet_returns_none(self, sql_store):
        assert sql_store.get_packet("missing") is None

    def test_client_and_user_lookups(self, sql_store):
        client = sql_store.get_client("client-1")
        assert client.full_name == "Jane Doe"
        assert client.intake_responses == {"weight_lbs": 180}
        assert sql_store.get_client_by_user("user-1").id == "client-1"
        assert sql_store.get_user("user-1").email == "jane@example.com"

    def test_admin_recipients_are_active_admins_only(self, sql_store):
        admins = sql_store.list_admin_recipients()
        assert [a.id for a in admins] == ["admin-1"]


class TestConditionalTransitions:

    def test_only_one_claim_succeeds(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.WORKOUT)

        assert sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "worker-a") is True
        assert sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "worker-b") is False

        claimed = sql_store.get_packet(packet.id)
        assert claimed.status == PacketStatus.GENERATING
        assert claimed.claimed_by == "worker-a"

    def test_complete_requires_claim_owner(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.WORKOUT)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "worker-a")

        assert sql_store.complete_packet(packet.id, "worker-b", {"a": 1}, "/packets/x.pdf") is False
        assert sql_store.complete_packet(packet.id, "worker-a", {"a": 1}, "/packets/x.pdf") is True

        ready = sql_store.get_packet(packet.id)
        assert ready.status == PacketStatus.READY
        assert ready.pdf_url == "/packets/x.pdf"
        assert ready.content == {"a": 1}
        assert ready.claimed_by is None

    def test_retryable_failure_increments_retry_count(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")

        assert sql_store.fail_packet(packet.id, "w", "disk full", PacketErrorType.STORAGE_ERROR, True)

        failed = sql_store.get_packet(packet.id)
        assert failed.status == PacketStatus.FAILED
        assert failed.retry_count == 1
        assert failed.retryable is True
        assert failed.error_type == PacketErrorType.STORAGE_ERROR
        assert failed.last_error == "disk full"

    def test_non_retryable_failure_keeps_retry_count(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")

        sql_store.fail_packet(packet.id, "w", "missing weight", PacketErrorType.DATA_ERROR, False)

        failed = sql_store.get_packet(packet.id)
        assert failed.retry_count == 0
        assert failed.retryable is False

    def test_fail_is_ignored_when_not_generating(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        assert sql_store.fail_packet(packet.id, None, "x", PacketErrorType.UNKNOWN_ERROR, True) is False
        assert sql_store.get_packet(packet.id).status == PacketStatus.PENDING

    def test_last_error_is_truncated(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        sql_store.fail_packet(packet.id, "w", "x" * 900, PacketErrorType.UNKNOWN_ERROR, True)
        assert len(sql_store.get_packet(packet.id).last_error) == 500

    def test_reclaim_only_stale_claims(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        claimed_at = clock.now

        assert sql_store.reclaim_stale(packet.id, claimed_at, "timed out") is False
        clock.advance(minutes=11)
        assert sql_store.list_stale_generating(clock.now - timedelta(minutes=10))[0].id == packet.id
        assert sql_store.reclaim_stale(packet.id, clock.now - timedelta(minutes=10), "timed out") is True

        reclaimed = sql_store.get_packet(packet.id)
        assert reclaimed.status == PacketStatus.FAILED
        assert reclaimed.retryable is True
        assert reclaimed.retry_count == 1
        assert reclaimed.claimed_by is None

    def test_reset_for_retry_clears_error(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        sql_store.fail_packet(packet.id, "w", "boom", PacketErrorType.UNKNOWN_ERROR, True)

        assert sql_store.reset_for_retry(packet.id, reset_retry_count=True) is True
        reset = sql_store.get_packet(packet.id)
        assert reset.status == PacketStatus.PENDING
        assert reset.last_error is None
        assert reset.retry_count == 0
        assert sql_store.reset_for_retry(packet.id) is False

    def test_requeue_for_retry_matches_observed_failure(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        sql_store.fail_packet(packet.id, "w", "storage down", PacketErrorType.STORAGE_ERROR, True)
        observed = sql_store.get_packet(packet.id)
        clock.advance(seconds=10)

        assert sql_store.requeue_for_retry(packet.id, 0, observed.updated_at, 3) is False
        assert sql_store.requeue_for_retry(packet.id, 1, clock.now, 3) is False
        assert sql_store.requeue_for_retry(packet.id, 1, observed.updated_at, 1) is False
        assert sql_store.requeue_for_retry(packet.id, 1, observed.updated_at, 3) is True

        requeued = sql_store.get_packet(packet.id)
        assert requeued.status == PacketStatus.PENDING
        assert requeued.retry_count == 1
        assert sql_store.requeue_for_retry(packet.id, 1, observed.updated_at, 3) is False

    def test_requeue_for_retry_skips_non_retryable(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        sql_store.fail_packet(packet.id, "w", "bad intake", PacketErrorType.DATA_ERROR, False)
        failed = sql_store.get_packet(packet.id)

        assert sql_store.requeue_for_retry(packet.id, 0, failed.updated_at, 3) is False
        assert sql_store.get_packet(packet.id).status == PacketStatus.FAILED

    def test_pdf_url_only_updated_while_ready(self, sql_store):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        assert sql_store.update_pdf_url(packet.id, "/packets/y.pdf") is False
        assert sql_store.get_packet(packet.id).pdf_url is None

    def test_updated_at_moves_with_each_transition(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        clock.advance(seconds=30)
        sql_store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        assert sql_store.get_packet(packet.id).updated_at == clock.now


class TestVersioning:

    def test_next_version_links_to_previous(self, sql_store):
        old = sql_store.create_packet("client-1", PacketType.NUTRITION)
        new = sql_store.create_next_version(old.id)

        assert new.version == 2
        assert new.retry_count == 0
        assert new.previous_version_id == old.id
        assert new.status == PacketStatus.PENDING
        assert sql_store.has_successor(old.id) is True

    def test_superseded_packet_cannot_be_regenerated_again(self, sql_store):
        old = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.create_next_version(old.id)

        with pytest.raises(PacketConflictError):
            sql_store.create_next_version(old.id)

    def test_next_version_of_unknown_packet(self, sql_store):
        with pytest.raises(PacketNotFoundError):
            sql_store.create_next_version("missing")

    def test_list_by_status_skips_superseded_rows(self, sql_store):
        old = sql_store.create_packet("client-1", PacketType.NUTRITION)
        new = sql_store.create_next_version(old.id)

        current = sql_store.list_by_status(PacketStatus.PENDING)
        assert [p.id for p in current] == [new.id]
        everything = sql_store.list_by_status(PacketStatus.PENDING, current_only=False)
        assert {p.id for p in everything} == {old.id, new.id}

    def test_current_packets_one_per_type(self, sql_store, clock):
        nutrition = sql_store.create_packet("client-1", PacketType.NUTRITION)
        clock.advance(seconds=1)
        workout = sql_store.create_packet("client-1", PacketType.WORKOUT)
        clock.advance(seconds=1)
        nutrition_v2 = sql_store.create_next_version(nutrition.id)

        current = sql_store.get_current_packets("client-1")
        assert {p.id for p in current} == {workout.id, nutrition_v2.id}


class TestNotificationLog:

    def test_same_marker_is_recorded_once(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        marker = clock.now

        assert sql_store.record_notification(packet.id, NotificationType.ADMIN_FAILURE, marker, 2) is True
        assert sql_store.record_notification(packet.id, NotificationType.ADMIN_FAILURE, marker, 2) is False
        assert sql_store.has_notification(packet.id, NotificationType.ADMIN_FAILURE, marker) is True

    def test_new_marker_is_a_new_notification(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        sql_store.record_notification(packet.id, NotificationType.ADMIN_FAILURE, clock.now, 1)
        later = clock.advance(minutes=5)

        assert sql_store.has_notification(packet.id, NotificationType.ADMIN_FAILURE, later) is False
        assert sql_store.record_notification(packet.id, NotificationType.ADMIN_FAILURE, later, 1) is True

    def test_has_notification_without_marker_matches_any(self, sql_store, clock):
        packet = sql_store.create_packet("client-1", PacketType.NUTRITION)
        assert sql_store.has_notification(packet.id, NotificationType.CLIENT_READY) is False
        sql_store.record_notification(packet.id, NotificationType.CLIENT_READY, None, 1)
        assert sql_store.has_notification(packet.id, NotificationType.CLIENT_READY) is True
