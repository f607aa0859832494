"""
Packet Record Store
Durable storage of packets with atomic, conditional status transitions.

Every state change is a single-row UPDATE guarded by the expected current
status (and, for completion/failure, by the claim owner). A transition that
matches zero rows means another actor got there first; callers treat that as
"lost the race" rather than as an error.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from app.models.packet import (
    ClientRecord,
    NotificationType,
    PacketErrorType,
    PacketRecord,
    PacketStatus,
    PacketType,
    UserRecord,
)
from app.models.packet_db import (
    ClientDB,
    PacketDB,
    PacketNotificationDB,
    UserDB,
)
from app.services.db import get_db_session
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class PacketNotFoundError(Exception):
    """Raised when a packet id does not exist"""
    pass


class PacketConflictError(Exception):
    """Raised when a write conflicts with the packet's current state"""
    pass


class PacketStore(ABC):
    """Interface shared by the SQL store and the in-memory store used in tests."""

    @abstractmethod
    def create_packet(self, client_id: str, packet_type: PacketType) -> PacketRecord:
        ...

    @abstractmethod
    def create_next_version(self, packet_id: str) -> PacketRecord:
        """New PENDING row for the same client/type with version + 1 and retry_count 0."""
        ...

    @abstractmethod
    def get_packet(self, packet_id: str) -> Optional[PacketRecord]:
        ...

    @abstractmethod
    def list_packets_for_client(self, client_id: str) -> List[PacketRecord]:
        ...

    @abstractmethod
    def has_successor(self, packet_id: str) -> bool:
        ...

    @abstractmethod
    def try_claim(
        self,
        packet_id: str,
        expected_status: PacketStatus,
        new_status: PacketStatus,
        claimed_by: Optional[str] = None,
    ) -> bool:
        """Atomically move expected_status -> new_status. True if this caller won."""
        ...

    @abstractmethod
    def complete_packet(
        self, packet_id: str, claimed_by: str, content: Dict[str, Any], pdf_url: str
    ) -> bool:
        ...

    @abstractmethod
    def fail_packet(
        self,
        packet_id: str,
        claimed_by: Optional[str],
        error_message: str,
        error_type: PacketErrorType,
        retryable: bool,
    ) -> bool:
        """GENERATING -> FAILED. retry_count is incremented only for retryable failures."""
        ...

    @abstractmethod
    def reclaim_stale(self, packet_id: str, stale_before: datetime, error_message: str) -> bool:
        """GENERATING claimed before stale_before -> FAILED (retryable, retry_count + 1)."""
        ...

    @abstractmethod
    def reset_for_retry(self, packet_id: str, reset_retry_count: bool = False) -> bool:
        """FAILED -> PENDING for a manual retry, clearing the last error."""
        ...

    @abstractmethod
    def requeue_for_retry(
        self,
        packet_id: str,
        observed_retry_count: int,
        observed_updated_at: datetime,
        max_retries: int,
    ) -> bool:
        """
        FAILED -> PENDING for a scheduled retry.

        Applies only if the row is still the failure the caller observed
        (same retry_count and updated_at), is retryable and is below the
        retry ceiling.
        """
        ...

    @abstractmethod
    def update_pdf_url(self, packet_id: str, pdf_url: str) -> bool:
        """Replace the artifact of a READY packet."""
        ...

    @abstractmethod
    def list_by_status(self, status: PacketStatus, current_only: bool = True,
                       limit: Optional[int] = None) -> List[PacketRecord]:
        """Packets in a status, oldest first (by created_at for PENDING, updated_at otherwise)."""
        ...

    @abstractmethod
    def list_stale_generating(self, stale_before: datetime) -> List[PacketRecord]:
        ...

    @abstractmethod
    def list_updated_since(self, since: datetime) -> List[PacketRecord]:
        ...

    @abstractmethod
    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        ...

    @abstractmethod
    def get_client_by_user(self, user_id: str) -> Optional[ClientRecord]:
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def list_admin_recipients(self) -> List[UserRecord]:
        """Active ADMIN users."""
        ...

    @abstractmethod
    def record_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime],
        recipient_count: int,
    ) -> bool:
        """False if an identical notification is already recorded."""
        ...

    @abstractmethod
    def has_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime] = None,
    ) -> bool:
        ...

    def get_current_packets(self, client_id: str) -> List[PacketRecord]:
        """The latest version of each packet type for a client."""
        current: Dict[str, PacketRecord] = {}
        for packet in self.list_packets_for_client(client_id):
            existing = current.get(packet.type.value)
            if existing is None or (packet.version, packet.created_at) > (existing.version, existing.created_at):
                current[packet.type.value] = packet
        return sorted(current.values(), key=lambda p: p.created_at)


class SqlPacketStore(PacketStore):
    """SQLAlchemy-backed store. Each method runs in its own committed session."""

    def __init__(self, session_factory=None, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def _session(self):
        return get_db_session(self._session_factory)

    @staticmethod
    def _no_successor():
        successor = aliased(PacketDB)
        return ~exists().where(successor.previous_version_id == PacketDB.id)

    def _conditional_update(self, packet_id: str, conditions: list, values: Dict[str, Any]) -> bool:
        values = dict(values)
        values.setdefault("updated_at", self._clock())
        with self._session() as db:
            result = db.execute(
                update(PacketDB)
                .where(PacketDB.id == packet_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------ create

    def create_packet(self, client_id: str, packet_type: PacketType) -> PacketRecord:
        now = self._clock()
        row = PacketDB(
            id=str(uuid.uuid4()),
            client_id=client_id,
            type=PacketType(packet_type).value,
            status=PacketStatus.PENDING.value,
            retry_count=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        with self._session() as db:
            db.add(row)
            db.flush()
            record = PacketRecord.model_validate(row)
        logger.info(f"Created packet {record.id} type={record.type.value} client={client_id}")
        return record

    def create_next_version(self, packet_id: str) -> PacketRecord:
        old = self.get_packet(packet_id)
        if old is None:
            raise PacketNotFoundError(f"Packet {packet_id} not found")
        if self.has_successor(packet_id):
            raise PacketConflictError(f"Packet {packet_id} has already been superseded")

        now = self._clock()
        try:
            with self._session() as db:
                row = PacketDB(
                    id=str(uuid.uuid4()),
                    client_id=old.client_id,
                    type=old.type.value,
                    status=PacketStatus.PENDING.value,
                    retry_count=0,
                    version=old.version + 1,
                    previous_version_id=old.id,
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                db.flush()
                record = PacketRecord.model_validate(row)
        except IntegrityError as e:
            # Unique previous_version_id: a concurrent regenerate won
            raise PacketConflictError(f"Packet {packet_id} was regenerated concurrently") from e
        logger.info(f"Created packet version {record.version} ({record.id}) from {packet_id}")
        return record

    # ------------------------------------------------------------------ reads

    def get_packet(self, packet_id: str) -> Optional[PacketRecord]:
        with self._session() as db:
            row = db.get(PacketDB, packet_id)
            return PacketRecord.model_validate(row) if row else None

    def list_packets_for_client(self, client_id: str) -> List[PacketRecord]:
        with self._session() as db:
            rows = db.execute(
                select(PacketDB)
                .where(PacketDB.client_id == client_id)
                .order_by(PacketDB.created_at.asc())
            ).scalars().all()
            return [PacketRecord.model_validate(r) for r in rows]

    def has_successor(self, packet_id: str) -> bool:
        with self._session() as db:
            return db.execute(
                select(PacketDB.id).where(PacketDB.previous_version_id == packet_id)
            ).first() is not None

    def list_by_status(self, status: PacketStatus, current_only: bool = True,
                       limit: Optional[int] = None) -> List[PacketRecord]:
        order_column = PacketDB.created_at if status == PacketStatus.PENDING else PacketDB.updated_at
        query = select(PacketDB).where(PacketDB.status == PacketStatus(status).value)
        if current_only:
            query = query.where(self._no_successor())
        query = query.order_by(order_column.asc(), PacketDB.id.asc())
        if limit is not None:
            query = query.limit(limit)
        with self._session() as db:
            rows = db.execute(query).scalars().all()
            return [PacketRecord.model_validate(r) for r in rows]

    def list_stale_generating(self, stale_before: datetime) -> List[PacketRecord]:
        with self._session() as db:
            rows = db.execute(
                select(PacketDB)
                .where(
                    PacketDB.status == PacketStatus.GENERATING.value,
                    PacketDB.claimed_at.is_not(None),
                    PacketDB.claimed_at < stale_before,
                )
                .order_by(PacketDB.claimed_at.asc())
            ).scalars().all()
            return [PacketRecord.model_validate(r) for r in rows]

    def list_updated_since(self, since: datetime) -> List[PacketRecord]:
        with self._session() as db:
            rows = db.execute(
                select(PacketDB)
                .where(PacketDB.updated_at >= since)
                .order_by(PacketDB.updated_at.desc())
            ).scalars().all()
            return [PacketRecord.model_validate(r) for r in rows]

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        with self._session() as db:
            row = db.get(ClientDB, client_id)
            return ClientRecord.model_validate(row) if row else None

    def get_client_by_user(self, user_id: str) -> Optional[ClientRecord]:
        with self._session() as db:
            row = db.execute(select(ClientDB).where(ClientDB.user_id == user_id)).scalars().first()
            return ClientRecord.model_validate(row) if row else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as db:
            row = db.get(UserDB, user_id)
            return UserRecord.model_validate(row) if row else None

    def list_admin_recipients(self) -> List[UserRecord]:
        with self._session() as db:
            rows = db.execute(
                select(UserDB)
                .where(UserDB.role == "ADMIN", UserDB.status == "ACTIVE")
                .order_by(UserDB.email.asc())
            ).scalars().all()
            return [UserRecord.model_validate(r) for r in rows]

    # ------------------------------------------------------------------ transitions

    def try_claim(
        self,
        packet_id: str,
        expected_status: PacketStatus,
        new_status: PacketStatus,
        claimed_by: Optional[str] = None,
    ) -> bool:
        new_status = PacketStatus(new_status)
        values: Dict[str, Any] = {"status": new_status.value}
        if new_status == PacketStatus.GENERATING:
            values["claimed_by"] = claimed_by
            values["claimed_at"] = self._clock()
        else:
            values["claimed_by"] = None
            values["claimed_at"] = None
        if new_status != PacketStatus.READY:
            values["pdf_url"] = None
        return self._conditional_update(
            packet_id,
            [PacketDB.status == PacketStatus(expected_status).value],
            values,
        )

    def complete_packet(
        self, packet_id: str, claimed_by: str, content: Dict[str, Any], pdf_url: str
    ) -> bool:
        return self._conditional_update(
            packet_id,
            [
                PacketDB.status == PacketStatus.GENERATING.value,
                PacketDB.claimed_by == claimed_by,
            ],
            {
                "status": PacketStatus.READY.value,
                "content": content,
                "pdf_url": pdf_url,
                "last_error": None,
                "error_type": None,
                "retryable": None,
                "claimed_by": None,
                "claimed_at": None,
            },
        )

    def fail_packet(
        self,
        packet_id: str,
        claimed_by: Optional[str],
        error_message: str,
        error_type: PacketErrorType,
        retryable: bool,
    ) -> bool:
        conditions = [PacketDB.status == PacketStatus.GENERATING.value]
        if claimed_by is not None:
            conditions.append(PacketDB.claimed_by == claimed_by)
        values = {
            "status": PacketStatus.FAILED.value,
            "last_error": (error_message or "")[:500],
            "error_type": PacketErrorType(error_type).value,
            "retryable": bool(retryable),
            "pdf_url": None,
            "claimed_by": None,
            "claimed_at": None,
        }
        if retryable:
            values["retry_count"] = PacketDB.retry_count + 1
        return self._conditional_update(packet_id, conditions, values)

    def reclaim_stale(self, packet_id: str, stale_before: datetime, error_message: str) -> bool:
        return self._conditional_update(
            packet_id,
            [
                PacketDB.status == PacketStatus.GENERATING.value,
                PacketDB.claimed_at < stale_before,
            ],
            {
                "status": PacketStatus.FAILED.value,
                "last_error": error_message[:500],
                "error_type": PacketErrorType.UNKNOWN_ERROR.value,
                "retryable": True,
                "retry_count": PacketDB.retry_count + 1,
                "pdf_url": None,
                "claimed_by": None,
                "claimed_at": None,
            },
        )

    def reset_for_retry(self, packet_id: str, reset_retry_count: bool = False) -> bool:
        values: Dict[str, Any] = {
            "status": PacketStatus.PENDING.value,
            "last_error": None,
            "error_type": None,
            "retryable": None,
            "pdf_url": None,
            "claimed_by": None,
            "claimed_at": None,
        }
        if reset_retry_count:
            values["retry_count"] = 0
        return self._conditional_update(
            packet_id, [PacketDB.status == PacketStatus.FAILED.value], values
        )

    def requeue_for_retry(
        self,
        packet_id: str,
        observed_retry_count: int,
        observed_updated_at: datetime,
        max_retries: int,
    ) -> bool:
        return self._conditional_update(
            packet_id,
            [
                PacketDB.status == PacketStatus.FAILED.value,
                or_(PacketDB.retryable.is_(None), PacketDB.retryable.is_(True)),
                PacketDB.retry_count == observed_retry_count,
                PacketDB.retry_count < max_retries,
                PacketDB.updated_at == observed_updated_at,
            ],
            {
                "status": PacketStatus.PENDING.value,
                "pdf_url": None,
                "claimed_by": None,
                "claimed_at": None,
            },
        )

    def update_pdf_url(self, packet_id: str, pdf_url: str) -> bool:
        return self._conditional_update(
            packet_id,
            [PacketDB.status == PacketStatus.READY.value],
            {"pdf_url": pdf_url},
        )

    # ------------------------------------------------------------------ notifications

    def record_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime],
        recipient_count: int,
    ) -> bool:
        if self.has_notification(packet_id, notification_type, failure_marker):
            return False
        try:
            with self._session() as db:
                db.add(PacketNotificationDB(
                    packet_id=packet_id,
                    notification_type=NotificationType(notification_type).value,
                    failure_marker=failure_marker,
                    recipient_count=recipient_count,
                    created_at=self._clock(),
                ))
            return True
        except IntegrityError:
            logger.info(
                f"Notification {NotificationType(notification_type).value} for packet "
                f"{packet_id} already recorded"
            )
            return False

    def has_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime] = None,
    ) -> bool:
        conditions = [
            PacketNotificationDB.packet_id == packet_id,
            PacketNotificationDB.notification_type == NotificationType(notification_type).value,
        ]
        if failure_marker is not None:
            conditions.append(PacketNotificationDB.failure_marker == failure_marker)
        with self._session() as db:
            return db.execute(
                select(PacketNotificationDB.id).where(and_(*conditions))
            ).first() is not None
