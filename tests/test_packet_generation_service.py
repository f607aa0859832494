"""
Unit tests for PacketGenerationService:
- PENDING -> GENERATING -> READY happy path
- Failure classification and recording (retryable vs not)
- Lost claims, regeneration and PDF re-rendering
"""
from unittest.mock import patch

import pytest

from app.models.packet import PacketErrorType, PacketStatus, PacketType
from app.services.packet_generation_service import PacketGenerationError
from app.services.packet_storage import PacketStorageError
from app.services.packet_store import PacketConflictError, PacketNotFoundError
from app.services.packet_templates import IntakeDataError
from app.services.pdf_export_service import PDFExportError
from app.utils.audit_logger import read_audit_log


class TestGeneratePacket:

    def test_success_marks_ready_with_pdf(self, pipeline, store, client_record, storage, email_sender):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)

        result = pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        assert result.claimed and result.succeeded
        ready = store.get_packet(packet.id)
        assert ready.status == PacketStatus.READY
        assert ready.pdf_url == result.pdf_url
        assert ready.pdf_url.startswith(f"/packets/{packet.id}/packet-{packet.id}-")
        assert storage.exists(ready.pdf_url)
        assert ready.last_error is None
        assert ready.content["metadata"]["packetType"] == "NUTRITION"
        assert ready.content["overview"] == ["Plan for Jane Doe"]
        assert [s["to"] for s in email_sender.sent_with("client_packet_ready")] == ["jane@example.com"]

    def test_packet_not_pending_is_skipped(self, pipeline, store, client_record, populator):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, "someone-else")

        result = pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        assert result.claimed is False
        assert populator.calls == []
        assert store.get_packet(packet.id).claimed_by == "someone-else"

    def test_intake_error_is_terminal_after_one_attempt(
        self, pipeline, store, client_record, populator, admins, email_sender
    ):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = IntakeDataError("Intake data is missing required field 'weight_lbs'", "weight_lbs")

        result = pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        failed = store.get_packet(packet.id)
        assert failed.status == PacketStatus.FAILED
        assert failed.error_type == PacketErrorType.DATA_ERROR
        assert failed.retryable is False
        assert failed.retry_count == 0
        assert failed.pdf_url is None
        assert result.terminal is True
        assert len(email_sender.sent_with("admin_packet_failure")) == 2

    def test_transient_error_is_retryable(self, pipeline, store, client_record, populator, admins, email_sender):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = PacketStorageError("storage unavailable")

        result = pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        failed = store.get_packet(packet.id)
        assert failed.status == PacketStatus.FAILED
        assert failed.error_type == PacketErrorType.STORAGE_ERROR
        assert failed.retryable is True
        assert failed.retry_count == 1
        assert result.terminal is False
        assert email_sender.sent_with("admin_packet_failure") == []

    def test_raise_on_failure_surfaces_classification(self, pipeline, store, client_record, populator):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = IntakeDataError("Intake responses are malformed")

        with pytest.raises(PacketGenerationError) as exc_info:
            pipeline.generation.generate_packet(
                client_record, PacketType.NUTRITION, packet.id, raise_on_failure=True
            )

        assert exc_info.value.error_type == PacketErrorType.DATA_ERROR
        assert exc_info.value.retryable is False
        # Recorded before raising
        assert store.get_packet(packet.id).status == PacketStatus.FAILED

    def test_pdf_export_failure_is_recorded(self, pipeline, store, client_record):
        packet = store.create_packet(client_record.id, PacketType.WORKOUT)

        with patch.object(pipeline.pdf_export, "generate_pdf", side_effect=PDFExportError("render failed")):
            pipeline.generation.generate_packet(client_record, PacketType.WORKOUT, packet.id)

        failed = store.get_packet(packet.id)
        assert failed.error_type == PacketErrorType.EXPORT_ERROR
        assert failed.retryable is True
        assert failed.pdf_url is None

    def test_error_message_is_masked(self, pipeline, store, client_record, populator):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = RuntimeError("lookup failed for jane@example.com")

        pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        failed = store.get_packet(packet.id)
        assert "jane@example.com" not in failed.last_error
        assert "***@***.***" in failed.last_error
        assert failed.error_type == PacketErrorType.UNKNOWN_ERROR

    def test_lost_claim_discards_new_pdf(self, pipeline, store, client_record, storage):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)

        with patch.object(store, "complete_packet", return_value=False):
            result = pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        assert result.claimed is True
        assert result.succeeded is False
        assert list(storage.base_path.rglob("*.pdf")) == []

    def test_failure_writes_audit_entry(self, pipeline, store, client_record, populator):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = IntakeDataError("Client is missing required field: full_name")

        pipeline.generation.generate_packet(client_record, PacketType.NUTRITION, packet.id)

        entries = read_audit_log()
        assert entries[-1]["action"] == "packet:generation_error"
        assert entries[-1]["packet_id"] == packet.id
        assert entries[-1]["metadata"]["error_type"] == "DATA_ERROR"


class TestProcessPacket:

    def test_process_loads_client(self, pipeline, store, client_record):
        packet = store.create_packet(client_record.id, PacketType.INTRO)

        result = pipeline.generation.process_packet(packet.id)

        assert result.succeeded
        assert store.get_packet(packet.id).status == PacketStatus.READY

    def test_missing_client_is_a_data_error(self, pipeline, store):
        packet = store.create_packet("no-such-client", PacketType.INTRO)

        result = pipeline.generation.process_packet(packet.id)

        failed = store.get_packet(packet.id)
        assert result.status == PacketStatus.FAILED
        assert failed.error_type == PacketErrorType.DATA_ERROR
        assert failed.retryable is False

    def test_unknown_packet(self, pipeline):
        with pytest.raises(PacketNotFoundError):
            pipeline.generation.process_packet("missing")


class TestRegeneration:

    def test_regenerate_creates_next_version(self, pipeline, store, client_record):
        old = store.create_packet(client_record.id, PacketType.NUTRITION)
        pipeline.generation.process_packet(old.id)

        new = pipeline.generation.regenerate_packet(old.id, requested_by="coach-1", reason="updated intake")

        assert new.version == 2
        assert new.retry_count == 0
        assert new.previous_version_id == old.id
        assert new.status == PacketStatus.PENDING
        # The old row is kept as-is
        assert store.get_packet(old.id).status == PacketStatus.READY
        assert read_audit_log()[-1]["action"] == "packet:regenerate"

    def test_regenerate_resets_retry_count(self, pipeline, store, client_record, populator):
        old = store.create_packet(client_record.id, PacketType.NUTRITION)
        populator.always_raise = PacketStorageError("blob timeout")
        pipeline.generation.process_packet(old.id)
        assert store.get_packet(old.id).retry_count == 1

        new = pipeline.generation.regenerate_packet(old.id)

        assert new.retry_count == 0

    def test_regenerate_twice_from_same_row_conflicts(self, pipeline, store, client_record):
        old = store.create_packet(client_record.id, PacketType.NUTRITION)
        pipeline.generation.regenerate_packet(old.id)

        with pytest.raises(PacketConflictError):
            pipeline.generation.regenerate_packet(old.id)

    def test_regenerated_version_sends_update_email(self, pipeline, store, client_record, email_sender):
        old = store.create_packet(client_record.id, PacketType.NUTRITION)
        pipeline.generation.process_packet(old.id)
        new = pipeline.generation.regenerate_packet(old.id)

        pipeline.generation.process_packet(new.id)

        assert len(email_sender.sent_with("client_packet_ready")) == 1
        updated = email_sender.sent_with("client_packet_updated")
        assert len(updated) == 1
        assert updated[0]["data"]["version"] == 2


class TestRegeneratePdf:

    def test_regenerate_pdf_replaces_artifact(self, pipeline, store, client_record, storage):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)
        pipeline.generation.process_packet(packet.id)
        old_url = store.get_packet(packet.id).pdf_url

        updated = pipeline.generation.regenerate_pdf(packet.id)

        assert updated.status == PacketStatus.READY
        assert storage.exists(updated.pdf_url)
        if updated.pdf_url != old_url:
            assert not storage.exists(old_url)

    def test_regenerate_pdf_requires_ready(self, pipeline, store, client_record):
        packet = store.create_packet(client_record.id, PacketType.NUTRITION)

        with pytest.raises(PacketConflictError):
            pipeline.generation.regenerate_pdf(packet.id)

    def test_regenerate_pdf_unknown_packet(self, pipeline):
        with pytest.raises(PacketNotFoundError):
            pipeline.generation.regenerate_pdf("missing")
