"""
Unit tests for packet error classification and failure reporting
"""
from datetime import timedelta

import httpx
import pytest
from jinja2 import TemplateSyntaxError
from sqlalchemy.exc import OperationalError

from app.models.packet import PacketErrorType, PacketRecord, PacketStatus, PacketType
from app.services.packet_error_handler import classify, is_terminal_failure
from app.services.packet_storage import ArtifactNotFoundError, PacketStorageError
from app.services.packet_templates import IntakeDataError, TemplateNotFoundError
from app.services.pdf_export_service import PDFExportError


class TestClassify:

    @pytest.mark.parametrize("error, error_type, retryable", [
        (IntakeDataError("Intake data is missing required field 'age'"), PacketErrorType.DATA_ERROR, False),
        (TemplateNotFoundError("Template not found for packet type: X"), PacketErrorType.TEMPLATE_ERROR, False),
        (TemplateSyntaxError("unexpected end of template", 1), PacketErrorType.TEMPLATE_ERROR, False),
        (PDFExportError("PDF rendering failed"), PacketErrorType.EXPORT_ERROR, True),
        (PacketStorageError("upload timed out"), PacketErrorType.STORAGE_ERROR, True),
        (PacketStorageError("Client error: 403", transient=False), PacketErrorType.STORAGE_ERROR, False),
        (ArtifactNotFoundError("Blob not found"), PacketErrorType.STORAGE_ERROR, False),
        (OperationalError("SELECT 1", {}, Exception("server closed")), PacketErrorType.DATABASE_ERROR, True),
        (httpx.ConnectTimeout("model endpoint timed out"), PacketErrorType.AI_ERROR, True),
        (TimeoutError("write timed out"), PacketErrorType.STORAGE_ERROR, True),
        (ConnectionError("reset by peer"), PacketErrorType.STORAGE_ERROR, True),
        (ValueError("Client not found: abc"), PacketErrorType.DATA_ERROR, False),
        (RuntimeError("Template rendering failed"), PacketErrorType.TEMPLATE_ERROR, False),
        (RuntimeError("AI service returned 502"), PacketErrorType.AI_ERROR, True),
        (RuntimeError("database deadlock detected"), PacketErrorType.DATABASE_ERROR, True),
        (RuntimeError("something odd happened"), PacketErrorType.UNKNOWN_ERROR, True),
    ])
    def test_classification(self, error, error_type, retryable):
        result = classify(error)
        assert result.error_type == error_type
        assert result.retryable is retryable

    def test_message_masks_contact_details(self):
        result = classify(RuntimeError("send to jane@example.com or 555-123-4567 failed"))
        assert "jane@example.com" not in result.message
        assert "555-123-4567" not in result.message

    def test_message_is_truncated(self):
        result = classify(RuntimeError("x" * 2000))
        assert len(result.message) == 500

    def test_empty_message_uses_type_name(self):
        assert classify(RuntimeError()).message == "RuntimeError"


class TestTerminal:

    def _packet(self, clock, **overrides):
        fields = dict(
            id="p1", client_id="client-1", type=PacketType.NUTRITION, status=PacketStatus.FAILED,
            retry_count=0, retryable=True, created_at=clock.now, updated_at=clock.now,
        )
        fields.update(overrides)
        return PacketRecord(**fields)

    def test_below_ceiling_is_not_terminal(self, clock):
        assert is_terminal_failure(self._packet(clock, retry_count=2), 3) is False

    def test_at_ceiling_is_terminal(self, clock):
        assert is_terminal_failure(self._packet(clock, retry_count=3), 3) is True

    def test_non_retryable_is_terminal(self, clock):
        assert is_terminal_failure(self._packet(clock, retryable=False), 3) is True

    def test_only_failed_packets_are_terminal(self, clock):
        assert is_terminal_failure(self._packet(clock, status=PacketStatus.READY, retry_count=5), 3) is False

    def test_has_exceeded_max_retries(self, pipeline, store, clock):
        store.put_packet(self._packet(clock, retry_count=3))
        assert pipeline.error_handler.has_exceeded_max_retries("p1") is True
        assert pipeline.error_handler.has_exceeded_max_retries("missing") is False


class TestErrorStats:

    def _failed(self, store, clock, packet_id, message, error_type=PacketErrorType.STORAGE_ERROR,
                packet_type=PacketType.NUTRITION, retry_count=1, retryable=True):
        return store.put_packet(PacketRecord(
            id=packet_id, client_id="client-1", type=packet_type, status=PacketStatus.FAILED,
            last_error=message, error_type=error_type, retry_count=retry_count, retryable=retryable,
            created_at=clock.now, updated_at=clock.now,
        ))

    def test_stats_over_window(self, pipeline, store, clock):
        old = clock.now
        self._failed(store, clock, "ancient", "long ago")
        clock.advance(minutes=60 * 30)

        self._failed(store, clock, "f1", "Upload of packet 12 failed")
        clock.advance(seconds=1)
        self._failed(store, clock, "f2", "Upload of packet 97 failed", packet_type=PacketType.WORKOUT)
        clock.advance(seconds=1)
        self._failed(store, clock, "f3", "Intake malformed", error_type=PacketErrorType.DATA_ERROR,
                     retry_count=0, retryable=False)
        ready = store.create_packet("client-1", PacketType.INTRO)
        store.try_claim(ready.id, PacketStatus.PENDING, PacketStatus.GENERATING, "w")
        store.complete_packet(ready.id, "w", {}, "/packets/r.pdf")
        store.create_packet("client-1", PacketType.YOUTH)

        stats = pipeline.error_handler.get_error_stats(window_hours=24)

        assert old < clock.now - timedelta(hours=24)
        assert stats.total_packets == 5
        assert stats.failed == 3
        assert stats.counts_by_status == {"FAILED": 3, "READY": 1, "PENDING": 1}
        assert stats.failure_rate == 0.75
        assert stats.errors_by_type == {"STORAGE_ERROR": 2, "DATA_ERROR": 1}
        assert stats.errors_by_packet_type == {"NUTRITION": 2, "WORKOUT": 1}
        assert stats.top_errors[0].message == "Upload of packet <n> failed"
        assert stats.top_errors[0].count == 2
        # Newest first
        assert [e.packet_id for e in stats.recent_errors] == ["f3", "f2", "f1"]

    def test_empty_window(self, pipeline):
        stats = pipeline.error_handler.get_error_stats(window_hours=1)
        assert stats.total_packets == 0
        assert stats.failure_rate == 0.0

    def test_failed_packets_needing_attention(self, pipeline, store, clock, client_record):
        self._failed(store, clock, "exhausted", "boom", retry_count=3)
        clock.advance(seconds=5)
        self._failed(store, clock, "bad-data", "Intake malformed", error_type=PacketErrorType.DATA_ERROR,
                     retry_count=0, retryable=False)
        clock.advance(seconds=5)
        self._failed(store, clock, "still-retrying", "boom", retry_count=1)

        summaries = pipeline.error_handler.get_failed_packets_needing_attention()

        assert [s.packet_id for s in summaries] == ["exhausted", "bad-data"]
        assert summaries[0].client_name == "Jane Doe"
        assert summaries[0].client_email == "jane@example.com"
