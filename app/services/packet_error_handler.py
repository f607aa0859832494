"""
Packet Error Handler
Classifies generation failures, records them on the packet, and reports
failure statistics for the admin dashboard.

Classification policy:
- Malformed or missing intake data and template problems are never retryable
- Storage, rendering, network and database failures are retryable up to the
  configured ceiling
- Anything unrecognized is treated as transient (retryable)
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

import httpx
from jinja2 import TemplateError
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from app.config import settings
from app.models.packet import (
    ErrorClassification,
    ErrorStats,
    FailedPacketSummary,
    PacketErrorType,
    PacketRecord,
    PacketStatus,
    RecentError,
    TopError,
)
from app.services.packet_storage import PacketStorageError
from app.services.packet_store import PacketStore
from app.services.packet_templates import IntakeDataError, TemplateNotFoundError
from app.services.pdf_export_service import PDFExportError
from app.utils.audit_logger import log_packet_event
from app.utils.error_masking import mask_error_message
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

RECENT_ERRORS_LIMIT = 20
TOP_ERRORS_LIMIT = 10
ERROR_PREFIX_LENGTH = 80

# Checked in order when the exception type alone is not conclusive
_MESSAGE_PATTERNS = [
    (re.compile(r"\btemplate\b", re.IGNORECASE), PacketErrorType.TEMPLATE_ERROR, False),
    (re.compile(r"client not found|missing required|malformed|invalid intake", re.IGNORECASE),
     PacketErrorType.DATA_ERROR, False),
    (re.compile(r"\b(AI|API)\b"), PacketErrorType.AI_ERROR, True),
    (re.compile(r"\bPDF\b|\bexport\b", re.IGNORECASE), PacketErrorType.EXPORT_ERROR, True),
    (re.compile(r"\bdatabase\b|\bdeadlock\b", re.IGNORECASE), PacketErrorType.DATABASE_ERROR, True),
]


def classify(error: BaseException) -> ErrorClassification:
    """
    Decide error type and retry eligibility. Pure: no I/O, no side effects.

    Returns:
        ErrorClassification with a sanitized message (PII masked, <= 500 chars)
    """
    message = mask_error_message(str(error) or type(error).__name__)

    if isinstance(error, IntakeDataError):
        return ErrorClassification(error_type=PacketErrorType.DATA_ERROR, retryable=False, message=message)
    if isinstance(error, (TemplateNotFoundError, TemplateError)):
        return ErrorClassification(error_type=PacketErrorType.TEMPLATE_ERROR, retryable=False, message=message)
    if isinstance(error, PDFExportError):
        return ErrorClassification(error_type=PacketErrorType.EXPORT_ERROR, retryable=True, message=message)
    if isinstance(error, PacketStorageError):
        return ErrorClassification(
            error_type=PacketErrorType.STORAGE_ERROR, retryable=error.transient, message=message
        )
    if isinstance(error, (OperationalError, DBAPIError, SQLAlchemyError)):
        return ErrorClassification(error_type=PacketErrorType.DATABASE_ERROR, retryable=True, message=message)
    if isinstance(error, httpx.TransportError):
        return ErrorClassification(error_type=PacketErrorType.AI_ERROR, retryable=True, message=message)
    if isinstance(error, (TimeoutError, ConnectionError, OSError)):
        return ErrorClassification(error_type=PacketErrorType.STORAGE_ERROR, retryable=True, message=message)

    raw = str(error)
    for pattern, error_type, retryable in _MESSAGE_PATTERNS:
        if pattern.search(raw):
            return ErrorClassification(error_type=error_type, retryable=retryable, message=message)

    return ErrorClassification(error_type=PacketErrorType.UNKNOWN_ERROR, retryable=True, message=message)


def is_terminal_failure(packet: PacketRecord, max_retries: int) -> bool:
    """FAILED and either non-retryable or out of retries."""
    if packet.status != PacketStatus.FAILED:
        return False
    return packet.retryable is False or packet.retry_count >= max_retries


def _normalize_error(message: Optional[str]) -> str:
    """Group messages that differ only by ids, numbers and trailing detail."""
    if not message:
        return "(no message)"
    normalized = re.sub(
        r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", "<id>", message, flags=re.IGNORECASE
    )
    normalized = re.sub(r"\d+", "<n>", normalized)
    return normalized[:ERROR_PREFIX_LENGTH]


@dataclass
class FailureOutcome:
    classification: ErrorClassification
    packet: Optional[PacketRecord]
    recorded: bool
    terminal: bool


class PacketErrorHandler:
    """Records classified failures and answers monitoring queries."""

    def __init__(
        self,
        store: PacketStore,
        max_retries: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.max_retries = settings.packet_max_retries if max_retries is None else max_retries
        self.clock = clock

    classify = staticmethod(classify)

    def handle_generation_error(
        self,
        error: BaseException,
        packet_id: str,
        claimed_by: Optional[str],
        client_id: Optional[str] = None,
        packet_type: Optional[str] = None,
    ) -> FailureOutcome:
        """
        Classify the error and move the packet GENERATING -> FAILED.

        retry_count is incremented only when the failure is retryable. The
        write is conditional on this caller still owning the claim; if it
        does not, nothing is recorded.
        """
        classification = classify(error)
        recorded = self.store.fail_packet(
            packet_id,
            claimed_by,
            classification.message,
            classification.error_type,
            classification.retryable,
        )
        packet = self.store.get_packet(packet_id)
        terminal = bool(recorded and packet and is_terminal_failure(packet, self.max_retries))

        if not recorded:
            logger.warning(
                f"Packet {packet_id} failed with {classification.error_type.value} but the claim was "
                f"lost; failure not recorded"
            )
        else:
            logger.error(
                f"Packet generation failed: packet_id={packet_id}, type={packet_type}, "
                f"error_type={classification.error_type.value}, retryable={classification.retryable}, "
                f"retry_count={packet.retry_count if packet else '?'}, terminal={terminal}"
            )
            log_packet_event(
                action="generation_error",
                outcome="failure",
                packet_id=packet_id,
                user_id="SYSTEM",
                details=classification.message,
                metadata={
                    "client_id": client_id,
                    "packet_type": packet_type,
                    "error_type": classification.error_type.value,
                    "retryable": classification.retryable,
                    "retry_count": packet.retry_count if packet else None,
                    "terminal": terminal,
                },
            )
        return FailureOutcome(classification=classification, packet=packet, recorded=recorded, terminal=terminal)

    def is_terminal(self, packet: PacketRecord) -> bool:
        return is_terminal_failure(packet, self.max_retries)

    def has_exceeded_max_retries(self, packet_id: str) -> bool:
        packet = self.store.get_packet(packet_id)
        return bool(packet and packet.retry_count >= self.max_retries)

    def get_error_stats(self, window_hours: int = 24) -> ErrorStats:
        """Failure statistics over packets updated within the last window_hours."""
        since = self.clock() - timedelta(hours=window_hours)
        packets = self.store.list_updated_since(since)

        counts_by_status = Counter(p.status.value for p in packets)
        failed = [p for p in packets if p.status == PacketStatus.FAILED]
        ready = counts_by_status.get(PacketStatus.READY.value, 0)
        settled = len(failed) + ready

        errors_by_type = Counter((p.error_type.value if p.error_type else PacketErrorType.UNKNOWN_ERROR.value)
                                 for p in failed)
        errors_by_packet_type = Counter(p.type.value for p in failed)
        top = Counter(_normalize_error(p.last_error) for p in failed).most_common(TOP_ERRORS_LIMIT)

        # list_updated_since is newest first
        recent = [
            RecentError(
                packet_id=p.id,
                client_id=p.client_id,
                packet_type=p.type,
                error_type=p.error_type,
                message=p.last_error,
                retry_count=p.retry_count,
                updated_at=p.updated_at,
            )
            for p in failed[:RECENT_ERRORS_LIMIT]
        ]

        return ErrorStats(
            window_hours=window_hours,
            total_packets=len(packets),
            counts_by_status=dict(counts_by_status),
            failed=len(failed),
            failure_rate=round(len(failed) / settled, 4) if settled else 0.0,
            errors_by_type=dict(errors_by_type),
            errors_by_packet_type=dict(errors_by_packet_type),
            top_errors=[TopError(message=m, count=c) for m, c in top],
            recent_errors=recent,
        )

    def get_terminal_failures(self) -> List[PacketRecord]:
        """Current-version packets in terminal FAILED state, oldest failure first."""
        return [p for p in self.store.list_by_status(PacketStatus.FAILED) if self.is_terminal(p)]

    def get_failed_packets_needing_attention(self) -> List[FailedPacketSummary]:
        summaries = []
        for packet in self.get_terminal_failures():
            client = self.store.get_client(packet.client_id)
            summaries.append(FailedPacketSummary(
                packet_id=packet.id,
                client_id=packet.client_id,
                client_name=client.full_name if client else None,
                client_email=client.email if client else None,
                packet_type=packet.type,
                error_type=packet.error_type,
                last_error=packet.last_error,
                retry_count=packet.retry_count,
                retryable=packet.retryable,
                version=packet.version,
                updated_at=packet.updated_at,
            ))
        return summaries
