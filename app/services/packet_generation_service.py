"""
Packet Generation Service
Drives one packet through PENDING -> GENERATING -> READY | FAILED.

Each transition is committed on its own:
1. Claim: conditional PENDING -> GENERATING (losers return without side effects)
2. Populate content from the client's intake answers
3. Render and store the PDF
4. Complete: conditional GENERATING -> READY with content and pdf_url

Any exception in steps 2-4 is classified by the error handler and recorded
on the packet. Failures are not propagated unless the caller asks for it.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.models.packet import (
    ClientRecord,
    PacketErrorType,
    PacketRecord,
    PacketStatus,
    PacketType,
    packet_type_display_name,
)
from app.services.packet_error_handler import PacketErrorHandler
from app.services.packet_notification_service import PacketNotificationService
from app.services.packet_store import PacketConflictError, PacketNotFoundError, PacketStore
from app.services.packet_templates import ContentPopulator
from app.services.pdf_export_service import PDFExportService
from app.utils.audit_logger import log_packet_event

logger = logging.getLogger(__name__)


class PacketGenerationError(Exception):
    """Surfaced to callers that asked for synchronous failure reporting"""

    def __init__(self, packet_id: str, error_type: PacketErrorType, retryable: bool, message: str):
        super().__init__(message)
        self.packet_id = packet_id
        self.error_type = error_type
        self.retryable = retryable
        self.message = message


@dataclass
class GenerationResult:
    packet_id: str
    claimed: bool
    status: Optional[PacketStatus] = None
    pdf_url: Optional[str] = None
    error_type: Optional[PacketErrorType] = None
    retryable: Optional[bool] = None
    terminal: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == PacketStatus.READY


class PacketGenerationService:

    def __init__(
        self,
        store: PacketStore,
        populator: ContentPopulator,
        pdf_export: PDFExportService,
        error_handler: PacketErrorHandler,
        notifications: Optional[PacketNotificationService] = None,
    ):
        self.store = store
        self.populator = populator
        self.pdf_export = pdf_export
        self.error_handler = error_handler
        self.notifications = notifications

    def generate_packet(
        self,
        client: ClientRecord,
        packet_type: PacketType,
        packet_id: str,
        raise_on_failure: bool = False,
        claimed_by: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate content and PDF for a PENDING packet.

        Args:
            client: Client with intake responses loaded
            packet_type: Type of packet to build
            packet_id: Packet row to update
            raise_on_failure: Raise PacketGenerationError after recording a failure
            claimed_by: Claim owner id (generated if not given)

        Returns:
            GenerationResult; claimed=False means another actor owns the packet
        """
        packet_type = PacketType(packet_type)
        claimed_by = claimed_by or f"gen:{uuid.uuid4().hex[:12]}"

        if not self.store.try_claim(packet_id, PacketStatus.PENDING, PacketStatus.GENERATING, claimed_by):
            logger.info(f"Packet {packet_id} not claimed (not PENDING or already claimed), skipping")
            return GenerationResult(packet_id=packet_id, claimed=False)

        logger.info(f"Starting generation for packet {packet_id} (type: {packet_type.value})")
        pdf_url = None
        try:
            content = self._build_content(client, packet_type)
            pdf_url = self.pdf_export.generate_pdf(
                packet_id,
                content,
                client.full_name,
                packet_type.value,
                {
                    "title": f"{packet_type_display_name(packet_type)} Plan - {client.full_name}",
                    "subject": f"Personalized {packet_type_display_name(packet_type)} Plan",
                },
            )
            completed = self.store.complete_packet(packet_id, claimed_by, content, pdf_url)
        except Exception as e:
            if pdf_url:
                self.pdf_export.delete_pdf(pdf_url)
            return self._record_failure(e, client, packet_type, packet_id, claimed_by, raise_on_failure)

        if not completed:
            # Claim was reclaimed as stale while we worked; the newer state wins
            logger.warning(f"Packet {packet_id} claim lost before completion, discarding result")
            self.pdf_export.delete_pdf(pdf_url)
            return GenerationResult(packet_id=packet_id, claimed=True, status=None)

        logger.info(f"Successfully generated packet {packet_id}")
        if self.notifications is not None:
            try:
                self.notifications.notify_client_packet_ready(packet_id)
            except Exception as e:
                logger.error(f"Client notification for packet {packet_id} failed: {e}")
        return GenerationResult(packet_id=packet_id, claimed=True, status=PacketStatus.READY, pdf_url=pdf_url)

    def _build_content(self, client: ClientRecord, packet_type: PacketType) -> Dict[str, Any]:
        content = self.populator.populate(client, packet_type)
        if not isinstance(content, dict):
            raise TypeError(f"Content populator returned {type(content).__name__}, expected a mapping")
        content = dict(content)
        metadata = dict(content.get("metadata") or {})
        metadata.update({
            "packetType": packet_type.value,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "version": "1.0",
        })
        content["metadata"] = metadata
        return content

    def _record_failure(
        self,
        error: Exception,
        client: ClientRecord,
        packet_type: PacketType,
        packet_id: str,
        claimed_by: str,
        raise_on_failure: bool,
    ) -> GenerationResult:
        outcome = self.error_handler.handle_generation_error(
            error, packet_id, claimed_by, client_id=client.id, packet_type=packet_type.value
        )
        classification = outcome.classification

        if outcome.terminal and self.notifications is not None:
            self.notifications.notify_admins_of_failure(packet_id)

        if raise_on_failure:
            raise PacketGenerationError(
                packet_id, classification.error_type, classification.retryable, classification.message
            ) from error

        return GenerationResult(
            packet_id=packet_id,
            claimed=True,
            status=PacketStatus.FAILED if outcome.recorded else None,
            error_type=classification.error_type,
            retryable=classification.retryable,
            terminal=outcome.terminal,
        )

    def process_packet(
        self, packet_id: str, raise_on_failure: bool = False, claimed_by: Optional[str] = None
    ) -> GenerationResult:
        """Load packet and client, then generate. Worker entry point."""
        packet = self.store.get_packet(packet_id)
        if packet is None:
            raise PacketNotFoundError(f"Packet {packet_id} not found")
        client = self.store.get_client(packet.client_id)
        if client is None:
            # Nothing to build from: claim and record as a data error
            return self._fail_without_client(packet, raise_on_failure, claimed_by)
        return self.generate_packet(client, packet.type, packet.id, raise_on_failure, claimed_by)

    def _fail_without_client(
        self, packet: PacketRecord, raise_on_failure: bool, claimed_by: Optional[str]
    ) -> GenerationResult:
        from app.services.packet_templates import IntakeDataError

        claimed_by = claimed_by or f"gen:{uuid.uuid4().hex[:12]}"
        if not self.store.try_claim(packet.id, PacketStatus.PENDING, PacketStatus.GENERATING, claimed_by):
            return GenerationResult(packet_id=packet.id, claimed=False)
        placeholder = ClientRecord(id=packet.client_id, full_name="", email="")
        return self._record_failure(
            IntakeDataError(f"Client not found: {packet.client_id}"),
            placeholder, packet.type, packet.id, claimed_by, raise_on_failure,
        )

    def regenerate_packet(self, packet_id: str, requested_by: Optional[str] = None,
                          reason: Optional[str] = None) -> PacketRecord:
        """
        Create the next version of a packet as a new PENDING row.

        The old row stays as-is for audit; the new row has version + 1,
        retry_count 0 and previous_version_id pointing at the old row.

        Raises:
            PacketNotFoundError: unknown packet
            PacketConflictError: packet has already been superseded
        """
        try:
            new_packet = self.store.create_next_version(packet_id)
        except (PacketNotFoundError, PacketConflictError) as e:
            log_packet_event(
                action="regenerate", outcome="failure", packet_id=packet_id,
                user_id=requested_by, details=str(e),
            )
            raise
        log_packet_event(
            action="regenerate",
            outcome="success",
            packet_id=new_packet.id,
            user_id=requested_by,
            details=reason,
            metadata={"previous_version_id": packet_id, "version": new_packet.version},
        )
        logger.info(f"Packet {packet_id} regenerated as {new_packet.id} (version {new_packet.version})")
        return new_packet

    def regenerate_pdf(self, packet_id: str) -> PacketRecord:
        """
        Re-render the PDF of a READY packet from its stored content.

        The new artifact is written first, pdf_url is switched only while the
        packet is still READY, then the old artifact is removed best-effort.

        Raises:
            PacketNotFoundError: unknown packet
            PacketConflictError: packet is not READY or has no content
        """
        packet = self.store.get_packet(packet_id)
        if packet is None:
            raise PacketNotFoundError(f"Packet {packet_id} not found")
        if packet.status != PacketStatus.READY:
            raise PacketConflictError("Packet must be READY to regenerate its PDF")
        if not packet.content:
            raise PacketConflictError("Packet has no content to render")

        client = self.store.get_client(packet.client_id)
        client_name = client.full_name if client else "Client"
        new_url = self.pdf_export.generate_pdf(packet.id, packet.content, client_name, packet.type.value)

        if not self.store.update_pdf_url(packet.id, new_url):
            self.pdf_export.delete_pdf(new_url)
            raise PacketConflictError("Packet changed while its PDF was being regenerated")
        if packet.pdf_url and packet.pdf_url != new_url:
            self.pdf_export.delete_pdf(packet.pdf_url)
        logger.info(f"Regenerated PDF for packet {packet_id}")
        return self.store.get_packet(packet_id)
