"""
Packet pipeline wiring
Builds the store, services and worker once per process and hands them to
routes through FastAPI dependencies.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.services.email_service import EmailSender, SmtpEmailSender
from app.services.packet_error_handler import PacketErrorHandler
from app.services.packet_generation_service import PacketGenerationService
from app.services.packet_notification_service import PacketNotificationService
from app.services.packet_retry_service import PacketRetryService
from app.services.packet_routing_service import PacketRoutingService
from app.services.packet_storage import PacketStorage, build_packet_storage
from app.services.packet_store import PacketStore, SqlPacketStore
from app.services.packet_templates import ContentPopulator, TemplateContentPopulator
from app.services.packet_worker import PacketWorker
from app.services.pdf_export_service import PDFExportService
from app.services.stale_packet_reclaimer import StalePacketReclaimer
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PacketPipeline:
    store: PacketStore
    pdf_export: PDFExportService
    error_handler: PacketErrorHandler
    notifications: PacketNotificationService
    generation: PacketGenerationService
    retry_service: PacketRetryService
    worker: PacketWorker
    routing: PacketRoutingService


def build_pipeline(
    store: Optional[PacketStore] = None,
    storage: Optional[PacketStorage] = None,
    populator: Optional[ContentPopulator] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Callable[[], datetime] = utcnow,
    max_retries: Optional[int] = None,
    base_seconds: Optional[float] = None,
    max_seconds: Optional[float] = None,
    stale_generating_minutes: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> PacketPipeline:
    """Assemble the pipeline; anything not passed in comes from settings."""
    store = store or SqlPacketStore(clock=clock)
    pdf_export = PDFExportService(storage or build_packet_storage())
    error_handler = PacketErrorHandler(store, max_retries=max_retries, clock=clock)
    notifications = PacketNotificationService(store, email_sender or SmtpEmailSender(), error_handler)
    generation = PacketGenerationService(
        store, populator or TemplateContentPopulator(), pdf_export, error_handler, notifications
    )
    retry_service = PacketRetryService(
        store, max_retries=max_retries, base_seconds=base_seconds, max_seconds=max_seconds, clock=clock
    )
    reclaimer = StalePacketReclaimer(store, stale_generating_minutes=stale_generating_minutes, clock=clock)
    worker = PacketWorker(store, generation, retry_service, reclaimer, notifications, batch_size=batch_size)
    return PacketPipeline(
        store=store,
        pdf_export=pdf_export,
        error_handler=error_handler,
        notifications=notifications,
        generation=generation,
        retry_service=retry_service,
        worker=worker,
        routing=PacketRoutingService(store, worker),
    )


# Global instance
_pipeline: Optional[PacketPipeline] = None


def get_pipeline() -> PacketPipeline:
    """Get or create the global pipeline instance"""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
        logger.info("Packet pipeline initialized")
    return _pipeline


def set_pipeline(pipeline: Optional[PacketPipeline]) -> None:
    global _pipeline
    _pipeline = pipeline
