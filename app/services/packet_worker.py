"""
Packet Worker
Background service that drives packets through generation and retry.

Each tick:
1. Reclaim packets stuck in GENERATING
2. Re-queue FAILED packets whose backoff has elapsed
3. Generate up to batch_size PENDING packets, oldest first
4. Send outstanding admin failure notifications

All workers may run concurrently. Every state change is a conditional update,
so two workers never generate the same packet twice.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from app.config import settings
from app.models.packet import PacketStatus, RetryStats
from app.services.packet_generation_service import PacketGenerationService
from app.services.packet_notification_service import PacketNotificationService
from app.services.packet_retry_service import PacketRetryService
from app.services.packet_store import PacketStore
from app.services.stale_packet_reclaimer import StalePacketReclaimer
from app.utils.timestamps import isoformat_z, utcnow

logger = logging.getLogger(__name__)


class PacketWorker:

    def __init__(
        self,
        store: PacketStore,
        generation: PacketGenerationService,
        retry_service: PacketRetryService,
        reclaimer: StalePacketReclaimer,
        notifications: Optional[PacketNotificationService] = None,
        batch_size: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        process_notifications: Optional[bool] = None,
    ):
        self.store = store
        self.generation = generation
        self.retry_service = retry_service
        self.reclaimer = reclaimer
        self.notifications = notifications
        self.batch_size = settings.packet_worker_batch_size if batch_size is None else batch_size
        self.interval_seconds = (
            settings.packet_worker_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.process_notifications = (
            settings.packet_worker_process_notifications
            if process_notifications is None else process_notifications
        )
        self.worker_id = f"worker-{uuid.uuid4()}"
        self.is_running = False
        self.poll_task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_stats: Dict[str, Any] = {}
        self.ticks = 0

    async def start(self):
        """Start the worker background task"""
        if self.is_running:
            logger.warning("Packet worker is already running")
            return

        if not settings.packet_worker_enabled:
            logger.info("Packet worker is disabled in settings")
            return

        self.is_running = True
        self._wake = asyncio.Event()
        self.poll_task = asyncio.create_task(self._poll_loop())

        def handle_task_exception(task: asyncio.Task):
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(
                    f"CRITICAL: Unhandled exception in packet worker task: {e}. "
                    f"Worker will stop but the API keeps serving.",
                    exc_info=True
                )
                self.is_running = False

        self.poll_task.add_done_callback(handle_task_exception)

        logger.info(
            f"Packet worker started (interval: {self.interval_seconds}s, "
            f"batch_size: {self.batch_size}, worker_id={self.worker_id})"
        )

    async def stop(self):
        """Stop the worker background task"""
        if not self.is_running:
            return

        self.is_running = False
        if self.poll_task:
            self.poll_task.cancel()
            try:
                await self.poll_task
            except asyncio.CancelledError:
                pass

        logger.info("Packet worker stopped")

    def enqueue(self, packet_id: str) -> None:
        """Wake the loop early so a freshly created packet does not wait a full interval."""
        logger.debug(f"Packet {packet_id} enqueued, waking worker")
        if self._wake is not None:
            self._wake.set()

    async def _poll_loop(self):
        """Main polling loop"""
        while self.is_running:
            try:
                loop = asyncio.get_event_loop()
                await loop.run_in_executor(None, self.run_once)
            except asyncio.CancelledError:
                logger.info("Packet worker cancelled")
                break
            except Exception as e:
                logger.error(f"Error in packet worker loop: {e}", exc_info=True)

            # Wait for the next tick, or until someone enqueues work
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wake.clear()

    def run_once(self) -> Dict[str, Any]:
        """
        Run one tick synchronously.

        Returns:
            Dict with tick statistics:
            - reclaimed: Stale GENERATING packets failed by this tick
            - requeued: FAILED packets moved back to PENDING
            - processed / succeeded / failed / skipped: PENDING packets handled
            - notifications_sent: Admin alerts sent
            - errors: Unexpected errors (logged, not raised)
        """
        stats: Dict[str, Any] = {
            'reclaimed': 0,
            'requeued': 0,
            'processed': 0,
            'succeeded': 0,
            'failed': 0,
            'skipped': 0,
            'notifications_sent': 0,
            'errors': 0,
        }

        # Step 1: stale claims
        reclaim_stats = self.reclaimer.reclaim_stale_packets()
        stats['reclaimed'] = reclaim_stats['reclaimed']
        stats['errors'] += reclaim_stats['errors']

        # Step 2: due retries
        try:
            stats['requeued'] = len(self.retry_service.requeue_due_retries())
        except Exception as e:
            stats['errors'] += 1
            logger.error(f"Failed to re-queue due retries: {e}", exc_info=True)

        # Step 3: pending packets, each isolated from the others
        try:
            candidates = self.store.list_by_status(PacketStatus.PENDING, limit=self.batch_size)
        except Exception as e:
            stats['errors'] += 1
            logger.error(f"Failed to list pending packets: {e}", exc_info=True)
            candidates = []

        for packet in candidates:
            try:
                result = self.generation.process_packet(packet.id, claimed_by=self.worker_id)
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"Unexpected error processing packet {packet.id}: {e}", exc_info=True)
                continue
            if not result.claimed:
                stats['skipped'] += 1
                continue
            stats['processed'] += 1
            if result.succeeded:
                stats['succeeded'] += 1
            elif result.status == PacketStatus.FAILED:
                stats['failed'] += 1

        # Step 4: admin notifications that were missed (e.g. send failed earlier)
        if self.notifications is not None and self.process_notifications:
            try:
                stats['notifications_sent'] = self.notifications.process_pending_notifications()
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"Failed to process pending notifications: {e}", exc_info=True)

        self.ticks += 1
        self.last_tick_at = utcnow()
        self.last_tick_stats = stats

        if stats['processed'] or stats['requeued'] or stats['reclaimed']:
            logger.info(
                f"Worker tick: reclaimed={stats['reclaimed']}, requeued={stats['requeued']}, "
                f"processed={stats['processed']} (succeeded={stats['succeeded']}, failed={stats['failed']})"
            )
        return stats

    def get_retry_stats(self) -> RetryStats:
        return self.retry_service.get_retry_stats()

    def get_status(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "running": self.is_running,
            "enabled": settings.packet_worker_enabled,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "ticks": self.ticks,
            "last_tick_at": isoformat_z(self.last_tick_at),
            "last_tick": self.last_tick_stats,
        }
