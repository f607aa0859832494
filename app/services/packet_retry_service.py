"""
Packet Retry Service
Backoff policy and re-queueing of retryable FAILED packets.

backoff(n) = min(base * 2**n, max), where n is the packet's retry_count.
A FAILED packet becomes PENDING again once it is retryable, below the retry
ceiling, and backoff(retry_count) has elapsed since its last update.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from app.config import settings
from app.models.packet import PacketRecord, PacketStatus, RetryStats
from app.services.packet_store import PacketConflictError, PacketNotFoundError, PacketStore
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def compute_backoff(retry_count: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff in seconds, capped at max_seconds."""
    if retry_count < 0:
        retry_count = 0
    # Cap the exponent so large counts cannot overflow
    return min(base_seconds * (2 ** min(retry_count, 32)), max_seconds)


class PacketRetryService:

    def __init__(
        self,
        store: PacketStore,
        max_retries: Optional[int] = None,
        base_seconds: Optional[float] = None,
        max_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_retries = settings.packet_max_retries if max_retries is None else max_retries
        self.base_seconds = settings.packet_retry_base_seconds if base_seconds is None else base_seconds
        self.max_seconds = settings.packet_retry_max_seconds if max_seconds is None else max_seconds
        self.clock = clock

    def backoff_seconds(self, retry_count: int) -> float:
        return compute_backoff(retry_count, self.base_seconds, self.max_seconds)

    def is_awaiting_retry(self, packet: PacketRecord) -> bool:
        return (
            packet.status == PacketStatus.FAILED
            and packet.retryable is not False
            and packet.retry_count < self.max_retries
        )

    def next_retry_at(self, packet: PacketRecord) -> Optional[datetime]:
        if not self.is_awaiting_retry(packet):
            return None
        return packet.updated_at + timedelta(seconds=self.backoff_seconds(packet.retry_count))

    def is_due(self, packet: PacketRecord, now: Optional[datetime] = None) -> bool:
        retry_at = self.next_retry_at(packet)
        return retry_at is not None and (now or self.clock()) >= retry_at

    def get_due_retries(self) -> List[PacketRecord]:
        now = self.clock()
        return [p for p in self.store.list_by_status(PacketStatus.FAILED) if self.is_due(p, now)]

    def requeue_due_retries(self) -> List[str]:
        """
        Move every due FAILED packet back to PENDING.

        Each move is conditional on the row still being the failure that was
        listed, so a packet that another worker retried and failed again in
        the meantime is left alone until its own backoff is due.

        Returns:
            Ids of packets this call re-queued
        """
        requeued = []
        for packet in self.get_due_retries():
            if self.store.requeue_for_retry(
                packet.id, packet.retry_count, packet.updated_at, self.max_retries
            ):
                requeued.append(packet.id)
                logger.info(
                    f"Re-queued packet {packet.id} for retry "
                    f"(attempt {packet.retry_count + 1}, retry_count={packet.retry_count}/{self.max_retries})"
                )
        return requeued

    def retry_now(self, packet_id: str, reset_retry_count: bool = False) -> PacketRecord:
        """
        Manual retry, ignoring backoff.

        Raises:
            PacketNotFoundError: unknown packet
            PacketConflictError: packet is READY or GENERATING, or already PENDING
        """
        packet = self.store.get_packet(packet_id)
        if packet is None:
            raise PacketNotFoundError(f"Packet {packet_id} not found")
        if packet.status == PacketStatus.READY:
            raise PacketConflictError("Packet is already ready")
        if packet.status == PacketStatus.GENERATING:
            raise PacketConflictError("Packet is currently generating")
        if packet.status == PacketStatus.PENDING:
            raise PacketConflictError("Packet is already queued")
        if not self.store.reset_for_retry(packet_id, reset_retry_count=reset_retry_count):
            raise PacketConflictError("Packet state changed, retry not queued")
        logger.info(f"Manual retry queued for packet {packet_id} (reset_retry_count={reset_retry_count})")
        return self.store.get_packet(packet_id)

    def get_retry_stats(self) -> RetryStats:
        failed = self.store.list_by_status(PacketStatus.FAILED)
        ready = self.store.list_by_status(PacketStatus.READY, current_only=False)

        non_retryable = sum(1 for p in failed if p.retryable is False)
        exhausted = sum(1 for p in failed if p.retryable is not False and p.retry_count >= self.max_retries)
        awaiting = sum(1 for p in failed if self.is_awaiting_retry(p))

        return RetryStats(
            total_failed=len(failed),
            awaiting_retry=awaiting,
            exhausted=exhausted,
            non_retryable=non_retryable,
            average_retry_count=(
                round(sum(p.retry_count for p in failed) / len(failed), 2) if failed else 0.0
            ),
            mean_retries_to_success=(
                round(sum(p.retry_count for p in ready) / len(ready), 2) if ready else 0.0
            ),
        )
