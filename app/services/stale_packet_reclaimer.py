"""
Stale Packet Reclaimer
Detects packets stuck in GENERATING (worker crashed or was killed mid-attempt)
and records the abandoned attempt as a retryable failure.

A packet is considered stale if:
- Status is GENERATING
- claimed_at is older than stale_generating_minutes

Recovery: GENERATING -> FAILED (retryable, retry_count + 1). The retry
scheduler then re-queues it after backoff, or it is terminal if the ceiling
has been reached.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.config import settings
from app.models.packet import PacketRecord
from app.services.packet_store import PacketStore
from app.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

STALE_ERROR_MESSAGE = "Generation attempt timed out (worker did not finish within {minutes} minutes)"


class StalePacketReclaimer:

    def __init__(
        self,
        store: PacketStore,
        stale_generating_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Packet record store
            stale_generating_minutes: Minutes after which a GENERATING claim is stale (default: 10)
            clock: Returns the current naive UTC time
        """
        self.store = store
        self.stale_generating_minutes = (
            settings.packet_stale_generating_minutes
            if stale_generating_minutes is None else stale_generating_minutes
        )
        self.clock = clock

    def reclaim_stale_packets(self) -> Dict[str, Any]:
        """
        Detect and fail stale GENERATING packets.

        Never raises: errors are counted and logged so the worker loop keeps going.

        Returns:
            Dict with recovery statistics:
            - detected: Number of stale packets found
            - reclaimed: Number moved to FAILED by this call
            - reclaimed_ids: Their ids
            - errors: Number of errors during recovery
        """
        stats: Dict[str, Any] = {
            'detected': 0,
            'reclaimed': 0,
            'reclaimed_ids': [],
            'errors': 0
        }

        stale_before = self.clock() - timedelta(minutes=self.stale_generating_minutes)
        try:
            candidates: List[PacketRecord] = self.store.list_stale_generating(stale_before)
        except Exception as e:
            logger.error(f"Failed to query stale packets: {e}", exc_info=True)
            stats['errors'] += 1
            return stats

        stats['detected'] = len(candidates)
        if not candidates:
            logger.debug("No stale packets detected")
            return stats

        logger.warning(
            f"Detected {len(candidates)} packet(s) stuck in GENERATING "
            f"(claimed more than {self.stale_generating_minutes} minutes ago)"
        )

        message = STALE_ERROR_MESSAGE.format(minutes=self.stale_generating_minutes)
        for packet in candidates:
            try:
                if self.store.reclaim_stale(packet.id, stale_before, message):
                    stats['reclaimed'] += 1
                    stats['reclaimed_ids'].append(packet.id)
                    logger.info(
                        f"Reclaimed stale packet {packet.id} (claimed_by={packet.claimed_by}, "
                        f"retry_count={packet.retry_count} -> {packet.retry_count + 1})"
                    )
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"Failed to reclaim stale packet {packet.id}: {e}", exc_info=True)

        return stats
