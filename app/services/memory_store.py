"""
In-memory PacketStore

Same contract as SqlPacketStore, guarded by a single lock so compare-and-set
transitions are atomic across worker threads. Used by tests and local demos.
"""
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.models.packet import (
    ClientRecord,
    NotificationType,
    PacketErrorType,
    PacketRecord,
    PacketStatus,
    PacketType,
    UserRecord,
)
from app.services.packet_store import (
    PacketConflictError,
    PacketNotFoundError,
    PacketStore,
)
from app.utils.timestamps import utcnow


class InMemoryPacketStore(PacketStore):

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._packets: Dict[str, PacketRecord] = {}
        self._clients: Dict[str, ClientRecord] = {}
        self._users: Dict[str, UserRecord] = {}
        self._notifications: List[Tuple[str, str, Optional[datetime], int]] = []

    # Seeding helpers (clients and users are owned by other parts of the platform)

    def add_client(self, client: ClientRecord) -> ClientRecord:
        with self._lock:
            self._clients[client.id] = client
        return client

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._users[user.id] = user
        return user

    def put_packet(self, packet: PacketRecord) -> PacketRecord:
        """Insert or overwrite a packet row as-is."""
        with self._lock:
            self._packets[packet.id] = packet
        return packet

    @property
    def notifications(self) -> List[Tuple[str, str, Optional[datetime], int]]:
        with self._lock:
            return list(self._notifications)

    def _has_successor_locked(self, packet_id: str) -> bool:
        return any(p.previous_version_id == packet_id for p in self._packets.values())

    def _update_if(self, packet_id: str, predicate, **changes) -> bool:
        with self._lock:
            packet = self._packets.get(packet_id)
            if packet is None or not predicate(packet):
                return False
            changes.setdefault("updated_at", self._clock())
            if callable(changes.get("retry_count")):
                changes["retry_count"] = changes["retry_count"](packet)
            self._packets[packet_id] = packet.model_copy(update=changes)
            return True

    def create_packet(self, client_id: str, packet_type: PacketType) -> PacketRecord:
        now = self._clock()
        packet = PacketRecord(
            id=str(uuid.uuid4()),
            client_id=client_id,
            type=PacketType(packet_type),
            status=PacketStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        return self.put_packet(packet)

    def create_next_version(self, packet_id: str) -> PacketRecord:
        with self._lock:
            old = self._packets.get(packet_id)
            if old is None:
                raise PacketNotFoundError(f"Packet {packet_id} not found")
            if self._has_successor_locked(packet_id):
                raise PacketConflictError(f"Packet {packet_id} has already been superseded")
            now = self._clock()
            packet = PacketRecord(
                id=str(uuid.uuid4()),
                client_id=old.client_id,
                type=old.type,
                status=PacketStatus.PENDING,
                retry_count=0,
                version=old.version + 1,
                previous_version_id=old.id,
                created_at=now,
                updated_at=now,
            )
            self._packets[packet.id] = packet
            return packet

    def get_packet(self, packet_id: str) -> Optional[PacketRecord]:
        with self._lock:
            return self._packets.get(packet_id)

    def list_packets_for_client(self, client_id: str) -> List[PacketRecord]:
        with self._lock:
            packets = [p for p in self._packets.values() if p.client_id == client_id]
        return sorted(packets, key=lambda p: p.created_at)

    def has_successor(self, packet_id: str) -> bool:
        with self._lock:
            return self._has_successor_locked(packet_id)

    def list_by_status(self, status: PacketStatus, current_only: bool = True,
                       limit: Optional[int] = None) -> List[PacketRecord]:
        status = PacketStatus(status)
        with self._lock:
            packets = [
                p for p in self._packets.values()
                if p.status == status and not (current_only and self._has_successor_locked(p.id))
            ]
        if status == PacketStatus.PENDING:
            packets.sort(key=lambda p: (p.created_at, p.id))
        else:
            packets.sort(key=lambda p: (p.updated_at, p.id))
        return packets[:limit] if limit is not None else packets

    def list_stale_generating(self, stale_before: datetime) -> List[PacketRecord]:
        with self._lock:
            packets = [
                p for p in self._packets.values()
                if p.status == PacketStatus.GENERATING
                and p.claimed_at is not None
                and p.claimed_at < stale_before
            ]
        return sorted(packets, key=lambda p: p.claimed_at)

    def list_updated_since(self, since: datetime) -> List[PacketRecord]:
        with self._lock:
            packets = [p for p in self._packets.values() if p.updated_at >= since]
        return sorted(packets, key=lambda p: p.updated_at, reverse=True)

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        with self._lock:
            return self._clients.get(client_id)

    def get_client_by_user(self, user_id: str) -> Optional[ClientRecord]:
        with self._lock:
            for client in self._clients.values():
                if client.user_id == user_id:
                    return client
        return None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)

    def list_admin_recipients(self) -> List[UserRecord]:
        with self._lock:
            admins = [u for u in self._users.values() if u.role == "ADMIN" and u.status == "ACTIVE"]
        return sorted(admins, key=lambda u: u.email)

    def try_claim(
        self,
        packet_id: str,
        expected_status: PacketStatus,
        new_status: PacketStatus,
        claimed_by: Optional[str] = None,
    ) -> bool:
        expected_status = PacketStatus(expected_status)
        new_status = PacketStatus(new_status)
        changes: Dict[str, Any] = {"status": new_status}
        if new_status == PacketStatus.GENERATING:
            changes["claimed_by"] = claimed_by
            changes["claimed_at"] = self._clock()
        else:
            changes["claimed_by"] = None
            changes["claimed_at"] = None
        if new_status != PacketStatus.READY:
            changes["pdf_url"] = None
        return self._update_if(packet_id, lambda p: p.status == expected_status, **changes)

    def complete_packet(
        self, packet_id: str, claimed_by: str, content: Dict[str, Any], pdf_url: str
    ) -> bool:
        return self._update_if(
            packet_id,
            lambda p: p.status == PacketStatus.GENERATING and p.claimed_by == claimed_by,
            status=PacketStatus.READY,
            content=content,
            pdf_url=pdf_url,
            last_error=None,
            error_type=None,
            retryable=None,
            claimed_by=None,
            claimed_at=None,
        )

    def fail_packet(
        self,
        packet_id: str,
        claimed_by: Optional[str],
        error_message: str,
        error_type: PacketErrorType,
        retryable: bool,
    ) -> bool:
        def owned(p: PacketRecord) -> bool:
            return p.status == PacketStatus.GENERATING and (
                claimed_by is None or p.claimed_by == claimed_by
            )

        changes: Dict[str, Any] = dict(
            status=PacketStatus.FAILED,
            last_error=(error_message or "")[:500],
            error_type=PacketErrorType(error_type),
            retryable=bool(retryable),
            pdf_url=None,
            claimed_by=None,
            claimed_at=None,
        )
        if retryable:
            changes["retry_count"] = lambda p: p.retry_count + 1
        return self._update_if(packet_id, owned, **changes)

    def reclaim_stale(self, packet_id: str, stale_before: datetime, error_message: str) -> bool:
        return self._update_if(
            packet_id,
            lambda p: p.status == PacketStatus.GENERATING
            and p.claimed_at is not None
            and p.claimed_at < stale_before,
            status=PacketStatus.FAILED,
            last_error=error_message[:500],
            error_type=PacketErrorType.UNKNOWN_ERROR,
            retryable=True,
            retry_count=lambda p: p.retry_count + 1,
            pdf_url=None,
            claimed_by=None,
            claimed_at=None,
        )

    def reset_for_retry(self, packet_id: str, reset_retry_count: bool = False) -> bool:
        changes: Dict[str, Any] = dict(
            status=PacketStatus.PENDING,
            last_error=None,
            error_type=None,
            retryable=None,
            pdf_url=None,
            claimed_by=None,
            claimed_at=None,
        )
        if reset_retry_count:
            changes["retry_count"] = 0
        return self._update_if(packet_id, lambda p: p.status == PacketStatus.FAILED, **changes)

    def requeue_for_retry(
        self,
        packet_id: str,
        observed_retry_count: int,
        observed_updated_at: datetime,
        max_retries: int,
    ) -> bool:
        return self._update_if(
            packet_id,
            lambda p: p.status == PacketStatus.FAILED
            and p.retryable is not False
            and p.retry_count == observed_retry_count
            and p.retry_count < max_retries
            and p.updated_at == observed_updated_at,
            status=PacketStatus.PENDING,
            pdf_url=None,
            claimed_by=None,
            claimed_at=None,
        )

    def update_pdf_url(self, packet_id: str, pdf_url: str) -> bool:
        return self._update_if(packet_id, lambda p: p.status == PacketStatus.READY, pdf_url=pdf_url)

    def record_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime],
        recipient_count: int,
    ) -> bool:
        key = NotificationType(notification_type).value
        with self._lock:
            for existing in self._notifications:
                if existing[0] == packet_id and existing[1] == key and existing[2] == failure_marker:
                    return False
            self._notifications.append((packet_id, key, failure_marker, recipient_count))
            return True

    def has_notification(
        self,
        packet_id: str,
        notification_type: NotificationType,
        failure_marker: Optional[datetime] = None,
    ) -> bool:
        key = NotificationType(notification_type).value
        with self._lock:
            return any(
                n[0] == packet_id and n[1] == key and (failure_marker is None or n[2] == failure_marker)
                for n in self._notifications
            )
