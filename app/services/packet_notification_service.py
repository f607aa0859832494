"""
Packet Notification Service
Alerts operators about terminally failed packets and tells clients when
their packets are ready.

Admin alerts are deduplicated through the notification log, keyed on the
packet id and the packet's updated_at at the time of the terminal failure.
Repeated worker ticks therefore never re-notify for the same failure, while a
packet that is retried and fails terminally again gets a fresh alert.

Send failures are logged and swallowed; they never change packet status.
"""
import logging
from typing import Any, Dict, List, Optional

from app.config import settings
from app.models.packet import NotificationType, PacketRecord, PacketStatus, packet_type_display_name
from app.services.email_service import EmailSender
from app.services.packet_error_handler import PacketErrorHandler
from app.services.packet_store import PacketStore
from app.utils.audit_logger import log_packet_event

logger = logging.getLogger(__name__)

TEST_PACKET_ID = "test-packet-id"


class NoAdminRecipientsError(Exception):
    """Raised when a notification needs admins but none are active"""
    pass


class PacketNotificationService:

    def __init__(
        self,
        store: PacketStore,
        email_sender: EmailSender,
        error_handler: PacketErrorHandler,
        public_base_url: Optional[str] = None,
    ):
        self.store = store
        self.email_sender = email_sender
        self.error_handler = error_handler
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def admin_panel_url(self, packet_id: str) -> str:
        return f"{self.public_base_url}/admin/packets/{packet_id}"

    def _send_to_each(self, template: str, recipients: List[str], data: Dict[str, Any]) -> int:
        sent = 0
        for email in recipients:
            try:
                if self.email_sender.send(template, email, data):
                    sent += 1
            except Exception as e:
                logger.error(f"Failed to send '{template}' notification: {e}")
        return sent

    def notify_admins_of_failure(self, packet_id: str) -> bool:
        """
        Alert every active ADMIN about a terminally failed packet.

        Returns True if an alert was sent and recorded by this call. Packets
        that are not terminal, or whose current failure was already reported,
        are skipped.
        """
        try:
            packet = self.store.get_packet(packet_id)
            if packet is None:
                logger.error(f"Cannot notify admins, packet not found: {packet_id}")
                return False
            if not self.error_handler.is_terminal(packet):
                logger.debug(f"Packet {packet_id} is not terminally failed, no admin notification")
                return False
            if self.store.has_notification(packet.id, NotificationType.ADMIN_FAILURE, packet.updated_at):
                logger.debug(f"Admin notification already sent for packet {packet_id}")
                return False

            admins = self.store.list_admin_recipients()
            if not admins:
                logger.warning("No active admins found to notify")
                return False

            client = self.store.get_client(packet.client_id)
            data = {
                "packet_id": packet.id,
                "packet_type": packet.type.value,
                "packet_type_name": packet_type_display_name(packet.type),
                "client_name": client.full_name if client else "Unknown client",
                "client_email": client.email if client else "",
                "error_type": packet.error_type.value if packet.error_type else "UNKNOWN_ERROR",
                "last_error": packet.last_error or "Unknown error",
                "retry_count": packet.retry_count,
                "admin_url": self.admin_panel_url(packet.id),
            }
            sent = self._send_to_each("admin_packet_failure", [a.email for a in admins], data)
            if sent == 0:
                if not self.email_sender.enabled:
                    logger.debug(f"Email disabled, admin notification for packet {packet_id} left pending")
                else:
                    logger.warning(f"Admin notification for packet {packet_id} reached no recipients")
                return False

            recorded = self.store.record_notification(
                packet.id, NotificationType.ADMIN_FAILURE, packet.updated_at, sent
            )
            logger.info(f"Sent failure notification for packet {packet_id} to {sent} admin(s)")
            log_packet_event(
                action="admin_notification_sent",
                outcome="success",
                packet_id=packet.id,
                user_id="SYSTEM",
                metadata={
                    "notification_type": "PACKET_FAILURE",
                    "recipient_count": sent,
                    "packet_type": packet.type.value,
                    "client_id": packet.client_id,
                    "retry_count": packet.retry_count,
                    "error_type": data["error_type"],
                },
            )
            return recorded
        except Exception as e:
            logger.error(f"Error sending admin notification for packet {packet_id}: {e}", exc_info=True)
            return False

    def get_packets_needing_notification(self) -> List[str]:
        """Terminally failed packets whose current failure has not been reported, oldest first."""
        return [
            p.id for p in self.error_handler.get_terminal_failures()
            if not self.store.has_notification(p.id, NotificationType.ADMIN_FAILURE, p.updated_at)
        ]

    def process_pending_notifications(self) -> int:
        """Send every outstanding admin alert. Returns the number sent."""
        if not self.email_sender.enabled:
            logger.debug("Email disabled, skipping pending admin notifications")
            return 0
        packet_ids = self.get_packets_needing_notification()
        if not packet_ids:
            return 0
        logger.info(f"Processing {len(packet_ids)} pending notification(s)")
        return sum(1 for packet_id in packet_ids if self.notify_admins_of_failure(packet_id))

    def send_test_notification(self) -> int:
        """
        Exercise the admin send path without a real failure.

        Returns:
            Number of admins reached

        Raises:
            NoAdminRecipientsError: no active admins
        """
        admins = self.store.list_admin_recipients()
        if not admins:
            raise NoAdminRecipientsError("No active admins found")
        data = {"packet_id": TEST_PACKET_ID, "admin_url": f"{self.public_base_url}/admin"}
        sent = self._send_to_each("admin_test_notification", [a.email for a in admins], data)
        logger.info(f"Sent test notification to {sent}/{len(admins)} admin(s)")
        log_packet_event(
            action="admin_test_notification",
            outcome="success" if sent else "failure",
            packet_id=TEST_PACKET_ID,
            user_id="SYSTEM",
            metadata={"recipient_count": sent},
        )
        return sent

    def _notify_client(self, packet_id: str, notification_type: NotificationType, template: str,
                       preference: str) -> bool:
        try:
            packet: Optional[PacketRecord] = self.store.get_packet(packet_id)
            if packet is None:
                logger.error(f"Cannot notify client, packet not found: {packet_id}")
                return False
            if self.store.has_notification(packet.id, notification_type):
                return False
            client = self.store.get_client(packet.client_id)
            user = self.store.get_user(client.user_id) if client and client.user_id else None
            if user is None:
                logger.debug(f"Packet {packet_id} has no client login to notify")
                return False
            if not (user.email_notifications and getattr(user, preference)):
                logger.debug(f"Client user {user.id} opted out of {notification_type.value} emails")
                return False

            sent = self._send_to_each(template, [user.email], {
                "client_name": user.name or client.full_name,
                "packet_type_name": packet_type_display_name(packet.type),
                "version": packet.version,
                "dashboard_url": f"{self.public_base_url}/dashboard",
            })
            if not sent:
                return False
            self.store.record_notification(packet.id, notification_type, None, sent)
            log_packet_event(
                action="client_notification_sent",
                outcome="success",
                packet_id=packet.id,
                user_id=user.id,
                metadata={"notification_type": notification_type.value, "packet_type": packet.type.value},
            )
            return True
        except Exception as e:
            logger.error(f"Error sending client notification for packet {packet_id}: {e}", exc_info=True)
            return False

    def notify_client_packet_ready(self, packet_id: str) -> bool:
        packet = self.store.get_packet(packet_id)
        if packet is not None and packet.status != PacketStatus.READY:
            return False
        if packet is not None and packet.version > 1:
            return self.notify_client_packet_updated(packet_id)
        return self._notify_client(
            packet_id, NotificationType.CLIENT_READY, "client_packet_ready", "notify_on_packet_ready"
        )

    def notify_client_packet_updated(self, packet_id: str) -> bool:
        return self._notify_client(
            packet_id, NotificationType.CLIENT_UPDATED, "client_packet_updated", "notify_on_packet_update"
        )
