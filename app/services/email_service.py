"""
Email Service

Sends templated transactional emails over SMTP. Templates are Jinja2
(subject, HTML body, text body) keyed by name.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from app.config import settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when an email could not be handed to the mail server"""
    pass


class EmailSender(ABC):

    # False when delivery is switched off; send() then returns False without sending
    enabled = True

    @abstractmethod
    def send(self, template: str, recipient_email: str, data: Dict[str, Any]) -> bool:
        """
        Send one email.

        Returns True if delivered, False if skipped (e.g. email disabled).
        Raises EmailDeliveryError on transport failure.
        """
        ...


EMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    "admin_packet_failure": {
        "subject": "Packet generation failed: {{ packet_type_name }} for {{ client_name }}",
        "html": (
            "<h2>Packet generation failed</h2>"
            "<p>The {{ packet_type_name }} packet for <strong>{{ client_name }}</strong> "
            "could not be generated after {{ retry_count }} retries.</p>"
            "<p><strong>Error type:</strong> {{ error_type }}<br>"
            "<strong>Last error:</strong> {{ last_error }}</p>"
            "<p><a href=\"{{ admin_url }}\">Review the packet in the admin panel</a></p>"
        ),
        "text": (
            "Packet generation failed\n\n"
            "Packet: {{ packet_type_name }} for {{ client_name }}\n"
            "Retries: {{ retry_count }}\n"
            "Error type: {{ error_type }}\n"
            "Last error: {{ last_error }}\n\n"
            "Review: {{ admin_url }}\n"
        ),
    },
    "admin_test_notification": {
        "subject": "Test notification from the packet pipeline",
        "html": "<p>This is a test notification. Admin alerts for failed packets will arrive at this address.</p>",
        "text": "This is a test notification. Admin alerts for failed packets will arrive at this address.\n",
    },
    "client_packet_ready": {
        "subject": "Your {{ packet_type_name }} plan is ready",
        "html": (
            "<h2>Hi {{ client_name }},</h2>"
            "<p>Your personalized {{ packet_type_name }} plan is ready.</p>"
            "<p><a href=\"{{ dashboard_url }}\">View it in your dashboard</a></p>"
        ),
        "text": (
            "Hi {{ client_name }},\n\n"
            "Your personalized {{ packet_type_name }} plan is ready.\n"
            "View it here: {{ dashboard_url }}\n"
        ),
    },
    "client_packet_updated": {
        "subject": "Your {{ packet_type_name }} plan has been updated",
        "html": (
            "<h2>Hi {{ client_name }},</h2>"
            "<p>Your coach updated your {{ packet_type_name }} plan (version {{ version }}).</p>"
            "<p><a href=\"{{ dashboard_url }}\">See what's new</a></p>"
        ),
        "text": (
            "Hi {{ client_name }},\n\n"
            "Your coach updated your {{ packet_type_name }} plan (version {{ version }}).\n"
            "See what's new: {{ dashboard_url }}\n"
        ),
    },
}


def _template_sources() -> Dict[str, str]:
    sources = {}
    for name, parts in EMAIL_TEMPLATES.items():
        for part, source in parts.items():
            sources[f"{name}.{part}"] = source
    return sources


class SmtpEmailSender(EmailSender):
    """SMTP delivery with Jinja2-rendered bodies"""

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        timeout: int = 30,
    ):
        self.smtp_host = smtp_host or settings.smtp_host
        self.smtp_port = smtp_port or settings.smtp_port
        self.smtp_user = smtp_user if smtp_user is not None else settings.smtp_user
        self.smtp_password = smtp_password if smtp_password is not None else settings.smtp_password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.from_email = from_email or settings.email_from
        self.from_name = from_name or settings.email_from_name
        self.enabled = settings.email_enabled if enabled is None else enabled
        self.timeout = timeout
        self.env = Environment(
            loader=DictLoader(_template_sources()),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
            undefined=StrictUndefined,
        )

    def render(self, template: str, data: Dict[str, Any]) -> Dict[str, str]:
        if template not in EMAIL_TEMPLATES:
            raise EmailDeliveryError(f"Unknown email template: {template}")
        return {
            part: self.env.get_template(f"{template}.{part}").render(**data)
            for part in ("subject", "html", "text")
        }

    def send(self, template: str, recipient_email: str, data: Dict[str, Any]) -> bool:
        rendered = self.render(template, data)

        if not self.enabled:
            logger.info(f"Email disabled, would send '{template}' email: {rendered['subject']}")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = rendered["subject"]
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient_email
        msg.attach(MIMEText(rendered["text"], "plain"))
        msg.attach(MIMEText(rendered["html"], "html"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending '{template}' email: {e}")
            raise EmailDeliveryError(f"Failed to send '{template}' email: {e}") from e

        logger.info(f"Sent '{template}' email")
        return True
