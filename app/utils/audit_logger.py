"""
Audit Logger
Append-only file-based audit trail for packet lifecycle actions
"""
import json
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel
from app.config import settings
from app.utils.error_masking import mask_pii, mask_pii_dict

logger = logging.getLogger(__name__)


class AuditEntry(BaseModel):
    """Audit log entry structure"""
    timestamp: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    action: str  # 'packet:regenerate', 'packet:generation_failed', 'packet:admin_notification_sent', etc.
    outcome: str  # 'success' or 'failure'
    packet_id: Optional[str] = None
    details: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def write_audit_log(entry: AuditEntry) -> None:
    """
    Write an audit log entry to the audit log file.
    Appends JSON lines to the file with restricted permissions.
    """
    log_path = settings.audit_log_path

    if not entry.timestamp:
        entry.timestamp = datetime.now(timezone.utc).isoformat()

    log_line = entry.model_dump_json() + "\n"

    try:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(log_line)

        # Set restrictive permissions (Unix only)
        try:
            os.chmod(log_path, 0o600)
        except (OSError, AttributeError):
            pass

    except IOError as e:
        # Log error but don't fail the caller
        logger.error(f"Failed to write audit log: {e}")


def log_packet_event(
    action: str,
    outcome: str,
    packet_id: Optional[str] = None,
    user_id: Optional[str] = None,
    username: Optional[str] = None,
    details: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Helper function to log packet-related events"""
    entry = AuditEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        user_id=user_id,
        username=username,
        action=f"packet:{action}",
        outcome=outcome,
        packet_id=packet_id,
        details=mask_pii(details),
        metadata=mask_pii_dict(metadata),
    )
    write_audit_log(entry)


def read_audit_log(limit: int = 100) -> list:
    """Return the most recent audit entries, newest last."""
    log_path = settings.audit_log_path
    if not os.path.exists(log_path):
        return []
    with open(log_path, "r", encoding="utf-8") as f:
        lines = f.readlines()[-limit:]
    entries = []
    for line in lines:
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed audit log line")
    return entries
