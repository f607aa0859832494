"""Utilities module"""
from .audit_logger import write_audit_log, log_packet_event, AuditEntry
from .error_masking import mask_pii, mask_error_message

__all__ = [
    "write_audit_log",
    "log_packet_event",
    "AuditEntry",
    "mask_pii",
    "mask_error_message",
]
