"""
Error Masking Utilities
Redacts client PII from error messages before they are stored or returned
"""
import re
from typing import Any, Dict

MAX_ERROR_LENGTH = 500

PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\(\d{3}\)\s*\d{3}-\d{4}\b"),
    "phone_simple": re.compile(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "bearer": re.compile(r"\bBearer\s+[A-Za-z0-9\-_.=]+", re.IGNORECASE),
}

# Field names whose values never belong in logs
PII_FIELD_NAMES = {
    "full_name",
    "fullname",
    "email",
    "phone",
    "date_of_birth",
    "dob",
    "intake_responses",
}


def mask_pii(text: str) -> str:
    """
    Mask PII patterns in a string.

    Args:
        text: String that may contain PII

    Returns:
        String with PII patterns replaced with masks
    """
    if not text:
        return text

    result = text
    result = PII_PATTERNS["ssn"].sub("***-**-****", result)
    result = PII_PATTERNS["phone"].sub("(***) ***-****", result)
    result = PII_PATTERNS["phone_simple"].sub("***-***-****", result)
    result = PII_PATTERNS["email"].sub("***@***.***", result)
    result = PII_PATTERNS["bearer"].sub("Bearer ***", result)
    return result


def mask_pii_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask PII fields in a dictionary (recursively)."""
    if not data:
        return data

    masked = {}
    for key, value in data.items():
        if key.lower() in PII_FIELD_NAMES:
            masked[key] = "***MASKED***"
        elif isinstance(value, str):
            masked[key] = mask_pii(value)
        elif isinstance(value, dict):
            masked[key] = mask_pii_dict(value)
        else:
            masked[key] = value
    return masked


def mask_error_message(message: str, max_length: int = MAX_ERROR_LENGTH) -> str:
    """
    Sanitize an error message for storage on a packet or return to a client.

    PII is masked first, then the message is collapsed to one line and
    truncated to max_length characters.
    """
    if message is None:
        return ""
    masked = mask_pii(str(message))
    masked = " ".join(masked.split())
    return masked[:max_length]
