"""
Length-bounding sanitizer applied to every string written into a lead.

Removes NUL and control characters (newlines and tabs survive), cuts to the
field's maximum length, then trims whitespace. Applying it twice gives the
same result as applying it once.
"""
import re
from typing import Any, Dict

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

FIELD_LIMITS: Dict[str, int] = {
    "name": 200,
    "email": 200,
    "phone": 50,
    "project": 500,
    "budget": 50,
    "urgency": 50,
    "notes": 1000,
}

DEFAULT_LIMIT = 1000


def sanitize_string(value: Any, max_length: int = DEFAULT_LIMIT) -> str:
    if not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", value)[:max_length]
    return cleaned.strip()


def sanitize_field(field_name: str, value: Any) -> str:
    """Sanitize with the limit configured for `field_name`."""
    return sanitize_string(value, FIELD_LIMITS.get(field_name, DEFAULT_LIMIT))
