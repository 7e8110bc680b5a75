"""
Core Utilities

Shared helpers used across the application.
"""
import hashlib
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def trim_or_none(value: Any) -> Optional[str]:
    """Stripped string, or None for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def to_finite_or_none(value: Any) -> Optional[float]:
    """Parse numbers and numeric strings; None when missing, NaN or infinite."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
