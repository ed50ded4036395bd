"""
Time helpers shared by persistence code.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)
