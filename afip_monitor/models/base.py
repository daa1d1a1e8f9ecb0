"""Shared base utilities for data models."""
import secrets
from datetime import datetime, timezone


def generate_id(prefix: str) -> str:
    """Generate a unique ID with a prefix."""
    return f"{prefix}_{secrets.token_hex(6)}"


def utcnow() -> datetime:
    """Current time as naive UTC, the format every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
