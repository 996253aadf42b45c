"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def end_of_day(day: datetime.date) -> datetime.datetime:
    """Last instant of *day* in UTC; a due date is payable through that day."""
    return datetime.datetime.combine(
        day, datetime.time.max, tzinfo=timezone.utc
    )


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not raw:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(raw))
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


def from_timestamp(raw) -> Optional[datetime.datetime]:
    """Convert a gateway UNIX timestamp to an aware UTC datetime."""
    if raw in (None, ""):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not parse timestamp: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def safe_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert *value* to ``Decimal`` via its string form, or *default*."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default
