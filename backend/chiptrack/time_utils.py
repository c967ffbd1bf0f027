from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def day_stamp(dt: Optional[datetime] = None) -> str:
    """YYYYMMDD, used in packaging and warranty order codes."""
    return (dt or utcnow()).strftime("%Y%m%d")


def month_stamp(dt: Optional[datetime] = None) -> str:
    """YYYY-MM, used in generated chip ids."""
    return (dt or utcnow()).strftime("%Y-%m")


def to_export_text(dt: Optional[datetime]) -> str:
    """'YYYY-MM-DD HH:MM:SS' for CSV exports; empty string when missing."""
    if dt is None:
        return ""
    return dt.strftime("%Y-%m-%d %H:%M:%S")
