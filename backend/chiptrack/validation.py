from __future__ import annotations

import re
import uuid
from typing import Any


HEX_BLOCK_LENGTH = 32  # 16-byte MIFARE block as hex
_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")


class ValidationError(ValueError):
    """400-level input problem."""


class NotFoundError(ValueError):
    """404-level missing resource."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate UID)."""


class BusinessRuleError(ValueError):
    """422-level: request is well-formed but a business rule refuses it (quota, subscription)."""


def normalize_uid(value: Any) -> str:
    """
    Normalize a factory UID for lookup and storage.

    Scanners disagree on separators and case ("04:a2:1b..." vs "04A21B...").
    Stored UIDs are upper-case hex with separators removed.
    """
    if value is None or not isinstance(value, str):
        raise ValidationError("uid is required")
    cleaned = value.strip().upper().replace(":", "").replace(" ", "").replace("-", "")
    if not cleaned:
        raise ValidationError("uid is required")
    return cleaned


def require_int(data: dict, key: str) -> int:
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f"{key} must be an integer")


def optional_int(data: dict, key: str) -> int | None:
    if data.get(key) in (None, ""):
        return None
    return require_int(data, key)


def parse_uuid(value: Any, field: str = "id") -> str:
    """Return the canonical string form of a UUID or raise ValidationError."""
    try:
        return str(uuid.UUID(str(value).strip()))
    except (ValueError, AttributeError, TypeError):
        raise ValidationError(f"{field} must be a UUID")


def require_hex_block(value: Any, field: str) -> bytes:
    """
    Decode one 16-byte tag block submitted as 32 hex characters.

    Missing or malformed data is a hard rejection.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    value = value.strip()
    if len(value) != HEX_BLOCK_LENGTH or not _HEX_RE.match(value):
        raise ValidationError(f"{field} must be {HEX_BLOCK_LENGTH} hexadecimal characters")
    return bytes.fromhex(value)


def count_words(text: str | None) -> int:
    if not isinstance(text, str):
        return 0
    return len(text.split())
