# Overview: Crypto material for RFID chips and anti-clone verification of tag reads.

"""
Chip Security Service

TAG LAYOUT (MIFARE Classic 1K, 16-byte blocks):
- block 1: internal chip UUID (RfidChip.id), readable
- block 4: chip_id code "LC-YYYY-MM-NNNNN" (16 ASCII bytes), sector-key protected
- block 8: checksum (16 bytes), sector-key protected

CRYPTO:
- checksum = HMAC-SHA256(RFID_SECRET_KEY, uid + salt + chip_id), first 16
  bytes, upper-case hex. This is exactly what the encoder writes to block 8.
- chip key = first 6 bytes of SHA-256(chip_id + RFID_MASTER_KEY), upper-case
  hex. Derived on demand, handed to the encoding tool once, never stored.

A cloned tag copies block 1 and the UID but cannot reproduce blocks 4/8
without the sector key, so activation compares all three against the
registry.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid

from flask import current_app

from ..extensions import db
from ..models import RfidChip
from ..validation import ValidationError, parse_uuid, require_hex_block
from chiptrack.time_utils import month_stamp


CHIP_ID_PREFIX = "LC"
CHIP_ID_SERIAL_DIGITS = 5
CHECKSUM_BYTES = 16
CHIP_KEY_BYTES = 6
RECOMMENDED_KEY_LENGTH = 32
MAX_CHIP_ID_ATTEMPTS = 20

# Reason codes recorded on rejected activations
UNKNOWN_UID = "UNKNOWN_UID"
CHIP_ID_MISMATCH = "CHIP_ID_MISMATCH"
BLOCK4_MISMATCH = "BLOCK4_MISMATCH"
CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"


class SecurityViolationError(ValueError):
    """
    Tag data contradicts the registry: probable clone or forged payload.

    The HTTP layer returns a generic message. reason_code is for the audit
    trail only.
    """

    def __init__(self, reason_code: str, *, uid: str | None = None, chip_id: str | None = None):
        super().__init__(f"Chip authenticity check failed ({reason_code})")
        self.reason_code = reason_code
        self.uid = uid
        self.chip_id = chip_id


def _secret_key() -> bytes:
    return current_app.config["RFID_SECRET_KEY"].encode("utf-8")


def _master_key() -> str:
    return current_app.config["RFID_MASTER_KEY"]


def generate_salt() -> str:
    return str(uuid.uuid4())


def generate_chip_id() -> str:
    """LC-YYYY-MM-NNNNN with a random serial."""
    serial = secrets.randbelow(10 ** CHIP_ID_SERIAL_DIGITS)
    return f"{CHIP_ID_PREFIX}-{month_stamp()}-{serial:0{CHIP_ID_SERIAL_DIGITS}d}"


def generate_unique_chip_id(reserved: set[str] | None = None) -> str:
    """
    Generate a chip_id not present in the registry nor in `reserved`.

    `reserved` holds ids handed out earlier in the same batch (not yet
    flushed). The generated id is added to it.
    """
    reserved = reserved if reserved is not None else set()
    for _ in range(MAX_CHIP_ID_ATTEMPTS):
        candidate = generate_chip_id()
        if candidate in reserved:
            continue
        exists = db.session.query(RfidChip.id).filter(RfidChip.chip_id == candidate).first()
        if exists:
            continue
        reserved.add(candidate)
        return candidate
    raise RuntimeError("Could not generate a unique chip_id")


def generate_checksum(uid: str, salt: str, chip_id: str) -> str:
    message = f"{uid}{salt}{chip_id}".encode("utf-8")
    digest = hmac.new(_secret_key(), message, hashlib.sha256).digest()
    return digest[:CHECKSUM_BYTES].hex().upper()


def generate_chip_key(chip_id: str) -> str:
    digest = hashlib.sha256(f"{chip_id}{_master_key()}".encode("utf-8")).digest()
    return digest[:CHIP_KEY_BYTES].hex().upper()


def validate_checksum(uid: str, salt: str | None, chip_id: str, checksum: str | None) -> bool:
    """Exact, constant-time comparison. Missing salt or checksum never validates."""
    if not salt or not checksum:
        return False
    expected = generate_checksum(uid, salt, chip_id)
    return hmac.compare_digest(expected, checksum)


def decode_block4(block: bytes) -> str | None:
    """ASCII text of block 4 with NUL/space padding stripped; None if not ASCII."""
    try:
        text = block.decode("ascii")
    except UnicodeDecodeError:
        return None
    return text.rstrip("\x00 ")


def verify_tag_authenticity(chip: RfidChip, chip_id, block4_data, block8_data) -> None:
    """
    Compare data read from the physical tag against the registry.

    Missing or malformed fields raise ValidationError. Well-formed data that
    contradicts the registry raises SecurityViolationError with one of
    CHIP_ID_MISMATCH, BLOCK4_MISMATCH, CHECKSUM_MISMATCH (checked in that
    order).
    """
    if chip_id is None or (isinstance(chip_id, str) and not chip_id.strip()):
        raise ValidationError("chip_id is required")
    block4 = require_hex_block(block4_data, "block4_data")
    block8 = require_hex_block(block8_data, "block8_data")

    try:
        submitted_id = parse_uuid(chip_id, "chip_id")
    except ValidationError:
        raise SecurityViolationError(CHIP_ID_MISMATCH, uid=chip.uid, chip_id=str(chip_id))
    if submitted_id != str(chip.id):
        raise SecurityViolationError(CHIP_ID_MISMATCH, uid=chip.uid, chip_id=submitted_id)

    block4_text = decode_block4(block4)
    if block4_text is None or not hmac.compare_digest(block4_text, chip.chip_id):
        raise SecurityViolationError(BLOCK4_MISMATCH, uid=chip.uid, chip_id=chip.chip_id)

    if not chip.checksum or not hmac.compare_digest(block8.hex().upper(), chip.checksum):
        raise SecurityViolationError(CHECKSUM_MISMATCH, uid=chip.uid, chip_id=chip.chip_id)


def key_strength_warnings(config) -> list[str]:
    warnings = []
    for name in ("RFID_SECRET_KEY", "RFID_MASTER_KEY"):
        value = config.get(name) or ""
        if len(value) < RECOMMENDED_KEY_LENGTH:
            warnings.append(f"{name} is shorter than {RECOMMENDED_KEY_LENGTH} characters")
    return warnings


def encode_block4(chip_id: str) -> str:
    """Hex payload the encoder writes to block 4 (chip_id, NUL padded)."""
    raw = chip_id.encode("ascii")
    if len(raw) > 16:
        raise ValidationError("chip_id does not fit in one block")
    return raw.ljust(16, b"\x00").hex().upper()


def tag_payload(chip: RfidChip) -> dict:
    """Everything the encoding tool writes to the tag. Returned once, on encode."""
    return {
        "chip_uuid": str(chip.id),
        "chip_id": chip.chip_id,
        "uid": chip.uid,
        "salt": chip.salt,
        "checksum": chip.checksum,
        "chip_key": generate_chip_key(chip.chip_id),
        "block4_data": encode_block4(chip.chip_id),
        "block8_data": chip.checksum,
    }
