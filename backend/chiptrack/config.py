# backend/chiptrack/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/chiptrack.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///chiptrack.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Anti-clone key material. Checksums written to tag block 8 are keyed by
    # RFID_SECRET_KEY; per-chip sector keys are derived from RFID_MASTER_KEY.
    # Rotating either invalidates every chip already encoded.
    RFID_SECRET_KEY = os.environ.get("RFID_SECRET_KEY", "dev-rfid-secret-key-change-me-0000")
    RFID_MASTER_KEY = os.environ.get("RFID_MASTER_KEY", "dev-rfid-master-key-change-me-0000")

    # Ceiling on INACTIVE + ACTIVE chips for customers without their own chip_limit
    DEFAULT_CHIP_LIMIT = _int_env("DEFAULT_CHIP_LIMIT", 1000)

    # Bulk import
    IMPORT_ERROR_LIST_LIMIT = _int_env("IMPORT_ERROR_LIST_LIMIT", 100)
    MIN_UID_LENGTH = _int_env("MIN_UID_LENGTH", 14)  # 7-byte UID as hex

    # Auth
    BCRYPT_ROUNDS = _int_env("BCRYPT_ROUNDS", 12)
    SESSION_ABSOLUTE_TIMEOUT_HOURS = _int_env("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _int_env("SESSION_IDLE_TIMEOUT_HOURS", 2)

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    }

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
