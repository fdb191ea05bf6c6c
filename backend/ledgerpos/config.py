# backend/ledgerpos/config.py
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

    # SQLite DB stored in backend/instance/ledgerpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///ledgerpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bill history paging
    BILLS_PAGE_SIZE = _int_env("BILLS_PAGE_SIZE", 20)
    BILLS_PAGE_SIZE_MAX = _int_env("BILLS_PAGE_SIZE_MAX", 100)

    # Movement history is paged by calendar days, not by record count
    MOVEMENT_HISTORY_DAYS = _int_env("MOVEMENT_HISTORY_DAYS", 7)

    # Bulk writes are committed in bounded atomic groups
    STOCK_IMPORT_CHUNK_SIZE = _int_env("STOCK_IMPORT_CHUNK_SIZE", 500)
    BILL_DELETE_CHUNK_SIZE = _int_env("BILL_DELETE_CHUNK_SIZE", 500)

    # Movement appends after a committed sale are retried this many times, then reported
    AUDIT_APPEND_ATTEMPTS = _int_env("AUDIT_APPEND_ATTEMPTS", 3)

    EXPIRY_WARNING_DAYS = _int_env("EXPIRY_WARNING_DAYS", 30)
