# backend/shiftledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/shiftledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///shiftledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Saga steps and sequence allocation retry on lock/version conflicts
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "5"))

    INVOICE_PREFIX = os.environ.get("INVOICE_PREFIX", "INV")

    # Payment method kind -> aggregation bucket.
    # Format: "KIND=BUCKET,KIND=BUCKET" (e.g. "BANK_TRANSFER=OTHER").
    # Entries override the defaults in payment_classifier.DEFAULT_BUCKETS.
    PAYMENT_KIND_BUCKETS = os.environ.get("PAYMENT_KIND_BUCKETS", "")

    # Device-local offline queue storage (JSON file) and optional remote ledger URL.
    # When OFFLINE_SYNC_URL is empty, queued sales replay in-process.
    OFFLINE_STORAGE_PATH = os.environ.get("OFFLINE_STORAGE_PATH", "offline_store.json")
    OFFLINE_SYNC_URL = os.environ.get("OFFLINE_SYNC_URL", "")
    OFFLINE_SYNC_TIMEOUT = float(os.environ.get("OFFLINE_SYNC_TIMEOUT", "10"))
