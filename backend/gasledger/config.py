# backend/gasledger/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///gasledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Unified invoice numbering
    INVOICE_START_NUMBER = int(os.environ.get("INVOICE_START_NUMBER", "10000"))
    INVOICE_MAX_ATTEMPTS = int(os.environ.get("INVOICE_MAX_ATTEMPTS", "3"))
    INVOICE_PAD_WIDTH = int(os.environ.get("INVOICE_PAD_WIDTH", "4"))

    # "warn" lets an employee sale draw past its assignment pool; "reject" refuses it
    ASSIGNMENT_OVERSELL_POLICY = os.environ.get("ASSIGNMENT_OVERSELL_POLICY", "warn")

    # Optimistic-lock retry budget for check-then-write units
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF = float(os.environ.get("DB_RETRY_BACKOFF", "0.1"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
