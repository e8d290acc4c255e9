# backend/docledger/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/docledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///docledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Ledger policy
    LEDGER_DEFAULT_CURRENCY = os.environ.get("LEDGER_DEFAULT_CURRENCY", "USD")
    # When true, a single allocation may exceed the document's remaining balance
    LEDGER_ALLOW_OVERPAYMENT = _env_flag("LEDGER_ALLOW_OVERPAYMENT")
    LEDGER_NUMBERING_ATTEMPTS = int(os.environ.get("LEDGER_NUMBERING_ATTEMPTS", "5"))
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))

    # Collaborators (set programmatically; see collaborators.py)
    LEDGER_CATALOG: dict = {}
    LEDGER_EVENT_PUBLISHER = None
