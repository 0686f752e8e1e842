"""Configuration loading from environment variables and defaults."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


# Database
DB_PATH = Path(_env("CONTACTS_DB_PATH", "") or str(_PROJECT_ROOT / "contacts.db"))

# Seconds a writer waits for the SQLite write lock before giving up
try:
    DB_TIMEOUT = float(_env("CONTACTS_DB_TIMEOUT", "5.0"))
except ValueError:
    logging.getLogger(__name__).warning(
        "Invalid CONTACTS_DB_TIMEOUT %r, falling back to 5.0",
        _env("CONTACTS_DB_TIMEOUT"),
    )
    DB_TIMEOUT = 5.0

# Logging
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()

# Server
HOST = _env("HOST", "0.0.0.0")
PORT = int(_env("PORT", "8000"))

SERVICE_NAME = "Customer Identity Reconciliation Service"
