"""Database helpers for the perioperative instructions service."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .engine import configure_engine, get_db, get_engine, init_schema, session_scope
from .models import Base

__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "configure_engine",
    "get_db",
    "get_engine",
    "init_schema",
    "session_scope",
]
