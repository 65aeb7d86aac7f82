"""
Core module - Configuration, database, logging, scheduling, and utilities.
"""

from campus.core.clock import utc_now
from campus.core.config import get_settings, settings
from campus.core.database import Base, close_db, get_db, init_db

__all__ = [
    # Config
    "settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "init_db",
    "close_db",
    # Clock
    "utc_now",
]
