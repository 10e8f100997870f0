"""
TourDash Database Layer

Local persistence for state that must outlive the process.

Usage:
    from tourdash.database import init_db, get_db_context, PreferenceRecord

    init_db()
    with get_db_context() as db:
        db.query(PreferenceRecord).count()
"""

from .models import Base, PreferenceRecord
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    get_session_factory,
    get_db,
    get_db_context,
    init_db,
    check_db_connection,
    reset_engine,
)

__all__ = [
    "Base",
    "PreferenceRecord",
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "get_db",
    "get_db_context",
    "init_db",
    "check_db_connection",
    "reset_engine",
]
