# marketplace/db/__init__.py
"""
Database package for SQLAlchemy setup, session management, and base models.
"""

from marketplace.db.base import Base
from marketplace.db.session import create_database_engine, get_session_factory, transaction_session

__all__ = [
    "Base",
    "create_database_engine",
    "get_session_factory",
    "transaction_session",
]
