"""Database engine, session factory and table models."""

from .session import DatabaseManager, init_db

__all__ = ["DatabaseManager", "init_db"]
