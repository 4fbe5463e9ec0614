"""Database access for credentials and ad-hoc queries."""

from tiny_bridge.storage.database import Database, create_session_factory

__all__ = ["Database", "create_session_factory"]
