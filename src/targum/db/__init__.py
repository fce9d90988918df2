"""Database helpers."""

from targum.db.connection import get_connection

__all__ = ["get_connection"]
