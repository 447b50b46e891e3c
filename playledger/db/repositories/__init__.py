"""Repository package for database access."""

from .sessions import SqlitePlaySessionRepository

__all__ = [
    "SqlitePlaySessionRepository",
]
