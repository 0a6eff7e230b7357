"""Storage package providing persistence utilities for strategies and their executions."""

from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository"]
