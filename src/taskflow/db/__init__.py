"""Database layer for Taskflow notifications (SQLAlchemy 2.0 async)."""

from __future__ import annotations

from taskflow.db.base import Base
from taskflow.db.engine import DatabaseManager

__all__ = ["Base", "DatabaseManager"]
