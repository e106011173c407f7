"""Tests for the SQLAlchemy ORM model definitions."""

from __future__ import annotations

from taskflow.db.base import Base
from taskflow.db.models import NotificationRow


def test_notifications_table_registered():
    assert set(Base.metadata.tables.keys()) == {"notifications"}
    assert NotificationRow.__tablename__ == "notifications"


def test_query_columns_are_indexed():
    table = Base.metadata.tables["notifications"]
    indexes = {index.name: [c.name for c in index.columns] for index in table.indexes}
    assert indexes == {
        "ix_notifications_user_scheduled": ["user_id", "scheduled_for"],
        "ix_notifications_status_scheduled": ["status", "scheduled_for"],
        "ix_notifications_user_group": ["user_id", "group_id"],
    }


def test_lease_columns_nullable():
    table = Base.metadata.tables["notifications"]
    assert table.c.lease_owner.nullable
    assert table.c.lease_expires_at.nullable
    assert not table.c.scheduled_for.nullable
