from __future__ import annotations

from typing import Optional

from sqlalchemy import literal_column
from sqlmodel import Session, select

from .db import Store, storage_operation
from .errors import ValidationError
from .models import ActivityLogEntry
from .utils import is_blank


DEFAULT_LIMIT = 50

# Entries written in the same microsecond keep insertion order.
_ROWID = literal_column("activity_log.rowid")


def record_activity(
    session: Session,
    activity_type: str,
    entity_id: str,
    entity_type: str,
    details: Optional[str] = None,
) -> ActivityLogEntry:
    """Append an audit entry inside the caller's transaction.

    Call it after the mutation has been issued: if the mutation fails the
    transaction rolls back and the entry goes with it.
    """
    entry = ActivityLogEntry(
        activity_type=activity_type,
        entity_id=entity_id,
        entity_type=entity_type,
        details=details,
    )
    session.add(entry)
    return entry


@storage_operation
def log_user_activity(
    store: Store,
    activity_type: str,
    entity_id: str,
    entity_type: str,
    details: Optional[str] = None,
) -> ActivityLogEntry:
    for name, value in (("activity_type", activity_type), ("entity_id", entity_id), ("entity_type", entity_type)):
        if is_blank(value):
            raise ValidationError(f"{name} is required")
    with store.transaction() as session:
        return record_activity(session, activity_type.strip(), entity_id, entity_type.strip(), details)


def _check_limit(limit: int) -> int:
    if limit < 1:
        raise ValidationError("limit must be positive")
    return limit


@storage_operation
def get_recent_activities(store: Store, limit: int = DEFAULT_LIMIT) -> list[ActivityLogEntry]:
    with store.session() as session:
        stmt = (
            select(ActivityLogEntry)
            .order_by(ActivityLogEntry.created_at.desc(), _ROWID.desc())
            .limit(_check_limit(limit))
        )
        return list(session.exec(stmt).all())


@storage_operation
def get_activities_by_type(store: Store, activity_type: str, limit: int = DEFAULT_LIMIT) -> list[ActivityLogEntry]:
    with store.session() as session:
        stmt = (
            select(ActivityLogEntry)
            .where(ActivityLogEntry.activity_type == activity_type)
            .order_by(ActivityLogEntry.created_at.desc(), _ROWID.desc())
            .limit(_check_limit(limit))
        )
        return list(session.exec(stmt).all())


@storage_operation
def get_activities_for_entity(store: Store, entity_id: str, entity_type: Optional[str] = None) -> list[ActivityLogEntry]:
    with store.session() as session:
        stmt = select(ActivityLogEntry).where(ActivityLogEntry.entity_id == entity_id)
        if entity_type is not None:
            stmt = stmt.where(ActivityLogEntry.entity_type == entity_type)
        stmt = stmt.order_by(ActivityLogEntry.created_at, _ROWID)
        return list(session.exec(stmt).all())
