"""Notes and bookmarks, the two kinds of user annotation."""

from __future__ import annotations

import math
from typing import Literal, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from .activity import record_activity
from .courses import load_course, load_module, load_video
from .db import Store, storage_operation
from .errors import NotFoundError, ValidationError
from .models import UserNote, Video, VideoBookmark, VideoProgress
from .utils import is_blank, utcnow_iso


NOTE_TYPES = frozenset({"note", "question", "important", "summary", "general"})

NoteOrder = Literal["timestamp", "created_at", "title"]


def _video_duration(session: Session, video: Video) -> Optional[float]:
    # The scanner often leaves duration unknown; the player reports it with
    # every progress write.
    if video.duration is not None:
        return video.duration
    progress = session.exec(select(VideoProgress).where(VideoProgress.video_id == video.id)).first()
    if progress is not None and progress.duration > 0:
        return progress.duration
    return None


def _check_timestamp(session: Session, video: Optional[Video], timestamp: float) -> float:
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
        raise ValidationError("timestamp must be a number")
    if timestamp < 0:
        raise ValidationError("timestamp must not be negative")
    if video is None:
        return float(timestamp)
    duration = _video_duration(session, video)
    if duration is not None and timestamp > duration:
        raise ValidationError(f"timestamp {timestamp} is past the end of the video ({duration})")
    return float(timestamp)


def _order_clause(model, order_by: NoteOrder, descending: bool):
    if order_by not in ("timestamp", "created_at", "title"):
        raise ValidationError(f"cannot order by {order_by!r}")
    column = getattr(model, order_by)
    primary = column.desc() if descending else column.asc()
    if order_by == "timestamp":
        # Unanchored notes sort after anchored ones either way.
        return (column.is_(None), primary, model.created_at)
    return (primary, model.created_at)


# ---- notes


def _resolve_note_scope(
    session: Session,
    video_id: Optional[str],
    module_id: Optional[str],
    course_id: Optional[str],
) -> tuple[Optional[Video], Optional[str], Optional[str], Optional[str]]:
    """Fill in the parents implied by the narrowest scope given.

    A note on a video is also on its module and course; a note on a module is
    also on its course. Explicit ids that contradict the hierarchy are
    rejected.
    """
    video = None
    if video_id is not None:
        video = load_video(session, video_id)
        if module_id is not None and module_id != video.module_id:
            raise ValidationError("module_id does not match the video's module")
        if course_id is not None and course_id != video.course_id:
            raise ValidationError("course_id does not match the video's course")
        return video, video.id, video.module_id, video.course_id

    if module_id is not None:
        module = load_module(session, module_id)
        if course_id is not None and course_id != module.course_id:
            raise ValidationError("course_id does not match the module's course")
        return None, None, module.id, module.course_id

    if course_id is not None:
        load_course(session, course_id)
        return None, None, None, course_id

    return None, None, None, None


@storage_operation
def create_note(
    store: Store,
    title: str,
    content: str,
    *,
    video_id: Optional[str] = None,
    module_id: Optional[str] = None,
    course_id: Optional[str] = None,
    timestamp: Optional[float] = None,
    note_type: str = "note",
) -> UserNote:
    if is_blank(title):
        raise ValidationError("title is required")
    if is_blank(content):
        raise ValidationError("content is required")
    if note_type not in NOTE_TYPES:
        raise ValidationError(f"note_type must be one of {sorted(NOTE_TYPES)}")

    with store.transaction() as session:
        video, video_id, module_id, course_id = _resolve_note_scope(session, video_id, module_id, course_id)
        if timestamp is not None:
            timestamp = _check_timestamp(session, video, timestamp)

        note = UserNote(
            video_id=video_id,
            module_id=module_id,
            course_id=course_id,
            timestamp=timestamp,
            title=title.strip(),
            content=content,
            note_type=note_type,
        )
        session.add(note)
        session.flush()
        record_activity(session, "note_created", note.id, "note", f"Note created: {note.title}")
        return note


@storage_operation
def get_note(store: Store, note_id: str) -> Optional[UserNote]:
    with store.session() as session:
        return session.get(UserNote, note_id)


@storage_operation
def update_note(
    store: Store,
    note_id: str,
    *,
    title: Optional[str] = None,
    content: Optional[str] = None,
) -> UserNote:
    if title is not None and is_blank(title):
        raise ValidationError("title must not be blank")
    if content is not None and is_blank(content):
        raise ValidationError("content must not be blank")

    with store.transaction() as session:
        note = session.get(UserNote, note_id)
        if note is None:
            raise NotFoundError("note", note_id)
        if title is not None:
            note.title = title.strip()
        if content is not None:
            note.content = content
        note.updated_at = utcnow_iso()
        session.add(note)
        record_activity(session, "note_updated", note.id, "note", f"Note updated: {note.title}")
        return note


@storage_operation
def delete_note(store: Store, note_id: str) -> bool:
    """Returns whether a row was removed; deleting an absent note is fine."""
    with store.transaction() as session:
        removed = session.execute(delete(UserNote).where(UserNote.id == note_id)).rowcount
        if removed:
            record_activity(session, "note_deleted", note_id, "note", "Note deleted")
        return bool(removed)


@storage_operation
def list_notes(
    store: Store,
    *,
    video_id: Optional[str] = None,
    module_id: Optional[str] = None,
    course_id: Optional[str] = None,
    unscoped: bool = False,
    order_by: NoteOrder = "timestamp",
    descending: bool = False,
) -> list[UserNote]:
    """Notes filtered by any combination of scope ids.

    ``unscoped=True`` selects only the notes attached to nothing; with no
    filter at all every note is returned.
    """
    stmt = select(UserNote)
    if unscoped:
        if video_id or module_id or course_id:
            raise ValidationError("unscoped cannot be combined with a scope id")
        stmt = stmt.where(UserNote.video_id.is_(None), UserNote.module_id.is_(None), UserNote.course_id.is_(None))
    if video_id is not None:
        stmt = stmt.where(UserNote.video_id == video_id)
    if module_id is not None:
        stmt = stmt.where(UserNote.module_id == module_id)
    if course_id is not None:
        stmt = stmt.where(UserNote.course_id == course_id)
    stmt = stmt.order_by(*_order_clause(UserNote, order_by, descending))

    with store.session() as session:
        return list(session.exec(stmt).all())


def get_notes_by_video(store: Store, video_id: str, order_by: NoteOrder = "timestamp", descending: bool = False) -> list[UserNote]:
    return list_notes(store, video_id=video_id, order_by=order_by, descending=descending)


def get_notes_by_course(store: Store, course_id: str, order_by: NoteOrder = "timestamp", descending: bool = False) -> list[UserNote]:
    return list_notes(store, course_id=course_id, order_by=order_by, descending=descending)


def get_all_notes(store: Store, order_by: NoteOrder = "created_at", descending: bool = True) -> list[UserNote]:
    return list_notes(store, order_by=order_by, descending=descending)


# ---- bookmarks


@storage_operation
def create_bookmark(
    store: Store,
    video_id: str,
    timestamp: float,
    title: str,
    description: Optional[str] = None,
) -> VideoBookmark:
    if is_blank(title):
        raise ValidationError("title is required")
    if timestamp is None:
        raise ValidationError("timestamp is required")

    with store.transaction() as session:
        video = load_video(session, video_id)
        bookmark = VideoBookmark(
            video_id=video.id,
            timestamp=_check_timestamp(session, video, timestamp),
            title=title.strip(),
            description=description,
        )
        session.add(bookmark)
        session.flush()
        record_activity(session, "bookmark_created", bookmark.id, "bookmark", f"Bookmark created: {bookmark.title}")
        return bookmark


@storage_operation
def get_bookmark(store: Store, bookmark_id: str) -> Optional[VideoBookmark]:
    with store.session() as session:
        return session.get(VideoBookmark, bookmark_id)


@storage_operation
def update_bookmark(
    store: Store,
    bookmark_id: str,
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> VideoBookmark:
    if title is not None and is_blank(title):
        raise ValidationError("title must not be blank")

    with store.transaction() as session:
        bookmark = session.get(VideoBookmark, bookmark_id)
        if bookmark is None:
            raise NotFoundError("bookmark", bookmark_id)
        if title is not None:
            bookmark.title = title.strip()
        if description is not None:
            bookmark.description = description
        session.add(bookmark)
        record_activity(session, "bookmark_updated", bookmark.id, "bookmark", f"Bookmark updated: {bookmark.title}")
        return bookmark


@storage_operation
def delete_bookmark(store: Store, bookmark_id: str) -> bool:
    with store.transaction() as session:
        removed = session.execute(delete(VideoBookmark).where(VideoBookmark.id == bookmark_id)).rowcount
        if removed:
            record_activity(session, "bookmark_deleted", bookmark_id, "bookmark", "Bookmark deleted")
        return bool(removed)


@storage_operation
def list_bookmarks(
    store: Store,
    video_id: str,
    order_by: NoteOrder = "timestamp",
    descending: bool = False,
) -> list[VideoBookmark]:
    stmt = (
        select(VideoBookmark)
        .where(VideoBookmark.video_id == video_id)
        .order_by(*_order_clause(VideoBookmark, order_by, descending))
    )
    with store.session() as session:
        return list(session.exec(stmt).all())
