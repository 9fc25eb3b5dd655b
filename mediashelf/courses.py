from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .activity import record_activity
from .db import Store, storage_operation
from .errors import NotFoundError, ValidationError
from .models import Course, Module, Video
from .utils import is_blank, utcnow_iso


log = logging.getLogger(__name__)


def _require(field_name: str, value: Optional[str]) -> str:
    if is_blank(value):
        raise ValidationError(f"{field_name} is required")
    return value.strip()


def _require_order(order_index: int) -> int:
    if isinstance(order_index, bool) or not isinstance(order_index, int) or order_index < 0:
        raise ValidationError("order_index must be a non-negative integer")
    return order_index


def load_course(session: Session, course_id: str) -> Course:
    course = session.get(Course, course_id)
    if course is None:
        raise NotFoundError("course", course_id)
    return course


def load_module(session: Session, module_id: str) -> Module:
    module = session.get(Module, module_id)
    if module is None:
        raise NotFoundError("module", module_id)
    return module


def load_video(session: Session, video_id: str) -> Video:
    video = session.get(Video, video_id)
    if video is None:
        raise NotFoundError("video", video_id)
    return video


# ---- courses


@storage_operation
def create_course(
    store: Store,
    name: str,
    path: str,
    description: Optional[str] = None,
    course_id: Optional[str] = None,
) -> Course:
    course = Course(name=_require("name", name), path=_require("path", path), description=description)
    if course_id:
        course.id = course_id
    with store.transaction() as session:
        session.add(course)
        session.flush()
        record_activity(session, "course_created", course.id, "course", f"Course created: {course.name}")
    return course


@storage_operation
def get_course(store: Store, course_id: str) -> Optional[Course]:
    with store.session() as session:
        return session.get(Course, course_id)


@storage_operation
def get_course_by_path(store: Store, path: str) -> Optional[Course]:
    with store.session() as session:
        return session.exec(select(Course).where(Course.path == path)).first()


@storage_operation
def list_courses(store: Store) -> list[Course]:
    """Most recently opened first; never-opened courses last, by name."""
    with store.session() as session:
        stmt = select(Course).order_by(Course.last_accessed.is_(None), Course.last_accessed.desc(), Course.name)
        return list(session.exec(stmt).all())


@storage_operation
def touch_course(store: Store, course_id: str) -> Course:
    with store.transaction() as session:
        course = load_course(session, course_id)
        course.last_accessed = utcnow_iso()
        session.add(course)
        record_activity(session, "course_accessed", course.id, "course", f"Course opened: {course.name}")
        return course


@storage_operation
def delete_course(store: Store, course_id: str) -> bool:
    """Delete a course and everything under it; absent ids are a no-op."""
    try:
        with store.transaction() as session:
            course = session.get(Course, course_id)
            if course is None:
                return False
            # Modules, videos, progress, notes and bookmarks go with it via
            # ON DELETE CASCADE.
            session.execute(delete(Course).where(Course.id == course_id))
            record_activity(session, "course_deleted", course_id, "course", f"Course deleted: {course.name}")
    except IntegrityError:
        log.exception("cascade delete of course %s violated a constraint", course_id)
        raise
    return True


# ---- modules


@storage_operation
def create_module(
    store: Store,
    course_id: str,
    name: str,
    path: str,
    order_index: int,
    module_id: Optional[str] = None,
) -> Module:
    module = Module(
        course_id=course_id,
        name=_require("name", name),
        path=_require("path", path),
        order_index=_require_order(order_index),
    )
    if module_id:
        module.id = module_id
    with store.transaction() as session:
        course = load_course(session, course_id)
        session.add(module)
        course.total_modules += 1
        session.add(course)
        session.flush()
        record_activity(session, "module_created", module.id, "module", f"Module created: {module.name}")
    return module


@storage_operation
def get_module(store: Store, module_id: str) -> Optional[Module]:
    with store.session() as session:
        return session.get(Module, module_id)


@storage_operation
def get_module_by_path(store: Store, course_id: str, path: str) -> Optional[Module]:
    with store.session() as session:
        stmt = select(Module).where(Module.course_id == course_id, Module.path == path)
        return session.exec(stmt).first()


@storage_operation
def list_modules(store: Store, course_id: str) -> list[Module]:
    with store.session() as session:
        stmt = select(Module).where(Module.course_id == course_id).order_by(Module.order_index)
        return list(session.exec(stmt).all())


# ---- videos


@storage_operation
def create_video(
    store: Store,
    module_id: str,
    name: str,
    file_path: str,
    order_index: int,
    duration: Optional[float] = None,
    file_size: Optional[int] = None,
    video_id: Optional[str] = None,
) -> Video:
    if duration is not None and duration < 0:
        raise ValidationError("duration must not be negative")
    if file_size is not None and file_size < 0:
        raise ValidationError("file_size must not be negative")
    name = _require("name", name)
    file_path = _require("file_path", file_path)
    order_index = _require_order(order_index)

    with store.transaction() as session:
        module = load_module(session, module_id)
        course = load_course(session, module.course_id)
        video = Video(
            module_id=module.id,
            course_id=module.course_id,
            name=name,
            file_path=file_path,
            duration=duration,
            file_size=file_size,
            order_index=order_index,
        )
        if video_id:
            video.id = video_id
        session.add(video)
        module.total_videos += 1
        course.total_videos += 1
        session.add(module)
        session.add(course)
        session.flush()
        record_activity(session, "video_created", video.id, "video", f"Video created: {video.name}")
    return video


@storage_operation
def get_video(store: Store, video_id: str) -> Optional[Video]:
    with store.session() as session:
        return session.get(Video, video_id)


@storage_operation
def get_video_by_path(store: Store, file_path: str) -> Optional[Video]:
    with store.session() as session:
        return session.exec(select(Video).where(Video.file_path == file_path)).first()


@storage_operation
def list_module_videos(store: Store, module_id: str) -> list[Video]:
    with store.session() as session:
        stmt = select(Video).where(Video.module_id == module_id).order_by(Video.order_index)
        return list(session.exec(stmt).all())


@storage_operation
def list_course_videos(store: Store, course_id: str) -> list[Video]:
    with store.session() as session:
        stmt = (
            select(Video)
            .join(Module, Module.id == Video.module_id)
            .where(Video.course_id == course_id)
            .order_by(Module.order_index, Video.order_index)
        )
        return list(session.exec(stmt).all())
