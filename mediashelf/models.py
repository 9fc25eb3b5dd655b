from __future__ import annotations

from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel, UniqueConstraint

from .utils import new_id, utcnow_iso


# Every timestamp column holds ISO-8601 text; every id is a uuid4 string.


class Course(SQLModel, table=True):
    __tablename__ = "courses"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(nullable=False)
    description: Optional[str] = Field(default=None)

    # Absolute path to course directory (unique)
    path: str = Field(nullable=False)

    total_modules: int = Field(default=0, nullable=False, sa_column_kwargs={"server_default": "0"})
    total_videos: int = Field(default=0, nullable=False, sa_column_kwargs={"server_default": "0"})

    created_at: str = Field(default_factory=utcnow_iso, nullable=False)
    last_accessed: Optional[str] = Field(default=None)

    __table_args__ = (UniqueConstraint("path", name="uq_courses_path"),)


class Module(SQLModel, table=True):
    __tablename__ = "modules"

    id: str = Field(default_factory=new_id, primary_key=True)
    course_id: str = Field(foreign_key="courses.id", ondelete="CASCADE", index=True, nullable=False)
    name: str = Field(nullable=False)
    path: str = Field(nullable=False)
    order_index: int = Field(nullable=False)
    total_videos: int = Field(default=0, nullable=False, sa_column_kwargs={"server_default": "0"})

    __table_args__ = (UniqueConstraint("course_id", "order_index", name="uq_modules_course_order"),)


class Video(SQLModel, table=True):
    __tablename__ = "videos"

    id: str = Field(default_factory=new_id, primary_key=True)
    module_id: str = Field(foreign_key="modules.id", ondelete="CASCADE", index=True, nullable=False)
    # Denormalized from the module so course-wide queries skip a join.
    course_id: str = Field(foreign_key="courses.id", ondelete="CASCADE", index=True, nullable=False)
    name: str = Field(nullable=False)

    # Absolute path to the video file (unique)
    file_path: str = Field(nullable=False)

    duration: Optional[float] = Field(default=None)
    file_size: Optional[int] = Field(default=None)
    order_index: int = Field(nullable=False)

    __table_args__ = (
        UniqueConstraint("module_id", "order_index", name="uq_videos_module_order"),
        UniqueConstraint("file_path", name="uq_videos_file_path"),
    )


class VideoProgress(SQLModel, table=True):
    __tablename__ = "video_progress"

    id: str = Field(default_factory=new_id, primary_key=True)
    video_id: str = Field(foreign_key="videos.id", ondelete="CASCADE", index=True, nullable=False)

    current_time: float = Field(default=0.0, nullable=False, sa_column_kwargs={"server_default": "0"})
    duration: float = Field(default=0.0, nullable=False, sa_column_kwargs={"server_default": "0"})
    completed: bool = Field(default=False, nullable=False, sa_column_kwargs={"server_default": "0"})
    last_watched: str = Field(default_factory=utcnow_iso, nullable=False)
    watch_count: int = Field(default=1, nullable=False, sa_column_kwargs={"server_default": "1"})

    __table_args__ = (UniqueConstraint("video_id", name="uq_video_progress_video"),)


class UserNote(SQLModel, table=True):
    __tablename__ = "user_notes"

    id: str = Field(default_factory=new_id, primary_key=True)

    # Each scope is independently optional; a note may hang off a video,
    # a module, a course, or nothing at all.
    video_id: Optional[str] = Field(default=None, foreign_key="videos.id", ondelete="CASCADE", index=True)
    course_id: Optional[str] = Field(default=None, foreign_key="courses.id", ondelete="CASCADE", index=True)
    module_id: Optional[str] = Field(default=None, foreign_key="modules.id", ondelete="CASCADE", index=True)

    timestamp: Optional[float] = Field(default=None, index=True)
    title: str = Field(nullable=False)
    content: str = Field(nullable=False)
    note_type: str = Field(default="note", nullable=False, sa_column_kwargs={"server_default": "note"})

    created_at: str = Field(default_factory=utcnow_iso, nullable=False)
    updated_at: str = Field(default_factory=utcnow_iso, nullable=False)


class VideoBookmark(SQLModel, table=True):
    __tablename__ = "video_bookmarks"

    id: str = Field(default_factory=new_id, primary_key=True)
    video_id: str = Field(foreign_key="videos.id", ondelete="CASCADE", index=True, nullable=False)
    timestamp: float = Field(nullable=False, index=True)
    title: str = Field(nullable=False)
    description: Optional[str] = Field(default=None)
    created_at: str = Field(default_factory=utcnow_iso, nullable=False)


class UserSetting(SQLModel, table=True):
    __tablename__ = "user_settings"

    id: str = Field(default_factory=new_id, primary_key=True)
    setting_key: str = Field(nullable=False)
    setting_value: str = Field(nullable=False)
    setting_type: str = Field(default="string", nullable=False, sa_column_kwargs={"server_default": "string"})
    updated_at: str = Field(default_factory=utcnow_iso, nullable=False)

    __table_args__ = (UniqueConstraint("setting_key", name="uq_user_settings_key"),)


class ActivityLogEntry(SQLModel, table=True):
    __tablename__ = "activity_log"

    id: str = Field(default_factory=new_id, primary_key=True)
    activity_type: str = Field(nullable=False, index=True)

    # Weak reference: no foreign key, history outlives the entity.
    entity_id: str = Field(nullable=False)
    entity_type: str = Field(nullable=False)

    details: Optional[str] = Field(default=None)
    created_at: str = Field(default_factory=utcnow_iso, nullable=False, index=True)

    __table_args__ = (Index("ix_activity_log_entity", "entity_id", "entity_type"),)


class SchemaMetadata(SQLModel, table=True):
    __tablename__ = "schema_metadata"

    key: str = Field(primary_key=True)
    value: str = Field(nullable=False)
    updated_at: str = Field(default_factory=utcnow_iso, nullable=False)
