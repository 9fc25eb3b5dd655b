from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from . import activity, courses, notes, progress, user_settings
from .coalescer import ProgressCoalescer
from .config import Settings, configure_logging, get_settings
from .db import Store
from .errors import ConstraintError, MediaShelfError, NotFoundError, StorageIOError, ValidationError
from .migrations import read_schema_version
from .scan import ScanStats, scan_library


log = logging.getLogger(__name__)


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_coalescer(request: Request) -> ProgressCoalescer:
    return request.app.state.coalescer


def _run_scan(app: FastAPI, store: Store) -> ScanStats:
    settings: Settings = app.state.settings
    stats = scan_library(store, settings.courses_dir)
    app.state.last_scan = stats
    return stats


def _pairs(rows) -> list[dict[str, Any]]:
    return [{"video": video, "progress": prog} for video, prog in rows]


def _write(write: progress.ProgressWrite) -> dict[str, Any]:
    return {"progress": write.progress, "became_completed": write.became_completed}


class NoteIn(BaseModel):
    title: str
    content: str
    video_id: Optional[str] = None
    module_id: Optional[str] = None
    course_id: Optional[str] = None
    timestamp: Optional[float] = None
    note_type: str = "note"


class NoteUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class BookmarkIn(BaseModel):
    timestamp: float
    title: str
    description: Optional[str] = None


class PositionIn(BaseModel):
    current_time: float = Field(default=0.0)
    duration: float = Field(default=0.0, ge=0.0)


class SettingIn(BaseModel):
    value: Union[bool, float, str]
    setting_type: Optional[user_settings.SettingType] = None


class ActivityIn(BaseModel):
    activity_type: str
    entity_id: str
    entity_type: str
    details: Optional[str] = None


def build_api_router() -> APIRouter:
    """Command surface consumed by the UI, one route per repository operation."""

    r = APIRouter(prefix="/api")

    # ---- library

    @r.get("/meta")
    def meta(request: Request, store: Store = Depends(get_store)):
        with store.engine.connect() as conn:
            version = read_schema_version(conn)
        return {
            "courses_dir": str(request.app.state.settings.courses_dir),
            "schema_version": version,
            "scan": request.app.state.last_scan,
            "has_scanned": request.app.state.last_scan is not None,
        }

    @r.post("/library/scan")
    def scan(request: Request, store: Store = Depends(get_store)):
        return _run_scan(request.app, store)

    @r.get("/courses")
    def list_courses(store: Store = Depends(get_store)):
        return courses.list_courses(store)

    @r.get("/courses/{course_id}")
    def get_course(course_id: str, store: Store = Depends(get_store)):
        course = courses.get_course(store, course_id)
        if course is None:
            raise NotFoundError("course", course_id)
        return course

    @r.post("/courses/{course_id}/access")
    def touch_course(course_id: str, store: Store = Depends(get_store)):
        return courses.touch_course(store, course_id)

    @r.delete("/courses/{course_id}")
    def delete_course(course_id: str, store: Store = Depends(get_store)):
        courses.delete_course(store, course_id)
        return {"ok": True}

    @r.get("/courses/{course_id}/modules")
    def list_modules(course_id: str, store: Store = Depends(get_store)):
        return courses.list_modules(store, course_id)

    @r.get("/courses/{course_id}/stats")
    def course_stats(course_id: str, store: Store = Depends(get_store)):
        return progress.get_course_completion_stats(store, course_id)

    @r.get("/courses/{course_id}/notes")
    def course_notes(course_id: str, order_by: notes.NoteOrder = "timestamp", descending: bool = False, store: Store = Depends(get_store)):
        return notes.get_notes_by_course(store, course_id, order_by=order_by, descending=descending)

    @r.get("/modules/{module_id}/videos")
    def module_videos(module_id: str, store: Store = Depends(get_store)):
        return courses.list_module_videos(store, module_id)

    # ---- progress

    @r.get("/videos/recent")
    def recent_videos(limit: int = 10, store: Store = Depends(get_store)):
        return _pairs(progress.get_recent_videos(store, limit))

    @r.get("/videos/completed")
    def completed_videos(course_id: Optional[str] = None, store: Store = Depends(get_store)):
        return _pairs(progress.get_completed_videos(store, course_id))

    @r.get("/videos/incomplete")
    def incomplete_videos(course_id: Optional[str] = None, store: Store = Depends(get_store)):
        return _pairs(progress.get_incomplete_videos(store, course_id))

    @r.get("/videos/{video_id}/file")
    def video_file(video_id: str, store: Store = Depends(get_store)):
        """Serves the underlying video file.

        FileResponse supports HTTP Range requests in Starlette, so seeking works.
        """
        video = courses.get_video(store, video_id)
        if video is None:
            raise NotFoundError("video", video_id)

        p = Path(video.file_path)
        if not p.is_file():
            raise NotFoundError("video file", video.file_path)

        media_type, _ = mimetypes.guess_type(p.name)
        return FileResponse(path=str(p), media_type=media_type or "application/octet-stream", filename=p.name)

    @r.get("/videos/{video_id}/progress")
    def get_progress(video_id: str, store: Store = Depends(get_store)):
        return progress.get_video_progress(store, video_id)

    @r.post("/videos/{video_id}/session")
    def begin_session(video_id: str, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        coalescer.begin_session(video_id)
        return {"ok": True}

    @r.post("/videos/{video_id}/progress")
    def update_progress(video_id: str, payload: PositionIn, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        write = coalescer.tick(video_id, payload.current_time, payload.duration)
        if write is None:
            return {"persisted": False}
        return {"persisted": True, **_write(write)}

    @r.post("/videos/{video_id}/seek")
    def seek(video_id: str, payload: PositionIn, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        return {"persisted": True, **_write(coalescer.seek(video_id, payload.current_time, payload.duration))}

    @r.post("/videos/{video_id}/stop")
    def end_session(video_id: str, payload: PositionIn, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        return {"persisted": True, **_write(coalescer.end_session(video_id, payload.current_time, payload.duration))}

    @r.post("/videos/{video_id}/complete")
    def mark_completed(video_id: str, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        return coalescer.mark_completed(video_id)

    @r.post("/videos/{video_id}/incomplete")
    def mark_incomplete(video_id: str, coalescer: ProgressCoalescer = Depends(get_coalescer)):
        return coalescer.mark_incomplete(video_id)

    # ---- notes & bookmarks

    @r.post("/notes")
    def create_note(payload: NoteIn, store: Store = Depends(get_store)):
        return notes.create_note(store, **payload.model_dump())

    @r.get("/notes")
    def all_notes(store: Store = Depends(get_store)):
        return notes.get_all_notes(store)

    @r.get("/notes/{note_id}")
    def get_note(note_id: str, store: Store = Depends(get_store)):
        note = notes.get_note(store, note_id)
        if note is None:
            raise NotFoundError("note", note_id)
        return note

    @r.patch("/notes/{note_id}")
    def update_note(note_id: str, payload: NoteUpdate, store: Store = Depends(get_store)):
        return notes.update_note(store, note_id, title=payload.title, content=payload.content)

    @r.delete("/notes/{note_id}")
    def delete_note(note_id: str, store: Store = Depends(get_store)):
        notes.delete_note(store, note_id)
        return {"ok": True}

    @r.get("/videos/{video_id}/notes")
    def video_notes(video_id: str, order_by: notes.NoteOrder = "timestamp", descending: bool = False, store: Store = Depends(get_store)):
        return notes.get_notes_by_video(store, video_id, order_by=order_by, descending=descending)

    @r.post("/videos/{video_id}/bookmarks")
    def create_bookmark(video_id: str, payload: BookmarkIn, store: Store = Depends(get_store)):
        return notes.create_bookmark(store, video_id, payload.timestamp, payload.title, payload.description)

    @r.get("/videos/{video_id}/bookmarks")
    def list_bookmarks(video_id: str, store: Store = Depends(get_store)):
        return notes.list_bookmarks(store, video_id)

    @r.delete("/bookmarks/{bookmark_id}")
    def delete_bookmark(bookmark_id: str, store: Store = Depends(get_store)):
        notes.delete_bookmark(store, bookmark_id)
        return {"ok": True}

    # ---- settings

    @r.get("/settings")
    def all_settings(store: Store = Depends(get_store)):
        return user_settings.get_all_settings(store)

    @r.post("/settings/initialize")
    def initialize_settings(store: Store = Depends(get_store)):
        return {"inserted": user_settings.initialize_default_settings(store)}

    @r.get("/settings/{key}")
    def get_setting(key: str, store: Store = Depends(get_store)):
        setting = user_settings.get_user_setting(store, key)
        if setting is None:
            raise NotFoundError("setting", key)
        return setting

    @r.put("/settings/{key}")
    def set_setting(key: str, payload: SettingIn, store: Store = Depends(get_store)):
        return user_settings.set_user_setting(store, key, payload.value, payload.setting_type)

    # ---- activity

    @r.get("/activity")
    def recent_activity(limit: int = activity.DEFAULT_LIMIT, store: Store = Depends(get_store)):
        return activity.get_recent_activities(store, limit)

    @r.post("/activity")
    def log_activity(payload: ActivityIn, store: Store = Depends(get_store)):
        return activity.log_user_activity(store, **payload.model_dump())

    @r.get("/activity/{activity_type}")
    def activity_by_type(activity_type: str, limit: int = activity.DEFAULT_LIMIT, store: Store = Depends(get_store)):
        return activity.get_activities_by_type(store, activity_type, limit)

    return r


def setup_error_handlers(app: FastAPI) -> None:
    def _handler(status_code: int):
        async def handle(_request: Request, exc: Exception) -> JSONResponse:
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return handle

    app.add_exception_handler(ValidationError, _handler(422))
    app.add_exception_handler(NotFoundError, _handler(404))
    app.add_exception_handler(ConstraintError, _handler(409))
    app.add_exception_handler(StorageIOError, _handler(503))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="MediaShelf")
    app.state.settings = settings
    app.state.last_scan = None

    @app.on_event("startup")
    def on_startup() -> None:
        configure_logging(settings.log_level)
        # A store that cannot be migrated must not be served; let it raise.
        store = Store.open(settings.database_url)
        app.state.store = store
        app.state.coalescer = ProgressCoalescer(
            store,
            window_seconds=settings.progress_window_seconds,
            on_completed=lambda p: log.info("video %s completed", p.video_id),
        )

        # Initial scan at app launch. A failure here is not fatal; the
        # library can be rescanned from the API.
        if settings.courses_dir.is_dir():
            try:
                _run_scan(app, store)
            except (MediaShelfError, OSError):
                log.exception("initial library scan failed (courses_dir=%s)", settings.courses_dir)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        store = getattr(app.state, "store", None)
        if store is not None:
            store.close()

    setup_error_handlers(app)
    app.include_router(build_api_router())
    return app


# uvicorn mediashelf.main:app
# Only settings are read here; the store is opened by the startup event.
app = create_app()
