from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from sqlmodel import Session, func, select

from .activity import record_activity
from .courses import load_course, load_video
from .db import Store, storage_operation
from .errors import ValidationError
from .models import Video, VideoProgress
from .utils import utcnow_iso


# Watched this share of a video => it counts as completed.
COMPLETION_THRESHOLD = 0.95


@dataclass(frozen=True)
class ProgressWrite:
    progress: VideoProgress
    became_completed: bool


@dataclass(frozen=True)
class CompletionStats:
    total_videos: int
    completed_videos: int
    in_progress_videos: int

    @property
    def not_started_videos(self) -> int:
        return self.total_videos - self.completed_videos - self.in_progress_videos


def _finite(name: str, value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    return float(value)


def is_auto_completed(current_time: float, duration: float) -> bool:
    # Unknown (zero) duration never completes on its own.
    return duration > 0 and current_time >= duration * COMPLETION_THRESHOLD


def _progress_row(session: Session, video_id: str) -> Optional[VideoProgress]:
    return session.exec(select(VideoProgress).where(VideoProgress.video_id == video_id)).first()


@storage_operation
def get_video_progress(store: Store, video_id: str) -> Optional[VideoProgress]:
    with store.session() as session:
        return _progress_row(session, video_id)


@storage_operation
def update_video_progress(
    store: Store,
    video_id: str,
    current_time: float,
    duration: float,
    *,
    new_session: bool = False,
) -> ProgressWrite:
    """Upsert the single progress row of a video from a playback position.

    ``completed`` only ever turns on here (position past the threshold);
    turning it off is :func:`mark_video_incomplete`'s job. ``watch_count``
    grows once per play session, signalled by ``new_session``.
    """
    current_time = _finite("current_time", current_time)
    duration = _finite("duration", duration)
    if duration < 0:
        raise ValidationError("duration must not be negative")
    current_time = min(max(current_time, 0.0), duration)
    auto_completed = is_auto_completed(current_time, duration)

    with store.transaction() as session:
        video = load_video(session, video_id)
        progress = _progress_row(session, video.id)
        if progress is None:
            was_completed = False
            progress = VideoProgress(
                video_id=video.id,
                current_time=current_time,
                duration=duration,
                completed=auto_completed,
                watch_count=1,
            )
        else:
            was_completed = progress.completed
            progress.current_time = current_time
            progress.duration = duration
            progress.completed = was_completed or auto_completed
            progress.last_watched = utcnow_iso()
            if new_session:
                progress.watch_count += 1
        session.add(progress)
        session.flush()

        became_completed = progress.completed and not was_completed
        record_activity(
            session,
            "progress_updated",
            progress.id,
            "progress",
            f"{video.name}: {current_time:.1f}s of {duration:.1f}s",
        )
        if became_completed:
            record_activity(session, "video_completed", video.id, "video", "Video completed automatically")
        return ProgressWrite(progress=progress, became_completed=became_completed)


def _set_completed(store: Store, video_id: str, completed: bool) -> VideoProgress:
    with store.transaction() as session:
        video = load_video(session, video_id)
        progress = _progress_row(session, video.id)
        if progress is None:
            # Toggled without ever being played.
            duration = video.duration or 0.0
            progress = VideoProgress(
                video_id=video.id,
                current_time=0.0,
                duration=duration,
                completed=completed,
                watch_count=0,
            )
        else:
            progress.completed = completed
            progress.last_watched = utcnow_iso()
        session.add(progress)
        session.flush()
        if completed:
            record_activity(session, "video_completed", video.id, "video", "Video marked as completed")
        else:
            record_activity(session, "video_marked_incomplete", video.id, "video", "Video marked as incomplete")
        return progress


@storage_operation
def mark_video_completed(store: Store, video_id: str) -> VideoProgress:
    return _set_completed(store, video_id, True)


@storage_operation
def mark_video_incomplete(store: Store, video_id: str) -> VideoProgress:
    return _set_completed(store, video_id, False)


@storage_operation
def get_recent_videos(store: Store, limit: int = 10) -> list[tuple[Video, VideoProgress]]:
    """Videos started but not finished, most recently watched first."""
    if limit < 1:
        raise ValidationError("limit must be positive")
    with store.session() as session:
        stmt = (
            select(Video, VideoProgress)
            .join(VideoProgress, VideoProgress.video_id == Video.id)
            .where(VideoProgress.completed == False)  # noqa: E712
            .order_by(VideoProgress.last_watched.desc())
            .limit(limit)
        )
        return [(video, progress) for video, progress in session.exec(stmt).all()]


@storage_operation
def get_completed_videos(store: Store, course_id: Optional[str] = None) -> list[tuple[Video, VideoProgress]]:
    with store.session() as session:
        stmt = (
            select(Video, VideoProgress)
            .join(VideoProgress, VideoProgress.video_id == Video.id)
            .where(VideoProgress.completed == True)  # noqa: E712
        )
        if course_id is not None:
            stmt = stmt.where(Video.course_id == course_id)
        stmt = stmt.order_by(VideoProgress.last_watched.desc())
        return [(video, progress) for video, progress in session.exec(stmt).all()]


@storage_operation
def get_incomplete_videos(store: Store, course_id: Optional[str] = None) -> list[tuple[Video, Optional[VideoProgress]]]:
    """Videos never played or not finished yet, in course order."""
    with store.session() as session:
        stmt = (
            select(Video, VideoProgress)
            .join(VideoProgress, VideoProgress.video_id == Video.id, isouter=True)
            .where((VideoProgress.id.is_(None)) | (VideoProgress.completed == False))  # noqa: E712
        )
        if course_id is not None:
            stmt = stmt.where(Video.course_id == course_id)
        stmt = stmt.order_by(Video.course_id, Video.module_id, Video.order_index)
        return [(video, progress) for video, progress in session.exec(stmt).all()]


@storage_operation
def get_course_completion_stats(store: Store, course_id: str) -> CompletionStats:
    with store.session() as session:
        load_course(session, course_id)
        total = session.exec(select(func.count()).select_from(Video).where(Video.course_id == course_id)).one()
        counts = session.exec(
            select(VideoProgress.completed, func.count())
            .join(Video, Video.id == VideoProgress.video_id)
            .where(Video.course_id == course_id)
            .group_by(VideoProgress.completed)
        ).all()
        by_state = {bool(completed): count for completed, count in counts}
        return CompletionStats(
            total_videos=total,
            completed_videos=by_state.get(True, 0),
            in_progress_videos=by_state.get(False, 0),
        )
