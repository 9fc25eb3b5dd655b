"""Progress update coalescer.

The player reports its position many times a second. Persisting each report
would hammer the store, so a tick is only written when the position lands
in a different window (``position // window_seconds``) than the last
written one. Bucketing by position rather than wall clock means a seek
always lands somewhere new and a paused player writes nothing.

Seeks, session ends and ticks that would complete a video bypass the window.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from .courses import get_video
from .db import Store
from .errors import NotFoundError
from .models import VideoProgress
from .progress import (
    ProgressWrite,
    is_auto_completed,
    mark_video_completed,
    mark_video_incomplete,
    update_video_progress,
)


log = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5.0

CompletionHook = Callable[[VideoProgress], None]


@dataclass
class _PlaybackState:
    last_bucket: Optional[int] = None
    completed: bool = False
    new_session: bool = False


class ProgressCoalescer:
    def __init__(
        self,
        store: Store,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        on_completed: Optional[CompletionHook] = None,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.window_seconds = window_seconds
        self.on_completed = on_completed
        self._videos: dict[str, _PlaybackState] = {}

    def _bucket(self, current_time: float) -> int:
        if not math.isfinite(current_time) or current_time < 0:
            return 0
        return int(current_time // self.window_seconds)

    def _state(self, video_id: str) -> _PlaybackState:
        # Not stored until a write for the video succeeds.
        state = self._videos.get(video_id)
        return state if state is not None else _PlaybackState()

    def begin_session(self, video_id: str) -> None:
        """A new play session starts; its first write bumps ``watch_count``."""
        if get_video(self.store, video_id) is None:
            raise NotFoundError("video", video_id)
        self._videos[video_id] = _PlaybackState(new_session=True)

    def tick(self, video_id: str, current_time: float, duration: float) -> Optional[ProgressWrite]:
        """Periodic position report. Returns the write, or None if coalesced."""
        state = self._state(video_id)
        bucket = self._bucket(current_time)
        completes = not state.completed and is_auto_completed(min(current_time, duration), duration)
        if state.last_bucket == bucket and not completes:
            return None
        return self._persist(video_id, current_time, duration, state)

    def seek(self, video_id: str, current_time: float, duration: float) -> ProgressWrite:
        """User jumped in the timeline; always written."""
        return self._persist(video_id, current_time, duration, self._state(video_id))

    def end_session(self, video_id: str, current_time: float, duration: float) -> ProgressWrite:
        """Player stopped or switched video; flush the final position."""
        try:
            return self._persist(video_id, current_time, duration, self._state(video_id))
        finally:
            self._videos.pop(video_id, None)

    def is_tracking(self, video_id: str) -> bool:
        return video_id in self._videos

    def mark_completed(self, video_id: str) -> VideoProgress:
        progress = mark_video_completed(self.store, video_id)
        self._sync_completed(video_id, progress)
        return progress

    def mark_incomplete(self, video_id: str) -> VideoProgress:
        """Explicit user toggle; the next accepted tick re-evaluates the threshold."""
        progress = mark_video_incomplete(self.store, video_id)
        self._sync_completed(video_id, progress)
        return progress

    def _sync_completed(self, video_id: str, progress: VideoProgress) -> None:
        state = self._videos.get(video_id)
        if state is not None:
            state.completed = progress.completed

    def _persist(self, video_id: str, current_time: float, duration: float, state: _PlaybackState) -> ProgressWrite:
        write = update_video_progress(
            self.store,
            video_id,
            current_time,
            duration,
            new_session=state.new_session,
        )
        state.new_session = False
        state.last_bucket = self._bucket(write.progress.current_time)
        state.completed = write.progress.completed
        self._videos[video_id] = state

        if write.became_completed:
            log.info("video %s completed at %.1fs", video_id, write.progress.current_time)
            if self.on_completed is not None:
                self.on_completed(write.progress)
        return write
