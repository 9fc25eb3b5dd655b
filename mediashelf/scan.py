from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .courses import (
    create_course,
    create_module,
    create_video,
    get_course_by_path,
    get_module_by_path,
    get_video_by_path,
    list_modules,
    list_module_videos,
)
from .db import Store
from .models import Course, Module
from .utils import natural_key


log = logging.getLogger(__name__)

VIDEO_EXTS = {".mp4", ".mkv", ".avi", ".ts", ".mov", ".wmv", ".flv", ".webm", ".m4v", ".3gp", ".ogv"}

ROOT_MODULE_NAME = "Lessons"


@dataclass
class ScanStats:
    courses_seen: int = 0
    courses_added: int = 0
    modules_added: int = 0
    videos_seen: int = 0
    videos_added: int = 0


def is_video_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in VIDEO_EXTS


def iter_video_files(course_dir: Path) -> Iterable[Path]:
    for p in sorted(course_dir.rglob("*"), key=lambda x: natural_key(str(x))):
        if is_video_file(p):
            yield p


def upsert_course(store: Store, course_dir: Path, stats: ScanStats) -> Course:
    course_path = str(course_dir.resolve())
    existing = get_course_by_path(store, course_path)
    if existing:
        return existing
    stats.courses_added += 1
    return create_course(store, name=course_dir.name, path=course_path)


def upsert_module(store: Store, course: Course, module_dir: Path, name: str, stats: ScanStats) -> Module:
    module_path = str(module_dir.resolve())
    existing = get_module_by_path(store, course.id, module_path)
    if existing:
        return existing
    # Append after whatever a previous scan already numbered.
    order_index = max((m.order_index for m in list_modules(store, course.id)), default=-1) + 1
    stats.modules_added += 1
    return create_module(store, course.id, name=name, path=module_path, order_index=order_index)


def scan_course(store: Store, course_dir: Path, stats: ScanStats) -> Course:
    course = upsert_course(store, course_dir, stats)

    # Each directory holding videos becomes a module.
    by_dir: dict[Path, list[Path]] = defaultdict(list)
    for video_path in iter_video_files(course_dir):
        by_dir[video_path.parent].append(video_path)

    # Loose videos in the course root come first.
    for module_dir in sorted(by_dir, key=lambda p: (p != course_dir, natural_key(str(p.relative_to(course_dir))))):
        name = ROOT_MODULE_NAME if module_dir == course_dir else module_dir.name
        module = upsert_module(store, course, module_dir, name, stats)
        next_index = max((v.order_index for v in list_module_videos(store, module.id)), default=-1) + 1

        for video_path in by_dir[module_dir]:
            stats.videos_seen += 1
            path_str = str(video_path.resolve())
            if get_video_by_path(store, path_str):
                continue
            create_video(
                store,
                module.id,
                name=video_path.stem,
                file_path=path_str,
                order_index=next_index,
                file_size=video_path.stat().st_size,
            )
            next_index += 1
            stats.videos_added += 1

    return course


def scan_library(store: Store, courses_dir: Path) -> ScanStats:
    """Register every course directory under ``courses_dir``.

    Rescans only add what is new; nothing is removed or renumbered.
    """
    stats = ScanStats()

    if not courses_dir.exists() or not courses_dir.is_dir():
        log.warning("courses dir %s does not exist", courses_dir)
        return stats

    course_dirs = [p for p in courses_dir.iterdir() if p.is_dir()]
    course_dirs.sort(key=lambda p: natural_key(p.name))

    for course_dir in course_dirs:
        stats.courses_seen += 1
        scan_course(store, course_dir, stats)

    log.info(
        "scan of %s: %d courses (%d new), %d videos (%d new)",
        courses_dir,
        stats.courses_seen,
        stats.courses_added,
        stats.videos_seen,
        stats.videos_added,
    )
    return stats
