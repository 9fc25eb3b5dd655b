from __future__ import annotations

from pathlib import Path

from mediashelf import courses
from mediashelf.scan import ROOT_MODULE_NAME, scan_library


def _touch(path: Path, size: int = 16) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)


def _make_tree(root: Path) -> None:
    _touch(root / "Rust" / "welcome.mp4")
    _touch(root / "Rust" / "10 - Traits" / "2 dyn.mp4")
    _touch(root / "Rust" / "10 - Traits" / "10 generics.mkv")
    _touch(root / "Rust" / "2 - Ownership" / "borrow.webm", size=64)
    _touch(root / "Rust" / "2 - Ownership" / "notes.pdf")
    (root / "Empty").mkdir()
    _touch(root / "stray.mp4")


def test_scan_builds_course_tree(store, tmp_path):
    root = tmp_path / "courses"
    _make_tree(root)

    stats = scan_library(store, root)

    assert (stats.courses_seen, stats.courses_added) == (2, 2)
    assert (stats.videos_seen, stats.videos_added) == (4, 4)

    rust = courses.get_course_by_path(store, str((root / "Rust").resolve()))
    assert rust.total_modules == 3
    assert rust.total_videos == 4

    modules = courses.list_modules(store, rust.id)
    assert [m.name for m in modules] == [ROOT_MODULE_NAME, "2 - Ownership", "10 - Traits"]
    assert [m.order_index for m in modules] == [0, 1, 2]

    traits = courses.list_module_videos(store, modules[2].id)
    assert [v.name for v in traits] == ["2 dyn", "10 generics"]

    borrow = courses.list_module_videos(store, modules[1].id)[0]
    assert borrow.file_size == 64
    assert borrow.duration is None


def test_rescan_only_adds_new_files(store, tmp_path):
    root = tmp_path / "courses"
    _make_tree(root)
    scan_library(store, root)

    again = scan_library(store, root)
    assert (again.courses_added, again.modules_added, again.videos_added) == (0, 0, 0)

    _touch(root / "Rust" / "10 - Traits" / "11 closures.mp4")
    _touch(root / "Rust" / "20 - Async" / "intro.mp4")
    more = scan_library(store, root)
    assert (more.modules_added, more.videos_added) == (1, 2)

    rust = courses.get_course_by_path(store, str((root / "Rust").resolve()))
    modules = courses.list_modules(store, rust.id)
    assert [m.order_index for m in modules] == [0, 1, 2, 3]
    traits = courses.list_module_videos(store, modules[2].id)
    assert [v.name for v in traits] == ["2 dyn", "10 generics", "11 closures"]


def test_missing_courses_dir(store, tmp_path):
    stats = scan_library(store, tmp_path / "nope")
    assert stats.courses_seen == 0
    assert courses.list_courses(store) == []
