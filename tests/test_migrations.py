from __future__ import annotations

import pytest
from sqlalchemy import inspect

from mediashelf import user_settings
from mediashelf.db import Store, make_engine
from mediashelf.errors import MigrationError, UnsupportedSchemaVersionError
from mediashelf.migrations import STEPS, migrate, read_metadata, read_schema_version
from mediashelf.schema import LEGACY_V1, SCHEMA_VERSION


V1_COURSES = [
    {"id": "c1", "name": "Rust", "path": "/courses/rust", "created_at": "2024-01-01T10:00:00+00:00", "last_accessed": None},
    {"id": "c2", "name": "Go", "path": "/courses/go", "created_at": "2024-01-02T10:00:00+00:00", "last_accessed": "2024-02-01T09:30:00+00:00"},
]
V1_MODULES = [
    {"id": "m1", "course_id": "c1", "name": "Ownership", "path": "/courses/rust/01", "order_index": 0},
    {"id": "m2", "course_id": "c1", "name": "Traits", "path": "/courses/rust/02", "order_index": 1},
    {"id": "m3", "course_id": "c2", "name": "Basics", "path": "/courses/go/01", "order_index": 0},
]
V1_VIDEOS = [
    {"id": "v1", "module_id": "m1", "course_id": "c1", "name": "Borrowing", "path": "/courses/rust/01/a.mp4", "duration": 600.5, "order_index": 0},
    {"id": "v2", "module_id": "m1", "course_id": "c1", "name": "Lifetimes", "path": "/courses/rust/01/b.mp4", "duration": None, "order_index": 1},
    {"id": "v3", "module_id": "m2", "course_id": "c1", "name": "Dyn", "path": "/courses/rust/02/a.mkv", "duration": 300.0, "order_index": 0},
    {"id": "v4", "module_id": "m3", "course_id": "c2", "name": "Hello", "path": "/courses/go/01/a.mp4", "duration": 90.0, "order_index": 0},
]
V1_PROGRESS = [
    {"id": "p1", "video_id": "v1", "current_time": 120.25, "duration": 600.5, "completed": False, "last_watched": "2024-02-01T09:00:00+00:00"},
    {"id": "p3", "video_id": "v3", "current_time": 299.0, "duration": 300.0, "completed": True, "last_watched": "2024-02-02T09:00:00+00:00"},
]


def _make_v1_store(url: str, *, modules=V1_MODULES, progress=V1_PROGRESS) -> None:
    engine = make_engine(url)
    with engine.begin() as conn:
        LEGACY_V1.create_all(conn)
        conn.execute(LEGACY_V1.tables["courses"].insert(), V1_COURSES)
        conn.execute(LEGACY_V1.tables["modules"].insert(), modules)
        conn.execute(LEGACY_V1.tables["videos"].insert(), V1_VIDEOS)
        if progress:
            conn.execute(LEGACY_V1.tables["video_progress"].insert(), progress)
    engine.dispose()


def _rows(engine, sql: str) -> list[tuple]:
    with engine.connect() as conn:
        return [tuple(r) for r in conn.exec_driver_sql(sql).fetchall()]


def test_fresh_store_is_created_at_current_version(db_url):
    with Store.open(db_url) as store:
        with store.engine.connect() as conn:
            meta = read_metadata(conn)
        tables = set(inspect(store.engine).get_table_names())
        settings = user_settings.get_all_settings(store)

    assert meta["version"] == str(SCHEMA_VERSION)
    assert meta["created_at"]
    assert meta["last_migration"]
    assert {
        "courses",
        "modules",
        "videos",
        "video_progress",
        "user_notes",
        "video_bookmarks",
        "user_settings",
        "activity_log",
        "schema_metadata",
    } <= tables
    assert len(settings) == len(user_settings.DEFAULT_SETTINGS)


def test_fresh_store_has_required_indexes(store):
    insp = inspect(store.engine)

    def indexed_columns(table):
        return {tuple(ix["column_names"]) for ix in insp.get_indexes(table)}

    assert ("course_id",) in indexed_columns("modules")
    assert {("module_id",), ("course_id",)} <= indexed_columns("videos")
    assert ("video_id",) in indexed_columns("video_progress")
    assert {("video_id",), ("course_id",), ("module_id",), ("timestamp",)} <= indexed_columns("user_notes")
    assert ("video_id",) in indexed_columns("video_bookmarks")
    assert {("activity_type",), ("created_at",), ("entity_id", "entity_type")} <= indexed_columns("activity_log")


def test_rerun_on_current_store_is_noop(db_url):
    Store.open(db_url).close()

    engine = make_engine(db_url)
    try:
        with engine.connect() as conn:
            before = read_metadata(conn)
        schema_before = _rows(engine, "SELECT type, name, sql FROM sqlite_master ORDER BY name")

        result = migrate(engine)

        with engine.connect() as conn:
            after = read_metadata(conn)
        schema_after = _rows(engine, "SELECT type, name, sql FROM sqlite_master ORDER BY name")
    finally:
        engine.dispose()

    assert result.applied == []
    assert result.from_version == result.to_version == SCHEMA_VERSION
    assert after == before
    assert schema_after == schema_before


def test_unversioned_v1_store_is_detected(db_url):
    _make_v1_store(db_url)
    engine = make_engine(db_url)
    try:
        with engine.connect() as conn:
            assert read_schema_version(conn) == 1
    finally:
        engine.dispose()


def test_v1_to_v2_preserves_every_row(db_url):
    _make_v1_store(db_url)
    engine = make_engine(db_url)
    before = {
        "courses": _rows(engine, "SELECT id, name, path, created_at, last_accessed FROM courses ORDER BY id"),
        "modules": _rows(engine, "SELECT id, course_id, name, path, order_index FROM modules ORDER BY id"),
        "videos": _rows(engine, "SELECT id, module_id, course_id, name, path, duration, order_index FROM videos ORDER BY id"),
        "progress": _rows(
            engine, 'SELECT id, video_id, "current_time", duration, completed, last_watched FROM video_progress ORDER BY id'
        ),
    }
    engine.dispose()

    with Store.open(db_url) as store:
        engine = store.engine
        after = {
            "courses": _rows(engine, "SELECT id, name, path, created_at, last_accessed FROM courses ORDER BY id"),
            "modules": _rows(engine, "SELECT id, course_id, name, path, order_index FROM modules ORDER BY id"),
            "videos": _rows(
                engine, "SELECT id, module_id, course_id, name, file_path, duration, order_index FROM videos ORDER BY id"
            ),
            "progress": _rows(
                engine, 'SELECT id, video_id, "current_time", duration, completed, last_watched FROM video_progress ORDER BY id'
            ),
        }
        counts = _rows(engine, "SELECT id, total_modules, total_videos FROM courses ORDER BY id")
        module_counts = _rows(engine, "SELECT id, total_videos FROM modules ORDER BY id")
        watch_counts = _rows(engine, "SELECT watch_count FROM video_progress")
        with engine.connect() as conn:
            meta = read_metadata(conn)
        tables = set(inspect(engine).get_table_names())
        settings = user_settings.get_all_settings(store)

    assert after == before
    assert counts == [("c1", 2, 3), ("c2", 1, 1)]
    assert module_counts == [("m1", 2), ("m2", 1), ("m3", 1)]
    assert watch_counts == [(1,), (1,)]
    assert meta["version"] == "2"
    assert {"user_notes", "video_bookmarks", "user_settings", "activity_log"} <= tables
    assert not any(t.startswith("_") for t in tables)
    assert len(settings) == len(user_settings.DEFAULT_SETTINGS)


def test_v1_store_gains_cascading_deletes(db_url):
    _make_v1_store(db_url)
    with Store.open(db_url) as store:
        with store.engine.begin() as conn:
            conn.exec_driver_sql("DELETE FROM courses WHERE id = 'c1'")
        assert _rows(store.engine, "SELECT id FROM modules ORDER BY id") == [("m3",)]
        assert _rows(store.engine, "SELECT id FROM videos ORDER BY id") == [("v4",)]
        assert _rows(store.engine, "SELECT id FROM video_progress") == []


def test_duplicate_v1_progress_rows_collapse_to_latest(db_url):
    progress = [
        {"id": "old", "video_id": "v1", "current_time": 10.0, "duration": 600.5, "completed": False, "last_watched": "2024-02-01T09:00:00+00:00"},
        {"id": "new", "video_id": "v1", "current_time": 50.0, "duration": 600.5, "completed": False, "last_watched": "2024-02-03T09:00:00+00:00"},
    ]
    _make_v1_store(db_url, progress=progress)
    with Store.open(db_url) as store:
        rows = _rows(store.engine, 'SELECT id, "current_time" FROM video_progress')
    assert rows == [("new", 50.0)]


def test_failed_step_leaves_store_at_previous_version(db_url):
    # Two modules claiming the same slot violate the version-2 uniqueness rule.
    clashing = V1_MODULES + [{"id": "m9", "course_id": "c1", "name": "Dup", "path": "/courses/rust/dup", "order_index": 0}]
    _make_v1_store(db_url, modules=clashing)

    with pytest.raises(MigrationError) as err:
        Store.open(db_url)
    assert err.value.version == 2

    engine = make_engine(db_url)
    try:
        tables = set(inspect(engine).get_table_names())
        with engine.connect() as conn:
            assert read_schema_version(conn) == 1
        assert tables == {"courses", "modules", "videos", "video_progress"}
        assert len(_rows(engine, "SELECT id FROM modules")) == 4
        assert _rows(engine, "SELECT path FROM videos WHERE id = 'v1'") == [("/courses/rust/01/a.mp4",)]
    finally:
        engine.dispose()


def test_orphaned_rows_fail_the_step(db_url):
    orphan = V1_PROGRESS + [
        {"id": "p9", "video_id": "gone", "current_time": 1.0, "duration": 2.0, "completed": False, "last_watched": "2024-02-01T09:00:00+00:00"}
    ]
    engine = make_engine(db_url)
    with engine.connect() as conn:
        # v1 never enforced foreign keys
        conn.connection.dbapi_connection.execute("PRAGMA foreign_keys=OFF")
        with conn.begin():
            LEGACY_V1.create_all(conn)
            conn.execute(LEGACY_V1.tables["courses"].insert(), V1_COURSES)
            conn.execute(LEGACY_V1.tables["modules"].insert(), V1_MODULES)
            conn.execute(LEGACY_V1.tables["videos"].insert(), V1_VIDEOS)
            conn.execute(LEGACY_V1.tables["video_progress"].insert(), orphan)
    engine.dispose()

    with pytest.raises(MigrationError, match="schema version 2"):
        Store.open(db_url)


def test_newer_store_is_refused(db_url):
    Store.open(db_url).close()
    engine = make_engine(db_url)
    with engine.begin() as conn:
        conn.exec_driver_sql("UPDATE schema_metadata SET value = '3' WHERE key = 'version'")
    engine.dispose()

    with pytest.raises(UnsupportedSchemaVersionError) as err:
        Store.open(db_url)
    assert err.value.version == 3


def test_garbage_version_is_refused(db_url):
    Store.open(db_url).close()
    engine = make_engine(db_url)
    with engine.begin() as conn:
        conn.exec_driver_sql("UPDATE schema_metadata SET value = 'two' WHERE key = 'version'")
    engine.dispose()

    with pytest.raises(MigrationError):
        Store.open(db_url)


def test_every_version_after_the_baseline_has_a_step():
    assert sorted(STEPS) == list(range(2, SCHEMA_VERSION + 1))
    assert all(STEPS[v].version == v for v in STEPS)
