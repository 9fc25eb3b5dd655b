"""Migration engine.

The store carries its schema version in ``schema_metadata``. On open the
engine reads it and walks the registered steps up to ``SCHEMA_VERSION``; every
step runs in one transaction together with the metadata write, so a failed
step leaves the store exactly at the previous version.

A fresh store skips the walk: the current registry is created directly and
the default settings are seeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from sqlalchemy import MetaData, Table, inspect, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateColumn

from .errors import MigrationError, UnsupportedSchemaVersionError
from .models import SchemaMetadata
from .schema import (
    LEGACY_MARKER_TABLE,
    LEGACY_V1,
    SCHEMA_VERSION,
    current_schema,
    diff_schemas,
)
from .user_settings import seed_default_settings
from .utils import utcnow_iso


log = logging.getLogger(__name__)

META = SchemaMetadata.__table__


@dataclass(frozen=True)
class MigrationStep:
    version: int
    description: str
    apply: Callable[[Connection], None]


@dataclass
class MigrationResult:
    from_version: int
    to_version: int
    applied: list[int] = field(default_factory=list)
    fresh: bool = False


# ---------------------------------------------------------------------------
# metadata


def read_schema_version(conn: Connection) -> int:
    """Version recorded in the store; 0 for an empty file."""
    tables = set(inspect(conn).get_table_names())
    if META.name in tables:
        raw = conn.execute(select(META.c.value).where(META.c.key == "version")).scalar_one_or_none()
        if raw is not None:
            try:
                return int(raw)
            except ValueError:
                raise MigrationError(f"unreadable schema version {raw!r}") from None
    if LEGACY_MARKER_TABLE in tables:
        # Written by the first release, before the store recorded a version.
        return 1
    return 0


def read_metadata(conn: Connection) -> dict[str, str]:
    if META.name not in inspect(conn).get_table_names():
        return {}
    return {row.key: row.value for row in conn.execute(select(META.c.key, META.c.value))}


def _put_metadata(conn: Connection, key: str, value: str, *, overwrite: bool = True) -> None:
    now = utcnow_iso()
    stmt = sqlite_insert(META).values(key=key, value=value, updated_at=now)
    if overwrite:
        stmt = stmt.on_conflict_do_update(index_elements=[META.c.key], set_={"value": value, "updated_at": now})
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=[META.c.key])
    conn.execute(stmt)


def _record_version(conn: Connection, version: int) -> None:
    now = utcnow_iso()
    _put_metadata(conn, "created_at", now, overwrite=False)
    _put_metadata(conn, "version", str(version))
    _put_metadata(conn, "last_migration", now)


# ---------------------------------------------------------------------------
# applying a registry diff


def _table_columns(conn: Connection, table_name: str) -> set[str]:
    return {col["name"] for col in inspect(conn).get_columns(table_name)}


def _rebuild_table(
    conn: Connection,
    table: Table,
    *,
    from_version: int,
    renames: Mapping[str, str],
    backfill: Mapping[str, str],
    source_filter: Optional[str],
) -> None:
    # Rename aside, create the new shape, copy, drop. legacy_alter_table keeps
    # SQLite from rewriting other tables' REFERENCES to the renamed copy.
    legacy = f"_{table.name}_v{from_version}"
    conn.exec_driver_sql(f'ALTER TABLE "{table.name}" RENAME TO "{legacy}"')
    stale = conn.exec_driver_sql(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL",
        (legacy,),
    ).fetchall()
    for (index_name,) in stale:
        conn.exec_driver_sql(f'DROP INDEX "{index_name}"')

    table.create(conn)

    existing = _table_columns(conn, legacy)
    targets: list[str] = []
    sources: list[str] = []
    for col in table.columns:
        source = renames.get(col.name, col.name)
        if source in existing:
            expr = f'src."{source}"'
        elif col.name in backfill:
            expr = backfill[col.name]
        elif col.server_default is not None or col.nullable:
            continue
        else:
            raise MigrationError(f"no source or default for {table.name}.{col.name}")
        targets.append(f'"{col.name}"')
        sources.append(expr)

    sql = f'INSERT INTO "{table.name}" ({", ".join(targets)}) SELECT {", ".join(sources)} FROM "{legacy}" AS src'
    if source_filter:
        sql += f" WHERE {source_filter.format(legacy=legacy)}"
    conn.exec_driver_sql(sql)
    conn.exec_driver_sql(f'DROP TABLE "{legacy}"')


def _add_columns(conn: Connection, table: Table, columns: list[str], backfill: Mapping[str, str]) -> None:
    existing = _table_columns(conn, table.name)
    for name in columns:
        if name in existing:
            continue
        col = table.columns[name]
        column_ddl = CreateColumn(col).compile(dialect=conn.dialect)
        conn.exec_driver_sql(f'ALTER TABLE "{table.name}" ADD COLUMN {column_ddl}')
        if name in backfill:
            conn.exec_driver_sql(f'UPDATE "{table.name}" AS src SET "{name}" = {backfill[name]}')


def apply_schema_diff(
    conn: Connection,
    old: MetaData,
    new: MetaData,
    *,
    from_version: int,
    renames: Optional[Mapping[str, Mapping[str, str]]] = None,
    backfill: Optional[Mapping[str, Mapping[str, str]]] = None,
    source_filters: Optional[Mapping[str, str]] = None,
) -> None:
    """Bring the tables of ``old`` to the shape of ``new`` without losing rows.

    ``renames`` maps ``table -> {new_column: old_column}``; ``backfill`` maps
    ``table -> {column: SQL expression}`` evaluated per copied row (the old
    row is aliased ``src``); ``source_filters`` restricts which old rows are
    copied (``{legacy}`` is replaced by the aside table name).
    """
    renames = renames or {}
    backfill = backfill or {}
    source_filters = source_filters or {}
    diff = diff_schemas(old, new)

    conn.exec_driver_sql("PRAGMA legacy_alter_table=ON")
    try:
        for table in new.sorted_tables:
            if table.name in diff.new_tables:
                table.create(conn, checkfirst=True)
                continue
            change = diff.change_for(table.name)
            if change is None:
                continue
            if change.needs_rebuild:
                _rebuild_table(
                    conn,
                    table,
                    from_version=from_version,
                    renames=renames.get(table.name, {}),
                    backfill=backfill.get(table.name, {}),
                    source_filter=source_filters.get(table.name),
                )
            else:
                _add_columns(conn, table, change.added_columns, backfill.get(table.name, {}))
    finally:
        conn.exec_driver_sql("PRAGMA legacy_alter_table=OFF")

    for table in new.sorted_tables:
        for index in table.indexes:
            if index.name in diff.new_indexes:
                index.create(conn, checkfirst=True)


def _check_foreign_keys(conn: Connection) -> None:
    violations = conn.exec_driver_sql("PRAGMA foreign_key_check").fetchall()
    if violations:
        table, rowid, parent, _ = violations[0]
        raise MigrationError(
            f"{len(violations)} row(s) reference missing parents "
            f"(first: {table} rowid {rowid} -> {parent})"
        )


# ---------------------------------------------------------------------------
# steps


# The progress table had no uniqueness on video_id; keep the most recently
# watched row per video.
_LATEST_PROGRESS_ONLY = (
    'NOT EXISTS (SELECT 1 FROM "{legacy}" AS newer WHERE newer.video_id = src.video_id '
    "AND (newer.last_watched > src.last_watched "
    "OR (newer.last_watched = src.last_watched AND newer.rowid > src.rowid)))"
)


def _step_2(conn: Connection) -> None:
    duplicates = conn.exec_driver_sql(
        "SELECT COUNT(*) - COUNT(DISTINCT video_id) FROM video_progress"
    ).scalar_one()
    if duplicates:
        log.warning("collapsing %d duplicate progress row(s) to the latest per video", duplicates)

    apply_schema_diff(
        conn,
        LEGACY_V1,
        current_schema(),
        from_version=1,
        renames={"videos": {"file_path": "path"}},
        backfill={
            "courses": {
                "total_modules": "(SELECT COUNT(*) FROM modules m WHERE m.course_id = src.id)",
                "total_videos": "(SELECT COUNT(*) FROM videos v WHERE v.course_id = src.id)",
            },
            "modules": {
                "total_videos": "(SELECT COUNT(*) FROM videos v WHERE v.module_id = src.id)",
            },
            "video_progress": {"watch_count": "1"},
        },
        source_filters={"video_progress": _LATEST_PROGRESS_ONLY},
    )
    seed_default_settings(conn)


# Version 1 is the baseline written by the first release (schema.LEGACY_V1);
# there is no step for it. Empty stores are created at SCHEMA_VERSION directly.
STEPS: dict[int, MigrationStep] = {
    2: MigrationStep(2, "notes, bookmarks, settings, activity log; cascading keys", _step_2),
}


def _create_fresh(conn: Connection) -> None:
    current_schema().create_all(conn, checkfirst=True)
    seed_default_settings(conn)
    _record_version(conn, SCHEMA_VERSION)


def migrate(engine: Engine) -> MigrationResult:
    """Bring the store behind ``engine`` to ``SCHEMA_VERSION``.

    Raises MigrationError naming the failing version; the store then stays at
    the last version that fully committed.
    """
    with engine.connect() as conn:
        with conn.begin():
            current = read_schema_version(conn)

        if current > SCHEMA_VERSION:
            raise UnsupportedSchemaVersionError(
                f"store is newer than supported (max {SCHEMA_VERSION})", current
            )
        if current == SCHEMA_VERSION:
            log.debug("store already at schema version %d", current)
            return MigrationResult(current, current)

        if current == 0:
            log.info("initializing fresh store at schema version %d", SCHEMA_VERSION)
            try:
                with conn.begin():
                    _create_fresh(conn)
            except Exception as exc:
                log.exception("fresh store initialization failed")
                raise MigrationError(str(exc), SCHEMA_VERSION) from exc
            return MigrationResult(0, SCHEMA_VERSION, [SCHEMA_VERSION], fresh=True)

        result = MigrationResult(current, current)
        # Table rebuilds drop and recreate parents; foreign keys are checked
        # explicitly at the end of each step instead. The pragma is a no-op
        # inside a transaction, so it goes straight to the driver connection.
        raw = conn.connection.dbapi_connection
        raw.execute("PRAGMA foreign_keys=OFF")
        try:
            for version in range(current + 1, SCHEMA_VERSION + 1):
                step = STEPS[version]
                log.info("migrating store to schema version %d: %s", version, step.description)
                try:
                    with conn.begin():
                        step.apply(conn)
                        _check_foreign_keys(conn)
                        _record_version(conn, version)
                except MigrationError as exc:
                    log.error("migration to schema version %d failed: %s", version, exc)
                    if exc.version is None:
                        raise MigrationError(str(exc), version) from exc
                    raise
                except Exception as exc:
                    log.exception("migration to schema version %d failed", version)
                    raise MigrationError(str(exc), version) from exc
                result.applied.append(version)
                result.to_version = version
        finally:
            raw.execute("PRAGMA foreign_keys=ON")

        log.info("store migrated from schema version %d to %d", result.from_version, result.to_version)
        return result
