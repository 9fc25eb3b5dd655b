"""Schema registry.

Each schema version is a plain SQLAlchemy ``MetaData``. The current version
is whatever the SQLModel tables in :mod:`mediashelf.models` declare; older
versions are frozen here so a migration step can be derived by diffing two
registries instead of being written by hand.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)
from sqlmodel import SQLModel

from . import models  # noqa: F401  (registers the tables on SQLModel.metadata)


SCHEMA_VERSION = 2

# A store with this table but no metadata row predates schema versioning.
LEGACY_MARKER_TABLE = "courses"


def _legacy_v1() -> MetaData:
    # Shape written by the first release: no cascades, no counters, one
    # progress row per save (no uniqueness on video_id) and the video file
    # stored under ``path``.
    md = MetaData()
    Table(
        "courses",
        md,
        Column("id", Text, primary_key=True),
        Column("name", Text, nullable=False),
        Column("path", Text, nullable=False, unique=True),
        Column("created_at", Text, nullable=False),
        Column("last_accessed", Text),
    )
    Table(
        "modules",
        md,
        Column("id", Text, primary_key=True),
        Column("course_id", Text, ForeignKey("courses.id"), nullable=False),
        Column("name", Text, nullable=False),
        Column("path", Text, nullable=False),
        Column("order_index", Integer, nullable=False),
    )
    Table(
        "videos",
        md,
        Column("id", Text, primary_key=True),
        Column("module_id", Text, ForeignKey("modules.id"), nullable=False),
        Column("course_id", Text, ForeignKey("courses.id"), nullable=False),
        Column("name", Text, nullable=False),
        Column("path", Text, nullable=False, unique=True),
        Column("duration", Float),
        Column("order_index", Integer, nullable=False),
    )
    Table(
        "video_progress",
        md,
        Column("id", Text, primary_key=True),
        Column("video_id", Text, ForeignKey("videos.id"), nullable=False),
        Column("current_time", Float, nullable=False),
        Column("duration", Float, nullable=False),
        Column("completed", Boolean, nullable=False, server_default="0"),
        Column("last_watched", Text, nullable=False),
    )
    return md


LEGACY_V1 = _legacy_v1()


def current_schema() -> MetaData:
    return SQLModel.metadata


def schema_for_version(version: int) -> MetaData:
    if version == 1:
        return LEGACY_V1
    if version == SCHEMA_VERSION:
        return current_schema()
    raise KeyError(f"no registry for schema version {version}")


@dataclass
class TableChange:
    name: str
    added_columns: list[str] = field(default_factory=list)
    removed_columns: list[str] = field(default_factory=list)
    constraints_changed: bool = False

    @property
    def needs_rebuild(self) -> bool:
        # SQLite can only ADD COLUMN in place; anything else means copying
        # the rows into a freshly created table.
        return bool(self.removed_columns) or self.constraints_changed


@dataclass
class SchemaDiff:
    new_tables: list[str] = field(default_factory=list)
    changed_tables: list[TableChange] = field(default_factory=list)
    new_indexes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new_tables or self.changed_tables or self.new_indexes)

    def change_for(self, table_name: str) -> TableChange | None:
        for change in self.changed_tables:
            if change.name == table_name:
                return change
        return None


def _constraint_signature(table: Table, shared_columns: set[str]) -> frozenset:
    sig: set = set()
    sig.add(("pk", tuple(sorted(c.name for c in table.primary_key.columns))))
    for col in table.columns:
        # Nullability of added or dropped columns is not a constraint change.
        if col.name in shared_columns and not col.primary_key:
            sig.add(("nullable", col.name, bool(col.nullable)))
        if col.unique:
            sig.add(("unique", (col.name,)))
    for fk in table.foreign_keys:
        sig.add(("fk", fk.parent.name, fk.target_fullname, (fk.ondelete or "").upper()))
    for cons in table.constraints:
        if isinstance(cons, UniqueConstraint):
            sig.add(("unique", tuple(c.name for c in cons.columns)))
    return frozenset(sig)


def diff_schemas(old: MetaData, new: MetaData) -> SchemaDiff:
    """Describe what it takes to move a store from ``old`` to ``new``.

    Tables are listed in dependency order so they can be created or rebuilt
    front to back.
    """
    diff = SchemaDiff()
    old_tables = old.tables

    for table in new.sorted_tables:
        previous = old_tables.get(table.name)
        if previous is None:
            diff.new_tables.append(table.name)
        else:
            old_cols = [c.name for c in previous.columns]
            new_cols = [c.name for c in table.columns]
            shared = set(old_cols) & set(new_cols)
            change = TableChange(
                name=table.name,
                added_columns=[c for c in new_cols if c not in old_cols],
                removed_columns=[c for c in old_cols if c not in new_cols],
                constraints_changed=(
                    _constraint_signature(previous, shared) != _constraint_signature(table, shared)
                ),
            )
            if change.added_columns or change.needs_rebuild:
                diff.changed_tables.append(change)

        old_index_names = {ix.name for ix in previous.indexes} if previous is not None else set()
        for index in sorted(table.indexes, key=lambda ix: ix.name or ""):
            if index.name not in old_index_names:
                diff.new_indexes.append(index.name)

    return diff
