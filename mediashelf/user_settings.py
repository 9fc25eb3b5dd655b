"""User settings.

On disk every value is text tagged with ``setting_type``; callers only ever
see ``str``, ``bool`` or ``float``. Encoding and decoding live here and
nowhere else.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select

from .activity import record_activity
from .db import Store, storage_operation
from .errors import ValidationError
from .models import UserSetting
from .utils import is_blank, new_id, utcnow_iso


SettingValue = Union[str, bool, float]


class SettingType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    NUMBER = "number"


DEFAULT_SETTINGS: tuple[tuple[str, SettingValue], ...] = (
    ("theme", "dark"),
    ("auto_play_next", True),
    ("playback_speed", 1.0),
    ("volume", 0.8),
    ("auto_save_progress", True),
    ("show_subtitles", False),
    ("language", "pt-BR"),
)


@dataclass(frozen=True)
class TypedSetting:
    key: str
    value: SettingValue
    setting_type: SettingType
    updated_at: str


def infer_type(value: SettingValue) -> SettingType:
    # bool first: it is also an int
    if isinstance(value, bool):
        return SettingType.BOOLEAN
    if isinstance(value, (int, float)):
        return SettingType.NUMBER
    if isinstance(value, str):
        return SettingType.STRING
    raise ValidationError(f"unsupported setting value {value!r}")


def _parse_type(setting_type: Union[str, SettingType]) -> SettingType:
    try:
        return SettingType(setting_type)
    except ValueError:
        raise ValidationError(f"unknown setting type {setting_type!r}") from None


def decode_value(raw: str, setting_type: Union[str, SettingType]) -> SettingValue:
    kind = _parse_type(setting_type)
    if kind is SettingType.STRING:
        return raw
    if kind is SettingType.BOOLEAN:
        lowered = raw.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        raise ValidationError(f"{raw!r} is not a boolean")
    try:
        number = float(raw)
    except ValueError:
        raise ValidationError(f"{raw!r} is not a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{raw!r} is not a finite number")
    return number


def encode_value(value: SettingValue, setting_type: Union[str, SettingType, None] = None) -> tuple[str, SettingType]:
    """Text form of ``value`` plus its tag.

    Without an explicit type the tag follows the Python type. With one, a
    string value must parse as that type (the UI sends everything as text).
    """
    kind = infer_type(value) if setting_type is None else _parse_type(setting_type)

    if kind is SettingType.STRING:
        if not isinstance(value, str):
            raise ValidationError(f"{value!r} is not a string")
        return value, kind

    if isinstance(value, str):
        value = decode_value(value, kind)

    if kind is SettingType.BOOLEAN:
        if not isinstance(value, bool):
            raise ValidationError(f"{value!r} is not a boolean")
        return ("true" if value else "false"), kind

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{value!r} is not a number")
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{value!r} is not a finite number")
    return repr(number), kind


def _typed(row: UserSetting) -> TypedSetting:
    kind = _parse_type(row.setting_type)
    return TypedSetting(
        key=row.setting_key,
        value=decode_value(row.setting_value, kind),
        setting_type=kind,
        updated_at=row.updated_at,
    )


def seed_default_settings(conn) -> int:
    """Insert the default set for keys not present yet; returns how many.

    Takes a Connection or Session, so the migration engine can seed inside
    its own transaction.
    """
    table = UserSetting.__table__
    now = utcnow_iso()
    inserted = 0
    for key, value in DEFAULT_SETTINGS:
        raw, kind = encode_value(value)
        stmt = (
            sqlite_insert(table)
            .values(id=new_id(), setting_key=key, setting_value=raw, setting_type=kind.value, updated_at=now)
            .on_conflict_do_nothing(index_elements=[table.c.setting_key])
        )
        inserted += conn.execute(stmt).rowcount
    return inserted


@storage_operation
def initialize_default_settings(store: Store) -> int:
    with store.transaction() as session:
        inserted = seed_default_settings(session)
        if inserted:
            record_activity(session, "settings_initialized", "defaults", "setting", f"{inserted} default setting(s) added")
        return inserted


@storage_operation
def get_user_setting(store: Store, key: str) -> Optional[TypedSetting]:
    with store.session() as session:
        row = session.exec(select(UserSetting).where(UserSetting.setting_key == key)).first()
        return _typed(row) if row else None


@storage_operation
def get_all_settings(store: Store) -> list[TypedSetting]:
    with store.session() as session:
        rows = session.exec(select(UserSetting).order_by(UserSetting.setting_key)).all()
        return [_typed(row) for row in rows]


@storage_operation
def set_user_setting(
    store: Store,
    key: str,
    value: SettingValue,
    setting_type: Union[str, SettingType, None] = None,
) -> TypedSetting:
    """Create a setting, or change the value of an existing one.

    An existing setting keeps its declared type: the value must parse as that
    type, and an explicit ``setting_type`` that differs is rejected.
    """
    if is_blank(key):
        raise ValidationError("setting_key is required")
    key = key.strip()
    if setting_type is not None:
        setting_type = _parse_type(setting_type)

    with store.transaction() as session:
        row = session.exec(select(UserSetting).where(UserSetting.setting_key == key)).first()
        if row is None:
            raw, kind = encode_value(value, setting_type)
            row = UserSetting(setting_key=key, setting_value=raw, setting_type=kind.value)
            activity = "setting_created"
        else:
            stored = _parse_type(row.setting_type)
            if setting_type is not None and setting_type is not stored:
                raise ValidationError(f"{key} is a {stored.value} setting, not {setting_type.value}")
            raw, _ = encode_value(value, stored)
            row.setting_value = raw
            row.updated_at = utcnow_iso()
            activity = "setting_updated"
        session.add(row)
        session.flush()
        record_activity(session, activity, row.id, "setting", f"{key} = {raw}")
        return _typed(row)
