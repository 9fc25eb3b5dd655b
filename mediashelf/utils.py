from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone


def natural_key(s: str):
    """Sort key that treats digit runs as integers ("2" < "10")."""
    return [int(t) if t.isdigit() else t.lower() for t in re.split(r"(\d+)", s)]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()
