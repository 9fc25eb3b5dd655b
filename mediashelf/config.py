from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path


APP_DIR_NAME = "MediaShelf"


@dataclass(frozen=True)
class Settings:
    courses_dir: Path
    data_dir: Path
    database_url: str
    progress_window_seconds: float
    log_level: str


def default_data_dir() -> Path:
    """Per-user application-data directory for the current platform."""
    if sys.platform.startswith("win"):
        base = os.getenv("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    base = os.getenv("XDG_DATA_HOME", "").strip() or str(Path.home() / ".local" / "share")
    return Path(base) / APP_DIR_NAME


def get_settings() -> Settings:
    courses_dir_raw = os.getenv("COURSES_DIR", "").strip()
    if not courses_dir_raw:
        courses_dir = Path("./courses").resolve()
    else:
        courses_dir = Path(courses_dir_raw).expanduser().resolve()

    data_dir_raw = os.getenv("MEDIASHELF_DATA_DIR", "").strip()
    data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else default_data_dir()

    database_url = os.getenv("DATABASE_URL", "").strip() or f"sqlite:///{data_dir / 'database.db'}"

    window = float(os.getenv("PROGRESS_WINDOW_SECONDS", "5").strip() or 5)
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return Settings(
        courses_dir=courses_dir,
        data_dir=data_dir,
        database_url=database_url,
        progress_window_seconds=window,
        log_level=log_level,
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
