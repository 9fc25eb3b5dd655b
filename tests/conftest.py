from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from mediashelf import courses
from mediashelf.db import Store
from mediashelf.models import Course, Module, Video


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'library.db'}"


@pytest.fixture()
def store(db_url: str):
    with Store.open(db_url) as s:
        yield s


@dataclass
class Library:
    course: Course
    module: Module
    intro: Video
    lesson: Video


@pytest.fixture()
def library(store: Store) -> Library:
    course = courses.create_course(store, name="Python Basics", path="/media/courses/python-basics")
    module = courses.create_module(store, course.id, name="01 - Getting started", path="/media/courses/python-basics/01", order_index=0)
    intro = courses.create_video(
        store, module.id, name="Intro", file_path="/media/courses/python-basics/01/intro.mp4", order_index=0, duration=1200.0
    )
    lesson = courses.create_video(
        store, module.id, name="Variables", file_path="/media/courses/python-basics/01/variables.mp4", order_index=1
    )
    return Library(course=course, module=module, intro=intro, lesson=lesson)
