from __future__ import annotations

import threading

import pytest

from mediashelf import notes, progress
from mediashelf.errors import NotFoundError, ValidationError


def test_note_on_video_inherits_scope(store, library):
    note = notes.create_note(store, "Key idea", "print() is a function", video_id=library.intro.id, timestamp=42.0)

    assert note.module_id == library.module.id
    assert note.course_id == library.course.id
    assert notes.get_note(store, note.id).timestamp == 42.0


def test_note_on_module_inherits_course(store, library):
    note = notes.create_note(store, "Module", "overview", module_id=library.module.id)
    assert note.video_id is None
    assert note.course_id == library.course.id


def test_contradicting_scope_is_rejected(store, library):
    with pytest.raises(ValidationError):
        notes.create_note(store, "x", "y", video_id=library.intro.id, course_id="some-other-course")
    with pytest.raises(ValidationError):
        notes.create_note(store, "x", "y", module_id=library.module.id, course_id="some-other-course")


def test_unscoped_note(store, library):
    free = notes.create_note(store, "Free", "not tied to anything")
    notes.create_note(store, "Tied", "c", course_id=library.course.id)

    assert [n.id for n in notes.list_notes(store, unscoped=True)] == [free.id]
    assert len(notes.get_all_notes(store)) == 2


def test_note_requires_title(store):
    with pytest.raises(ValidationError):
        notes.create_note(store, "   ", "content")


@pytest.mark.parametrize("content", [None, "", "  \n"])
def test_note_requires_content(store, library, content):
    with pytest.raises(ValidationError):
        notes.create_note(store, "Title", content, video_id=library.intro.id)
    assert notes.get_notes_by_video(store, library.intro.id) == []


def test_update_rejects_blank_content(store, library):
    note = notes.create_note(store, "t", "keep me", video_id=library.intro.id)
    with pytest.raises(ValidationError):
        notes.update_note(store, note.id, content=" ")
    assert notes.get_note(store, note.id).content == "keep me"


def test_note_type_is_checked(store):
    with pytest.raises(ValidationError):
        notes.create_note(store, "t", "c", note_type="rant")


def test_note_for_missing_video(store):
    with pytest.raises(NotFoundError):
        notes.create_note(store, "t", "c", video_id="missing")


@pytest.mark.parametrize("timestamp", [-1.0, 1200.5, float("nan")])
def test_timestamp_outside_known_duration(store, library, timestamp):
    with pytest.raises(ValidationError):
        notes.create_note(store, "t", "c", video_id=library.intro.id, timestamp=timestamp)


def test_timestamp_uses_reported_duration_when_video_has_none(store, library):
    # No duration known yet: anything non-negative goes.
    notes.create_note(store, "early", "c", video_id=library.lesson.id, timestamp=5000.0)

    progress.update_video_progress(store, library.lesson.id, 10.0, 300.0)
    with pytest.raises(ValidationError):
        notes.create_note(store, "late", "c", video_id=library.lesson.id, timestamp=400.0)


def test_video_notes_ordered_by_timestamp(store, library):
    vid = library.intro.id
    late = notes.create_note(store, "late", "c", video_id=vid, timestamp=900.0)
    anywhere = notes.create_note(store, "anywhere", "c", video_id=vid)
    early = notes.create_note(store, "early", "c", video_id=vid, timestamp=10.0)

    ids = [n.id for n in notes.get_notes_by_video(store, vid)]
    assert ids == [early.id, late.id, anywhere.id]

    ids = [n.id for n in notes.get_notes_by_video(store, vid, descending=True)]
    assert ids == [late.id, early.id, anywhere.id]

    ids = [n.id for n in notes.get_notes_by_video(store, vid, order_by="title")]
    assert ids == [anywhere.id, early.id, late.id]


def test_update_note(store, library):
    note = notes.create_note(store, "Draft", "v1", video_id=library.intro.id)

    updated = notes.update_note(store, note.id, content="v2")

    assert updated.title == "Draft"
    assert updated.content == "v2"
    assert updated.updated_at >= note.updated_at


def test_update_missing_note(store):
    with pytest.raises(NotFoundError):
        notes.update_note(store, "missing", title="x")


def test_delete_note_is_idempotent(store, library):
    note = notes.create_note(store, "t", "c", video_id=library.intro.id)
    assert notes.delete_note(store, note.id) is True
    assert notes.delete_note(store, note.id) is False
    assert notes.get_note(store, note.id) is None


def test_bookmarks(store, library):
    vid = library.intro.id
    second = notes.create_bookmark(store, vid, 600.0, "Halfway")
    first = notes.create_bookmark(store, vid, 30.0, "Setup", "install python")

    assert [b.id for b in notes.list_bookmarks(store, vid)] == [first.id, second.id]

    renamed = notes.update_bookmark(store, second.id, title="Middle")
    assert renamed.title == "Middle"
    assert renamed.timestamp == 600.0

    assert notes.delete_bookmark(store, first.id) is True
    assert notes.delete_bookmark(store, first.id) is False
    assert [b.id for b in notes.list_bookmarks(store, vid)] == [second.id]


def test_bookmark_validation(store, library):
    with pytest.raises(ValidationError):
        notes.create_bookmark(store, library.intro.id, 1300.0, "past the end")
    with pytest.raises(ValidationError):
        notes.create_bookmark(store, library.intro.id, 10.0, "")
    with pytest.raises(NotFoundError):
        notes.create_bookmark(store, "missing", 10.0, "t")


def test_note_writes_race_progress_writes(store, library):
    vid = library.intro.id
    rounds = 10
    errors = []

    def run(target):
        def worker():
            try:
                barrier.wait()
                target()
            except Exception as exc:  # collected and asserted below
                errors.append(exc)

        return threading.Thread(target=worker)

    for i in range(rounds):
        barrier = threading.Barrier(2)
        threads = [
            run(lambda i=i: notes.create_note(store, f"note {i}", "c", video_id=vid, timestamp=float(i))),
            run(lambda i=i: progress.update_video_progress(store, vid, 10.0 + i, 1200.0)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert errors == []
    assert len(notes.get_notes_by_video(store, vid)) == rounds
    assert progress.get_video_progress(store, vid).current_time == 10.0 + rounds - 1
