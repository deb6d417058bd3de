import pytest

from blobs import get_blob, put_blob
from conftest import add_student


def test_photo_update_in_place(db):
    add_student(db, "1XX21CS001", "Asha")
    assert put_blob(db, "student_photo", "1XX21CS001", b"img", "image/png") is True
    assert get_blob(db, "student_photo", "1XX21CS001") == (b"img", "image/png")


def test_missing_owner_is_reported(db):
    assert put_blob(db, "note", 7, b"data", "application/pdf") is False
    assert get_blob(db, "note", 7) is None


def test_empty_slot_returns_none(db):
    add_student(db, "1XX21CS001", "Asha")
    assert get_blob(db, "student_photo", "1XX21CS001") is None


def test_timetable_upserts_per_class(db):
    put_blob(db, "timetable", (5, "A"), b"one", "application/pdf", file_name="a.pdf")
    put_blob(db, "timetable", (5, "A"), b"two", None, file_name="b.pdf")
    put_blob(db, "timetable", (5, "B"), b"three", "image/png", file_name="c.png")
    db.commit()

    assert get_blob(db, "timetable", (5, "A")) == (b"two", "application/octet-stream")
    assert db.execute("SELECT COUNT(*) FROM timetable").fetchone()[0] == 2


def test_unknown_kind(db):
    with pytest.raises(ValueError):
        get_blob(db, "avatar", 1)


def test_key_shape_must_match(db):
    with pytest.raises(ValueError):
        put_blob(db, "timetable", 5, b"x", "application/pdf")
