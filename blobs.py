from __future__ import annotations

import sqlite3
from typing import NamedTuple


class BlobSlot(NamedTuple):
    table: str
    key_columns: tuple[str, ...]
    blob_column: str
    mime_column: str
    upsert: bool = False


BLOB_SLOTS = {
    "student_photo": BlobSlot("student", ("usn",), "photo_data", "photo_type"),
    "faculty_photo": BlobSlot("faculty", ("ssn_id",), "photo_data", "photo_type"),
    "note": BlobSlot("notes", ("id",), "file_data", "file_type"),
    "announcement": BlobSlot("announcements", ("id",), "file_data", "file_type"),
    "timetable": BlobSlot("timetable", ("sem", "section"), "file_data", "file_type", upsert=True),
}


def _slot(kind: str) -> BlobSlot:
    try:
        return BLOB_SLOTS[kind]
    except KeyError:
        raise ValueError(f"Unknown blob kind: {kind}") from None


def _key_tuple(slot: BlobSlot, key: object) -> tuple:
    values = key if isinstance(key, tuple) else (key,)
    if len(values) != len(slot.key_columns):
        raise ValueError(f"{slot.table} blobs are keyed by {', '.join(slot.key_columns)}")
    return values


def put_blob(
    db: sqlite3.Connection,
    kind: str,
    key: object,
    blob: bytes,
    mime: str | None,
    **extra: object,
) -> bool:
    slot = _slot(kind)
    values = _key_tuple(slot, key)
    mime = mime or "application/octet-stream"

    if slot.upsert:
        columns = [*slot.key_columns, slot.blob_column, slot.mime_column, *extra]
        updates = [slot.blob_column, slot.mime_column, *extra]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{col} = excluded.{col}" for col in updates)
        db.execute(
            f"""
            INSERT INTO {slot.table} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT({", ".join(slot.key_columns)}) DO UPDATE SET {assignments}
            """,
            (*values, blob, mime, *extra.values()),
        )
        return True

    where = " AND ".join(f"{col} = ?" for col in slot.key_columns)
    assignments = ", ".join(f"{col} = ?" for col in (slot.blob_column, slot.mime_column, *extra))
    cursor = db.execute(
        f"UPDATE {slot.table} SET {assignments} WHERE {where}",
        (blob, mime, *extra.values(), *values),
    )
    return cursor.rowcount > 0


def get_blob(db: sqlite3.Connection, kind: str, key: object) -> tuple[bytes, str] | None:
    slot = _slot(kind)
    values = _key_tuple(slot, key)
    where = " AND ".join(f"{col} = ?" for col in slot.key_columns)
    row = db.execute(
        f"SELECT {slot.blob_column} AS blob, {slot.mime_column} AS mime FROM {slot.table} WHERE {where}",
        values,
    ).fetchone()
    if not row or row["blob"] is None:
        return None
    return bytes(row["blob"]), row["mime"] or "application/octet-stream"
