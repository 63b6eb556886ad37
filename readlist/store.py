"""
SQLite persistence for reading-list entries.

Every operation is a single parameterised statement against the
``readings`` table; driver errors surface as :class:`StorageError`.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

STATUSES = ("unread", "to-be-read", "halfway", "read")
TYPES = ("article", "book", "video")
DEFAULT_STATUS = "unread"
DEFAULT_TYPE = "article"

# SQLite INTEGER is a signed 64-bit value; larger ids can never exist
MAX_ID = 2**63 - 1

COLUMNS = "id, url, title, description, source, type, status, add_date, add_time"

SCHEMA = """
CREATE TABLE IF NOT EXISTS readings (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    url         TEXT NOT NULL,
    title       TEXT NOT NULL,
    description TEXT,
    source      TEXT,
    type        TEXT,
    status      TEXT,
    add_date    DATE DEFAULT CURRENT_DATE,
    add_time    TIME DEFAULT CURRENT_TIME
);
CREATE INDEX IF NOT EXISTS idx_readings_status ON readings(status);
"""

SAMPLE_READINGS = (
    {
        "url": "https://go.dev/doc",
        "title": "Go Documentation",
        "description": "Official Go programming language documentation",
        "source": "go.dev",
        "type": "article",
    },
    {
        "url": "https://github.com/ismi-abbas/reading-list",
        "title": "Reading List Project",
        "description": "A simple reading list application built with Go",
        "source": "GitHub",
        "type": "article",
    },
)


class ValidationError(ValueError):
    """A submitted entry is missing a required field or has a bad value."""


class StorageError(RuntimeError):
    """The database could not be reached or a statement failed."""


@dataclass
class ReadingEntry:
    url: str = ""
    title: str = ""
    description: str = ""
    source: str = ""
    type: str = DEFAULT_TYPE
    status: str = DEFAULT_STATUS
    id: int | None = None
    add_date: str | None = None
    add_time: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ReadingEntry":
        return cls(
            id=row["id"],
            url=row["url"],
            title=row["title"] or "",
            description=row["description"] or "",
            source=row["source"] or "",
            type=row["type"] or DEFAULT_TYPE,
            status=row["status"] or DEFAULT_STATUS,
            add_date=row["add_date"],
            add_time=row["add_time"],
        )


def valid_id(entry_id: int) -> bool:
    return -MAX_ID - 1 <= entry_id <= MAX_ID


def normalize_type(value: str | None) -> str:
    """Lower-case *value*; blank means ``article``; anything unknown is rejected."""
    kind = (value or DEFAULT_TYPE).strip().lower() or DEFAULT_TYPE
    if kind not in TYPES:
        raise ValidationError(f"Unknown reading type “{value}”")
    return kind


class Store:
    """Reading-list operations over one open sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ------------------------------------------------------------------ #
    # schema
    # ------------------------------------------------------------------ #
    def ensure_schema(self) -> None:
        try:
            self.conn.executescript(SCHEMA)
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot create readings table – {exc}") from exc

    def seed(self, samples=SAMPLE_READINGS) -> int:
        """Insert *samples* when the table is empty; return how many went in."""
        try:
            (count,) = self.conn.execute("SELECT COUNT(*) FROM readings").fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot count readings – {exc}") from exc
        if count:
            return 0
        for sample in samples:
            self.create(ReadingEntry(**sample))
        return len(samples)

    # ------------------------------------------------------------------ #
    # reads
    # ------------------------------------------------------------------ #
    def _fetch(self, sql: str, params: tuple = ()) -> list[ReadingEntry]:
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read readings – {exc}") from exc
        return [ReadingEntry.from_row(r) for r in rows]

    def list_all(self) -> list[ReadingEntry]:
        return self._fetch(f"SELECT {COLUMNS} FROM readings ORDER BY id")

    def list_by_status(self, status: str) -> list[ReadingEntry]:
        """Entries whose status matches exactly; unknown statuses give []."""
        return self._fetch(
            f"SELECT {COLUMNS} FROM readings WHERE status=? ORDER BY id", (status,)
        )

    def get(self, entry_id: int) -> ReadingEntry | None:
        if not valid_id(entry_id):
            return None
        found = self._fetch(f"SELECT {COLUMNS} FROM readings WHERE id=?", (entry_id,))
        return found[0] if found else None

    def count_by_status(self, status: str) -> int:
        try:
            (count,) = self.conn.execute(
                "SELECT COUNT(*) FROM readings WHERE status=?", (status,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot count readings – {exc}") from exc
        return count

    # ------------------------------------------------------------------ #
    # writes
    # ------------------------------------------------------------------ #
    def create(self, entry: ReadingEntry) -> int:
        """
        Insert *entry* and return its new id.

        • ``status`` is always stored as ``unread``
        • ``add_date`` / ``add_time`` come from the column defaults
        """
        url = (entry.url or "").strip()
        if not url:
            raise ValidationError("URL is required")
        kind = normalize_type(entry.type)

        try:
            cur = self.conn.execute(
                "INSERT INTO readings (url, title, description, type, source, status) "
                "VALUES (?,?,?,?,?,?)",
                (
                    url,
                    entry.title or "",
                    entry.description or "",
                    kind,
                    entry.source or "",
                    DEFAULT_STATUS,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot add reading – {exc}") from exc
        return cur.lastrowid

    def delete(self, entry_id: int) -> bool:
        """Remove the entry; a missing id is not an error (returns False)."""
        if not valid_id(entry_id):
            return False
        try:
            cur = self.conn.execute("DELETE FROM readings WHERE id=?", (entry_id,))
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot delete reading – {exc}") from exc
        return cur.rowcount > 0
