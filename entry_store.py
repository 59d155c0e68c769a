"""SQLite-backed store for fetched feed entries."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from models import Entry

ENTRY_STORE_PATH = os.getenv("ENTRY_STORE_PATH", "data/entries.db")

LOGGER = logging.getLogger(__name__)


class EntryStoreError(Exception):
    """Raised when an entry cannot be read from or written to the store."""


class EntryStore:
    """Durable entry store keyed by link.

    Every write runs in its own transaction. There is no batch transaction,
    so an interrupted fetch leaves the entries written so far in place.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        link TEXT UNIQUE NOT NULL,
        title TEXT NOT NULL,
        author TEXT NOT NULL DEFAULT '',
        published_date TIMESTAMP NOT NULL,
        content_snippet TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        categories TEXT NOT NULL DEFAULT '[]',
        stored_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_entries_published ON entries(published_date);
    """

    def __init__(self, db_path: Path | str = ENTRY_STORE_PATH):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(self.SCHEMA)
            self.conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise EntryStoreError(f"cannot open entry store at {self.db_path}: {exc}") from exc

    def add(self, entry: Entry) -> int:
        """Insert or update one entry atomically and return its row id."""
        try:
            # One lock per connection: a shared connection has a single open transaction.
            with self._lock, self.conn:
                self.conn.execute(
                    """INSERT INTO entries
                       (link, title, author, published_date, content_snippet, content, categories)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(link) DO UPDATE SET
                           title = excluded.title,
                           author = excluded.author,
                           published_date = excluded.published_date,
                           content_snippet = excluded.content_snippet,
                           content = excluded.content,
                           categories = excluded.categories""",
                    (
                        entry.link,
                        entry.title,
                        entry.author,
                        entry.published_date.astimezone(UTC).isoformat(),
                        entry.content_snippet,
                        entry.content,
                        json.dumps(list(entry.categories)),
                    ),
                )
                row_id = self.conn.execute(
                    "SELECT id FROM entries WHERE link = ?", (entry.link,)
                ).fetchone()["id"]
        except sqlite3.Error as exc:
            raise EntryStoreError(f"failed to write entry link={entry.link}: {exc}") from exc

        LOGGER.debug("Stored entry id=%s link=%s", row_id, entry.link)
        return row_id

    def get(self, link: str) -> Entry | None:
        """Return the stored entry for ``link``, or None."""
        rows = self._query("SELECT * FROM entries WHERE link = ?", (link,))
        return _row_to_entry(rows[0]) if rows else None

    def list_entries(self, limit: int | None = None) -> list[Entry]:
        """Return stored entries, newest first."""
        sql = "SELECT * FROM entries ORDER BY published_date DESC, id ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [_row_to_entry(row) for row in self._query(sql, params)]

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM entries")[0][0]

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> EntryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise EntryStoreError(f"entry store query failed: {exc}") from exc


def _row_to_entry(row: sqlite3.Row) -> Entry:
    published = datetime.fromisoformat(row["published_date"])
    if published.tzinfo is None:
        published = published.replace(tzinfo=UTC)
    return Entry(
        title=row["title"],
        link=row["link"],
        published_date=published,
        author=row["author"],
        content_snippet=row["content_snippet"],
        content=row["content"],
        categories=tuple(json.loads(row["categories"])),
    )
