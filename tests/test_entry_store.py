from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from entry_store import EntryStore, EntryStoreError
from models import Entry

SAMPLE_ENTRY = Entry(
    title="Mashup APIs",
    link="https://example.com/post/1",
    published_date=datetime(2016, 5, 2, 10, 0, tzinfo=UTC),
    author="Jane",
    content_snippet="Short",
    content="<p>Long body</p>",
    categories=("API", "News"),
)


@pytest.fixture
def store(tmp_path: Path):
    with EntryStore(tmp_path / "data" / "entries.db") as s:
        yield s


def test_store_creates_parent_dir_and_table(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "dir" / "entries.db"
    with EntryStore(db_path) as s:
        tables = s.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()

    assert db_path.exists()
    assert "entries" in {row[0] for row in tables}


def test_add_and_get_round_trips_all_fields(store: EntryStore) -> None:
    store.add(SAMPLE_ENTRY)
    assert store.get(SAMPLE_ENTRY.link) == SAMPLE_ENTRY


def test_get_unknown_link_returns_none(store: EntryStore) -> None:
    assert store.get("https://example.com/missing") is None


def test_add_same_link_updates_instead_of_duplicating(store: EntryStore) -> None:
    first_id = store.add(SAMPLE_ENTRY)
    updated = Entry(
        title="Mashup APIs (updated)",
        link=SAMPLE_ENTRY.link,
        published_date=SAMPLE_ENTRY.published_date,
    )
    second_id = store.add(updated)

    assert first_id == second_id
    assert store.count() == 1
    assert store.get(SAMPLE_ENTRY.link) == updated


def test_non_utc_dates_are_stored_as_utc(store: EntryStore) -> None:
    pacific = timezone(timedelta(hours=-8))
    entry = Entry(
        title="Offset",
        link="https://example.com/offset",
        published_date=datetime(2016, 2, 3, 8, 15, tzinfo=pacific),
    )
    store.add(entry)

    stored = store.get(entry.link)
    assert stored is not None
    assert stored.published_date == entry.published_date
    assert stored.published_date.utcoffset() == timedelta(0)


def test_list_entries_newest_first_with_limit(store: EntryStore) -> None:
    base = datetime(2016, 5, 1, tzinfo=UTC)
    for day in (1, 3, 2):
        store.add(
            Entry(
                title=f"Day {day}",
                link=f"https://example.com/{day}",
                published_date=base + timedelta(days=day),
            )
        )

    assert [e.title for e in store.list_entries()] == ["Day 3", "Day 2", "Day 1"]
    assert [e.title for e in store.list_entries(limit=2)] == ["Day 3", "Day 2"]


def test_entries_persist_across_connections(tmp_path: Path) -> None:
    db_path = tmp_path / "entries.db"
    with EntryStore(db_path) as s:
        s.add(SAMPLE_ENTRY)

    with EntryStore(db_path) as s:
        assert s.count() == 1
        assert s.get(SAMPLE_ENTRY.link) == SAMPLE_ENTRY


def test_failed_add_rolls_back_and_raises(store: EntryStore) -> None:
    store.add(SAMPLE_ENTRY)
    store.conn.execute(
        """CREATE TRIGGER reject_second BEFORE INSERT ON entries
           WHEN NEW.link = 'https://example.com/rejected'
           BEGIN SELECT RAISE(ABORT, 'rejected'); END"""
    )
    store.conn.commit()

    rejected = Entry(
        title="Rejected",
        link="https://example.com/rejected",
        published_date=SAMPLE_ENTRY.published_date,
    )
    with pytest.raises(EntryStoreError):
        store.add(rejected)

    assert store.count() == 1
    assert store.get(rejected.link) is None


def test_closed_store_raises_store_error(tmp_path: Path) -> None:
    s = EntryStore(tmp_path / "entries.db")
    s.close()

    with pytest.raises(EntryStoreError):
        s.add(SAMPLE_ENTRY)
    with pytest.raises(EntryStoreError):
        s.count()


def test_unopenable_path_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way", encoding="utf-8")

    with pytest.raises(EntryStoreError):
        EntryStore(blocker / "entries.db")


def test_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "entries.db"
    EntryStore(db_path).close()
    EntryStore(db_path).close()

    conn = sqlite3.connect(db_path)
    try:
        indexes = conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()
    finally:
        conn.close()
    assert ("idx_entries_published",) in indexes


def test_concurrent_adds_keep_each_write_atomic(store: EntryStore) -> None:
    store.conn.execute(
        """CREATE TRIGGER reject_bad BEFORE INSERT ON entries
           WHEN NEW.link LIKE 'https://example.com/bad/%'
           BEGIN SELECT RAISE(ABORT, 'rejected'); END"""
    )
    store.conn.commit()

    start = threading.Barrier(2)
    written: list[int] = []
    rejected: list[int] = []

    def add_good() -> None:
        start.wait()
        for i in range(100):
            entry = Entry(
                title=f"Good {i}",
                link=f"https://example.com/good/{i}",
                published_date=SAMPLE_ENTRY.published_date,
            )
            written.append(store.add(entry))

    def add_bad() -> None:
        start.wait()
        for i in range(100):
            entry = Entry(
                title=f"Bad {i}",
                link=f"https://example.com/bad/{i}",
                published_date=SAMPLE_ENTRY.published_date,
            )
            try:
                store.add(entry)
            except EntryStoreError:
                rejected.append(i)

    threads = [threading.Thread(target=add_good), threading.Thread(target=add_bad)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(rejected) == 100
    assert len(written) == 100
    assert store.count() == 100
    for i in range(100):
        assert store.get(f"https://example.com/good/{i}") is not None
