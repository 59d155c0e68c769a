"""Feed proxy ingestion: fetch a feed as JSON and normalize it into entries."""

from __future__ import annotations

import json
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterator
from urllib.parse import urlencode, urlsplit

import requests

from entry_store import EntryStore, EntryStoreError
from models import Entry

# The proxy wraps any RSS/Atom feed into a JSON envelope:
# {"responseData": {"feed": {"entries": [...]}}, "responseStatus": 200}
FEED_PROXY_BASE_URL = os.getenv(
    "FEED_PROXY_BASE_URL", "https://ajax.googleapis.com/ajax/services/feed/load"
)
FEED_PRESETS: dict[str, str] = {
    "programmable-web": "http://feeds.feedburner.com/ProgrammableWeb",
    "hacker-news": "http://news.ycombinator.com/rss?",
}
FEED_SOURCE_URL = os.getenv("FEED_SOURCE_URL", FEED_PRESETS["programmable-web"])
FEED_NUM_ENTRIES = int(os.getenv("FEED_NUM_ENTRIES", "100"))
REQUEST_TIMEOUT_SECONDS = 20

LOGGER = logging.getLogger(__name__)

Completion = Callable[[list[Entry] | None, Exception | None], None]


class FeedProviderError(Exception):
    """Base class for every failure reported by the fetch pipeline."""


class InvalidData(FeedProviderError):
    """The transport failed or returned no usable body."""


class InvalidJSON(FeedProviderError):
    """The body is not JSON or lacks responseData.feed.entries."""


class InvalidEntry(FeedProviderError):
    """A single feed item is missing or has a malformed field."""


class PersistenceError(FeedProviderError):
    """Writing an entry to the store failed."""


def build_feed_url(
    source_url: str = FEED_SOURCE_URL,
    num: int = FEED_NUM_ENTRIES,
    base_url: str = FEED_PROXY_BASE_URL,
) -> str:
    """Return the proxy URL that loads ``source_url`` as JSON."""
    query = urlencode({"v": "1.0", "num": num, "q": source_url})
    return f"{base_url}?{query}"


def default_feed_url() -> str:
    """Resolve the configured feed URL, honouring a full FEED_URL override."""
    override = os.getenv("FEED_URL")
    if override:
        return override
    return build_feed_url(
        source_url=os.getenv("FEED_SOURCE_URL", FEED_SOURCE_URL),
        num=int(os.getenv("FEED_NUM_ENTRIES", str(FEED_NUM_ENTRIES))),
        base_url=os.getenv("FEED_PROXY_BASE_URL", FEED_PROXY_BASE_URL),
    )


def parse_published_date(raw: Any) -> datetime:
    """Parse ``"Mon, 02 May 2016 10:00:00 GMT"``-style dates into aware UTC datetimes."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidEntry("publishedDate is missing")
    try:
        parsed = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError, IndexError) as exc:
        raise InvalidEntry(f"publishedDate is not parseable: {raw!r}") from exc

    # "-0000" means "zone unknown"; treat it as UTC like GMT.
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_entry(item: Any) -> Entry:
    """Map one raw feed item into an Entry, raising InvalidEntry on any bad field."""
    if not isinstance(item, dict):
        raise InvalidEntry(f"feed item is not an object: {type(item).__name__}")

    title = _required_str(item, "title")
    link = _required_str(item, "link")
    parts = urlsplit(link)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidEntry(f"link is not an absolute URL: {link!r}")

    return Entry(
        title=title,
        link=link,
        published_date=parse_published_date(item.get("publishedDate")),
        author=_optional_str(item, "author"),
        content_snippet=_optional_str(item, "contentSnippet"),
        content=_optional_str(item, "content"),
        categories=_categories(item.get("categories")),
    )


def extract_feed_items(body: bytes | str) -> list[Any]:
    """Decode a proxy response body and return the raw responseData.feed.entries list."""
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise InvalidJSON(f"response body is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidJSON("unexpected payload shape: expected an object")

    response_data = payload.get("responseData")
    if not isinstance(response_data, dict):
        if "responseStatus" in payload or "responseDetails" in payload:
            LOGGER.warning(
                "Feed proxy returned an error envelope: status=%s details=%s",
                payload.get("responseStatus"),
                payload.get("responseDetails"),
            )
        raise InvalidJSON("responseData is missing or not an object")

    feed = response_data.get("feed")
    if not isinstance(feed, dict):
        raise InvalidJSON("responseData.feed is missing or not an object")

    items = feed.get("entries")
    if not isinstance(items, list):
        raise InvalidJSON("responseData.feed.entries is missing or not a list")
    return items


def iter_entries(items: list[Any]) -> Iterator[Entry]:
    """Yield an Entry per well-formed item in source order; malformed items are skipped."""
    skipped = 0
    for index, item in enumerate(items):
        try:
            entry = parse_entry(item)
        except InvalidEntry as exc:
            skipped += 1
            LOGGER.warning("Skipping feed item index=%s: %s", index, exc)
            continue
        yield entry

    LOGGER.info(
        "Feed parse: raw_count=%s parsed=%s skipped=%s",
        len(items),
        len(items) - skipped,
        skipped,
    )


def parse_feed_payload(body: bytes | str) -> list[Entry]:
    """Decode a proxy response body into entries, skipping malformed items."""
    return list(iter_entries(extract_feed_items(body)))


class FeedProvider:
    """One-shot feed fetcher with injected transport, store and executor.

    Each call issues exactly one GET. Nothing is retried, cached or shared
    between calls; two concurrent fetches race independently.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        url: str | None = None,
        store: EntryStore | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._owns_session = session is None
        self.session = session if session is not None else requests.Session()
        self.url = url or default_feed_url()
        self.store = store
        self._owns_executor = executor is None
        self._executor = executor

    def fetch_entries(self) -> list[Entry]:
        """Fetch the configured feed and return its entries in source order.

        When a store is attached, each entry is written in its own
        transaction right after it is built.

        Raises:
            InvalidData: transport error, non-2xx status or empty body.
            InvalidJSON: body is not the expected JSON envelope.
            PersistenceError: a store write failed.
        """
        items = extract_feed_items(self._get_body())

        entries: list[Entry] = []
        for entry in iter_entries(items):
            if self.store is not None:
                try:
                    self.store.add(entry)
                except EntryStoreError as exc:
                    raise PersistenceError(
                        f"failed to store entry link={entry.link}: {exc}"
                    ) from exc
            entries.append(entry)

        if self.store is not None:
            LOGGER.info("Stored %s entries from %s", len(entries), self.url)
        return entries

    def fetch_feed(self, completion: Completion | None = None) -> Future[list[Entry]]:
        """Run ``fetch_entries`` in the background.

        ``completion`` is called exactly once on the worker thread, with
        ``(entries, None)`` on success or ``(None, error)`` on failure. Unexpected
        errors are reported the same way and re-raised through the future. The
        returned future carries the same outcome.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feed-fetch")
        return self._executor.submit(self._run, completion)

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> FeedProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self, completion: Completion | None) -> list[Entry]:
        try:
            entries = self.fetch_entries()
        except FeedProviderError as exc:
            LOGGER.warning("Feed fetch failed: %s", exc)
            _notify(completion, None, exc)
            raise
        except Exception as exc:
            LOGGER.exception("Feed fetch failed unexpectedly")
            _notify(completion, None, exc)
            raise
        _notify(completion, entries, None)
        return entries

    def _get_body(self) -> bytes:
        try:
            response = self.session.get(self.url, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise InvalidData(f"request to {self.url} failed: {exc}") from exc

        body = response.content
        if not body:
            raise InvalidData(f"empty response body from {self.url}")
        return body


def _notify(
    completion: Completion | None,
    entries: list[Entry] | None,
    error: Exception | None,
) -> None:
    if completion is None:
        return
    try:
        completion(entries, error)
    except Exception:  # a faulty callback must not change the fetch outcome
        LOGGER.exception("Feed completion callback raised")


def _required_str(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidEntry(f"{key} is missing or blank")
    return value.strip()


def _optional_str(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidEntry(f"{key} is not a string")
    return value.strip()


def _categories(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
        raise InvalidEntry("categories is not a list of strings")
    return tuple(c.strip() for c in value if c.strip())
