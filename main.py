"""CLI entrypoint: fetch a feed through the JSON proxy and list its entries."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from entry_store import ENTRY_STORE_PATH, EntryStore, EntryStoreError
from feed_provider import (
    FEED_NUM_ENTRIES,
    FEED_PRESETS,
    FeedProvider,
    FeedProviderError,
    build_feed_url,
    default_feed_url,
)
from models import Entry


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be zero or greater, got {value}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Fetch a feed through the JSON feed proxy and list its entries")
    parser.add_argument(
        "--feed",
        choices=sorted(FEED_PRESETS),
        default=None,
        help="Named feed to load. Defaults to FEED_URL / FEED_SOURCE_URL from the environment.",
    )
    parser.add_argument("--num", type=int, default=int(os.getenv("FEED_NUM_ENTRIES", str(FEED_NUM_ENTRIES))), help="Number of entries to request from the proxy")
    parser.add_argument("--url", default=None, help="Full proxy URL; overrides --feed and --num")
    parser.add_argument(
        "--persist",
        action="store_true",
        help="Write every fetched entry to the local entry store",
    )
    parser.add_argument("--db-path", default=os.getenv("ENTRY_STORE_PATH", ENTRY_STORE_PATH), help="Entry store location (default: %(default)s)")
    parser.add_argument(
        "--stored",
        action="store_true",
        help="List entries already in the store instead of fetching",
    )
    parser.add_argument("--limit", type=_non_negative_int, default=None, help="Maximum number of entries to print")
    return parser.parse_args(argv)


def resolve_url(args: argparse.Namespace) -> str:
    if args.url:
        return args.url
    if args.feed:
        return build_feed_url(FEED_PRESETS[args.feed], num=args.num)
    return default_feed_url()


def format_entry(entry: Entry) -> str:
    """Render one entry as a single line: date, title, link."""
    published = entry.published_date.strftime("%Y-%m-%d %H:%M")
    line = f"{published}  {entry.title}  <{entry.link}>"
    if entry.author:
        line += f"  by {entry.author}"
    return line


def run(args: argparse.Namespace) -> int:
    """Run one fetch (or store listing) and return the process exit status."""
    if args.stored:
        try:
            with EntryStore(args.db_path) as store:
                entries = store.list_entries(limit=args.limit)
                logging.info("Loaded %s of %s stored entries", len(entries), store.count())
        except EntryStoreError as exc:
            logging.error("Entry store unavailable: %s", exc)
            return 1
        _print_entries(entries, args.limit)
        return 0

    try:
        store = EntryStore(args.db_path) if args.persist else None
    except EntryStoreError as exc:
        logging.error("Entry store unavailable: %s", exc)
        return 1

    try:
        with FeedProvider(url=resolve_url(args), store=store) as provider:
            logging.info("Fetching feed: %s", provider.url)
            entries = provider.fetch_feed().result()
    except FeedProviderError as exc:
        # The stored entries are left as they were.
        logging.error("Feed fetch failed (%s): %s", type(exc).__name__, exc)
        return 1
    finally:
        if store is not None:
            store.close()

    logging.info("Fetched %s entries", len(entries))
    _print_entries(entries, args.limit)
    return 0


def _print_entries(entries: list[Entry], limit: int | None) -> None:
    for entry in entries[:limit] if limit is not None else entries:
        print(format_entry(entry))


def main(argv: list[str] | None = None) -> None:
    """Initialize config and execute one fetch."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)
    sys.exit(run(args))


if __name__ == "__main__":
    main()
