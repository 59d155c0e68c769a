"""Shared typed models for the feed fetcher."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Entry:
    """Normalized feed item produced by the fetch pipeline."""

    title: str
    link: str
    published_date: datetime
    author: str = ""
    content_snippet: str = ""
    content: str = ""
    categories: tuple[str, ...] = ()
