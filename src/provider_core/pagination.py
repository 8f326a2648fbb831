"""Pagination walker and lookup-by-key.

List endpoints return ``{"data": [...], "pagination": {"next": url|null}}``.
The walker requests pages sequentially starting at page 1 and stops either
at the first match (find_first) or at the terminal page (collect_all).

Lookups by a human-readable key (name, table name) use collect_all so that
ambiguous keys are reported instead of silently picking one resource.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .config import BaseKey
from .errors import LookupNotFoundError, MultipleMatchesError, PaginationError
from .records import R, ResourceData, decode_page
from .transport import Transport, raise_for_status

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a listing."""

    items: list[T] = field(default_factory=list)
    next: str | None = None

    @property
    def is_last(self) -> bool:
        return not self.next


FetchPage = Callable[[int], Awaitable[Page[T]]]


async def walk(fetch_page: FetchPage[T], *, max_pages: int | None = None) -> AsyncIterator[Page[T]]:
    """Yield pages from page 1 until the terminal page.

    Raises:
        PaginationError: If more than ``max_pages`` pages would be fetched.
    """
    page_number = 1
    while True:
        if max_pages is not None and page_number > max_pages:
            raise PaginationError(f"pagination exceeded {max_pages} pages")
        page = await fetch_page(page_number)
        yield page
        if page.is_last:
            return
        page_number += 1


async def find_first(
    fetch_page: FetchPage[T],
    match: Callable[[T], bool],
    *,
    max_pages: int | None = None,
) -> T | None:
    """Return the first item satisfying ``match``, fetching no further pages."""
    pages = walk(fetch_page, max_pages=max_pages)
    try:
        async for page in pages:
            for item in page.items:
                if match(item):
                    return item
    finally:
        await pages.aclose()
    return None


async def collect_all(
    fetch_page: FetchPage[T],
    match: Callable[[T], bool],
    *,
    max_pages: int | None = None,
) -> list[T]:
    """Return every item satisfying ``match`` across all pages."""
    found: list[T] = []
    async for page in walk(fetch_page, max_pages=max_pages):
        found.extend(item for item in page.items if match(item))
    return found


def format_available(names: Iterable[str]) -> str:
    """Sorted, de-duplicated, quoted list of names for error messages."""
    return ", ".join(json.dumps(name) for name in sorted(set(names)))


async def lookup_unique(
    fetch_page: FetchPage[T],
    key_of: Callable[[T], str | None],
    key: str,
    kind: str,
    *,
    id_of: Callable[[T], str | None] = lambda item: getattr(item, "id", None),
    max_pages: int | None = None,
) -> T:
    """Find the single item whose key equals ``key``.

    Raises:
        MultipleMatchesError: More than one item has the key.
        LookupNotFoundError: No item has the key; lists the available keys.
    """
    items = await collect_all(fetch_page, lambda _: True, max_pages=max_pages)
    matches = [item for item in items if key_of(item) == key]

    if len(matches) > 1:
        ids = [str(id_of(item)) for item in matches]
        logger.warning(
            "Lookup is ambiguous",
            extra={"kind": kind, "key": key, "ids": ids},
        )
        raise MultipleMatchesError(kind, key, ids)

    if not matches:
        available = [k for k in (key_of(item) for item in items) if k]
        raise LookupNotFoundError(kind, key, format_available(available))

    return matches[0]


def page_fetcher(
    transport: Transport,
    base_key: BaseKey,
    path: str,
    record_cls: type[R],
) -> FetchPage[ResourceData[R]]:
    """Build a fetch_page callable for a list endpoint.

    Raises (from the returned callable):
        APIError: For any non-200 response.
        DecodeError: For a malformed list envelope.
    """
    separator = "&" if "?" in path else "?"

    async def fetch(page_number: int) -> Page[ResourceData[R]]:
        response = await transport.send("GET", base_key, f"{path}{separator}page={page_number}")
        raise_for_status(response)
        envelope = decode_page(response, record_cls)
        next_url = envelope.pagination.next if envelope.pagination else None
        return Page(items=list(envelope.data), next=next_url)

    return fetch
