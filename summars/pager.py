"""
Cursor Pager for cl-summars

Walks an append-only, index-ordered event log backwards from its tip in
fixed-size pages. lightningd only exposes reads of the form
"give me up to `limit` records with updated_index >= start", so the newest
records are reached by anchoring the first page just below the tip and
stepping the anchor down by one page size per iteration.

The pager knows nothing about timestamps. The caller supplies a `should_stop`
predicate (typically "oldest timestamp seen is older than the window cutoff")
that is evaluated after each page has been consumed.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List


@dataclass
class PagingCursor:
    """Lower bound and size of the next page to request."""
    current_index: int
    limit: int


def seed_cursor(tip: int, page_size: int) -> PagingCursor:
    """Place the first page so that its last slot is the tip index."""
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, not {page_size}")
    return PagingCursor(current_index=max(tip - (page_size - 1), 0), limit=page_size)


def reverse_pages(
    tip: int,
    page_size: int,
    fetch_page: Callable[[int, int], List[Dict[str, Any]]],
    should_stop: Callable[[], bool],
) -> Iterator[List[Dict[str, Any]]]:
    """
    Yield pages from the tip down to index 1.

    Args:
        tip: Current maximum updated_index of the domain
        page_size: Records per page request
        fetch_page: Callable(start, limit) returning records in [start, start+limit)
        should_stop: Evaluated after the consumer has processed each page

    The generator is lazy: the next page is only requested when the consumer
    asks for it, so `should_stop` sees the state produced by the page that was
    just yielded. Any exception raised by `fetch_page` propagates unchanged.
    """
    cursor = seed_cursor(tip, page_size)

    while True:
        yield fetch_page(cursor.current_index, cursor.limit)

        if cursor.current_index <= 1:
            return
        cursor.limit = min(page_size, cursor.current_index)
        cursor.current_index = max(cursor.current_index - page_size, 0)

        if should_stop():
            return
