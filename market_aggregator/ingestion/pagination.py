"""
Offset and cursor pagination loops.

Both loops stop on the first page shorter than the page size, so an
upstream is never asked for a page that is already known to be empty.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

OffsetPage = Callable[[int, int], Awaitable[List[Any]]]
CursorPage = Callable[[Optional[str], int], Awaitable[Tuple[List[Any], Optional[str]]]]


async def paginate_offset(
    fetch_page: OffsetPage,
    page_size: int,
    max_items: int = 0,
    label: str = "items",
) -> List[Any]:
    """
    Collect pages from fetch_page(limit, offset).

    Args:
        fetch_page: Coroutine returning one page
        page_size: Requested page size
        max_items: Stop once this many items are collected (0 = unlimited)
        label: Name used in log messages
    """
    items: List[Any] = []
    offset = 0

    while True:
        page = await fetch_page(page_size, offset) or []
        items.extend(page)

        if max_items and len(items) >= max_items:
            logger.info(f"Reached cap of {max_items} {label}")
            return items[:max_items]

        if len(page) < page_size:
            break

        offset += page_size
        logger.debug(f"Fetched {len(items)} {label} so far...")

    return items


async def paginate_cursor(
    fetch_page: CursorPage,
    page_size: int,
    max_items: int = 0,
    label: str = "items",
) -> List[Any]:
    """
    Collect pages from fetch_page(cursor, limit), which returns
    (items, next_cursor). A missing cursor or a short page ends the loop.
    """
    items: List[Any] = []
    cursor: Optional[str] = None

    while True:
        page, cursor = await fetch_page(cursor, page_size)
        page = page or []
        items.extend(page)

        if max_items and len(items) >= max_items:
            logger.info(f"Reached cap of {max_items} {label}")
            return items[:max_items]

        if not cursor or len(page) < page_size:
            break

        logger.debug(f"Fetched {len(items)} {label} so far...")

    return items
