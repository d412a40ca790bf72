"""
Per-item fetching in small sequential batches, skipping failures.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Optional

logger = logging.getLogger(__name__)


async def fetch_each(
    keys: Iterable[Hashable],
    fetch_one: Callable[[Any], Awaitable[Optional[Any]]],
    batch_size: int = 5,
    batch_delay: float = 0.5,
    label: str = "item",
) -> Dict[Hashable, Any]:
    """
    Call fetch_one for every key, one at a time.

    Keys are walked in batches with a pause between batches. A key whose
    fetch raises or returns None is left out of the result.

    Returns:
        key -> fetched value
    """
    unique = list(dict.fromkeys(keys))
    results: Dict[Hashable, Any] = {}
    failures = 0

    for start in range(0, len(unique), batch_size):
        for key in unique[start : start + batch_size]:
            try:
                value = await fetch_one(key)
            except Exception as e:
                failures += 1
                logger.warning(f"Failed to fetch {label} {key}: {e}")
                continue
            if value is not None:
                results[key] = value

        if start + batch_size < len(unique):
            await asyncio.sleep(batch_delay)

    logger.info(f"Fetched {len(results)}/{len(unique)} {label}s ({failures} failed)")
    return results
