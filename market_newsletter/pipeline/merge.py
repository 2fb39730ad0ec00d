"""
Merge, deduplicate and time-filter fetched items.
"""

import logging
from typing import Iterable, Optional, Set

from market_newsletter.models.content import Item, MergeResult, now_millis


logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


def since_timestamp(time_window_hours: float, now: Optional[int] = None) -> int:
    """Lower bound on ``published`` (epoch millis) for a window ending at ``now``."""
    current = now_millis() if now is None else now
    return int(current - time_window_hours * HOUR_MS)


def merge_filter(items: Iterable[Item], since_ms: int) -> MergeResult:
    """
    Drop items published before ``since_ms``, keep the first item seen for each
    exact ``url``, and order the survivors by ``published`` descending.

    Deterministic for a given input order and idempotent on its own output.
    """
    result = MergeResult()
    seen_urls: Set[str] = set()
    kept = []

    for item in items:
        if item.published < since_ms:
            result.expired_removed += 1
            continue
        if item.url in seen_urls:
            result.duplicates_removed += 1
            continue
        seen_urls.add(item.url)
        kept.append(item)

    # Stable, so equal timestamps keep merge order
    result.items = sorted(kept, key=lambda item: item.published, reverse=True)

    if result.duplicates_removed:
        logger.info(f"Removed {result.duplicates_removed} duplicate entries")
    if result.expired_removed:
        logger.debug(f"Dropped {result.expired_removed} entries outside the time window")
    return result
