"""
Cache Invalidation

Deletes derived analytics/series snapshots after mutating events.

- Tracking an activity event clears the dashboard entries, the affected
  article's entries and the acting user's entries.
- Any series mutation clears every ``series:*`` key, not only the
  affected series. Recommendations depend on the whole active catalogue,
  so all of them go stale together.

Invalidation is best effort: with Redis down it deletes nothing and
never fails the mutation that triggered it.
"""
import logging
from typing import Iterable, Optional

from core.cache import CacheStore, ANALYTICS_NAMESPACE, SERIES_NAMESPACE

logger = logging.getLogger(__name__)


class CacheInvalidator:

    def __init__(self, cache: CacheStore):
        self.cache = cache

    def invalidate_analytics(self, patterns: Iterable[Optional[str]]) -> int:
        """Delete ``analytics:*<pattern>*`` for each non-empty pattern."""
        total_deleted = 0
        for pattern in patterns:
            if not pattern:
                continue
            total_deleted += self.cache.delete_pattern(f"{ANALYTICS_NAMESPACE}:*{pattern}*")

        logger.debug(f"Invalidated {total_deleted} analytics cache entries")
        return total_deleted

    def invalidate_series(self, series_ids: Optional[Iterable] = None) -> int:
        """Delete every series entry plus ``series:<id>*`` for each id."""
        patterns = [f"{SERIES_NAMESPACE}:*"]
        patterns.extend(f"{SERIES_NAMESPACE}:{series_id}*" for series_id in (series_ids or []))

        total_deleted = 0
        for pattern in patterns:
            total_deleted += self.cache.delete_pattern(pattern)

        logger.info(f"Invalidated {total_deleted} series cache entries")
        return total_deleted

    def invalidate_for_event(self, resource_id: Optional[str], user_id: Optional[str]) -> int:
        """Entries made stale by a newly tracked activity event."""
        return self.invalidate_analytics([
            "dashboard",
            f"article:{resource_id}" if resource_id else None,
            f"user:{user_id}" if user_id else None,
        ])
