"""Staleness tracking with jittered expiry.

Every cached value (star list, repo metadata, latest release) carries a
next-check timestamp. Until that moment passes the cached value is reused
without touching the upstream API.

The expiry bases are spread by +/-25% so that hundreds of repositories
tracked at the same time do not all come due in the same run.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from release_tracker.config import ExpirySettings
from release_tracker.schemas import CachedReleaseRecord, Visibility


def utcnow() -> datetime:
    return datetime.now(UTC)


class StalenessTracker:
    """Decides whether cached data may be reused and when it expires.

    Usage:
        tracker = StalenessTracker()
        if not tracker.is_fresh(repo.next_check):
            ...refresh...
            next_check = tracker.next_check(tracker.expiry.as_timedelta("release"))
    """

    def __init__(
        self,
        expiry: ExpirySettings | None = None,
        now: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            expiry: Base expiry durations. Uses the defaults if None.
            now: Clock returning an aware datetime (injectable for tests)
            rng: Random source for the jitter (injectable for tests)
        """
        self.expiry = expiry or ExpirySettings()
        self._now = now
        self._rng = rng or random.Random()

    def now(self) -> datetime:
        return self._now()

    def is_fresh(self, next_check: datetime | None) -> bool:
        """True iff next_check is set and strictly in the future."""
        if next_check is None:
            return False
        return next_check > self._now()

    def jitter(self, base: timedelta) -> timedelta:
        """Spread a base duration uniformly over [0.75 * base, 1.25 * base]."""
        return base + (self._rng.random() - 0.5) * (base / 2)

    def next_check(self, base: timedelta) -> datetime:
        return self._now() + self.jitter(base)

    def release_expiry(
        self,
        latest: CachedReleaseRecord | None,
        visibility: Visibility,
    ) -> timedelta:
        """Pick the expiry base for a release check result."""
        if latest is None:
            return self.expiry.as_timedelta("release_absent")
        if visibility == Visibility.TAGS:
            return self.expiry.as_timedelta("tags_release")
        return self.expiry.as_timedelta("release")
