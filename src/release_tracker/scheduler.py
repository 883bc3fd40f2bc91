"""Bounded-concurrency batch refresh of tracked repositories.

A refresh run:
1. Orders repositories least-recently-checked first, so that when the rate
   limit runs short it is the stalest data that got refreshed
2. Splits them into contiguous batches (static partitioning, no work
   stealing)
3. Runs one worker per batch; a worker handles its repositories one after
   another, and at most `concurrency` workers run at once
4. Joins all workers and merges their results

Each repository lands in exactly one batch, so no two workers ever touch
the same state store record.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TypeVar

from release_tracker.errors import BatchRefreshError
from release_tracker.logging_config import get_logger
from release_tracker.reconciler import ReleaseReconciler
from release_tracker.schemas import CachedReleaseRecord

logger = get_logger(__name__)

T = TypeVar("T")

_NEVER = datetime.min.replace(tzinfo=UTC)


def partition(items: Sequence[T], concurrency: int) -> list[list[T]]:
    """Split items into contiguous batches of len(items) // concurrency.

    A zero batch size (more workers than items) degenerates to a single
    batch holding everything. The remainder of an uneven split ends up in
    one extra, shorter, trailing batch.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")
    if not items:
        return []
    per_batch = len(items) // concurrency or len(items)
    return [list(items[i:i + per_batch]) for i in range(0, len(items), per_batch)]


class RefreshScheduler:
    """Refreshes the latest release of many repositories concurrently.

    Usage:
        scheduler = RefreshScheduler(reconciler)
        releases = await scheduler.refresh_all(repos, concurrency=4)
    """

    def __init__(self, reconciler: ReleaseReconciler) -> None:
        self.reconciler = reconciler

    def order_by_staleness(self, repos: Sequence[str]) -> list[str]:
        """Sort repositories by last check, never-checked ones first."""
        store = self.reconciler.store
        return sorted(
            repos,
            key=lambda repo: store.ephemeral_repo(repo).last_check or _NEVER,
        )

    async def _run_batch(
        self,
        batch: list[str],
        slots: asyncio.Semaphore,
    ) -> dict[str, CachedReleaseRecord | None]:
        results: dict[str, CachedReleaseRecord | None] = {}
        async with slots:
            for repo in batch:
                results[repo] = await self.reconciler.latest_release(repo)
        return results

    async def refresh_all(
        self,
        repos: Sequence[str],
        concurrency: int = 1,
    ) -> dict[str, CachedReleaseRecord | None]:
        """Refresh every repository and return repo -> latest release.

        Repositories without a release map to None.

        Raises:
            BatchRefreshError: If any worker failed. Workers stop at their
                first error; the other batches still run to completion and
                their results are available on the exception.
        """
        ordered = self.order_by_staleness(list(dict.fromkeys(repos)))
        batches = partition(ordered, concurrency)
        logger.info(
            "refresh_started",
            repos=len(ordered),
            batches=len(batches),
            concurrency=concurrency,
        )

        slots = asyncio.Semaphore(concurrency)
        outcomes = await asyncio.gather(
            *(self._run_batch(batch, slots) for batch in batches),
            return_exceptions=True,
        )

        merged: dict[str, CachedReleaseRecord | None] = {}
        failures: list[BaseException] = []
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "refresh_batch_failed",
                    first_repo=batch[0],
                    size=len(batch),
                    error=str(outcome),
                )
                failures.append(outcome)
            else:
                merged.update(outcome)

        if failures:
            raise BatchRefreshError(failures, merged) from failures[0]

        logger.info(
            "refresh_complete",
            repos=len(merged),
            with_release=sum(1 for r in merged.values() if r is not None),
        )
        return merged
