"""Exception taxonomy for the release tracker.

Only a few of these are meant to be caught inside the library:
- NotFound is translated into "no release" at the reconciliation boundary
- everything else (RateLimited, transport failures) propagates to whoever
  started the refresh
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class TrackerError(Exception):
    """Base class for all release tracker errors."""


class ConfigError(TrackerError, ValueError):
    """Invalid configuration or state file content."""


class UpstreamError(TrackerError):
    """The upstream API answered with a non-success response.

    Attributes:
        status_code: HTTP status code of the failed response (None for
                     GraphQL-level errors delivered with a 200)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFound(UpstreamError):
    """The repository or user no longer exists upstream."""


class RateLimited(UpstreamError):
    """The upstream rate limit is exhausted.

    Attributes:
        resets_at: When the limit window resets, if the API told us
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        resets_at: datetime | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.resets_at = resets_at


class BatchRefreshError(TrackerError):
    """One or more refresh workers failed.

    Batches run independently, so the workers that succeeded still wrote
    their results to the state store; their output is kept in `partial`.

    Attributes:
        failures: The exception that stopped each failed worker
        partial: Results merged from the workers that completed
    """

    def __init__(
        self,
        failures: list[BaseException],
        partial: dict[str, Any],
    ) -> None:
        super().__init__(
            f"{len(failures)} refresh batch(es) failed: "
            + "; ".join(f"{type(f).__name__}: {f}" for f in failures)
        )
        self.failures = failures
        self.partial = partial
