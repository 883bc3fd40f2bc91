"""Release tracker orchestrator.

This module ties together all the components:
- Upstream client (upstream/github.py)
- State store (state.py)
- Staleness tracking (staleness.py)
- Release reconciliation (reconciler.py)
- Batch refresh (scheduler.py)

A run for one user:
1. Fetch (or reuse) the user's star list
2. Refresh the latest release of every starred repository
3. Turn the cached release records into notifier-ready Release records

It is also the entry point of the `release-tracker` command, which loads
the config and state files, runs once, saves state and prints JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from release_tracker.config import TrackerSettings, load_settings
from release_tracker.errors import ConfigError, TrackerError
from release_tracker.logging_config import get_logger, setup_logging
from release_tracker.reconciler import ReleaseReconciler
from release_tracker.scheduler import RefreshScheduler
from release_tracker.schemas import (
    DEFAULT_AVATAR_URL,
    CachedReleaseRecord,
    LastReleases,
    RateLimit,
    Release,
)
from release_tracker.staleness import StalenessTracker
from release_tracker.state import EntityStateStore, load_state_file, save_state_file
from release_tracker.upstream.github import GitHubClient, UpstreamClientProtocol

logger = get_logger(__name__)


def _avatar_url(url: str | None) -> str:
    if not url:
        return DEFAULT_AVATAR_URL
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}s=32"


class ReleaseTracker:
    """Tracks the latest releases of the repositories a user starred.

    Usage:
        async with ReleaseTracker(settings) as tracker:
            result = await tracker.last_releases("octocat")
    """

    def __init__(
        self,
        settings: TrackerSettings | None = None,
        client: UpstreamClientProtocol | None = None,
        store: EntityStateStore | None = None,
        staleness: StalenessTracker | None = None,
    ) -> None:
        """Initialize the tracker with its dependencies.

        Args:
            settings: Tracker configuration. Uses defaults if None.
            client: Upstream client. A GitHubClient is built from the
                    settings' credentials if None, and closed by aclose().
            store: State store. Starts empty if None.
            staleness: Staleness tracker. Built from settings.expiry if None.
        """
        self.settings = settings or TrackerSettings()
        self._owns_client = client is None
        self.client = client or GitHubClient(
            token=self.settings.access_token,
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            cache=self.settings.cache,
        )
        self.store = store or EntityStateStore()
        self.staleness = staleness or StalenessTracker(expiry=self.settings.expiry)
        self.reconciler = ReleaseReconciler(self.client, self.store, self.staleness)
        self.scheduler = RefreshScheduler(self.reconciler)

    async def __aenter__(self) -> ReleaseTracker:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def rate_limit(self) -> RateLimit:
        return await self.client.rate_limit()

    async def last_releases(self, user: str | None = None) -> LastReleases:
        """Refresh and return the latest releases of a user's starred repos.

        Repositories without any release are left out of the result.

        Args:
            user: GitHub handle. Defaults to the configured user.

        Raises:
            ConfigError: If no user was given or configured
            BatchRefreshError: If refreshing some repositories failed
        """
        user = user or self.settings.user
        if not user:
            raise ConfigError("No user given and none configured")

        logger.info("last_releases_started", user=user, threads=self.settings.threads)
        self.store.track_user(user)
        stars = await self.reconciler.stars(user)
        latest = await self.scheduler.refresh_all(stars, self.settings.threads)

        releases = {
            repo: self._to_release(repo, record)
            for repo, record in latest.items()
            if record is not None
        }

        previous = self.store.last_check
        self.store.last_check = self.staleness.now()
        logger.info("last_releases_complete", user=user, releases=len(releases))
        return LastReleases(releases=releases, last_check=previous)

    def _to_release(self, repo: str, record: CachedReleaseRecord) -> Release:
        erepo = self.store.ephemeral_repo(repo)
        full_name = erepo.full_name or repo
        namespace, _, name = full_name.rpartition("/")
        return Release(
            namespace=namespace,
            name=erepo.name or name,
            version=record.tag_name,
            version_name=record.name,
            publish_date=record.published_at,
            release_notes=record.body,
            repo_url=erepo.html_url or f"https://github.com/{full_name}",
            release_url=record.html_url,
            avatar_url=_avatar_url(erepo.avatar_url),
            kind=record.kind,
        )


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


async def _run(
    settings: TrackerSettings,
    users: list[str],
    show_rate_limit: bool,
) -> dict:
    store = load_state_file(settings.state_path)
    output: dict = {}
    async with ReleaseTracker(settings, store=store) as tracker:
        try:
            for user in users:
                result = await tracker.last_releases(user)
                output[user] = result.model_dump(mode="json")
            if show_rate_limit:
                output["rate_limit"] = (await tracker.rate_limit()).model_dump(mode="json")
        finally:
            save_state_file(store, settings.state_path)
    return output


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Usage:
        release-tracker --config tracker.yml
        release-tracker --user octocat --state state.yml
    """
    parser = argparse.ArgumentParser(description="Track the latest releases of starred repositories")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="tracker.yml",
        help="Path to the YAML config file (default: tracker.yml)",
    )
    parser.add_argument("--user", "-u", type=str, help="GitHub user to check (overrides config)")
    parser.add_argument("--state", "-s", type=str, help="Path to the YAML state file")
    parser.add_argument("--rate-limit", action="store_true", help="Also print the rate-limit state")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING or ERROR")
    args = parser.parse_args(argv)

    setup_logging(log_level=args.log_level)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    if args.state:
        settings = settings.model_copy(update={"state_path": Path(args.state)})

    users = [args.user] if args.user else settings.tracked_users
    if not users and not args.rate_limit:
        parser.print_usage()
        print("Provide --user or set `user` in the config file.")
        return 2

    try:
        output = asyncio.run(_run(settings, users, args.rate_limit))
    except TrackerError as exc:
        logger.error("run_failed", error=str(exc))
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
