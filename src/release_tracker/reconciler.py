"""Release reconciliation for tracked repositories.

GitHub exposes two overlapping signals for "a new version is out":
formal releases and plain tags. Many projects only tag, some only release,
and most do both for the same version. The reconciler merges the newest
five of each into one canonical latest release:

1. Every formal release becomes a candidate, keyed by tag name
2. Every tag not already covered by a release becomes a candidate too
   (annotated tags use the tagger date, lightweight tags the commit date)
3. Prereleases are dropped unless the repository opted into them
4. The candidate with the newest date wins

Checks are cached per repository. Until a repository's next-check passes,
the cached result (including "no release") is returned without any
upstream call.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from release_tracker.errors import NotFound
from release_tracker.logging_config import get_logger
from release_tracker.schemas import (
    CachedReleaseRecord,
    InternalRelease,
    ReleaseKind,
    ReleasesAndTags,
    UpstreamTagRef,
    Visibility,
)
from release_tracker.staleness import StalenessTracker
from release_tracker.state import EphemeralRepo, EntityStateStore
from release_tracker.upstream.github import UpstreamClientProtocol

logger = get_logger(__name__)

TAG_URL_TEMPLATE = "https://github.com/{repo}/releases/tag/{tag}"


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def tag_to_release(repo: str, tag: UpstreamTagRef) -> InternalRelease | None:
    """Turn a tag ref into a release candidate.

    Returns None for refs that carry no usable signal: targets that are
    neither a commit nor a tag object, or that have no date.
    """
    if tag.target_kind == "Commit":
        kind = ReleaseKind.LIGHTWEIGHT_TAG
        date = tag.pushed_date or tag.committed_date
    elif tag.target_kind == "Tag":
        kind = ReleaseKind.TAG
        date = tag.tagger_date
    else:
        return None

    if date is None:
        return None

    return InternalRelease(
        tag_name=tag.name,
        name=tag.name,
        date=_aware(date),
        url=TAG_URL_TEMPLATE.format(repo=repo, tag=tag.name),
        description=tag.message,
        kind=kind,
    )


def collect_candidates(repo: str, data: ReleasesAndTags) -> list[InternalRelease]:
    """Merge releases and tags into at most one candidate per tag name.

    Releases come first, in upstream order; a tag is only used when no
    release exists for the same tag name.
    """
    by_tag: dict[str, InternalRelease] = {}

    for release in data.releases:
        if release.tag_name in by_tag:
            continue
        by_tag[release.tag_name] = InternalRelease(
            tag_name=release.tag_name,
            name=release.name or release.tag_name,
            date=_aware(release.created_at),
            url=release.url,
            description=release.description,
            kind=ReleaseKind.PRERELEASE if release.is_prerelease else ReleaseKind.RELEASE,
        )

    for tag in data.tags:
        if tag.name in by_tag:
            continue
        candidate = tag_to_release(repo, tag)
        if candidate is None:
            logger.debug("tag_unusable", repo=repo, tag=tag.name, target=tag.target_kind)
            continue
        by_tag[tag.name] = candidate

    return list(by_tag.values())


def select_latest(
    candidates: Iterable[InternalRelease],
    visibility: Visibility,
) -> InternalRelease | None:
    """Pick the newest candidate allowed by the visibility policy.

    Candidates sharing the newest date are resolved by input order: the
    sort is stable and the last one wins.
    """
    allowed = [
        c for c in candidates
        if visibility == Visibility.PRERELEASES or c.kind != ReleaseKind.PRERELEASE
    ]
    if not allowed:
        return None
    return sorted(allowed, key=lambda c: c.date)[-1]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class ReleaseReconciler:
    """Keeps star lists, repo metadata and latest releases up to date.

    Usage:
        reconciler = ReleaseReconciler(client, store, StalenessTracker())
        latest = await reconciler.latest_release("octocat/hello-world")
    """

    def __init__(
        self,
        client: UpstreamClientProtocol,
        store: EntityStateStore,
        staleness: StalenessTracker,
    ) -> None:
        self.client = client
        self.store = store
        self.staleness = staleness

    async def stars(self, user: str) -> list[str]:
        """Return the repositories a user has starred, cached for a day."""
        puser = self.store.persistent_user(user)
        if puser.repos is not None and self.staleness.is_fresh(puser.next_check):
            return list(puser.repos)

        logger.debug("stars_expired", user=user, next_check=puser.next_check)
        repos = await self.client.list_starred(user)
        self.store.put_persistent_user(
            user,
            puser.model_copy(
                update={
                    "repos": repos,
                    "next_check": self.staleness.next_check(
                        self.staleness.expiry.as_timedelta("stars")
                    ),
                }
            ),
        )
        self.store.merge_ephemeral_user(user, last_check=self.staleness.now())
        logger.info("stars_refreshed", user=user, count=len(repos))
        return list(repos)

    async def refresh_repo(self, repo: str) -> EphemeralRepo:
        """Force a refresh of a repository's display metadata.

        Raises:
            NotFound: If the repository no longer exists
        """
        logger.debug("repo_metadata_refresh", repo=repo)
        metadata = await self.client.get_repository(repo)
        return self.store.merge_ephemeral_repo(
            repo,
            full_name=metadata.full_name,
            name=metadata.name,
            html_url=metadata.html_url,
            avatar_url=metadata.avatar_url,
            next_data_sync=self.staleness.next_check(
                self.staleness.expiry.as_timedelta("repo_metadata")
            ),
        )

    async def latest_release(self, repo: str) -> CachedReleaseRecord | None:
        """Return the latest release of a repository, refreshing if due.

        A repository that no longer exists has no release; its state is
        left as it was. Any other upstream error propagates and nothing
        is written.
        """
        try:
            erepo = self.store.ephemeral_repo(repo)
            if not erepo.has_metadata or not self.staleness.is_fresh(erepo.next_data_sync):
                erepo = await self.refresh_repo(repo)

            if self.staleness.is_fresh(erepo.next_check):
                return erepo.latest

            logger.debug("release_check_started", repo=repo, next_check=erepo.next_check)
            data = await self.client.query_releases_and_tags(repo)
        except NotFound:
            logger.info("repository_not_found", repo=repo)
            return None

        visibility = self.store.visibility(repo)
        release = select_latest(collect_candidates(repo, data), visibility)
        latest = CachedReleaseRecord.from_internal(release) if release else None

        now = self.staleness.now()
        expiry = self.staleness.release_expiry(latest, visibility)
        self.store.merge_ephemeral_repo(
            repo,
            latest=latest,
            last_check=now,
            next_check=now + self.staleness.jitter(expiry),
        )
        logger.debug(
            "release_check_complete",
            repo=repo,
            tag=latest.tag_name if latest else None,
            kind=latest.kind.value if latest else None,
        )
        return latest
