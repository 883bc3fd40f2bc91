"""Pydantic models and enums shared by the release tracker.

These schemas are the contract between the modules:
- Upstream payloads (what the GitHub client hands back)
- Cached records (what the state store keeps between checks)
- Outward records (what a notifier receives)

InternalRelease is the one plain dataclass: it only lives for the duration
of a single reconciliation and never crosses a module boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Visibility(StrEnum):
    """Which release kinds qualify as a repository's latest release.

    RELEASES: Formal releases and tags, prereleases excluded (default)
    PRERELEASES: Everything, including prereleases
    TAGS: Same kinds as RELEASES, but checked less often since tag-only
          repositories tend to be noisier
    """

    RELEASES = "releases"
    PRERELEASES = "prereleases"
    TAGS = "tags"


class ReleaseKind(StrEnum):
    """Where a release record came from upstream."""

    RELEASE = "release"
    PRERELEASE = "prerelease"
    TAG = "tag"
    LIGHTWEIGHT_TAG = "lightweight_tag"


# ---------------------------------------------------------------------------
# Upstream payloads
# ---------------------------------------------------------------------------


class RepoMetadata(BaseModel):
    """Display metadata for a repository."""

    full_name: str = Field(..., description="owner/name")
    name: str = Field(..., description="Repository name without the owner")
    html_url: str = Field(..., description="Web URL of the repository")
    avatar_url: str | None = Field(None, description="Owner avatar URL")


class UpstreamRelease(BaseModel):
    """A formal release as returned by the GraphQL releases connection."""

    model_config = ConfigDict(populate_by_name=True)

    tag_name: str = Field(..., alias="tagName")
    name: str | None = None
    created_at: datetime = Field(..., alias="createdAt")
    url: str
    description: str | None = None
    is_prerelease: bool = Field(False, alias="isPrerelease")


class UpstreamTagRef(BaseModel):
    """A tag ref as returned by the GraphQL refs connection.

    target_kind is the GraphQL __typename of the ref target: "Commit" for a
    lightweight tag, "Tag" for an annotated one. Anything else (or a missing
    target) is not a usable release signal.
    """

    name: str
    target_kind: str | None = None
    pushed_date: datetime | None = None
    committed_date: datetime | None = None
    tagger_date: datetime | None = None
    message: str | None = None


class ReleasesAndTags(BaseModel):
    """Combined result of the releases + tags query, newest first."""

    releases: list[UpstreamRelease] = Field(default_factory=list)
    tags: list[UpstreamTagRef] = Field(default_factory=list)


class RateLimit(BaseModel):
    """Upstream core rate-limit state."""

    limit: int
    remaining: int
    resets_at: datetime
    resets_in: int = Field(..., ge=0, description="Seconds until the window resets")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InternalRelease:
    """A release candidate during reconciliation."""

    tag_name: str
    name: str
    date: datetime
    url: str
    description: str | None
    kind: ReleaseKind


class CachedReleaseRecord(BaseModel):
    """Snapshot of a repository's latest release, kept in ephemeral state."""

    name: str
    tag_name: str
    published_at: datetime
    body: str | None = None
    html_url: str
    kind: ReleaseKind

    @classmethod
    def from_internal(cls, release: InternalRelease) -> CachedReleaseRecord:
        return cls(
            name=release.name,
            tag_name=release.tag_name,
            published_at=release.date,
            body=release.description,
            html_url=release.url,
            kind=release.kind,
        )


# ---------------------------------------------------------------------------
# Outward records
# ---------------------------------------------------------------------------


DEFAULT_AVATAR_URL = "https://avatars1.githubusercontent.com/u/9919?s=32&v=4"


class Release(BaseModel):
    """A release as handed to a notifier.

    Attributes:
        namespace: Owner part of the repository name
        name: Repository name
        version: Tag name
        version_name: Release display name
        publish_date: When the release was published
        release_notes: Release body, if any
        repo_url: Web URL of the repository
        release_url: Web URL of the release (or tag)
        avatar_url: 32px owner avatar
    """

    namespace: str
    name: str
    version: str
    version_name: str
    publish_date: datetime
    release_notes: str | None = None
    repo_url: str
    release_url: str
    avatar_url: str
    kind: ReleaseKind


class LastReleases(BaseModel):
    """Result of a full refresh run for one user."""

    releases: dict[str, Release] = Field(default_factory=dict)
    last_check: datetime | None = Field(
        None, description="When the previous run finished, if there was one"
    )
