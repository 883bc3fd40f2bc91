"""GitHub API client for the release tracker.

The tracker needs four things from GitHub:
- The star list of a user (REST, paginated)
- Display metadata of a repository (REST)
- The newest releases and tags of a repository (one GraphQL query)
- The current rate-limit state (REST)

Design notes:
- Uses httpx for async HTTP requests
- The client is constructed explicitly and injected; credentials are
  picked once, at construction
- Response caching is a transport composed around the HTTP transport
  (see upstream/cache.py), not a global middleware stack
- Uses a Protocol so the reconciler doesn't depend on the concrete
  implementation (makes testing with mocks easy)

GitHub API docs: https://docs.github.com/en/rest
"""

from __future__ import annotations

import os
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from release_tracker.errors import NotFound, RateLimited, UpstreamError
from release_tracker.logging_config import get_logger
from release_tracker.schemas import (
    RateLimit,
    ReleasesAndTags,
    RepoMetadata,
    UpstreamRelease,
    UpstreamTagRef,
)
from release_tracker.upstream.cache import ETagCacheTransport

logger = get_logger(__name__)

RELEASES_AND_TAGS_QUERY = """
query ($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) {
    releases(first: 5, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        tagName
        name
        createdAt
        url
        description
        isPrerelease
      }
    }
    refs(first: 5, refPrefix: "refs/tags/", orderBy: {field: TAG_COMMIT_DATE, direction: DESC}) {
      nodes {
        name
        target {
          __typename
          ... on Commit {
            pushedDate
            committedDate
            message
          }
          ... on Tag {
            tagger {
              date
            }
            message
          }
        }
      }
    }
  }
}
"""

# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class UpstreamClientProtocol(Protocol):
    """Protocol defining what the tracker needs from an upstream API."""

    async def list_starred(self, user: str) -> list[str]:
        """Return the full names of every repository a user has starred."""
        ...

    async def get_repository(self, repo: str) -> RepoMetadata:
        """Fetch display metadata for a repository.

        Raises:
            NotFound: If the repository no longer exists
        """
        ...

    async def query_releases_and_tags(self, repo: str) -> ReleasesAndTags:
        """Fetch the 5 newest releases and the 5 newest tags, newest first.

        Raises:
            NotFound: If the repository no longer exists
        """
        ...

    async def rate_limit(self) -> RateLimit:
        """Return the current core rate-limit state."""
        ...

    async def aclose(self) -> None:
        """Release any connections held by the client."""
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


def _split_repo(repo: str) -> tuple[str, str]:
    owner, _, name = repo.rpartition("/")
    if not owner or not name:
        raise ValueError(f"Expected an owner/name repository, got {repo!r}")
    return owner, name


class GitHubClient:
    """Real GitHub API client using httpx.

    Usage:
        async with GitHubClient(token="ghp_...") as client:
            stars = await client.list_starred("octocat")
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        cache: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the GitHub client.

        Credentials are picked in order: personal access token, then OAuth
        app client id/secret, then anonymous access.

        Args:
            token: GitHub personal access token. Falls back to
                   GITHUB_TOKEN environment variable if not provided.
            client_id: OAuth app client id (used with client_secret)
            client_secret: OAuth app client secret
            cache: Wrap the transport in an ETag response cache
            transport: Base httpx transport (tests pass a MockTransport)
            timeout: Per-request timeout in seconds
        """
        self._token = token or os.environ.get("GITHUB_TOKEN", "")
        headers: dict[str, str] = {
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        auth: httpx.Auth | None = None
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
            logger.info("github_client_configured", auth="token")
        elif client_id and client_secret:
            auth = httpx.BasicAuth(client_id, client_secret)
            logger.info("github_client_configured", auth="oauth_app")
        else:
            logger.warning("github_client_unauthenticated")

        base_transport = transport or httpx.AsyncHTTPTransport()
        self.cache: ETagCacheTransport | None = None
        if cache:
            self.cache = ETagCacheTransport(base_transport)
            base_transport = self.cache

        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers=headers,
            auth=auth,
            transport=base_transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- API operations ---------------------------------------------------

    async def list_starred(self, user: str) -> list[str]:
        """Return every repository starred by a user, across all pages."""
        items = await self._handle_pagination(f"/users/{user}/starred")
        logger.debug("starred_listed", user=user, count=len(items))
        return [item["full_name"] for item in items]

    async def get_repository(self, repo: str) -> RepoMetadata:
        """Fetch display metadata for a repository.

        Raises:
            NotFound: If the repository was deleted or renamed away
        """
        resp = await self._request("GET", f"/repos/{repo}")
        data = resp.json()
        return RepoMetadata(
            full_name=data["full_name"],
            name=data["name"],
            html_url=data["html_url"],
            avatar_url=(data.get("owner") or {}).get("avatar_url"),
        )

    async def query_releases_and_tags(self, repo: str) -> ReleasesAndTags:
        """Run the combined releases + tags GraphQL query.

        Nodes that don't parse are dropped rather than failing the whole
        query; the reconciler only works with what's usable.

        Raises:
            NotFound: If the repository resolves to null
            RateLimited: If GraphQL reports the rate limit as exhausted
            UpstreamError: For any other GraphQL error without data
        """
        owner, name = _split_repo(repo)
        resp = await self._request(
            "POST",
            "/graphql",
            json={
                "query": RELEASES_AND_TAGS_QUERY,
                "variables": {"owner": owner, "name": name},
            },
        )
        payload = resp.json()
        errors = payload.get("errors") or []
        error_types = {error.get("type") for error in errors}
        if "RATE_LIMITED" in error_types:
            raise RateLimited("GraphQL rate limit exhausted", resp.status_code)

        repository = (payload.get("data") or {}).get("repository")
        if repository is None:
            if errors and "NOT_FOUND" not in error_types:
                raise UpstreamError(
                    f"GraphQL query for {repo} failed: {errors[0].get('message')}",
                    resp.status_code,
                )
            raise NotFound(f"Repository {repo} not found", resp.status_code)

        releases = []
        for node in (repository.get("releases") or {}).get("nodes") or []:
            try:
                releases.append(UpstreamRelease.model_validate(node))
            except ValidationError:
                logger.debug("release_node_skipped", repo=repo, node=node)

        tags = []
        for node in (repository.get("refs") or {}).get("nodes") or []:
            tag = self._parse_tag_node(node)
            if tag is None:
                logger.debug("tag_node_skipped", repo=repo, node=node)
            else:
                tags.append(tag)

        return ReleasesAndTags(releases=releases, tags=tags)

    async def rate_limit(self) -> RateLimit:
        """Return the core REST rate-limit state."""
        resp = await self._request("GET", "/rate_limit")
        core = resp.json()["resources"]["core"]
        resets_at = datetime.fromtimestamp(core["reset"], UTC)
        resets_in = max(0, int((resets_at - datetime.now(UTC)).total_seconds()))
        return RateLimit(
            limit=core["limit"],
            remaining=core["remaining"],
            resets_at=resets_at,
            resets_in=resets_in,
        )

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _parse_tag_node(node: Any) -> UpstreamTagRef | None:
        if not isinstance(node, dict) or not node.get("name"):
            return None
        target = node.get("target") or {}
        tagger = target.get("tagger") or {}
        try:
            return UpstreamTagRef(
                name=node["name"],
                target_kind=target.get("__typename"),
                pushed_date=target.get("pushedDate"),
                committed_date=target.get("committedDate"),
                tagger_date=tagger.get("date"),
                message=target.get("message"),
            )
        except ValidationError:
            return None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and map error statuses.

        Transport failures that outlast the retries become UpstreamError.
        """
        try:
            resp = await self._send(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.error("github_request_failed", method=method, url=url, error=str(exc))
            raise UpstreamError(f"{method} {url} failed: {exc}") from exc
        self._raise_for_status(resp)
        return resp

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        if resp.status_code == 404:
            raise NotFound(f"{resp.request.url.path} not found", resp.status_code)

        remaining = resp.headers.get("x-ratelimit-remaining")
        if resp.status_code == 429 or (resp.status_code == 403 and remaining == "0"):
            reset = resp.headers.get("x-ratelimit-reset")
            resets_at = None
            if reset and reset.isdigit():
                resets_at = datetime.fromtimestamp(int(reset), UTC)
            elif resp.headers.get("retry-after", "").isdigit():
                resets_at = datetime.now(UTC) + timedelta(
                    seconds=int(resp.headers["retry-after"])
                )
            raise RateLimited(
                "GitHub rate limit exhausted", resp.status_code, resets_at=resets_at
            )

        raise UpstreamError(
            f"GitHub returned {resp.status_code} for {resp.request.method} "
            f"{resp.request.url.path}",
            resp.status_code,
        )

    async def _handle_pagination(self, url: str) -> list[dict]:
        """Handle GitHub API pagination for endpoints that return lists.

        GitHub returns a 'Link' header with next/prev/last URLs for
        paginated responses.

        Args:
            url: The initial URL to fetch

        Returns:
            All items across all pages
        """
        all_items: list[dict] = []
        resp = await self._request("GET", url, params={"per_page": 100})
        all_items.extend(resp.json())
        next_url = self._parse_next_link(resp.headers.get("link", ""))

        while next_url:
            resp = await self._request("GET", next_url)
            all_items.extend(resp.json())
            next_url = self._parse_next_link(resp.headers.get("link", ""))

        return all_items

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the 'next' URL from a GitHub Link header."""
        if not link_header:
            return None
        for part in link_header.split(","):
            if 'rel="next"' in part:
                return part.split(";")[0].strip().strip("<>")
        return None


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockGitHubClient:
    """Mock GitHub client that serves predefined data.

    Use this in tests and local development when you don't want to hit
    the real GitHub API. Every call is counted in `calls`.

    Usage:
        client = MockGitHubClient(
            starred={"octocat": ["octocat/hello-world"]},
            releases={"octocat/hello-world": {"releases": [...], "tags": []}},
        )
    """

    def __init__(
        self,
        starred: dict[str, list[str]] | None = None,
        repositories: dict[str, dict] | None = None,
        releases: dict[str, dict] | None = None,
        missing: set[str] | None = None,
        failures: dict[str, Exception] | None = None,
        rate: RateLimit | None = None,
    ) -> None:
        """Initialize with optional predefined data.

        Args:
            starred: user -> starred repo names
            repositories: repo -> RepoMetadata data (defaults are synthesized)
            releases: repo -> ReleasesAndTags data (defaults to empty)
            missing: repos that answer NotFound
            failures: repo -> exception raised by the releases query
            rate: rate limit to report
        """
        self._starred = starred or {}
        self._repositories = repositories or {}
        self._releases = releases or {}
        self._missing = missing or set()
        self._failures = failures or {}
        self._rate = rate
        self.calls: Counter[str] = Counter()

    async def list_starred(self, user: str) -> list[str]:
        self.calls["list_starred"] += 1
        if user not in self._starred:
            raise NotFound(f"User {user} not found", 404)
        return list(self._starred[user])

    async def get_repository(self, repo: str) -> RepoMetadata:
        self.calls["get_repository"] += 1
        if repo in self._missing:
            raise NotFound(f"Repository {repo} not found", 404)
        if repo in self._repositories:
            return RepoMetadata.model_validate(self._repositories[repo])
        owner, name = _split_repo(repo)
        return RepoMetadata(
            full_name=repo,
            name=name,
            html_url=f"https://github.com/{repo}",
            avatar_url=f"https://avatars.githubusercontent.com/{owner}?v=4",
        )

    async def query_releases_and_tags(self, repo: str) -> ReleasesAndTags:
        self.calls["query_releases_and_tags"] += 1
        if repo in self._missing:
            raise NotFound(f"Repository {repo} not found", 404)
        if repo in self._failures:
            raise self._failures[repo]
        return ReleasesAndTags.model_validate(self._releases.get(repo, {}))

    async def rate_limit(self) -> RateLimit:
        self.calls["rate_limit"] += 1
        if self._rate is not None:
            return self._rate
        return RateLimit(
            limit=5000,
            remaining=5000 - sum(self.calls.values()),
            resets_at=datetime.now(UTC) + timedelta(hours=1),
            resets_in=3600,
        )

    async def aclose(self) -> None:
        pass
