"""Tests for the httpx-based GitHub client and its ETag cache.

All HTTP traffic goes through httpx.MockTransport, so nothing here touches
the real GitHub API.

Run with: pytest tests/test_github_client.py -v
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest
from tenacity import wait_none

from release_tracker.errors import NotFound, RateLimited, UpstreamError
from release_tracker.upstream.cache import ETagCacheTransport
from release_tracker.upstream.github import GitHubClient

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(handler: Handler, **kwargs) -> GitHubClient:
    kwargs.setdefault("token", "ghp_test")
    return GitHubClient(transport=httpx.MockTransport(handler), **kwargs)


def graphql_repository(releases: list[dict], refs: list[dict]) -> dict:
    return {
        "data": {
            "repository": {
                "releases": {"nodes": releases},
                "refs": {"nodes": refs},
            }
        }
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_env_token(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's GITHUB_TOKEN out of the auth tests."""
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


# ---------------------------------------------------------------------------
# Authentication Tests
# ---------------------------------------------------------------------------


class TestAuthentication:
    """Credentials are chosen once, at construction."""

    @pytest.mark.asyncio
    async def test_token_uses_bearer(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"resources": {"core": {"limit": 1, "remaining": 1, "reset": 0}}})

        async with make_client(handler, token="ghp_abc") as client:
            await client.rate_limit()
        assert seen[0].headers["Authorization"] == "Bearer ghp_abc"

    @pytest.mark.asyncio
    async def test_oauth_app_uses_basic_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"resources": {"core": {"limit": 1, "remaining": 1, "reset": 0}}})

        async with make_client(handler, token=None, client_id="id", client_secret="secret") as client:
            await client.rate_limit()
        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_anonymous(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"resources": {"core": {"limit": 60, "remaining": 60, "reset": 0}}})

        async with make_client(handler, token=None) as client:
            await client.rate_limit()
        assert "Authorization" not in seen[0].headers


# ---------------------------------------------------------------------------
# REST Tests
# ---------------------------------------------------------------------------


class TestRest:
    """Tests for list_starred, get_repository and rate_limit."""

    @pytest.mark.asyncio
    async def test_list_starred_follows_pagination(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[{"full_name": "c/three"}])
            assert request.url.path == "/users/octocat/starred"
            assert request.url.params["per_page"] == "100"
            return httpx.Response(
                200,
                json=[{"full_name": "a/one"}, {"full_name": "b/two"}],
                headers={
                    "Link": '<https://api.github.com/users/octocat/starred?per_page=100&page=2>; rel="next", '
                    '<https://api.github.com/users/octocat/starred?per_page=100&page=2>; rel="last"'
                },
            )

        async with make_client(handler) as client:
            assert await client.list_starred("octocat") == ["a/one", "b/two", "c/three"]

    @pytest.mark.asyncio
    async def test_get_repository(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/repos/octocat/hello-world"
            return httpx.Response(
                200,
                json={
                    "full_name": "octocat/hello-world",
                    "name": "hello-world",
                    "html_url": "https://github.com/octocat/hello-world",
                    "owner": {"avatar_url": "https://avatars.githubusercontent.com/u/583231?v=4"},
                },
            )

        async with make_client(handler) as client:
            repo = await client.get_repository("octocat/hello-world")
        assert repo.name == "hello-world"
        assert repo.avatar_url == "https://avatars.githubusercontent.com/u/583231?v=4"

    @pytest.mark.asyncio
    async def test_missing_repository_raises_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "Not Found"})

        async with make_client(handler) as client:
            with pytest.raises(NotFound):
                await client.get_repository("octocat/gone")

    @pytest.mark.asyncio
    async def test_exhausted_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                json={"message": "API rate limit exceeded"},
                headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1714569600"},
            )

        async with make_client(handler) as client:
            with pytest.raises(RateLimited) as excinfo:
                await client.get_repository("octocat/hello-world")
        assert excinfo.value.resets_at == datetime(2024, 5, 1, 13, 20, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_secondary_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "60"})

        async with make_client(handler) as client:
            with pytest.raises(RateLimited) as excinfo:
                await client.get_repository("octocat/hello-world")
        assert excinfo.value.resets_at is not None

    @pytest.mark.asyncio
    async def test_forbidden_is_not_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, headers={"X-RateLimit-Remaining": "4000"})

        async with make_client(handler) as client:
            with pytest.raises(UpstreamError) as excinfo:
                await client.get_repository("octocat/hello-world")
        assert not isinstance(excinfo.value, RateLimited)
        assert excinfo.value.status_code == 403

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502)

        async with make_client(handler) as client:
            with pytest.raises(UpstreamError):
                await client.list_starred("octocat")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_transport_failure_is_retried_then_wrapped(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A connection that keeps failing surfaces as UpstreamError."""
        monkeypatch.setattr(GitHubClient._send.retry, "wait", wait_none())
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(UpstreamError) as excinfo:
                await client.list_starred("octocat")

        assert calls == 3
        assert excinfo.value.status_code is None
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_transient_transport_failure_recovers(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(GitHubClient._send.retry, "wait", wait_none())
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json=[{"full_name": "a/one"}])

        async with make_client(handler) as client:
            assert await client.list_starred("octocat") == ["a/one"]
        assert calls == 2

    @pytest.mark.asyncio
    async def test_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/rate_limit"
            return httpx.Response(
                200,
                json={"resources": {"core": {"limit": 5000, "remaining": 4990, "reset": 1714569600}}},
            )

        async with make_client(handler) as client:
            rate = await client.rate_limit()
        assert rate.limit == 5000
        assert rate.remaining == 4990
        assert rate.resets_at == datetime(2024, 5, 1, 13, 20, tzinfo=UTC)
        assert rate.resets_in >= 0

    def test_parse_next_link(self) -> None:
        header = '<https://api.github.com/x?page=3>; rel="next", <https://api.github.com/x?page=9>; rel="last"'
        assert GitHubClient._parse_next_link(header) == "https://api.github.com/x?page=3"
        assert GitHubClient._parse_next_link('<https://api.github.com/x?page=1>; rel="prev"') is None
        assert GitHubClient._parse_next_link("") is None


# ---------------------------------------------------------------------------
# GraphQL Tests
# ---------------------------------------------------------------------------


class TestReleasesAndTags:
    """Tests for the combined GraphQL query."""

    @pytest.mark.asyncio
    async def test_query_parses_releases_and_tags(self) -> None:
        sent: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/graphql"
            sent.append(json.loads(request.content))
            return httpx.Response(
                200,
                json=graphql_repository(
                    releases=[
                        {
                            "tagName": "v2.0.0",
                            "name": "Two",
                            "createdAt": "2024-04-15T10:00:00Z",
                            "url": "https://github.com/octocat/hello-world/releases/tag/v2.0.0",
                            "description": "Big one",
                            "isPrerelease": False,
                        }
                    ],
                    refs=[
                        {
                            "name": "v2.1.0",
                            "target": {
                                "__typename": "Tag",
                                "tagger": {"date": "2024-04-20T08:00:00Z"},
                                "message": "annotated",
                            },
                        },
                        {
                            "name": "nightly",
                            "target": {
                                "__typename": "Commit",
                                "pushedDate": None,
                                "committedDate": "2024-04-21T08:00:00Z",
                                "message": "commit",
                            },
                        },
                    ],
                ),
            )

        async with make_client(handler) as client:
            data = await client.query_releases_and_tags("octocat/hello-world")

        assert sent[0]["variables"] == {"owner": "octocat", "name": "hello-world"}
        assert "releases(first: 5" in sent[0]["query"]
        assert "refs(first: 5" in sent[0]["query"]
        assert [r.tag_name for r in data.releases] == ["v2.0.0"]
        assert data.releases[0].created_at == datetime(2024, 4, 15, 10, 0, tzinfo=UTC)
        assert [t.name for t in data.tags] == ["v2.1.0", "nightly"]
        assert data.tags[0].target_kind == "Tag"
        assert data.tags[0].tagger_date == datetime(2024, 4, 20, 8, 0, tzinfo=UTC)
        assert data.tags[1].pushed_date is None
        assert data.tags[1].committed_date == datetime(2024, 4, 21, 8, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_malformed_nodes_are_dropped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=graphql_repository(
                    releases=[{"tagName": "broken", "createdAt": "not a date", "url": "u"}],
                    refs=[
                        {"name": "empty", "target": None},
                        {"name": "bad-date", "target": {"__typename": "Tag", "tagger": {"date": "soon"}}},
                        None,
                    ],
                ),
            )

        async with make_client(handler) as client:
            data = await client.query_releases_and_tags("octocat/hello-world")

        assert data.releases == []
        assert [t.name for t in data.tags] == ["empty"]
        assert data.tags[0].target_kind is None

    @pytest.mark.asyncio
    async def test_null_repository_is_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {"repository": None},
                    "errors": [{"type": "NOT_FOUND", "message": "Could not resolve"}],
                },
            )

        async with make_client(handler) as client:
            with pytest.raises(NotFound):
                await client.query_releases_and_tags("octocat/gone")

    @pytest.mark.asyncio
    async def test_graphql_rate_limit(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"data": None, "errors": [{"type": "RATE_LIMITED", "message": "limit"}]},
            )

        async with make_client(handler) as client:
            with pytest.raises(RateLimited):
                await client.query_releases_and_tags("octocat/hello-world")

    @pytest.mark.asyncio
    async def test_other_graphql_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"data": None, "errors": [{"type": "FORBIDDEN", "message": "nope"}]},
            )

        async with make_client(handler) as client:
            with pytest.raises(UpstreamError) as excinfo:
                await client.query_releases_and_tags("octocat/hello-world")
        assert not isinstance(excinfo.value, NotFound)

    @pytest.mark.asyncio
    async def test_invalid_repo_name(self) -> None:
        async with make_client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(ValueError):
                await client.query_releases_and_tags("no-owner")


# ---------------------------------------------------------------------------
# ETag Cache Tests
# ---------------------------------------------------------------------------


class TestETagCache:
    """Tests for conditional requests through ETagCacheTransport."""

    @staticmethod
    def repo_handler(seen: list[httpx.Request]) -> Handler:
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.headers.get("If-None-Match") == '"v1"':
                return httpx.Response(304, headers={"ETag": '"v1"'})
            return httpx.Response(
                200,
                json={
                    "full_name": "octocat/hello-world",
                    "name": "hello-world",
                    "html_url": "https://github.com/octocat/hello-world",
                    "owner": {"avatar_url": None},
                },
                headers={"ETag": '"v1"'},
            )

        return handler

    @pytest.mark.asyncio
    async def test_not_modified_is_served_from_cache(self) -> None:
        seen: list[httpx.Request] = []
        async with make_client(self.repo_handler(seen)) as client:
            first = await client.get_repository("octocat/hello-world")
            second = await client.get_repository("octocat/hello-world")
            assert client.cache is not None
            assert client.cache.hits == 1

        assert first == second
        assert "If-None-Match" not in seen[0].headers
        assert seen[1].headers["If-None-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_cache_can_be_disabled(self) -> None:
        seen: list[httpx.Request] = []
        async with make_client(self.repo_handler(seen), cache=False) as client:
            await client.get_repository("octocat/hello-world")
            await client.get_repository("octocat/hello-world")
            assert client.cache is None

        assert all("If-None-Match" not in r.headers for r in seen)

    @pytest.mark.asyncio
    async def test_posts_are_not_cached(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=graphql_repository([], []), headers={"ETag": '"g"'})

        async with make_client(handler) as client:
            await client.query_releases_and_tags("octocat/hello-world")
            await client.query_releases_and_tags("octocat/hello-world")
            assert client.cache is not None
            assert len(client.cache) == 0

        assert all("If-None-Match" not in r.headers for r in seen)

    @pytest.mark.asyncio
    async def test_least_recently_used_entry_is_evicted(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            etag = f'"{request.url.path}"'
            if request.headers.get("If-None-Match") == etag:
                return httpx.Response(304, headers={"ETag": etag})
            return httpx.Response(200, json={"path": request.url.path}, headers={"ETag": etag})

        cache = ETagCacheTransport(httpx.MockTransport(handler), max_entries=2)
        async with httpx.AsyncClient(base_url="https://api.github.com", transport=cache) as client:
            await client.get("/a")
            await client.get("/b")
            await client.get("/a")
            await client.get("/c")
            assert len(cache) == 2
            response = await client.get("/b")

        assert response.json() == {"path": "/b"}
        assert cache.hits == 1
        assert "If-None-Match" not in seen[-1].headers
        assert seen[2].headers["If-None-Match"] == '"/a"'
