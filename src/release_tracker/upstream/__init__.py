"""Upstream API clients.

The tracker only talks to the upstream through UpstreamClientProtocol, so
the real GitHub client and the in-memory mock are interchangeable.
"""

from release_tracker.upstream.github import (
    GitHubClient,
    MockGitHubClient,
    UpstreamClientProtocol,
)

__all__ = ["GitHubClient", "MockGitHubClient", "UpstreamClientProtocol"]
