"""Configuration for the release tracker.

Settings come from a YAML file, with the GitHub token falling back to the
GITHUB_TOKEN environment variable. A missing file is not an error: the
tracker runs with defaults (anonymous, single worker), which is enough for
small star lists.

Example tracker.yml:

    user: octocat
    threads: 4
    access_token: ghp_...
    expiry:
      release: 3600
      release_absent: 86400
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from release_tracker.errors import ConfigError

# Expiry bases in seconds. Each gets +/-25% jitter when applied.
STAR_EXPIRY = 24 * 60 * 60
RELEASE_EXPIRY = 60 * 60
TAGS_RELEASE_EXPIRY = 2 * 60 * 60
NIL_RELEASE_EXPIRY = 24 * 60 * 60
REPODATA_EXPIRY = 2 * 24 * 60 * 60


class ExpirySettings(BaseModel):
    """Base expiry durations, in seconds."""

    stars: int = Field(STAR_EXPIRY, gt=0)
    release: int = Field(RELEASE_EXPIRY, gt=0)
    tags_release: int = Field(TAGS_RELEASE_EXPIRY, gt=0)
    release_absent: int = Field(NIL_RELEASE_EXPIRY, gt=0)
    repo_metadata: int = Field(REPODATA_EXPIRY, gt=0)

    def as_timedelta(self, name: str) -> timedelta:
        return timedelta(seconds=getattr(self, name))


class TrackerSettings(BaseModel):
    """Top-level configuration loaded from YAML."""

    user: str | None = None
    users: list[str] = Field(default_factory=list)
    access_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    threads: int = Field(1, ge=1)
    state_path: Path = Path("release_tracker.yml")
    cache: bool = True
    expiry: ExpirySettings = Field(default_factory=ExpirySettings)

    @model_validator(mode="after")
    def check_client_credentials(self) -> TrackerSettings:
        """OAuth app credentials only work as a pair."""
        if bool(self.client_id) != bool(self.client_secret):
            raise ValueError("client_id and client_secret must be set together")
        return self

    @property
    def tracked_users(self) -> list[str]:
        """The default user followed by any additional users, deduplicated."""
        handles = [self.user] if self.user else []
        handles.extend(self.users)
        return list(dict.fromkeys(handles))


def load_settings(path: str | Path | None = None) -> TrackerSettings:
    """Load and validate a YAML settings file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated settings. Returns defaults if the file doesn't exist.

    Raises:
        ConfigError: If the YAML content is invalid or fails validation.
    """
    raw: dict = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                raw = yaml.safe_load(config_path.read_text()) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ConfigError(f"Expected a mapping at the top of {path}")

    if not raw.get("access_token") and os.environ.get("GITHUB_TOKEN"):
        raw = {**raw, "access_token": os.environ["GITHUB_TOKEN"]}

    try:
        return TrackerSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid tracker config in {path}: {exc}") from exc
