"""Per-entity state for tracked users and repositories.

State is split in two:
- Persistent: user-authored or expensive-to-rebuild data (star lists,
  visibility policy). Survives restarts via the state file.
- Ephemeral: derived cache data (metadata, next-check timestamps, the
  cached latest release). Lives in memory and is rebuilt on demand.

The two only meet at the load/save boundary, where `normalize_tracked`
strips derived keys out of the persistent shape:

    tracked:
      users:
        octocat:
          repos: [octocat/hello-world]
      repos:
        octocat/hello-world:
          allow: tags
    last_check: 2024-05-01T12:00:00+00:00

All access happens from one event loop. Refresh workers operate on disjoint
repositories, so records are never locked individually; the collections
are plain dicts mutated by whole-record assignment.
"""

from __future__ import annotations

import copy
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from release_tracker.errors import ConfigError
from release_tracker.logging_config import get_logger
from release_tracker.schemas import CachedReleaseRecord, Visibility

logger = get_logger(__name__)

# Keys that only ever hold derived data. Older state files stored them in
# the persistent bags; they are dropped on every load and save.
DERIVED_USER_KEYS = frozenset({"last_check", "next_check"})
DERIVED_REPO_KEYS = frozenset(
    {
        "latest",
        "last_check",
        "next_check",
        "next_data_sync",
        "full_name",
        "name",
        "html_url",
        "avatar_url",
    }
)


# ---------------------------------------------------------------------------
# State records
# ---------------------------------------------------------------------------


class PersistentUser(BaseModel):
    """Persistent bag for a tracked user. Extra keys are user-authored."""

    model_config = ConfigDict(extra="allow")

    repos: list[str] | None = None
    next_check: datetime | None = None


class PersistentRepo(BaseModel):
    """Persistent bag for a tracked repository. Extra keys are user-authored."""

    model_config = ConfigDict(extra="allow")

    allow: Visibility | None = None

    @property
    def visibility(self) -> Visibility:
        return self.allow or Visibility.RELEASES


class EphemeralUser(BaseModel):
    last_check: datetime | None = None


class EphemeralRepo(BaseModel):
    """Derived, disposable state for a tracked repository."""

    full_name: str | None = None
    name: str | None = None
    html_url: str | None = None
    avatar_url: str | None = None
    last_check: datetime | None = None
    next_check: datetime | None = None
    next_data_sync: datetime | None = None
    latest: CachedReleaseRecord | None = None

    @property
    def has_metadata(self) -> bool:
        return bool(self.full_name and self.name and self.html_url)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


def _is_empty_record(record: dict[str, Any], derived: frozenset[str]) -> bool:
    """A record is empty iff it has no key outside the derived set."""
    return not (set(record) - derived)


def _normalize_collection(
    records: dict[str, Any], derived: frozenset[str]
) -> dict[str, dict[str, Any]]:
    cleaned: dict[str, dict[str, Any]] = {}
    for key, record in records.items():
        if not isinstance(record, dict) or _is_empty_record(record, derived):
            continue
        cleaned[key] = {k: v for k, v in record.items() if k not in derived}
    return cleaned


def normalize_tracked(data: dict[str, Any]) -> dict[str, Any]:
    """Return a cleaned copy of a persisted state mapping.

    Strips derived keys from every user and repo record, drops records
    left empty, then drops `users`/`repos` and finally `tracked` once they
    hold nothing. The input is not modified and the result is a fixed
    point: normalizing it again returns an equal mapping.
    """
    result = copy.deepcopy(data)
    tracked = result.get("tracked")
    if not isinstance(tracked, dict):
        result.pop("tracked", None)
        return result

    for section, derived in (("users", DERIVED_USER_KEYS), ("repos", DERIVED_REPO_KEYS)):
        records = tracked.get(section)
        cleaned = _normalize_collection(records, derived) if isinstance(records, dict) else {}
        if cleaned:
            tracked[section] = cleaned
        else:
            tracked.pop(section, None)

    if not tracked:
        result.pop("tracked")
    return result


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class EntityStateStore:
    """Holds persistent and ephemeral state for tracked users and repos.

    Usage:
        store = EntityStateStore.load(yaml.safe_load(text))
        store.merge_ephemeral_repo("octocat/hello-world", next_check=when)
        text = yaml.safe_dump(store.dump())
    """

    def __init__(self) -> None:
        self._users: dict[str, PersistentUser] = {}
        self._repos: dict[str, PersistentRepo] = {}
        self._ephemeral_users: dict[str, EphemeralUser] = {}
        self._ephemeral_repos: dict[str, EphemeralRepo] = {}
        self._extra: dict[str, Any] = {}
        self.last_check: datetime | None = None

    # -- load / save ------------------------------------------------------

    @classmethod
    def load(cls, data: dict[str, Any] | None) -> EntityStateStore:
        """Build a store from a persisted mapping, cleaning it first.

        Raises:
            ConfigError: If a record fails validation
        """
        store = cls()
        normalized = normalize_tracked(data or {})
        tracked = normalized.pop("tracked", {})
        last_check = normalized.pop("last_check", None)

        try:
            for handle, record in tracked.get("users", {}).items():
                store._users[handle] = PersistentUser.model_validate(record)
            for name, record in tracked.get("repos", {}).items():
                store._repos[name] = PersistentRepo.model_validate(record)
            if last_check is not None:
                store.last_check = EphemeralUser.model_validate(
                    {"last_check": last_check}
                ).last_check
        except ValidationError as exc:
            raise ConfigError(f"Invalid tracker state: {exc}") from exc

        store._extra = normalized
        logger.debug(
            "state_loaded",
            users=len(store._users),
            repos=len(store._repos),
        )
        return store

    def dump(self) -> dict[str, Any]:
        """Serialize the persistent state, cleaned, as plain data."""
        data: dict[str, Any] = dict(self._extra)
        data["tracked"] = {
            "users": {
                handle: user.model_dump(mode="json", exclude_none=True)
                for handle, user in self._users.items()
            },
            "repos": {
                name: repo.model_dump(mode="json", exclude_none=True)
                for name, repo in self._repos.items()
            },
        }
        if self.last_check is not None:
            data["last_check"] = self.last_check.isoformat()
        return normalize_tracked(data)

    # -- persistent -------------------------------------------------------

    @property
    def users(self) -> list[str]:
        return list(self._users)

    @property
    def repos(self) -> list[str]:
        return list(self._repos)

    def track_user(self, handle: str) -> PersistentUser:
        return self.persistent_user(handle)

    def persistent_user(self, handle: str) -> PersistentUser:
        if handle not in self._users:
            self._users[handle] = PersistentUser()
        return self._users[handle]

    def put_persistent_user(self, handle: str, user: PersistentUser) -> None:
        self._users[handle] = user

    def persistent_repo(self, name: str) -> PersistentRepo:
        if name not in self._repos:
            self._repos[name] = PersistentRepo()
        return self._repos[name]

    def put_persistent_repo(self, name: str, repo: PersistentRepo) -> None:
        self._repos[name] = repo

    def visibility(self, name: str) -> Visibility:
        repo = self._repos.get(name)
        return repo.visibility if repo else Visibility.RELEASES

    def set_visibility(self, name: str, visibility: Visibility | str) -> PersistentRepo:
        repo = self.persistent_repo(name).model_copy(
            update={"allow": Visibility(visibility)}
        )
        self._repos[name] = repo
        return repo

    # -- ephemeral --------------------------------------------------------

    def ephemeral_user(self, handle: str) -> EphemeralUser:
        if handle not in self._ephemeral_users:
            self._ephemeral_users[handle] = EphemeralUser()
        return self._ephemeral_users[handle]

    def ephemeral_repo(self, name: str) -> EphemeralRepo:
        if name not in self._ephemeral_repos:
            self._ephemeral_repos[name] = EphemeralRepo()
        return self._ephemeral_repos[name]

    def merge_ephemeral_user(self, handle: str, /, **fields: Any) -> EphemeralUser:
        merged = _merge(self.ephemeral_user(handle), fields)
        self._ephemeral_users[handle] = merged
        return merged

    def merge_ephemeral_repo(self, repo: str, /, **fields: Any) -> EphemeralRepo:
        """Shallow-merge fields into a repo's ephemeral state.

        The repo key is positional-only, so `name` can be merged like any
        other field.

        New keys overwrite, unrelated keys survive. The merged record
        replaces the old one in a single assignment.
        """
        merged = _merge(self.ephemeral_repo(repo), fields)
        self._ephemeral_repos[repo] = merged
        return merged


def _merge(record: BaseModel, fields: dict[str, Any]) -> Any:
    unknown = set(fields) - set(type(record).model_fields)
    if unknown:
        raise ValueError(f"Unknown {type(record).__name__} fields: {sorted(unknown)}")
    return record.model_copy(update=fields)


# ---------------------------------------------------------------------------
# State file
# ---------------------------------------------------------------------------


def load_state_file(path: str | Path) -> EntityStateStore:
    """Load a store from a YAML state file.

    Returns an empty store if the file doesn't exist.

    Raises:
        ConfigError: If the file holds invalid YAML or invalid records
    """
    state_path = Path(path)
    if not state_path.exists():
        return EntityStateStore()

    try:
        raw = yaml.safe_load(state_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return EntityStateStore.load(raw)


def save_state_file(store: EntityStateStore, path: str | Path) -> None:
    """Write a store's persistent state to a YAML file, atomically."""
    state_path = Path(path)
    state_path.parent.mkdir(parents=True, exist_ok=True)
    text = yaml.safe_dump(store.dump(), sort_keys=True)

    fd, tmp_name = tempfile.mkstemp(dir=state_path.parent, prefix=f".{state_path.name}.")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(text)
        os.replace(tmp_name, state_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("state_saved", path=str(state_path))
