from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from reviewround.checks import REVIEWER_CHECK_CONTEXT
from reviewround.feedback import REVIEWER_LOGINS
from reviewround.models import RetentionPolicy
from reviewround.scheduler import DEFAULT_BACKOFF_SECONDS


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int
    poll_interval_seconds: int
    fetch_timeout_seconds: int = 120
    gh_check_ttl_seconds: int = 300

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class ReviewerConfig:
    check_context: str = REVIEWER_CHECK_CONTEXT
    logins: tuple[str, ...] = REVIEWER_LOGINS


@dataclass(frozen=True)
class RepoSettings:
    enabled: bool
    backoff_seconds: tuple[int, ...]
    retention: RetentionPolicy


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    base_path: Path | None
    settings: RepoSettings

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    reviewer: ReviewerConfig = ReviewerConfig()

    def repo_by_id(self, repo_id: str) -> RepoConfig:
        for repo in self.repos:
            if repo.repo_id == repo_id:
                return repo
        available = ", ".join(repo.repo_id for repo in self.repos)
        raise ConfigError(f"Unknown repo id {repo_id!r}; expected one of: {available}")

    def settings_for_repo(self, repo_id: str) -> RepoSettings:
        return self.repo_by_id(repo_id).settings


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    reviewer_data = _optional_table(data, "reviewer") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_require_int(runtime_data, "worker_count"),
        poll_interval_seconds=_require_int(runtime_data, "poll_interval_seconds"),
        fetch_timeout_seconds=_int_with_default(runtime_data, "fetch_timeout_seconds", 120),
        gh_check_ttl_seconds=_int_with_default(runtime_data, "gh_check_ttl_seconds", 300),
    )

    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.fetch_timeout_seconds < 1:
        raise ConfigError("runtime.fetch_timeout_seconds must be >= 1")
    if runtime.gh_check_ttl_seconds < 0:
        raise ConfigError("runtime.gh_check_ttl_seconds must be >= 0")

    reviewer = ReviewerConfig(
        check_context=_str_with_default(reviewer_data, "check_context", REVIEWER_CHECK_CONTEXT),
        logins=_logins_with_default(reviewer_data, "logins", REVIEWER_LOGINS),
    )

    return AppConfig(
        runtime=runtime,
        repos=_load_repo_configs(repo_data),
        reviewer=reviewer,
    )


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        repo_table = _require_repo_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(_parse_repo_config(repo_id=repo_id, repo_data=repo_table))
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _parse_repo_config(*, repo_id: str, repo_data: dict[str, object]) -> RepoConfig:
    return RepoConfig(
        repo_id=repo_id,
        owner=_require_str(repo_data, "owner"),
        name=_str_with_default(repo_data, "name", repo_id),
        base_path=_optional_path(repo_data, "base_path"),
        settings=RepoSettings(
            enabled=_bool_with_default(repo_data, "enabled", True),
            backoff_seconds=_backoff_with_default(
                repo_data, "backoff_seconds", DEFAULT_BACKOFF_SECONDS
            ),
            retention=_retention_with_default(repo_data, "retention", "keep"),
        ),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _backoff_with_default(
    data: dict[str, object], key: str, default: tuple[int, ...]
) -> tuple[int, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} must be a non-empty list of positive integers")
    delays: list[int] = []
    for item in value:
        if not isinstance(item, int) or isinstance(item, bool) or item < 1:
            raise ConfigError(f"{key} must be a non-empty list of positive integers")
        delays.append(item)
    return tuple(delays)


def _retention_with_default(
    data: dict[str, object], key: str, default: RetentionPolicy
) -> RetentionPolicy:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: keep, delete-on-close")
    normalized = value.strip().lower()
    if normalized not in {"keep", "delete-on-close"}:
        raise ConfigError(f"{key} must be one of: keep, delete-on-close")
    return cast(RetentionPolicy, normalized)


def _logins_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} must be a non-empty list of strings")
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a non-empty list of strings")
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if login not in normalized:
            normalized.append(login)
    return tuple(normalized)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        existing_id = seen.get(repo.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[repo.full_name] = repo.repo_id
