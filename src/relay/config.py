from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from relay.errors import ConfigError

AgentBackendName = Literal["claude", "codex"]
AnalysisBackendName = Literal["cli", "openai"]
StorageBackendName = Literal["json", "sqlite"]


@dataclass(slots=True)
class PollingConfig:
    intake_interval_seconds: float = 15.0
    pr_interval_seconds: float = 30.0
    pr_timeout_seconds: float = 30 * 60.0
    review_interval_seconds: float = 30.0
    housekeeping_interval_seconds: float = 60.0
    process_poll_seconds: float = 5.0
    host_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ReviewConfig:
    max_iterations: int = 3


@dataclass(slots=True)
class CacheConfig:
    ttl_days: int = 30
    pipeline_retention_days: int = 7


@dataclass(slots=True)
class StorageConfig:
    backend: StorageBackendName = "json"
    path: str = ".relay/state"


@dataclass(slots=True)
class RepositoryConfig:
    owner: str = ""
    repo: str = ""
    path: str = "."
    base_branch: str = "main"

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(slots=True)
class AgentsConfig:
    primary: AgentBackendName = "claude"
    fallback: AgentBackendName = "codex"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 2.0
    timeout_seconds: float = 45 * 60.0
    analysis_backend: AnalysisBackendName = "cli"
    analysis_model: str = "gpt-5"
    artifacts_dir: str = ".relay/features"


@dataclass(slots=True)
class TrackerConfig:
    api_url: str = "https://api.clickup.com/api/v2"
    token_env: str = "CLICKUP_API_KEY"
    workspace_id: str = ""
    bot_user_id: str = ""
    statuses: list[str] = field(default_factory=lambda: ["bot in progress"])
    pr_found_status: str = "can be checked"
    timeout_seconds: float = 30.0

    def token(self) -> str | None:
        value = os.environ.get(self.token_env, "").strip()
        return value or None


_SECTIONS: dict[str, type] = {
    "polling": PollingConfig,
    "review": ReviewConfig,
    "cache": CacheConfig,
    "storage": StorageConfig,
    "repository": RepositoryConfig,
    "agents": AgentsConfig,
    "tracker": TrackerConfig,
}


@dataclass(slots=True)
class RelayConfig:
    polling: PollingConfig = field(default_factory=PollingConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    @classmethod
    def default(cls) -> RelayConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayConfig:
        sections: dict[str, Any] = {}
        for name, section_type in _SECTIONS.items():
            raw = data.get(name, {})
            if not isinstance(raw, dict):
                raise ConfigError(f"Section [{name}] must be a table.")
            known = {item.name for item in fields(section_type)}
            unknown = sorted(set(raw) - known)
            if unknown:
                raise ConfigError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
            sections[name] = section_type(**raw)
        config = cls(**sections)
        config.validate()
        return config

    def to_dict(self) -> dict[str, dict[str, Any]]:
        payload: dict[str, dict[str, Any]] = {}
        for name in _SECTIONS:
            section = getattr(self, name)
            values: dict[str, Any] = {}
            for item in fields(section):
                value = getattr(section, item.name)
                values[item.name] = list(value) if isinstance(value, list) else value
            payload[name] = values
        return payload

    def validate(self) -> None:
        if self.storage.backend not in {"json", "sqlite"}:
            raise ConfigError(f"Unsupported storage backend: {self.storage.backend}")
        if self.agents.analysis_backend not in {"cli", "openai"}:
            raise ConfigError(f"Unsupported analysis backend: {self.agents.analysis_backend}")
        for backend in (self.agents.primary, self.agents.fallback):
            if backend not in {"claude", "codex"}:
                raise ConfigError(f"Unsupported agent backend: {backend}")
        if self.review.max_iterations < 1:
            raise ConfigError("review.max_iterations must be at least 1.")
        if self.cache.ttl_days < 1:
            raise ConfigError("cache.ttl_days must be at least 1.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RelayConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RelayConfig:
    if not path.exists():
        return RelayConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return RelayConfig.from_dict(data)


def save_config(path: Path, config: RelayConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
