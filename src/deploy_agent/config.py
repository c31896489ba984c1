"""Configuration loading utilities for deploy-agent."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .paths import DEFAULT_CONFIG_PATH
from .targets import Target, TargetRegistry

# Load .env file if it exists
load_dotenv()

_ENV_PREFIX = "DEPLOY_AGENT_"

DEFAULT_PIPELINE: List[Dict[str, Any]] = [
    {"type": "git_checkout"},
    {"type": "activate"},
    {"type": "reload_service", "service": "nginx"},
]


@dataclass
class TransportConfig:
    """Settings for remote connections."""

    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    attempts: int = 3               # connect attempts for transient failures
    backoff_base: float = 1.0       # seconds before the 2nd attempt, doubled after
    backoff_max: float = 8.0
    strict_host_keys: bool = True
    known_hosts: Optional[str] = None


@dataclass
class ReleaseConfig:
    """Settings for release directories and activation."""

    keep_releases: int = 5
    lock_timeout: float = 0.0       # 0 rejects a concurrent run immediately
    max_parallel: int = 4           # targets deployed at the same time


@dataclass
class ReportingConfig:
    """Where run results are sent besides the local JSON log."""

    webhook_url: Optional[str] = None
    timeout: float = 10.0
    log_dir: Optional[str] = None


@dataclass
class AppConfig:
    """Top-level configuration."""

    repo_url: Optional[str] = None
    transport: TransportConfig = field(default_factory=TransportConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    targets: TargetRegistry = field(default_factory=TargetRegistry)
    branches: Dict[str, str] = field(default_factory=dict)
    default_targets: Optional[str] = None
    pipeline: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_PIPELINE))

    @classmethod
    def from_dict(
        cls,
        payload: Dict[str, Any],
        default_key_path: Optional[str] = None,
    ) -> "AppConfig":
        payload = _strip_comments(payload)
        targets_payload = payload.get("targets", {}) or {}
        registry = TargetRegistry(
            Target.from_dict(name, _strip_comments(target_payload), default_key_path)
            for name, target_payload in targets_payload.items()
        )

        pipeline = payload.get("pipeline") or list(DEFAULT_PIPELINE)
        if not isinstance(pipeline, list):
            raise ConfigurationError("pipeline must be a list of step definitions")

        return cls(
            repo_url=payload.get("repo_url"),
            transport=_build(TransportConfig, payload.get("transport")),
            release=_build(ReleaseConfig, payload.get("release")),
            reporting=_build(ReportingConfig, payload.get("reporting")),
            targets=registry,
            branches=dict(payload.get("branches", {}) or {}),
            default_targets=payload.get("default_targets"),
            pipeline=[_strip_comments(step) for step in pipeline],
        )

    def selector_for_ref(self, ref: Optional[str]) -> Optional[str]:
        """Map a git ref (refs/heads/main or main) to a target selector."""
        if ref:
            branch = ref.split("refs/heads/", 1)[-1]
            if branch in self.branches:
                return self.branches[branch]
        return self.default_targets


def _strip_comments(payload: Dict[str, Any]) -> Dict[str, Any]:
    # keys starting with "_" are comments
    return {k: v for k, v in (payload or {}).items() if not k.startswith("_")}


def _build(config_class, payload: Optional[Dict[str, Any]]):
    values = _strip_comments(payload or {})
    try:
        return config_class(**{**config_class().__dict__, **values})
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {config_class.__name__} settings: {exc}") from exc


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - DEPLOY_AGENT_REPO_URL: Repository cloned into each release
    - DEPLOY_AGENT_WEBHOOK_URL: Endpoint receiving run reports
    - DEPLOY_AGENT_SSH_KEY_PATH: Private key for targets without a credential
    - DEPLOY_AGENT_CONNECT_TIMEOUT: SSH connect timeout in seconds
    - DEPLOY_AGENT_KNOWN_HOSTS: Extra known_hosts file
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    candidate_paths.append(DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                try:
                    data = json.load(handle)
                except json.JSONDecodeError as exc:
                    raise ConfigurationError(f"Invalid JSON in {candidate}: {exc}") from exc

            config = AppConfig.from_dict(data, default_key_path=_env("SSH_KEY_PATH"))

            env_repo = _env("REPO_URL")
            if env_repo:
                config.repo_url = env_repo

            env_webhook = _env("WEBHOOK_URL")
            if env_webhook:
                config.reporting.webhook_url = env_webhook

            env_timeout = _env("CONNECT_TIMEOUT")
            if env_timeout:
                try:
                    config.transport.connect_timeout = float(env_timeout)
                except ValueError as exc:
                    raise ConfigurationError(
                        f"{_ENV_PREFIX}CONNECT_TIMEOUT is not a number: {env_timeout}"
                    ) from exc

            env_known_hosts = _env("KNOWN_HOSTS")
            if env_known_hosts:
                config.transport.known_hosts = env_known_hosts

            return config

    raise ConfigurationError(
        "Could not find configuration file. Looked in: "
        + ", ".join(str(p) for p in candidate_paths)
    )


def _env(name: str) -> Optional[str]:
    return os.getenv(f"{_ENV_PREFIX}{name}")
