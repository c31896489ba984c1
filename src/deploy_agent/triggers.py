"""Trigger events: what to deploy and where."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import TriggerError

_NULL_SHA = "0" * 40


@dataclass
class TriggerEvent:
    """An inbound deployment request."""

    revision: Optional[str] = None
    ref: Optional[str] = None
    selector: Optional[str] = None
    repo_url: Optional[str] = None
    source: str = "cli"

    @property
    def branch(self) -> Optional[str]:
        if self.ref and self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return self.ref

    def require_revision(self) -> str:
        if not self.revision:
            raise TriggerError("Trigger carries no revision")
        return self.revision

    @classmethod
    def from_push_payload(cls, payload: Dict[str, Any], selector: Optional[str] = None) -> "TriggerEvent":
        """Build an event from a GitHub/Gitea style push webhook body."""
        if payload.get("deleted") or payload.get("after") == _NULL_SHA:
            raise TriggerError("Push deletes the ref; nothing to deploy", context=payload.get("ref"))
        revision = payload.get("after") or (payload.get("head_commit") or {}).get("id")
        if not revision:
            raise TriggerError("Push payload has no 'after' revision")
        repository = payload.get("repository") or {}
        return cls(
            revision=revision,
            ref=payload.get("ref"),
            selector=selector,
            repo_url=repository.get("clone_url") or repository.get("ssh_url"),
            source="push",
        )

    @classmethod
    def from_event_file(cls, path: str, selector: Optional[str] = None) -> "TriggerEvent":
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise TriggerError(f"Cannot read event file: {exc}", context=path) from exc
        if not isinstance(payload, dict):
            raise TriggerError("Event file must contain a JSON object", context=path)
        return cls.from_push_payload(payload, selector)

    @classmethod
    def from_environment(
        cls,
        env: Optional[Mapping[str, str]] = None,
        selector: Optional[str] = None,
    ) -> "TriggerEvent":
        """Build an event from CI variables (GitHub Actions, GitLab CI)."""
        env = os.environ if env is None else env
        revision = env.get("GITHUB_SHA") or env.get("CI_COMMIT_SHA")
        ref = env.get("GITHUB_REF") or env.get("CI_COMMIT_REF_NAME")
        if not revision and not ref:
            raise TriggerError("No revision given and no CI environment detected")
        source = "github" if env.get("GITHUB_SHA") or env.get("GITHUB_REF") else "gitlab"
        return cls(revision=revision, ref=ref, selector=selector, source=source)
