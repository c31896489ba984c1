"""Release data model and remote layout."""

from __future__ import annotations

import posixpath
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ReleaseError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class ReleaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    RETIRED = "retired"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def release_id_for(revision: str) -> str:
    """Directory-safe identifier derived from a source revision."""
    release_id = _UNSAFE_CHARS.sub("-", revision.strip())
    if not release_id or set(release_id) <= {".", "-"}:
        raise ReleaseError(f"Invalid revision: {revision!r}")
    return release_id


@dataclass(frozen=True)
class Release:
    """One staged, deployable snapshot of application content."""

    release_id: str
    revision: str
    path: str
    created_at: str
    status: ReleaseStatus = ReleaseStatus.PENDING
    activated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Release":
        return cls(
            release_id=data["release_id"],
            revision=data.get("revision", data["release_id"]),
            path=data["path"],
            created_at=data.get("created_at", ""),
            status=ReleaseStatus(data.get("status", "pending")),
            activated_at=data.get("activated_at"),
        )


@dataclass
class ReleaseState:
    """Content of `.deploy-agent/state.json` on a target."""

    active: Optional[str] = None
    history: List[str] = field(default_factory=list)  # activation order, oldest first
    releases: Dict[str, Release] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": 1,
            "active": self.active,
            "history": list(self.history),
            "releases": {key: release.to_dict() for key, release in self.releases.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseState":
        return cls(
            active=data.get("active"),
            history=list(data.get("history", [])),
            releases={
                key: Release.from_dict(value)
                for key, value in (data.get("releases") or {}).items()
            },
        )

    def active_release(self) -> Optional[Release]:
        if self.active is None:
            return None
        return self.releases.get(self.active)


class ReleaseLayout:
    """Paths of release directories and markers under a deploy root."""

    def __init__(self, deploy_root: str) -> None:
        self.root = deploy_root.rstrip("/") or "/"
        self.releases_dir = posixpath.join(self.root, "releases")
        self.shared_dir = posixpath.join(self.root, "shared")
        self.current = posixpath.join(self.root, "current")
        self.meta_dir = posixpath.join(self.root, ".deploy-agent")
        self.state_file = posixpath.join(self.meta_dir, "state.json")
        self.lock_dir = posixpath.join(self.meta_dir, "lock")

    def release_path(self, release_id: str) -> str:
        return posixpath.join(self.releases_dir, release_id)

    def stamps_dir(self, release_id: str, phase: Optional[str] = None) -> str:
        stamps = posixpath.join(self.meta_dir, "stamps", release_id)
        return posixpath.join(stamps, phase) if phase else stamps

    def stamp_path(self, release_id: str, phase: str, step_name: str) -> str:
        return posixpath.join(self.stamps_dir(release_id, phase), _UNSAFE_CHARS.sub("-", step_name))
