"""Deployment targets and target selection."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConfigurationError
from .ssh.credentials import CredentialRef


class Reachability(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass
class Target:
    """A deployment destination host."""

    name: str
    host: str
    username: Optional[str] = None
    deploy_root: str = "/var/www/app"
    port: int = 22
    credential: CredentialRef = field(default_factory=lambda: CredentialRef(kind="agent"))
    transport: str = "ssh"  # "ssh" | "local"
    groups: List[str] = field(default_factory=list)
    reachability: Reachability = Reachability.UNKNOWN

    @classmethod
    def from_dict(
        cls,
        name: str,
        payload: Dict[str, Any],
        default_key_path: Optional[str] = None,
    ) -> "Target":
        payload = {k: v for k, v in payload.items() if not k.startswith("_")}
        if "password" in payload:
            raise ConfigurationError(
                "Password authentication is not supported",
                context=f"target {name}",
            )
        transport = payload.get("transport", "ssh")
        if transport not in ("ssh", "local"):
            raise ConfigurationError(f"Unknown transport: {transport}", context=f"target {name}")
        host = payload.get("host") or ("localhost" if transport == "local" else None)
        if not host:
            raise ConfigurationError("Target has no host", context=f"target {name}")
        if transport == "ssh" and not payload.get("username"):
            raise ConfigurationError("Target has no username", context=f"target {name}")
        if not payload.get("deploy_root"):
            raise ConfigurationError("Target has no deploy_root", context=f"target {name}")

        credential_payload = payload.get("credential")
        if credential_payload:
            credential = CredentialRef.from_dict(credential_payload)
        elif default_key_path:
            credential = CredentialRef(kind="key", key_path=default_key_path)
        else:
            credential = CredentialRef(kind="agent")
        if transport == "ssh":
            try:
                credential.validate()
            except ConfigurationError as exc:
                raise ConfigurationError(exc.message, context=f"target {name}") from exc

        return cls(
            name=name,
            host=host,
            username=payload.get("username"),
            deploy_root=payload["deploy_root"].rstrip("/") or "/",
            port=int(payload.get("port", 22)),
            credential=credential,
            transport=transport,
            groups=list(payload.get("groups", [])),
        )

    @property
    def address(self) -> str:
        if self.username:
            return f"{self.username}@{self.host}:{self.port}"
        return self.host

    def mark_reachable(self, reachable: bool) -> None:
        self.reachability = Reachability.REACHABLE if reachable else Reachability.UNREACHABLE

    def to_payload(self) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "deploy_root": self.deploy_root,
            "transport": self.transport,
            "credential": self.credential.describe(),
            "reachability": self.reachability.value,
        }


class TargetRegistry:
    """Targets registered once from config and reused across deployments."""

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        self._targets: Dict[str, Target] = {}
        self._lock = threading.Lock()
        for target in targets:
            self.register(target)

    def register(self, target: Target) -> Target:
        with self._lock:
            if target.name in self._targets:
                raise ConfigurationError(f"Target already registered: {target.name}")
            self._targets[target.name] = target
        return target

    def get(self, name: str) -> Target:
        try:
            return self._targets[name]
        except KeyError:
            raise ConfigurationError(f"Unknown target: {name}") from None

    def names(self) -> List[str]:
        return list(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self):
        return iter(list(self._targets.values()))

    def select(self, selector: str) -> List[Target]:
        """Resolve a selector: comma separated target names, groups or `all`."""
        tokens = [token.strip() for token in selector.split(",") if token.strip()]
        if not tokens:
            raise ConfigurationError("Empty target selector")

        wanted: set[str] = set()
        for token in tokens:
            if token == "all":
                wanted.update(self._targets)
                continue
            if token in self._targets:
                wanted.add(token)
                continue
            members = [t.name for t in self._targets.values() if token in t.groups]
            if not members:
                raise ConfigurationError(f"Selector matches no target or group: {token}")
            wanted.update(members)

        return [target for name, target in self._targets.items() if name in wanted]
