"""Remote host probing utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from ..local import LocalSession
    from .session import SSHSession


@dataclass
class RemoteHostFacts:
    hostname: str
    kernel: str
    architecture: str
    has_systemd: bool = False

    def to_payload(self) -> dict:
        return {
            "hostname": self.hostname,
            "kernel": self.kernel,
            "architecture": self.architecture,
            "has_systemd": self.has_systemd,
        }


class RemoteProbe:
    """Collects host facts for the run log by running read-only commands."""

    def collect(self, session: Union["SSHSession", "LocalSession"]) -> RemoteHostFacts:
        hostname = self._safe_run(session, "hostname")
        kernel = self._safe_run(session, "uname -sr")
        architecture = self._safe_run(session, "uname -m")
        return RemoteHostFacts(
            hostname=hostname or "unknown",
            kernel=kernel or "unknown",
            architecture=architecture or "unknown",
            has_systemd=self._detect_systemd(session),
        )

    def _safe_run(self, session, command: str) -> str:
        result = session.run(command)
        return result.stdout if result.ok else ""

    def _detect_systemd(self, session) -> bool:
        # PID 1 is systemd
        result = session.run("cat /proc/1/comm 2>/dev/null")
        return bool(result.stdout) and "systemd" in result.stdout.strip()
