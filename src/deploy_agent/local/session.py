"""Local command execution session."""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
from typing import TYPE_CHECKING, Optional

from ..errors import ConnectTimeoutError, UnreachableError
from ..ssh.session import CommandResult

if TYPE_CHECKING:
    from ..targets import Target


class LocalSession:
    """
    Local command execution session.

    Provides the same interface as SSHSession but executes commands on this
    machine through /bin/sh. Used for `transport: "local"` targets.
    """

    def __init__(
        self,
        target: Optional["Target"] = None,
        *,
        working_dir: Optional[str] = None,
        command_timeout: float = 300,
    ) -> None:
        self.target = target
        self.working_dir = working_dir or os.path.expanduser("~")
        self.command_timeout = command_timeout
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = True

    def close(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = False

    def __enter__(self) -> "LocalSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        if timeout is None:
            timeout = self.command_timeout
        try:
            process = subprocess.run(
                command,
                shell=True,
                cwd=cwd or self.working_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ConnectTimeoutError(
                f"Command did not complete within {timeout} seconds",
                context=command,
            ) from exc
        except FileNotFoundError as exc:
            # cwd does not exist
            return CommandResult(command=command, stdout="", stderr=str(exc), exit_status=127)
        except OSError as exc:
            raise UnreachableError(str(exc), context=command) from exc
        return CommandResult(
            command=command,
            stdout=process.stdout.strip(),
            stderr=process.stderr.strip(),
            exit_status=process.returncode,
        )

    def copy(self, local_path: str, remote_path: str) -> None:
        try:
            shutil.copy2(local_path, remote_path)
        except OSError as exc:
            raise UnreachableError(f"Cannot copy {local_path}: {exc}", context=remote_path) from exc

    def read_text(self, remote_path: str) -> Optional[str]:
        try:
            with open(remote_path, "r", encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise UnreachableError(f"Cannot read file: {exc}", context=remote_path) from exc

    def write_text(self, remote_path: str, text: str) -> None:
        tmp_path = f"{remote_path}.tmp-{os.getpid()}-{threading.get_ident()}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_path, remote_path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise UnreachableError(f"Cannot write file: {exc}", context=remote_path) from exc
