"""SSH session management built on Paramiko."""

from __future__ import annotations

import os
import shlex
import socket
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import paramiko

from ..errors import AuthenticationError, ConnectTimeoutError, UnreachableError

if TYPE_CHECKING:
    from ..targets import Target


@dataclass
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class SSHSession:
    """High-level wrapper around paramiko.SSHClient bound to one target."""

    def __init__(
        self,
        target: "Target",
        *,
        connect_timeout: float = 10,
        command_timeout: float = 300,
        strict_host_keys: bool = True,
        known_hosts: Optional[str] = None,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        self.target = target
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.strict_host_keys = strict_host_keys
        self.known_hosts = known_hosts
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        try:
            if self.strict_host_keys:
                client.load_system_host_keys()
                if self.known_hosts:
                    client.load_host_keys(os.path.expanduser(self.known_hosts))
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        except OSError as exc:
            client.close()
            raise AuthenticationError(
                f"Cannot load known_hosts: {exc}", context=self.target.address
            ) from exc

        try:
            connect_kwargs = {
                "hostname": self.target.host,
                "port": self.target.port,
                "username": self.target.username,
                "timeout": self.connect_timeout,
                "banner_timeout": self.connect_timeout,
                "auth_timeout": self.connect_timeout,
            }
            connect_kwargs.update(self.target.credential.connect_kwargs())
            client.connect(**connect_kwargs)
        except AuthenticationError:
            client.close()
            raise
        except (paramiko.AuthenticationException, paramiko.BadHostKeyException) as exc:
            client.close()
            raise AuthenticationError(str(exc), context=self.target.address) from exc
        except socket.timeout as exc:
            client.close()
            raise ConnectTimeoutError(
                f"Connection timed out after {self.connect_timeout}s",
                context=self.target.address,
            ) from exc
        except paramiko.SSHException as exc:
            client.close()
            # RejectPolicy: unknown host keys are a trust problem, not a network one
            if "known_hosts" in str(exc):
                raise AuthenticationError(str(exc), context=self.target.address) from exc
            raise UnreachableError(str(exc), context=self.target.address) from exc
        except OSError as exc:
            client.close()
            raise UnreachableError(str(exc), context=self.target.address) from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Execute `command` on the remote host and wait for it to finish.

        Raises ConnectTimeoutError when the command produces no result
        within `timeout` seconds (default: the session command timeout).
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        if timeout is None:
            timeout = self.command_timeout
        actual_command = command
        if cwd:
            actual_command = f"cd {shlex.quote(cwd)} && {command}"

        try:
            _, stdout, stderr = self._client.exec_command(actual_command, timeout=timeout)
            stdout_text = stdout.read().decode("utf-8", errors="replace")
            stderr_text = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            raise ConnectTimeoutError(
                f"Command did not complete within {timeout} seconds",
                context=command,
            ) from exc
        except paramiko.SSHException as exc:
            raise UnreachableError(str(exc), context=self.target.address) from exc

        return CommandResult(
            command=command,
            stdout=stdout_text.strip(),
            stderr=stderr_text.strip(),
            exit_status=exit_status,
        )

    def copy(self, local_path: str, remote_path: str) -> None:
        """Upload a local file over SFTP."""
        with self._sftp() as sftp:
            try:
                sftp.put(local_path, remote_path)
            except (OSError, paramiko.SSHException) as exc:
                raise UnreachableError(
                    f"Cannot upload {local_path}: {exc}", context=remote_path
                ) from exc

    def read_text(self, remote_path: str) -> Optional[str]:
        """Return the content of a remote file, or None if it does not exist."""
        with self._sftp() as sftp:
            try:
                with sftp.open(remote_path, "r") as handle:
                    return handle.read().decode("utf-8")
            except FileNotFoundError:
                return None
            except (OSError, paramiko.SSHException) as exc:
                raise UnreachableError(f"Cannot read file: {exc}", context=remote_path) from exc

    def write_text(self, remote_path: str, text: str) -> None:
        """Replace a remote file; readers see either the old or the new content."""
        tmp_path = f"{remote_path}.tmp-{os.getpid()}-{threading.get_ident()}"
        with self._sftp() as sftp:
            try:
                with sftp.open(tmp_path, "w") as handle:
                    handle.write(text.encode("utf-8"))
                sftp.posix_rename(tmp_path, remote_path)
            except (OSError, paramiko.SSHException) as exc:
                try:
                    sftp.remove(tmp_path)
                except (OSError, paramiko.SSHException):
                    pass
                raise UnreachableError(f"Cannot write file: {exc}", context=remote_path) from exc

    def _sftp(self) -> paramiko.SFTPClient:
        if not self._client:
            self.connect()
        assert self._client is not None
        try:
            return self._client.open_sftp()
        except (OSError, paramiko.SSHException) as exc:
            raise UnreachableError(str(exc), context=self.target.address) from exc
