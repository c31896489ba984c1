"""Connection transport: scoped, retrying session acquisition."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, Optional, Union

import paramiko

from ..errors import AuthenticationError, ConnectTimeoutError, UnreachableError
from .session import SSHSession

if TYPE_CHECKING:
    from ..local import LocalSession
    from ..config import TransportConfig
    from ..targets import Target

logger = logging.getLogger(__name__)

Session = Union[SSHSession, "LocalSession"]


class SSHTransport:
    """Opens sessions to targets.

    Unreachable and timed-out connects are retried with bounded
    exponential backoff; authentication failures are raised immediately.
    """

    def __init__(
        self,
        config: "TransportConfig",
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client_factory = client_factory
        self._sleep = sleep

    @contextmanager
    def connect(self, target: "Target") -> Iterator[Session]:
        session = self.open(target)
        try:
            yield session
        finally:
            session.close()

    def open(self, target: "Target") -> Session:
        if target.transport == "local":
            from ..local import LocalSession

            session: Session = LocalSession(
                target=target,
                command_timeout=self.config.command_timeout,
            )
            session.connect()
            target.mark_reachable(True)
            return session

        attempts = max(1, self.config.attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            ssh_session = SSHSession(
                target,
                connect_timeout=self.config.connect_timeout,
                command_timeout=self.config.command_timeout,
                strict_host_keys=self.config.strict_host_keys,
                known_hosts=self.config.known_hosts,
                client_factory=self._client_factory,
            )
            try:
                logger.info(
                    "Connecting to %s (%s) using %s [attempt %d/%d]",
                    target.name,
                    target.address,
                    target.credential.describe(),
                    attempt,
                    attempts,
                )
                ssh_session.connect()
            except AuthenticationError:
                target.mark_reachable(False)
                raise
            except (UnreachableError, ConnectTimeoutError) as exc:
                last_error = exc
                if attempt == attempts:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Connect to %s failed: %s. Retrying in %.1fs", target.name, exc, delay
                )
                self._sleep(delay)
                continue
            target.mark_reachable(True)
            return ssh_session

        target.mark_reachable(False)
        assert last_error is not None
        raise last_error

    def backoff_delay(self, attempt: int) -> float:
        delay = self.config.backoff_base * (2 ** (attempt - 1))
        return min(delay, self.config.backoff_max)
