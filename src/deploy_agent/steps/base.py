"""Step contract and the context steps run in."""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from ..errors import StepActionError

if TYPE_CHECKING:
    from ..orchestrator.models import StepRecord
    from ..releases import Release, ReleaseManager
    from ..ssh import CommandResult, Session
    from ..targets import Target

BUILD = "build"
ACTIVATE = "activate"


@dataclass
class StepContext:
    """Everything a step needs to inspect or change one target."""

    session: "Session"
    target: "Target"
    release: "Release"
    release_manager: "ReleaseManager"
    repo_url: Optional[str] = None
    command_timeout: Optional[float] = None

    # set by the activate step
    previous: Optional["Release"] = None
    swapped: bool = False

    _record: Optional["StepRecord"] = field(default=None, repr=False)

    @property
    def layout(self):
        return self.release_manager.layout

    def environment(self) -> Dict[str, str]:
        return {
            "DEPLOY_ROOT": self.layout.root,
            "RELEASE_ID": self.release.release_id,
            "RELEASE_PATH": self.release.path,
            "REVISION": self.release.revision,
            "SHARED_PATH": self.layout.shared_dir,
            "TARGET_NAME": self.target.name,
        }

    def begin(self, record: Optional["StepRecord"]) -> None:
        self._record = record

    def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> "CommandResult":
        """Run a command on the target and record it against the current step."""
        result = self.session.run(
            command,
            cwd=cwd,
            timeout=timeout if timeout is not None else self.command_timeout,
        )
        if self._record is not None:
            from ..orchestrator.models import CommandRecord

            self._record.commands.append(
                CommandRecord(
                    command=command,
                    exit_code=result.exit_status,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            )
        if check and not result.ok:
            step = self._record.name if self._record else "unknown"
            detail = result.stderr or result.stdout or "no output"
            raise StepActionError(
                step,
                f"Command exited with {result.exit_status}: {detail.splitlines()[-1]}",
            )
        return result

    def with_environment(self, command: str) -> str:
        exports = " ".join(
            f"{key}={shlex.quote(value)}" for key, value in self.environment().items()
        )
        return f"export {exports}; {command}"


class Step(ABC):
    """One idempotent deployment step.

    `check` reports whether the desired state already holds; the executor
    only calls `apply` when it does not.
    """

    kind = "step"

    def __init__(self, name: str, *, phase: str = BUILD, timeout: Optional[float] = None) -> None:
        self.name = name
        self.phase = phase
        self.timeout = timeout

    @abstractmethod
    def check(self, ctx: StepContext) -> bool:
        raise NotImplementedError

    @abstractmethod
    def apply(self, ctx: StepContext) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, phase={self.phase!r})"
