"""Data models for deployment runs."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepStatus(str, Enum):
    """步骤执行状态"""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunState(str, Enum):
    TRIGGERED = "triggered"
    STAGED = "staged"
    ACTIVATING = "activating"
    ACTIVE = "active"
    FAILED = "failed"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


_TRANSITIONS = {
    RunState.TRIGGERED: {RunState.STAGED, RunState.FAILED},
    RunState.STAGED: {RunState.ACTIVATING, RunState.FAILED},
    RunState.ACTIVATING: {RunState.ACTIVE, RunState.FAILED},
    RunState.ACTIVE: set(),
    RunState.FAILED: set(),
}


@dataclass
class CommandRecord:
    """命令执行记录"""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    timestamp: str = field(default_factory=_now)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout": self.stdout[:1000] if len(self.stdout) > 1000 else self.stdout,
            "stderr": self.stderr[:500] if len(self.stderr) > 500 else self.stderr,
            "timestamp": self.timestamp,
        }


@dataclass
class StepRecord:
    """Result of one step within a run."""
    name: str
    phase: str
    status: StepStatus = StepStatus.FAILED
    commands: List[CommandRecord] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
            "commands": [command.to_dict() for command in self.commands],
        }


@dataclass
class DeploymentRun:
    """One end-to-end staging + activation for a target.

    Immutable once `finalize()` has been called.
    """
    target: str
    revision: str
    kind: str = "deploy"  # "deploy" | "rollback"
    trigger: str = "cli"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    release_id: Optional[str] = None
    state: RunState = RunState.TRIGGERED
    steps: List[StepRecord] = field(default_factory=list)
    host_info: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None
    _finalized: bool = field(default=False, repr=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_finalized", False):
            raise RuntimeError(f"DeploymentRun {self.run_id} is finalized")
        super().__setattr__(name, value)

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def terminal(self) -> bool:
        return self.state in (RunState.ACTIVE, RunState.FAILED)

    @property
    def mutations(self) -> int:
        """Number of step actions that changed the target."""
        return sum(1 for step in self.steps if step.status == StepStatus.APPLIED)

    @property
    def outcome(self) -> RunOutcome:
        if self.state == RunState.ACTIVE:
            return RunOutcome.SUCCESS
        if self.mutations:
            return RunOutcome.PARTIAL
        return RunOutcome.FAILURE

    @property
    def completed_steps(self) -> List[str]:
        return [step.name for step in self.steps if step.status != StepStatus.FAILED]

    def add_step(self, record: StepRecord) -> None:
        if self._finalized:
            raise RuntimeError(f"DeploymentRun {self.run_id} is finalized")
        self.steps.append(record)

    def transition(self, state: RunState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid run transition {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, error: str) -> None:
        if self.state == RunState.ACTIVE:
            # the cutover already happened; later errors do not undo it
            logger.warning("Run %s is already active, ignoring error: %s", self.run_id, error)
            return
        if self.state != RunState.FAILED:
            self.transition(RunState.FAILED)
        if self.error is None:
            self.error = error

    def finalize(self) -> None:
        if self._finalized:
            return
        if not self.terminal:
            self.fail(self.error or "Run ended before reaching a terminal state")
        self.finished_at = _now()
        self._finalized = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "trigger": self.trigger,
            "target": self.target,
            "revision": self.revision,
            "release_id": self.release_id,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "error": self.error,
            "host_info": self.host_info,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "summary": {
                "total_steps": len(self.steps),
                "applied_steps": self.mutations,
                "total_commands": sum(len(step.commands) for step in self.steps),
            },
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass
class DeploymentReport:
    """Aggregated result of one trigger across its targets."""
    runs: List[DeploymentRun] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.runs) and all(run.state == RunState.ACTIVE for run in self.runs)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "runs": [run.to_dict() for run in self.runs],
        }
