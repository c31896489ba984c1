"""Orchestrator module for step-based deployment execution.

- DeploymentOrchestrator: drives a trigger through stage and activation per target
- StepExecutor: applies idempotent steps, halting at the first failure
- RunLogWriter: persists each run as a JSON log
"""

from .models import (
    CommandRecord,
    DeploymentReport,
    DeploymentRun,
    RunOutcome,
    RunState,
    StepRecord,
    StepStatus,
)
from .step_executor import StepExecutor
from .run_log import RunLogWriter
from .orchestrator import DeploymentOrchestrator

__all__ = [
    "CommandRecord",
    "DeploymentReport",
    "DeploymentRun",
    "RunOutcome",
    "RunState",
    "StepRecord",
    "StepStatus",
    "StepExecutor",
    "RunLogWriter",
    "DeploymentOrchestrator",
]
