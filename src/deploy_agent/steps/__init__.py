"""Deployment steps: precondition check plus action."""

from .base import ACTIVATE, BUILD, Step, StepContext
from .builtin import ActivateStep, CommandStep, GitCheckoutStep, ReloadServiceStep, SharedLinkStep
from .pipeline import STEP_TYPES, build_pipeline, split_phases

__all__ = [
    "ACTIVATE",
    "BUILD",
    "Step",
    "StepContext",
    "ActivateStep",
    "CommandStep",
    "GitCheckoutStep",
    "ReloadServiceStep",
    "SharedLinkStep",
    "STEP_TYPES",
    "build_pipeline",
    "split_phases",
]
