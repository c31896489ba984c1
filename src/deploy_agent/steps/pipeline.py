"""Build the ordered step list from configuration."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from ..errors import ConfigurationError
from .base import ACTIVATE, BUILD, Step
from .builtin import ActivateStep, CommandStep, GitCheckoutStep, ReloadServiceStep, SharedLinkStep

STEP_TYPES = {
    GitCheckoutStep.kind: GitCheckoutStep,
    CommandStep.kind: CommandStep,
    SharedLinkStep.kind: SharedLinkStep,
    ActivateStep.kind: ActivateStep,
    ReloadServiceStep.kind: ReloadServiceStep,
}


def build_pipeline(definitions: Sequence[Dict[str, Any]]) -> List[Step]:
    """Create steps from config entries.

    Steps before the `activate` entry run in the build phase, steps after
    it in the activate phase. Exactly one `activate` entry is required.
    """
    activate_positions = [i for i, d in enumerate(definitions) if d.get("type") == "activate"]
    if len(activate_positions) != 1:
        raise ConfigurationError("pipeline needs exactly one 'activate' step")
    activate_at = activate_positions[0]

    steps: List[Step] = []
    for index, definition in enumerate(definitions):
        options = {k: v for k, v in definition.items() if k != "type"}
        step_type = definition.get("type")
        step_class = STEP_TYPES.get(step_type)
        if step_class is None:
            raise ConfigurationError(f"Unknown step type: {step_type}", context=f"pipeline[{index}]")
        if step_class is CommandStep and "name" not in options:
            options["name"] = f"command-{index}"
        options["phase"] = BUILD if index < activate_at else ACTIVATE
        try:
            steps.append(step_class(**options))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid {step_type} step: {exc}", context=f"pipeline[{index}]") from exc

    names = [step.name for step in steps]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate step names: {', '.join(duplicates)}")
    return steps


def split_phases(steps: Sequence[Step]) -> Tuple[List[Step], List[Step]]:
    build = [step for step in steps if step.phase == BUILD]
    activate = [step for step in steps if step.phase == ACTIVATE]
    return build, activate
