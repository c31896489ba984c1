"""Step executor: applies an ordered list of idempotent steps."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from ..errors import AuthenticationError, PreconditionFailed, StepActionError
from .models import DeploymentRun, StepRecord, StepStatus

if TYPE_CHECKING:
    from ..steps import Step, StepContext

logger = logging.getLogger(__name__)


class StepExecutor:
    """
    步骤执行器

    Runs each step's check and, only when the desired state does not hold
    yet, its action. Halts at the first failing step. Steps that already
    applied are left in place; the run keeps the partial list so the
    orchestrator can retire or restore the release.
    """

    def __init__(self, on_step_finished: Optional[Callable[[DeploymentRun], None]] = None) -> None:
        self.on_step_finished = on_step_finished

    def apply(
        self,
        ctx: "StepContext",
        steps: Sequence["Step"],
        run: DeploymentRun,
    ) -> DeploymentRun:
        for index, step in enumerate(steps, 1):
            record = StepRecord(name=step.name, phase=step.phase)
            ctx.begin(record)
            started = time.monotonic()
            logger.info("📍 [%s] Step %d/%d: %s", ctx.target.name, index, len(steps), step.name)
            try:
                if step.check(ctx):
                    raise PreconditionFailed("desired state already holds")
                step.apply(ctx)
            except PreconditionFailed as exc:
                record.status = StepStatus.SKIPPED
                record.reason = exc.message
                logger.info("   ⏭️ Skipped: %s", exc.message)
            except AuthenticationError as exc:
                self._record_failure(run, record, started, str(exc))
                raise
            except StepActionError as exc:
                self._record_failure(run, record, started, exc.message)
                raise
            except Exception as exc:
                self._record_failure(run, record, started, str(exc))
                raise StepActionError(step.name, str(exc), cause=exc) from exc
            else:
                record.status = StepStatus.APPLIED
                logger.info("   ✅ Applied (%d command(s))", len(record.commands))
            finally:
                ctx.begin(None)

            record.duration_seconds = time.monotonic() - started
            run.add_step(record)
            self._notify(run)
        return run

    def _record_failure(
        self,
        run: DeploymentRun,
        record: StepRecord,
        started: float,
        error: str,
    ) -> None:
        record.status = StepStatus.FAILED
        record.error = error
        record.duration_seconds = time.monotonic() - started
        run.add_step(record)
        logger.error("   ❌ Step %s failed: %s", record.name, error)
        self._notify(run)

    def _notify(self, run: DeploymentRun) -> None:
        if self.on_step_finished:
            self.on_step_finished(run)
