"""Deployment orchestrator: sequences runs per target and reports results."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from ..errors import (
    ConfigurationError,
    DeployAgentError,
    StepActionError,
    TriggerError,
)
from ..gitops import GitRepositoryManager
from ..paths import get_logs_dir
from ..releases import DEFAULT_LOCKS, LockRegistry, Release, ReleaseManager
from ..reporting import WebhookReporter
from ..ssh import RemoteProbe, SSHTransport
from ..steps import ActivateStep, Step, StepContext, build_pipeline, split_phases
from .models import DeploymentReport, DeploymentRun, RunState
from .run_log import RunLogWriter
from .step_executor import StepExecutor

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..ssh import Session
    from ..targets import Target
    from ..triggers import TriggerEvent

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    部署编排器

    Per target: Triggered -> Staged -> Activating -> Active | Failed.
    Targets are deployed in parallel; runs against the same target are
    serialised by the target lock.
    """

    def __init__(
        self,
        config: "AppConfig",
        *,
        transport: Optional[SSHTransport] = None,
        locks: LockRegistry = DEFAULT_LOCKS,
        probe: Optional[RemoteProbe] = None,
        git: Optional[GitRepositoryManager] = None,
        reporter: Optional[WebhookReporter] = None,
        log_dir: Optional[str] = None,
    ) -> None:
        self.config = config
        self.transport = transport or SSHTransport(config.transport)
        self.locks = locks
        self.probe = probe or RemoteProbe()
        self.git = git or GitRepositoryManager()
        if reporter is None and config.reporting.webhook_url:
            reporter = WebhookReporter(
                config.reporting.webhook_url, timeout=config.reporting.timeout
            )
        self.reporter = reporter
        resolved_log_dir = log_dir or config.reporting.log_dir
        self.run_log = RunLogWriter(Path(resolved_log_dir) if resolved_log_dir else get_logs_dir())
        self.steps: List[Step] = build_pipeline(config.pipeline)
        self.executor = StepExecutor(on_step_finished=self._save_run)
        self._repo_urls: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def deploy(self, event: "TriggerEvent") -> DeploymentReport:
        repo_url = event.repo_url or self.config.repo_url
        if event.revision is None and event.ref:
            if not repo_url:
                raise TriggerError("Cannot resolve a ref without repo_url", context=event.ref)
            event.revision = self.git.resolve_ref(repo_url, event.ref)
            logger.info("Resolved %s to %s", event.ref, event.revision)
        revision = event.require_revision()

        targets = self._select_targets(event.selector or self.config.selector_for_ref(event.ref))
        logger.info("=" * 60)
        logger.info("🚀 DEPLOYMENT %s -> %s", revision, ", ".join(t.name for t in targets))
        logger.info("=" * 60)

        return self._for_each_target(
            targets, lambda target: self._deploy_target(target, revision, repo_url, event.source)
        )

    def rollback(self, selector: Optional[str]) -> DeploymentReport:
        targets = self._select_targets(selector or self.config.default_targets)
        return self._for_each_target(targets, self._rollback_target)

    def list_releases(self, selector: Optional[str]) -> Dict[str, Tuple[List[Release], Optional[str]]]:
        """Releases per target plus where `current` points."""
        listing: Dict[str, Tuple[List[Release], Optional[str]]] = {}
        for target in self._select_targets(selector or self.config.default_targets):
            with self.transport.connect(target) as session:
                manager = self._release_manager(session, target)
                listing[target.name] = (manager.list_releases(), manager.current_path())
        return listing

    def unlock(self, selector: Optional[str]) -> List[str]:
        unlocked = []
        for target in self._select_targets(selector or self.config.default_targets):
            with self.transport.connect(target) as session:
                self._release_manager(session, target).unlock()
            unlocked.append(target.name)
        return unlocked

    # ------------------------------------------------------------------
    # Per target
    # ------------------------------------------------------------------

    def _deploy_target(
        self,
        target: "Target",
        revision: str,
        repo_url: Optional[str],
        trigger: str,
    ) -> DeploymentRun:
        run = DeploymentRun(target=target.name, revision=revision, trigger=trigger)
        self._repo_urls[run.run_id] = repo_url
        build_steps, activate_steps = split_phases(self.steps)
        try:
            with self.transport.connect(target) as session:
                manager = self._release_manager(session, target)
                with manager.lock():
                    run.host_info = self._collect_facts(session, target)
                    release = manager.stage(revision)
                    run.release_id = release.release_id
                    run.transition(RunState.STAGED)
                    self._save_run(run)

                    ctx = StepContext(
                        session=session,
                        target=target,
                        release=release,
                        release_manager=manager,
                        repo_url=repo_url,
                        command_timeout=self.config.transport.command_timeout,
                    )
                    try:
                        self.executor.apply(ctx, build_steps, run)
                        run.transition(RunState.ACTIVATING)
                        self._save_run(run)
                        self.executor.apply(ctx, activate_steps, run)
                    except (DeployAgentError, KeyboardInterrupt) as exc:
                        run.fail(str(exc) or type(exc).__name__)
                        try:
                            self._recover(manager, ctx, activate_steps, run)
                        except DeployAgentError as recover_exc:
                            logger.error(
                                "❌ [%s] Recovery failed: %s", target.name, recover_exc
                            )
                        raise
                    run.transition(RunState.ACTIVE)
                    self._prune(manager)
        except KeyboardInterrupt:
            logger.error("❌ [%s] Deployment interrupted", target.name)
            run.fail("interrupted")
            self._finish(run)
            raise
        except DeployAgentError as exc:
            if run.state == RunState.ACTIVE:
                logger.warning("⚠️ [%s] Error after activation: %s", target.name, exc)
            else:
                logger.error("❌ [%s] Deployment failed: %s", target.name, exc)
            run.fail(str(exc))
        self._finish(run)
        return run

    def _rollback_target(self, target: "Target") -> DeploymentRun:
        run = DeploymentRun(target=target.name, revision="", kind="rollback")
        _, activate_steps = split_phases(self.steps)
        follow_up = [step for step in activate_steps if not isinstance(step, ActivateStep)]
        try:
            with self.transport.connect(target) as session:
                manager = self._release_manager(session, target)
                with manager.lock():
                    run.host_info = self._collect_facts(session, target)
                    release = manager.rollback()
                    run.revision = release.revision
                    run.release_id = release.release_id
                    run.transition(RunState.STAGED)
                    run.transition(RunState.ACTIVATING)
                    ctx = StepContext(
                        session=session,
                        target=target,
                        release=release,
                        release_manager=manager,
                        repo_url=self.config.repo_url,
                        command_timeout=self.config.transport.command_timeout,
                        swapped=True,
                    )
                    self.executor.apply(ctx, follow_up, run)
                    run.transition(RunState.ACTIVE)
        except DeployAgentError as exc:
            if run.state == RunState.ACTIVE:
                logger.warning("⚠️ [%s] Error after rollback: %s", target.name, exc)
            else:
                logger.error("❌ [%s] Rollback failed: %s", target.name, exc)
            run.fail(str(exc))
        self._finish(run)
        return run

    def _recover(
        self,
        manager: ReleaseManager,
        ctx: StepContext,
        activate_steps: List[Step],
        run: DeploymentRun,
    ) -> None:
        """Leave the previously active release serving after a failed run."""
        release = ctx.release
        if ctx.swapped:
            manager.restore(ctx.previous, release)
            if ctx.previous is None:
                return
            # reload services for the restored release
            restored_ctx = StepContext(
                session=ctx.session,
                target=ctx.target,
                release=ctx.previous,
                release_manager=manager,
                repo_url=ctx.repo_url,
                command_timeout=ctx.command_timeout,
                swapped=True,
            )
            follow_up = [step for step in activate_steps if not isinstance(step, ActivateStep)]
            try:
                self.executor.apply(restored_ctx, follow_up, run)
            except StepActionError as exc:
                logger.error("Reload after restore failed on %s: %s", ctx.target.name, exc)
            return

        if manager.load_state().active == release.release_id:
            # re-deploy of the active revision: nothing was swapped
            logger.warning("Release %s stays active on %s", release.release_id, ctx.target.name)
            return
        manager.retire(release, failed=True)
        logger.warning("Release %s marked failed on %s", release.release_id, ctx.target.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _for_each_target(
        self,
        targets: List["Target"],
        work: Callable[["Target"], DeploymentRun],
    ) -> DeploymentReport:
        workers = max(1, min(self.config.release.max_parallel, len(targets)))
        if workers == 1:
            runs = [work(target) for target in targets]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                runs = list(pool.map(work, targets))

        report = DeploymentReport(runs=runs)
        for run in runs:
            icon = "✅" if run.state == RunState.ACTIVE else "❌"
            logger.info(
                "%s %s %s: %s (%s)",
                icon,
                run.kind,
                run.target,
                run.state.value,
                run.error or f"{run.mutations} step(s) applied",
            )
        return report

    def _select_targets(self, selector: Optional[str]) -> List["Target"]:
        if not selector:
            raise ConfigurationError("No target selector given and no default_targets configured")
        return self.config.targets.select(selector)

    def _release_manager(self, session: "Session", target: "Target") -> ReleaseManager:
        return ReleaseManager(
            session,
            target,
            locks=self.locks,
            lock_timeout=self.config.release.lock_timeout,
        )

    def _collect_facts(self, session: "Session", target: "Target") -> dict:
        facts = target.to_payload()
        try:
            facts.update(self.probe.collect(session).to_payload())
        except DeployAgentError as exc:
            logger.warning("   Failed to gather host facts: %s", exc)
        return facts

    def _prune(self, manager: ReleaseManager) -> None:
        try:
            manager.prune(self.config.release.keep_releases)
        except DeployAgentError as exc:
            # the deployment itself succeeded
            logger.warning("Pruning old releases on %s failed: %s", manager.target.name, exc)

    def _save_run(self, run: DeploymentRun) -> None:
        self.run_log.save(run, self._repo_urls.get(run.run_id, self.config.repo_url))

    def _finish(self, run: DeploymentRun) -> None:
        run.finalize()
        self.run_log.finalize(run, self._repo_urls.pop(run.run_id, self.config.repo_url))
        if self.reporter:
            self.reporter.report(run.to_dict())
