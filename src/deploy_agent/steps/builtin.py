"""Built-in deployment steps."""

from __future__ import annotations

import posixpath
import shlex
from typing import List, Optional

from ..errors import StepActionError
from .base import ACTIVATE, BUILD, Step, StepContext


def _q(value: str) -> str:
    return shlex.quote(value)


class GitCheckoutStep(Step):
    """Fetch the repository into the release directory at the release revision."""

    kind = "git_checkout"

    def __init__(
        self,
        name: str = "fetch",
        *,
        repo_url: Optional[str] = None,
        phase: str = BUILD,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(name, phase=phase, timeout=timeout)
        self.repo_url = repo_url

    def check(self, ctx: StepContext) -> bool:
        revision = _q(f"{ctx.release.revision}^{{commit}}")
        result = ctx.run(
            'test -d .git && head=$(git rev-parse HEAD 2>/dev/null) && test -n "$head" '
            f'&& test "$head" = "$(git rev-parse -q --verify {revision})"',
            cwd=ctx.release.path,
            check=False,
        )
        return result.ok

    def apply(self, ctx: StepContext) -> None:
        repo_url = self.repo_url or ctx.repo_url
        if not repo_url:
            raise StepActionError(self.name, "No repo_url configured for git checkout")
        path = ctx.release.path
        ctx.run("test -d .git || git init -q", cwd=path, timeout=self.timeout)
        ctx.run(
            f"git remote set-url origin {_q(repo_url)} 2>/dev/null "
            f"|| git remote add origin {_q(repo_url)}",
            cwd=path,
            timeout=self.timeout,
        )
        ctx.run(
            "git fetch -q --tags --force origin '+refs/heads/*:refs/remotes/origin/*'",
            cwd=path,
            timeout=self.timeout,
        )
        ctx.run(
            f"git -c advice.detachedHead=false checkout -q -f {_q(ctx.release.revision)}",
            cwd=path,
            timeout=self.timeout,
        )


class CommandStep(Step):
    """Run a shell command in the release directory.

    Skipped when `unless` exits 0, or when `stamp` is set and the step
    already completed for this release (and, for activate-phase steps,
    for this activation).
    """

    kind = "command"

    def __init__(
        self,
        name: str,
        *,
        command: str,
        phase: str = BUILD,
        unless: Optional[str] = None,
        stamp: bool = True,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(name, phase=phase, timeout=timeout)
        self.command = command
        self.unless = unless
        self.stamp = stamp
        self.cwd = cwd

    def check(self, ctx: StepContext) -> bool:
        if self.unless:
            result = ctx.run(
                ctx.with_environment(self.unless),
                cwd=self._cwd(ctx),
                check=False,
                timeout=self.timeout,
            )
            if result.ok:
                return True
        if self.stamp:
            return ctx.run(f"test -f {_q(self._stamp_path(ctx))}", check=False).ok
        return False

    def apply(self, ctx: StepContext) -> None:
        ctx.run(ctx.with_environment(self.command), cwd=self._cwd(ctx), timeout=self.timeout)
        if self.stamp:
            stamp = self._stamp_path(ctx)
            ctx.run(f"mkdir -p {_q(posixpath.dirname(stamp))} && touch {_q(stamp)}")

    def _cwd(self, ctx: StepContext) -> str:
        if not self.cwd:
            return ctx.release.path
        if posixpath.isabs(self.cwd):
            return self.cwd
        return posixpath.join(ctx.release.path, self.cwd)

    def _stamp_path(self, ctx: StepContext) -> str:
        return ctx.layout.stamp_path(ctx.release.release_id, self.phase, self.name)


class SharedLinkStep(Step):
    """Link persistent paths from `<deploy_root>/shared` into the release.

    Paths ending in "/" are directories and are created in the shared area
    when missing; other paths must already exist there.
    """

    kind = "shared_link"

    def __init__(
        self,
        name: str = "shared",
        *,
        paths: List[str],
        phase: str = BUILD,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(name, phase=phase, timeout=timeout)
        if not paths:
            raise ValueError("shared_link needs at least one path")
        self.paths = paths

    def _pairs(self, ctx: StepContext):
        for entry in self.paths:
            relative = entry.strip("/")
            yield (
                entry.endswith("/"),
                posixpath.join(ctx.layout.shared_dir, relative),
                posixpath.join(ctx.release.path, relative),
            )

    def check(self, ctx: StepContext) -> bool:
        for _, shared, link in self._pairs(ctx):
            result = ctx.run(f'test "$(readlink {_q(link)})" = {_q(shared)}', check=False)
            if not result.ok:
                return False
        return True

    def apply(self, ctx: StepContext) -> None:
        for is_dir, shared, link in self._pairs(ctx):
            if is_dir:
                ctx.run(f"mkdir -p {_q(shared)}")
            elif not ctx.run(f"test -e {_q(shared)}", check=False).ok:
                raise StepActionError(self.name, f"Shared file missing: {shared}")
            ctx.run(
                f"mkdir -p {_q(posixpath.dirname(link))} && rm -rf {_q(link)} "
                f"&& ln -s {_q(shared)} {_q(link)}"
            )


class ActivateStep(Step):
    """Swap the `current` marker to the release."""

    kind = "activate"

    def __init__(self, name: str = "activate", *, phase: str = ACTIVATE, timeout: Optional[float] = None) -> None:
        super().__init__(name, phase=phase, timeout=timeout)

    def check(self, ctx: StepContext) -> bool:
        return ctx.release_manager.is_active(ctx.release)

    def apply(self, ctx: StepContext) -> None:
        ctx.previous = ctx.release_manager.activate(ctx.release)
        ctx.swapped = True


class ReloadServiceStep(CommandStep):
    """Reload a service once per activation."""

    kind = "reload_service"

    def __init__(
        self,
        name: Optional[str] = None,
        *,
        service: str = "nginx",
        command: Optional[str] = None,
        phase: str = ACTIVATE,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(
            name or f"reload-{service}",
            command=command or f"sudo -n systemctl reload {_q(service)}",
            phase=phase,
            stamp=True,
            timeout=timeout,
        )
        self.service = service
