"""Release manager: release directories, the `current` marker and rollback."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import shlex
import socket
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional

from ..errors import ConflictError, NoPriorReleaseError, ReleaseError, TransportError
from .locking import DEFAULT_LOCKS, LockRegistry
from .models import (
    Release,
    ReleaseLayout,
    ReleaseState,
    ReleaseStatus,
    release_id_for,
    utc_now,
)

if TYPE_CHECKING:
    from ..ssh import Session
    from ..targets import Target

logger = logging.getLogger(__name__)

_LOCK_POLL_INTERVAL = 0.5


class ReleaseManager:
    """
    Maintains the releases of one target through an open session.

    All state changes happen while holding the target lock: an in-process
    re-entrant lock plus a lock directory on the target itself, so runs in
    other processes are serialised as well.
    """

    def __init__(
        self,
        session: "Session",
        target: "Target",
        *,
        locks: LockRegistry = DEFAULT_LOCKS,
        lock_timeout: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.target = target
        self.layout = ReleaseLayout(target.deploy_root)
        self.locks = locks
        self.lock_timeout = lock_timeout
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the per-target lock. Raises ConflictError when it is taken."""
        timeout = self.lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        name = self.target.name
        if not self.locks.acquire(name, timeout):
            raise ConflictError(
                "Another deployment is in flight for this target",
                context=f"target {name}",
            )
        try:
            outermost = self.locks.enter(name) == 1
            if outermost:
                self._acquire_remote_lock(deadline)
            try:
                yield
            finally:
                if outermost:
                    self._release_remote_lock()
        finally:
            self.locks.exit(name)

    def unlock(self) -> None:
        """Remove a stale remote lock left by a crashed run."""
        self._run(f"rm -rf {_q(self.layout.lock_dir)}")
        logger.warning("Removed remote lock on %s", self.target.name)

    def _acquire_remote_lock(self, deadline: float) -> None:
        owner = f"{socket.gethostname()}:{os.getpid()} {utc_now()}"
        command = (
            f"mkdir -p {_q(self.layout.meta_dir)} && mkdir {_q(self.layout.lock_dir)} "
            f"&& echo {_q(owner)} > {_q(self.layout.lock_dir + '/owner')}"
        )
        while True:
            if self.session.run(command).ok:
                return
            if time.monotonic() >= deadline:
                holder = self.session.read_text(self.layout.lock_dir + "/owner") or "unknown"
                raise ConflictError(
                    "Activation lock is held on the target",
                    context=f"target {self.target.name}, holder {holder.strip()}",
                )
            self._sleep(_LOCK_POLL_INTERVAL)

    def _release_remote_lock(self) -> None:
        try:
            self.session.run(f"rm -rf {_q(self.layout.lock_dir)}")
        except TransportError as exc:
            logger.warning(
                "Could not release the remote lock on %s: %s. Clear it with `unlock`.",
                self.target.name,
                exc,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load_state(self) -> ReleaseState:
        text = self.session.read_text(self.layout.state_file)
        if not text:
            return ReleaseState()
        try:
            return ReleaseState.from_dict(json.loads(text))
        except (ValueError, KeyError) as exc:
            raise ReleaseError(
                f"Corrupt release state: {exc}", context=self.layout.state_file
            ) from exc

    def list_releases(self) -> List[Release]:
        state = self.load_state()
        return sorted(state.releases.values(), key=lambda r: r.created_at)

    def active_release(self) -> Optional[Release]:
        return self.load_state().active_release()

    def current_path(self) -> Optional[str]:
        """Where the `current` marker points, or None if there is none."""
        result = self.session.run(f"readlink {_q(self.layout.current)}")
        return result.stdout if result.ok and result.stdout else None

    def is_active(self, release: Release) -> bool:
        state = self.load_state()
        return state.active == release.release_id and self.current_path() == release.path

    def exists(self, release: Release) -> bool:
        return self.session.run(f"test -d {_q(release.path)}").ok

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def stage(self, revision: str) -> Release:
        """Create (or reuse) the release directory for `revision`."""
        release_id = release_id_for(revision)
        path = self.layout.release_path(release_id)

        with self.lock():
            state = self.load_state()
            existing = state.releases.get(release_id)
            if existing and existing.status in (ReleaseStatus.ACTIVE, ReleaseStatus.PENDING):
                if self.exists(existing):
                    logger.info(
                        "Release %s already staged on %s (%s)",
                        release_id,
                        self.target.name,
                        existing.status.value,
                    )
                    return existing

            self._run(
                f"mkdir -p {_q(path)} {_q(self.layout.shared_dir)} {_q(self.layout.meta_dir)}"
            )
            if existing:
                release = dataclasses.replace(existing, status=ReleaseStatus.PENDING)
            else:
                release = Release(
                    release_id=release_id,
                    revision=revision,
                    path=path,
                    created_at=utc_now(),
                )
            state.releases[release_id] = release
            self._save_state(state)
            logger.info("Staged release %s at %s:%s", release_id, self.target.name, path)
            return release

    def activate(self, release: Release) -> Optional[Release]:
        """Atomically point `current` at `release`.

        Returns the previously active release (None on first activation).
        """
        with self.lock():
            state = self.load_state()
            known = state.releases.get(release.release_id)
            if known is None:
                raise ReleaseError(f"Release {release.release_id} was never staged")
            if not self.exists(known):
                raise ReleaseError(f"Release directory missing: {known.path}")

            previous = state.active_release()
            if previous and previous.release_id == known.release_id:
                if self.current_path() == known.path:
                    return self._previous_in_history(state, known.release_id)
                previous = self._previous_in_history(state, known.release_id)

            self._swap(known.path)
            try:
                now = utc_now()
                if previous:
                    state.releases[previous.release_id] = dataclasses.replace(
                        previous, status=ReleaseStatus.RETIRED
                    )
                state.releases[known.release_id] = dataclasses.replace(
                    known, status=ReleaseStatus.ACTIVE, activated_at=now
                )
                if not state.history or state.history[-1] != known.release_id:
                    state.history.append(known.release_id)
                state.active = known.release_id
                self._save_state(state)
            except Exception:
                self._point_at(previous)
                raise

            self._clear_stamps(known.release_id, "activate")
            logger.info(
                "Activated %s on %s (previous: %s)",
                known.release_id,
                self.target.name,
                previous.release_id if previous else "none",
            )
            return previous

    def restore(self, previous: Optional[Release], failed: Release) -> None:
        """Undo an activation whose follow-up steps failed."""
        with self.lock():
            state = self.load_state()
            self._point_at(previous)
            if previous:
                state.releases[previous.release_id] = dataclasses.replace(
                    state.releases.get(previous.release_id, previous),
                    status=ReleaseStatus.ACTIVE,
                )
                state.active = previous.release_id
                self._clear_stamps(previous.release_id, "activate")
            else:
                state.active = None
            while state.history and state.history[-1] == failed.release_id:
                state.history.pop()
            known = state.releases.get(failed.release_id, failed)
            state.releases[failed.release_id] = dataclasses.replace(
                known, status=ReleaseStatus.FAILED
            )
            self._save_state(state)
            logger.warning(
                "Restored %s on %s after failed activation of %s",
                previous.release_id if previous else "no active release",
                self.target.name,
                failed.release_id,
            )

    def rollback(self) -> Release:
        """Repoint `current` to the release activated before the active one."""
        with self.lock():
            state = self.load_state()
            active = state.active_release()
            if active is None:
                raise NoPriorReleaseError(
                    "No active release to roll back from", context=f"target {self.target.name}"
                )
            candidate = self._previous_in_history(state, active.release_id)
            if candidate is None:
                raise NoPriorReleaseError(
                    "No earlier release to roll back to", context=f"target {self.target.name}"
                )

            self._swap(candidate.path)
            index = len(state.history) - 1 - state.history[::-1].index(candidate.release_id)
            state.history = state.history[: index + 1]
            state.releases[active.release_id] = dataclasses.replace(
                active, status=ReleaseStatus.RETIRED
            )
            restored = dataclasses.replace(
                candidate, status=ReleaseStatus.ACTIVE, activated_at=utc_now()
            )
            state.releases[candidate.release_id] = restored
            state.active = candidate.release_id
            self._save_state(state)
            self._clear_stamps(candidate.release_id, "activate")
            logger.info(
                "Rolled back %s from %s to %s",
                self.target.name,
                active.release_id,
                candidate.release_id,
            )
            return restored

    def retire(self, release: Release, *, failed: bool = True) -> Release:
        """Mark a non-active release failed (or retired)."""
        with self.lock():
            state = self.load_state()
            if state.active == release.release_id:
                raise ReleaseError(f"Cannot retire the active release {release.release_id}")
            status = ReleaseStatus.FAILED if failed else ReleaseStatus.RETIRED
            updated = dataclasses.replace(
                state.releases.get(release.release_id, release), status=status
            )
            state.releases[release.release_id] = updated
            self._save_state(state)
            return updated

    def prune(self, keep: int) -> List[Release]:
        """Delete the oldest releases beyond `keep`; returns what was removed."""
        with self.lock():
            state = self.load_state()
            protected = {state.active}
            if state.active:
                rollback_candidate = self._previous_in_history(state, state.active)
                if rollback_candidate:
                    protected.add(rollback_candidate.release_id)

            ordered = sorted(state.releases.values(), key=lambda r: r.created_at)
            excess = len(ordered) - max(keep, 1)
            removed: List[Release] = []
            for release in ordered:
                if excess <= 0:
                    break
                if release.release_id in protected:
                    continue
                self._run(
                    f"rm -rf {_q(release.path)} "
                    f"{_q(self.layout.stamps_dir(release.release_id))}"
                )
                del state.releases[release.release_id]
                state.history = [rid for rid in state.history if rid != release.release_id]
                removed.append(release)
                excess -= 1

            if removed:
                self._save_state(state)
                logger.info(
                    "Pruned %d release(s) on %s: %s",
                    len(removed),
                    self.target.name,
                    ", ".join(r.release_id for r in removed),
                )
            return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _previous_in_history(self, state: ReleaseState, active_id: str) -> Optional[Release]:
        for release_id in reversed(state.history):
            if release_id == active_id:
                continue
            release = state.releases.get(release_id)
            if release is None or release.status == ReleaseStatus.FAILED:
                continue
            if self.exists(release):
                return release
        return None

    def _swap(self, path: str) -> None:
        # rename(2) replaces the marker in one step; readers never see it missing
        staging_link = self.layout.current + ".next"
        self._run(
            f"ln -sfn {_q(path)} {_q(staging_link)} "
            f"&& mv -Tf {_q(staging_link)} {_q(self.layout.current)}"
        )
        actual = self.current_path()
        if actual != path:
            raise ReleaseError(
                f"Active marker points to {actual!r} after swap, expected {path!r}",
                context=f"target {self.target.name}",
            )

    def _point_at(self, release: Optional[Release]) -> None:
        if release is None:
            self._run(f"rm -f {_q(self.layout.current)}")
        else:
            self._swap(release.path)

    def _clear_stamps(self, release_id: str, phase: str) -> None:
        self._run(f"rm -rf {_q(self.layout.stamps_dir(release_id, phase))}")

    def _save_state(self, state: ReleaseState) -> None:
        self._run(f"mkdir -p {_q(self.layout.meta_dir)}")
        self.session.write_text(
            self.layout.state_file, json.dumps(state.to_dict(), indent=2)
        )

    def _run(self, command: str) -> None:
        result = self.session.run(command)
        if not result.ok:
            raise ReleaseError(
                f"Command failed with exit code {result.exit_status}: {result.stderr}",
                context=command,
            )


def _q(value: str) -> str:
    return shlex.quote(value)
