"""Local git helpers used to turn refs into revisions."""

from __future__ import annotations

import re
import subprocess
from typing import Optional

from ..errors import DeployAgentError

_FULL_SHA = re.compile(r"^[0-9a-f]{40}$")


class GitCommandError(DeployAgentError):
    """Raised when a git command fails."""

    def __init__(self, command: list[str], exit_code: int, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Git command {' '.join(command)} failed with code {exit_code}: {stderr}")


class GitRepositoryManager:
    """Wraps `git` CLI commands run on the machine that received the trigger."""

    def __init__(self, git_binary: str = "git", timeout: float = 60) -> None:
        self.git_binary = git_binary
        self.timeout = timeout

    def resolve_ref(self, repo_url: str, ref: str) -> str:
        """Return the commit a branch or tag currently points to."""
        if _FULL_SHA.match(ref):
            return ref
        candidates = [ref] if ref.startswith("refs/") else [f"refs/heads/{ref}", f"refs/tags/{ref}"]
        output = self._run(["ls-remote", repo_url, *candidates, *(c + "^{}" for c in candidates)])

        found: dict[str, str] = {}
        for line in output.splitlines():
            parts = line.split()
            if len(parts) == 2:
                found[parts[1]] = parts[0]
        for candidate in candidates:
            # annotated tags: prefer the peeled commit
            sha = found.get(candidate + "^{}") or found.get(candidate)
            if sha:
                return sha
        raise GitCommandError(
            [self.git_binary, "ls-remote", repo_url, ref], 2, f"ref not found: {ref}"
        )

    def _run(self, args: list[str], cwd: Optional[str] = None) -> str:
        command = [self.git_binary] + args
        try:
            process = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(command, -1, f"timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise GitCommandError(command, 127, f"{self.git_binary} not found") from exc
        if process.returncode != 0:
            raise GitCommandError(command, process.returncode, process.stderr.strip())
        return process.stdout
