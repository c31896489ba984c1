"""Exception hierarchy for deploy-agent."""

from __future__ import annotations

from typing import Optional


class DeployAgentError(Exception):
    """Base exception for all deploy-agent errors."""

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        self.message = message
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if self.context:
            return f"{self.message} ({self.context})"
        return self.message


class ConfigurationError(DeployAgentError):
    """Raised when configuration is invalid or missing."""


class TriggerError(DeployAgentError):
    """Raised when a trigger event cannot be turned into a deployment."""


class TransportError(DeployAgentError):
    """Base class for remote transport failures."""


class AuthenticationError(TransportError):
    """Credentials were rejected. Never retried."""


class UnreachableError(TransportError):
    """The target could not be reached (DNS, refused, reset)."""


class ConnectTimeoutError(TransportError, TimeoutError):
    """A connect or remote command exceeded its timeout."""


class PreconditionFailed(DeployAgentError):
    """The step's desired state already holds; the action is skipped."""


class StepActionError(DeployAgentError):
    """A step action failed. Carries the step name and the cause."""

    def __init__(
        self,
        step_name: str,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.step_name = step_name
        self.cause = cause
        super().__init__(message, context=f"step {step_name}")


class ReleaseError(DeployAgentError):
    """Raised when release state cannot be read or changed."""


class ConflictError(ReleaseError):
    """Another activation is in flight for the same target."""


class NoPriorReleaseError(ReleaseError):
    """Rollback requested but no earlier release exists."""
