"""Local execution for targets deployed on the current machine."""

from .session import LocalSession

__all__ = ["LocalSession"]
