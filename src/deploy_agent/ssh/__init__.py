"""SSH connection transport for deploy-agent."""

from .credentials import CredentialRef
from .session import CommandResult, SSHSession
from .probe import RemoteHostFacts, RemoteProbe
from .transport import Session, SSHTransport

__all__ = [
    "CredentialRef",
    "CommandResult",
    "SSHSession",
    "RemoteHostFacts",
    "RemoteProbe",
    "Session",
    "SSHTransport",
]
