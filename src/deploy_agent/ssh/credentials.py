"""SSH credential references.

A `CredentialRef` only says *where* a key comes from. Secret material is
read when a connection is opened and never kept on the reference.
"""

from __future__ import annotations

import io
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import paramiko

from ..errors import AuthenticationError, ConfigurationError
from ..utils.logging import register_secret

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass(frozen=True)
class CredentialRef:
    """Normalized credential reference from config."""

    kind: str = "key"  # "key" | "agent" | "env"
    key_path: Optional[str] = None
    key_env: Optional[str] = None
    passphrase_env: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CredentialRef":
        if "password" in payload or "passphrase" in payload:
            raise ConfigurationError(
                "Secrets must not be stored in configuration; "
                "use key_path, key_env or passphrase_env"
            )
        return cls(
            kind=payload.get("kind", "key"),
            key_path=payload.get("key_path"),
            key_env=payload.get("key_env"),
            passphrase_env=payload.get("passphrase_env"),
        )

    def validate(self) -> None:
        if self.kind not in ("key", "agent", "env"):
            raise ConfigurationError(f"Unsupported credential kind: {self.kind}")
        if self.kind == "key" and not self.key_path:
            raise ConfigurationError("Key authentication selected but no key_path provided")
        if self.kind == "env" and not self.key_env:
            raise ConfigurationError("Environment key selected but no key_env provided")

    def describe(self) -> str:
        """Safe, loggable description."""
        if self.kind == "key":
            return f"key file {self.key_path}"
        if self.kind == "env":
            return f"key from ${self.key_env}"
        return "ssh-agent"

    def connect_kwargs(self) -> Dict[str, Any]:
        """Resolve the reference into paramiko `connect()` arguments."""
        self.validate()
        passphrase = self._passphrase()
        if self.kind == "agent":
            return {"allow_agent": True, "look_for_keys": False}
        if self.kind == "key":
            path = os.path.expanduser(self.key_path or "")
            if not os.path.isfile(path):
                raise AuthenticationError(f"Private key not found: {path}")
            kwargs: Dict[str, Any] = {
                "key_filename": path,
                "allow_agent": False,
                "look_for_keys": False,
            }
            if passphrase:
                kwargs["passphrase"] = passphrase
            return kwargs
        return {
            "pkey": self._load_env_key(passphrase),
            "allow_agent": False,
            "look_for_keys": False,
        }

    def _passphrase(self) -> Optional[str]:
        if not self.passphrase_env:
            return None
        value = os.getenv(self.passphrase_env)
        if value is None:
            raise AuthenticationError(
                f"Passphrase variable ${self.passphrase_env} is not set"
            )
        register_secret(value)
        return value

    def _load_env_key(self, passphrase: Optional[str]) -> paramiko.PKey:
        material = os.getenv(self.key_env or "")
        if not material:
            raise AuthenticationError(f"Key variable ${self.key_env} is empty or not set")
        for key_class in _KEY_CLASSES:
            try:
                return key_class.from_private_key(io.StringIO(material), password=passphrase)
            except paramiko.SSHException:
                continue
        raise AuthenticationError(f"Could not parse private key from ${self.key_env}")
