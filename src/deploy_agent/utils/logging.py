"""Logging helpers."""

from __future__ import annotations

import logging
from typing import Optional, Set

_LOGGING_CONFIGURED = False
_REDACTED = "***"


class SecretRedactingFilter(logging.Filter):
    """Masks registered secret values in log records."""

    def __init__(self) -> None:
        super().__init__()
        self._secrets: Set[str] = set()

    def register(self, secret: Optional[str]) -> None:
        # very short values would mask ordinary words
        if secret and len(secret) >= 4:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, _REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_redactor = SecretRedactingFilter()


def register_secret(secret: Optional[str]) -> None:
    """Make sure `secret` never shows up in log output."""
    _redactor.register(secret)


def get_logger(name: Optional[str] = None, *, verbose: bool = False) -> logging.Logger:
    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        )
        for handler in logging.getLogger().handlers:
            handler.addFilter(_redactor)
        logging.getLogger("paramiko").setLevel(logging.WARNING)
        _LOGGING_CONFIGURED = True
    return logging.getLogger(name)
