"""Release directories, the active marker and rollback."""

from .locking import DEFAULT_LOCKS, LockRegistry
from .manager import ReleaseManager
from .models import Release, ReleaseLayout, ReleaseState, ReleaseStatus, release_id_for

__all__ = [
    "DEFAULT_LOCKS",
    "LockRegistry",
    "ReleaseManager",
    "Release",
    "ReleaseLayout",
    "ReleaseState",
    "ReleaseStatus",
    "release_id_for",
]
