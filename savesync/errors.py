"""Exception hierarchy shared by the backup, archive and sync layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from savesync.core.resolver import SyncCheck


class SaveSyncError(Exception):
    """Base class for all savesync errors."""


class PathNotFoundError(SaveSyncError):
    """A configured save path does not resolve to an existing file or directory."""

    def __init__(self, path: str, is_directory: bool) -> None:
        kind = "directory" if is_directory else "file"
        super().__init__(f"Save {kind} not found: {path}")
        self.path = path
        self.is_directory = is_directory


class UnresolvedVariableError(SaveSyncError):
    """A logical path template references a variable with no value."""

    def __init__(self, template: str, variable: str) -> None:
        super().__init__(f"Cannot resolve '{variable}' in path: {template}")
        self.template = template
        self.variable = variable


class InvalidArchiveError(SaveSyncError):
    """The archive is unreadable or lacks its path manifest."""


class TransportFailureError(SaveSyncError):
    """A cloud transfer failed after all retries."""


class ConfigNotFoundError(SaveSyncError):
    """No save config is registered for the given identifier."""


class ConflictUnresolvedError(SaveSyncError):
    """Local and cloud replicas diverged and no choice has been made yet."""

    def __init__(self, check: SyncCheck) -> None:
        super().__init__(
            f"Save conflict for '{check.display_name}' "
            f"(local {check.local_crc}, cloud {check.cloud_crc})"
        )
        self.check = check
