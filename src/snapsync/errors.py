"""Exception hierarchy for snapshot sync runs."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .build import BuildResult


class SyncError(Exception):
    """Base exception for snapshot sync operations."""
    pass


class CloneError(SyncError):
    """Failed to open or clone the site repository."""

    def __init__(self, message: str, *, already_exists: bool = False):
        super().__init__(message)
        self.already_exists = already_exists


class RefListError(SyncError):
    """The remote could not enumerate its references."""
    pass


class MissingLiveBranch(SyncError):
    """The live branch is not advertised by the remote."""

    def __init__(self, branch: str):
        super().__init__(f"Live branch 'refs/heads/{branch}' not found on remote")
        self.branch = branch


class SnapshotDivergence(SyncError):
    """Local snapshot branch does not point at the remote snapshot commit."""

    def __init__(self, branch: str, local_id: str, remote_id: str):
        super().__init__(
            f"Local branch {branch} is at {local_id[:12]} but remote is at "
            f"{remote_id[:12]}; refusing to overwrite"
        )
        self.branch = branch
        self.local_id = local_id
        self.remote_id = remote_id


class BuildExecutorError(SyncError):
    """Install or build command failed."""

    def __init__(self, message: str, result: Optional["BuildResult"] = None):
        super().__init__(message)
        self.result = result


class BranchError(SyncError):
    """The local snapshot branch could not be created or moved."""
    pass


class CommitError(SyncError):
    """Failed to stage or commit build output."""
    pass


class PushError(SyncError):
    """Failed to push the snapshot branch."""
    pass


class AuthorizationError(SyncError):
    """Webhook request carried a missing or wrong bearer token."""
    pass
