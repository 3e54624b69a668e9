"""snapsync - keep a git snapshot branch in step with CMS content builds."""

from .errors import (
    AuthorizationError,
    BranchError,
    BuildExecutorError,
    CloneError,
    CommitError,
    MissingLiveBranch,
    PushError,
    RefListError,
    SnapshotDivergence,
    SyncError,
)
from .pipeline import Outcome, SyncPipeline, SyncResult
from .refs import RefRecord, list_references
from .scheduler import DebounceScheduler, JobState
from .snapshot import Lifecycle, SnapshotIdentity, SnapshotState, resolve

__all__ = [
    "AuthorizationError",
    "BranchError",
    "BuildExecutorError",
    "CloneError",
    "CommitError",
    "DebounceScheduler",
    "JobState",
    "Lifecycle",
    "MissingLiveBranch",
    "Outcome",
    "PushError",
    "RefListError",
    "RefRecord",
    "SnapshotDivergence",
    "SnapshotIdentity",
    "SnapshotState",
    "SyncError",
    "SyncPipeline",
    "SyncResult",
    "list_references",
    "resolve",
]

__version__ = "0.1.0"
