"""Snapshot branch resolution.

A snapshot branch (``snap-<integer>``) collects one in-progress content build
cycle. Once it is merged into the live branch it is deleted on the remote, so
the next sync run has to mint a new one seeded from the live branch.

``resolve`` decides, from an already-fetched reference catalog and a probe of
the local checkout, which of three lifecycles applies:

- ``tracking``: the latest remote snapshot is checked out locally at the same
  commit, nothing to do.
- ``recreate``: a remote snapshot exists but no matching local branch is
  checked out; the local branch is (re)created at the remote commit.
- ``new``: no remote snapshot; a new branch named after the run's timestamp
  is created from the live branch and pushed.

The resolver performs no I/O.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .errors import MissingLiveBranch, SnapshotDivergence
from .refs import HEADS_PREFIX, RefRecord

SNAPSHOT_PREFIX = "snap-"
SNAPSHOT_REF_PATTERN = re.compile(r"^refs/heads/snap-(\d+)$")
DEFAULT_LIVE_BRANCH = "live"

# Returns the target id of a local branch when it exists *and* is checked out
LocalBranchProbe = Callable[[str], Optional[str]]


class Lifecycle(str, Enum):
    TRACKING = "tracking"
    RECREATE = "recreate"
    NEW = "new"


@dataclass(frozen=True, order=True)
class SnapshotIdentity:
    id: int

    @property
    def branch_name(self) -> str:
        return f"{SNAPSHOT_PREFIX}{self.id}"

    @classmethod
    def from_ref_name(cls, name: str) -> Optional["SnapshotIdentity"]:
        match = SNAPSHOT_REF_PATTERN.match(name)
        if not match:
            return None
        return cls(int(match.group(1)))


@dataclass(frozen=True)
class SnapshotState:
    """Outcome of snapshot resolution for one sync run."""

    identity: SnapshotIdentity
    remote_ref: Optional[RefRecord]
    live_ref: RefRecord
    local_tracks_remote: bool

    @property
    def branch_name(self) -> str:
        return self.identity.branch_name

    @property
    def lifecycle(self) -> Lifecycle:
        if self.remote_ref is None:
            return Lifecycle.NEW
        if self.local_tracks_remote:
            return Lifecycle.TRACKING
        return Lifecycle.RECREATE

    @property
    def seed_id(self) -> str:
        """Commit the local snapshot branch should point at."""
        if self.remote_ref is not None:
            return self.remote_ref.target_id
        return self.live_ref.target_id

    @property
    def needs_branch(self) -> bool:
        return not self.local_tracks_remote

    @property
    def needs_push(self) -> bool:
        return self.remote_ref is None


def latest_snapshot(catalog: Iterable[RefRecord]) -> tuple[Optional[SnapshotIdentity], Optional[RefRecord]]:
    """Return the numerically largest snapshot identity and its record."""
    best: Optional[SnapshotIdentity] = None
    best_ref: Optional[RefRecord] = None
    for record in catalog:
        identity = SnapshotIdentity.from_ref_name(record.name)
        if identity is None:
            continue
        if best is None or identity > best:
            best, best_ref = identity, record
    return best, best_ref


def find_branch(catalog: Iterable[RefRecord], branch: str) -> Optional[RefRecord]:
    wanted = HEADS_PREFIX + branch
    for record in catalog:
        if record.name == wanted:
            return record
    return None


def now_millis() -> int:
    return time.time_ns() // 1_000_000


def resolve(
    catalog: Iterable[RefRecord],
    local_branch_probe: LocalBranchProbe,
    *,
    live_branch: str = DEFAULT_LIVE_BRANCH,
    now_ms: Optional[int] = None,
) -> SnapshotState:
    """Resolve the snapshot branch a sync run should build on.

    Args:
        catalog: References advertised by the remote
        local_branch_probe: Returns the target id of the named local branch
            if it exists and is checked out, else None
        live_branch: Short name of the live/base branch
        now_ms: Timestamp for a newly minted identity (default: wall clock)

    Raises:
        MissingLiveBranch: The live branch is not in the catalog
        SnapshotDivergence: The checked-out local snapshot branch points at a
            different commit than the remote one
    """
    records = list(catalog)
    identity, remote_ref = latest_snapshot(records)

    live_ref = find_branch(records, live_branch)
    if live_ref is None:
        raise MissingLiveBranch(live_branch)

    if identity is not None and remote_ref is not None:
        local_id = local_branch_probe(identity.branch_name)
        if local_id is not None:
            if local_id != remote_ref.target_id:
                raise SnapshotDivergence(identity.branch_name, local_id, remote_ref.target_id)
            return SnapshotState(identity, remote_ref, live_ref, local_tracks_remote=True)
        return SnapshotState(identity, remote_ref, live_ref, local_tracks_remote=False)

    minted = SnapshotIdentity(now_ms if now_ms is not None else now_millis())
    return SnapshotState(minted, None, live_ref, local_tracks_remote=False)
