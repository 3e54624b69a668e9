"""Tests for snapshot branch resolution.

Covers:
- Latest snapshot selection (numeric ordering, malformed names)
- The three lifecycles: tracking, recreate, new
- Live branch and divergence failures
"""

from __future__ import annotations

import pytest

from snapsync.errors import MissingLiveBranch, SnapshotDivergence
from snapsync.refs import RefRecord
from snapsync.snapshot import (
    Lifecycle,
    SnapshotIdentity,
    latest_snapshot,
    resolve,
)

LIVE = "abc123" + "0" * 34
X = "1" * 40
Y = "2" * 40


def ref(name: str, target: str) -> RefRecord:
    return RefRecord(f"refs/heads/{name}", target)


def no_local(_name: str):
    return None


def test_latest_snapshot_uses_numeric_order():
    catalog = [ref("snap-3", "3" * 40), ref("snap-10", "a" * 40), ref("snap-2", "b" * 40), ref("live", LIVE)]
    identity, record = latest_snapshot(catalog)
    assert identity == SnapshotIdentity(10)
    assert record.name == "refs/heads/snap-10"


def test_latest_snapshot_ignores_non_matching_names():
    catalog = [
        ref("snap-", X),
        ref("snap-12abc", X),
        ref("snapshot-99", X),
        ref("feature/snap-50", X),
        RefRecord("refs/remotes/origin/snap-70", X),
        RefRecord("refs/pull/3/head", X),
        ref("snap-4", Y),
    ]
    identity, record = latest_snapshot(catalog)
    assert identity == SnapshotIdentity(4)
    assert record.target_id == Y


def test_resolve_selects_snap_10_over_lexically_larger_names():
    catalog = [ref("snap-3", X), ref("snap-10", Y), ref("snap-2", X), ref("live", LIVE)]
    state = resolve(catalog, no_local)
    assert state.branch_name == "snap-10"
    assert state.remote_ref.target_id == Y


def test_resolve_without_snapshots_mints_identity_from_live():
    catalog = [ref("live", LIVE), ref("main", X)]
    state = resolve(catalog, no_local, now_ms=1714555800123)

    assert state.identity == SnapshotIdentity(1714555800123)
    assert state.branch_name == "snap-1714555800123"
    assert state.lifecycle is Lifecycle.NEW
    assert state.remote_ref is None
    assert state.seed_id == LIVE
    assert state.needs_branch
    assert state.needs_push


def test_resolve_defaults_new_identity_to_wall_clock(monkeypatch):
    monkeypatch.setattr("snapsync.snapshot.now_millis", lambda: 42)
    state = resolve([ref("live", LIVE)], no_local)
    assert state.branch_name == "snap-42"


def test_resolve_recreate_when_no_local_branch_checked_out():
    catalog = [ref("snap-7", Y), ref("live", LIVE)]
    state = resolve(catalog, no_local, now_ms=99)

    assert state.lifecycle is Lifecycle.RECREATE
    assert state.branch_name == "snap-7"
    assert state.seed_id == Y
    assert state.needs_branch
    assert not state.needs_push


def test_resolve_tracking_when_local_matches_remote():
    catalog = [ref("snap-7", Y), ref("live", LIVE)]
    probed = []

    def probe(name):
        probed.append(name)
        return Y

    state = resolve(catalog, probe)

    assert probed == ["snap-7"]
    assert state.lifecycle is Lifecycle.TRACKING
    assert state.local_tracks_remote
    assert not state.needs_branch
    assert not state.needs_push


def test_resolve_raises_on_divergence():
    catalog = [ref("snap-10", Y), ref("live", LIVE)]

    with pytest.raises(SnapshotDivergence) as exc_info:
        resolve(catalog, lambda name: X if name == "snap-10" else None)

    err = exc_info.value
    assert err.branch == "snap-10"
    assert err.local_id == X
    assert err.remote_id == Y


def test_resolve_requires_live_branch():
    with pytest.raises(MissingLiveBranch) as exc_info:
        resolve([ref("snap-1", X), ref("main", Y)], no_local)
    assert exc_info.value.branch == "live"


def test_resolve_honours_custom_live_branch():
    state = resolve([ref("main", Y)], no_local, live_branch="main", now_ms=5)
    assert state.live_ref == ref("main", Y)
    assert state.seed_id == Y


def test_resolve_is_idempotent():
    catalog = [ref("snap-3", X), ref("snap-10", Y), ref("live", LIVE)]
    first = resolve(catalog, no_local, now_ms=1)
    second = resolve(catalog, no_local, now_ms=1)
    assert first == second

    fresh = [ref("live", LIVE)]
    assert resolve(fresh, no_local, now_ms=77) == resolve(fresh, no_local, now_ms=77)


def test_resolve_does_not_mutate_catalog():
    catalog = [ref("snap-3", X), ref("live", LIVE)]
    snapshot = list(catalog)
    resolve(catalog, no_local)
    assert catalog == snapshot


def test_resolve_accepts_generator_catalog():
    state = resolve((r for r in [ref("snap-1", X), ref("live", LIVE)]), no_local)
    assert state.branch_name == "snap-1"
