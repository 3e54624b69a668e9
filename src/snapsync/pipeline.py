"""Snapshot build-and-sync pipeline.

One run performs, in order:

1. open the local clone (or clone it)
2. fetch + prune remote branches and list the remote's references
3. resolve the snapshot branch and create/push/checkout it as needed
4. run the install and build commands
5. commit every changed path and push the snapshot branch

Clone failure, a missing live branch, snapshot divergence, an uncreatable
snapshot branch and build failure abort the run. Every other stage failure
is logged and recorded on the result, and the run continues as far as it can.
"""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from git import GitCommandError
from ulid import ULID

from .build import BuildExecutor
from .config_schema import SnapsyncConfig
from .errors import CommitError, PushError, RefListError
from .observability import log_action, log_error, log_info, log_warning, timeit
from .refs import RefRecord, list_references
from .repository import GitRepository, Identity, PathChange
from .snapshot import Lifecycle, SnapshotState, resolve


class Repository(Protocol):
    """Repository capability consumed by the pipeline."""

    @property
    def workdir(self) -> Path: ...

    @property
    def remote_url(self) -> str: ...

    def fetch(self, refspecs: Optional[Sequence[str]] = None, *, prune: bool = True) -> None: ...

    def list_references(self) -> List[RefRecord]: ...

    def tracking_references(self) -> List[RefRecord]: ...

    def checked_out_target(self, name: str) -> Optional[str]: ...

    def create_or_update_branch(self, name: str, target_id: str, *, force: bool = True): ...

    def set_upstream(self, name: str) -> None: ...

    def checkout(self, name: str, *, force: bool = True) -> None: ...

    def status(self) -> List[PathChange]: ...

    def head_id(self) -> str: ...

    def stage_and_commit(
        self,
        paths: Sequence[str],
        author: Identity,
        committer: Identity,
        message: str,
        parent_id: str,
    ) -> str: ...

    def push(self, name: str) -> None: ...


RepositoryFactory = Callable[[SnapsyncConfig], Repository]


class Outcome(str, Enum):
    NO_CHANGES = "no_changes"
    PUSHED = "pushed"
    PARTIAL = "partial"


@dataclass
class SyncResult:
    run_id: str
    started_at: datetime
    branch: str
    lifecycle: Lifecycle
    outcome: Outcome = Outcome.NO_CHANGES
    changed_paths: List[str] = field(default_factory=list)
    commit_id: Optional[str] = None
    pushed: bool = False
    compare_url: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": format_timestamp(self.started_at),
            "branch": self.branch,
            "lifecycle": self.lifecycle.value,
            "outcome": self.outcome.value,
            "changed_paths": list(self.changed_paths),
            "commit_id": self.commit_id,
            "pushed": self.pushed,
            "compare_url": self.compare_url,
            "errors": list(self.errors),
        }


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision, e.g. 2024-05-01T09:30:00.123Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_millis(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def commit_message(started_at: datetime) -> str:
    return f"{format_timestamp(started_at)} snapshot build"


_SCP_URL = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")
_NETWORK_URL = re.compile(r"^(?:https?|ssh|git)://(?:[^@/]+@)?(?P<host>[\w.-]+)(?::\d+)?/(?P<path>.+)$")


def repository_web_url(repo_url: str) -> Optional[str]:
    """Derive ``https://host/owner/repo`` from an SSH or HTTPS remote URL."""
    url = repo_url.strip()
    match = _NETWORK_URL.match(url) or _SCP_URL.match(url)
    if not match:
        return None
    path = match.group("path").strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    if not path:
        return None
    return f"https://{match.group('host')}/{path}"


def compare_url(web_url: str, live_branch: str, snapshot_branch: str) -> str:
    return f"{web_url.rstrip('/')}/compare/{live_branch}...{snapshot_branch}?expand=1"


def _default_repository_factory(config: SnapsyncConfig) -> Repository:
    git_cfg = config.git
    return GitRepository.open_or_clone(
        git_cfg.repo,
        Path(git_cfg.local_path).expanduser(),
        git_cfg.live_branch,
        remote=git_cfg.remote,
        ssh_key=Path(git_cfg.ssh_key).expanduser() if git_cfg.ssh_key else None,
        token=git_cfg.token or None,
    )


class SyncPipeline:
    """Reconciles the snapshot branch, builds, and publishes the result."""

    def __init__(
        self,
        config: SnapsyncConfig,
        *,
        repository_factory: Optional[RepositoryFactory] = None,
        executor: Optional[BuildExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self._repository_factory = repository_factory or _default_repository_factory
        self._executor = executor or BuildExecutor(timeout=config.build.timeout)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def author(self) -> Identity:
        ident = self.config.identity
        return Identity(ident.author_name, ident.author_email)

    @property
    def committer(self) -> Identity:
        ident = self.config.identity
        if not ident.committer_name and not ident.committer_email:
            return self.author
        return Identity(
            ident.committer_name or ident.author_name,
            ident.committer_email or ident.author_email,
        )

    async def run_async(self) -> SyncResult:
        """Run in a worker thread so the event loop stays responsive."""
        return await asyncio.to_thread(self.run)

    def run(self) -> SyncResult:
        """Run one sync.

        Raises:
            CloneError, MissingLiveBranch, SnapshotDivergence, BranchError,
            BuildExecutorError: The run was aborted
        """
        started_at = self._clock()
        run_id = str(ULID())
        live_branch = self.config.git.live_branch
        log_info(f"Sync run {run_id} starting", started_at=format_timestamp(started_at))

        with timeit("sync.open", run_id=run_id):
            repo = self._repository_factory(self.config)

        errors: List[str] = []
        catalog = self._catalog(repo, run_id, errors)

        with timeit("sync.resolve", run_id=run_id):
            now_ms = epoch_millis(started_at)
            state = resolve(catalog, repo.checked_out_target, live_branch=live_branch, now_ms=now_ms)

        result = SyncResult(
            run_id=run_id,
            started_at=started_at,
            branch=state.branch_name,
            lifecycle=state.lifecycle,
            errors=errors,
        )
        log_info(
            f"Snapshot branch {state.branch_name}",
            lifecycle=state.lifecycle.value,
            seed=state.seed_id,
        )

        self._prepare_branch(repo, state, result)
        self._build(repo, run_id)

        changes = self._status(repo, result)
        if not changes:
            log_info("No changes detected.", run_id=run_id)
            result.outcome = Outcome.NO_CHANGES
            log_action("sync.run", outcome=result.outcome.value, run_id=run_id, branch=result.branch)
            return result

        self._commit_and_push(repo, state, changes, result)
        log_action(
            "sync.run",
            outcome=result.outcome.value,
            run_id=run_id,
            branch=result.branch,
            changed=len(result.changed_paths),
            commit=result.commit_id,
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _catalog(self, repo: Repository, run_id: str, errors: List[str]) -> List[RefRecord]:
        try:
            with timeit("sync.fetch", run_id=run_id):
                repo.fetch(prune=True)
        except (GitCommandError, OSError, ValueError) as e:
            errors.append(f"fetch: {e}")
            log_warning(f"Fetch failed, continuing with local state: {e}")

        try:
            with timeit("sync.list_refs", run_id=run_id) as info:
                catalog = list_references(repo)
                info["refs"] = len(catalog)
            return catalog
        except RefListError as e:
            errors.append(str(e))
            log_error(f"{e}; falling back to remote-tracking refs")
            return repo.tracking_references()

    def _prepare_branch(self, repo: Repository, state: SnapshotState, result: SyncResult) -> None:
        branch = state.branch_name
        if state.needs_branch:
            log_info(f"Creating local snapshot branch {branch} at {state.seed_id}")
            with timeit("sync.create_branch", branch=branch):
                repo.create_or_update_branch(branch, state.seed_id, force=True)

            if state.needs_push:
                try:
                    with timeit("sync.push_branch", branch=branch):
                        repo.push(branch)
                    log_info(f"Pushed new {branch} to {self.config.git.remote}")
                except PushError as e:
                    result.errors.append(str(e))
                    log_error(str(e))

            try:
                repo.set_upstream(branch)
            except (GitCommandError, ValueError) as e:
                result.errors.append(f"upstream: {e}")
                log_warning(f"Could not set upstream for {branch}: {e}")

        try:
            with timeit("sync.checkout", branch=branch):
                repo.checkout(branch, force=True)
        except GitCommandError as e:
            result.errors.append(f"checkout: {e}")
            log_error(f"Checkout of {branch} failed: {e}")

    def _build(self, repo: Repository, run_id: str) -> None:
        build = self.config.build
        env = os.environ.copy()
        if build.install_command.strip():
            with timeit("sync.install", run_id=run_id, command=build.install_command):
                self._executor.run(build.install_command, repo.workdir, env)
        with timeit("sync.build", run_id=run_id, command=build.command):
            self._executor.run(build.command, repo.workdir, env)

    def _status(self, repo: Repository, result: SyncResult) -> List[PathChange]:
        try:
            changes = repo.status()
        except GitCommandError as e:
            result.errors.append(f"status: {e}")
            log_error(f"Could not read working tree status: {e}")
            return []
        result.changed_paths = [change.path for change in changes]
        return changes

    def _commit_and_push(
        self,
        repo: Repository,
        state: SnapshotState,
        changes: List[PathChange],
        result: SyncResult,
    ) -> None:
        paths: List[str] = []
        for change in changes:
            paths.append(change.path)
            if change.original_path:
                paths.append(change.original_path)

        log_info(f"Adding {len(changes)} changed path(s) to index")
        message = commit_message(result.started_at)
        try:
            with timeit("sync.commit", branch=state.branch_name) as info:
                parent = repo.head_id()
                result.commit_id = repo.stage_and_commit(
                    paths, self.author, self.committer, message, parent
                )
                info["commit"] = result.commit_id
        except (CommitError, ValueError) as e:
            result.errors.append(str(e))
            result.outcome = Outcome.PARTIAL
            log_error(f"Commit failed: {e}")
            return
        log_info(f'Committed as "{message}" to {result.commit_id}')

        try:
            with timeit("sync.push", branch=state.branch_name):
                repo.push(state.branch_name)
        except PushError as e:
            result.errors.append(str(e))
            result.outcome = Outcome.PARTIAL
            log_error(f"Push failed, commit {result.commit_id} remains local: {e}")
            return

        result.pushed = True
        result.outcome = Outcome.PUSHED
        web_url = self.config.git.web_url or repository_web_url(repo.remote_url)
        if web_url:
            result.compare_url = compare_url(web_url, self.config.git.live_branch, state.branch_name)
            log_info(f"Start a pull request: {result.compare_url}")
