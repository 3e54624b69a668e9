"""GitPython-backed repository capability for the snapshot sync pipeline.

All operations run in-process through GitPython with a prepared environment
that keeps git from prompting for credentials:

- SSH remotes run with ``BatchMode=yes`` (and an explicit key when given)
- HTTPS remotes receive a token through ``GIT_ASKPASS`` when one is configured
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import git
from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, PushInfo, Repo
from git.exc import BadName, BadObject

from .errors import BranchError, CloneError, CommitError, PushError
from .observability import log_debug, log_info
from .refs import HEADS_PREFIX, RefRecord, parse_ls_remote

DEFAULT_REMOTE = "origin"

# Upper bound on pathspec bytes per `git add` call, well below ARG_MAX
ADD_BATCH_BYTES = 64 * 1024


@dataclass(frozen=True)
class PathChange:
    """One entry of ``git status --porcelain``."""

    path: str
    index_status: str
    worktree_status: str
    original_path: Optional[str] = None

    @property
    def untracked(self) -> bool:
        return self.index_status == "?" and self.worktree_status == "?"

    @property
    def deleted(self) -> bool:
        return "D" in (self.index_status, self.worktree_status)

    @property
    def renamed(self) -> bool:
        return self.index_status == "R" or self.worktree_status == "R"


@dataclass(frozen=True)
class Identity:
    name: str
    email: str

    def to_actor(self) -> Actor:
        return Actor(self.name, self.email)


def parse_porcelain(output: str) -> List[PathChange]:
    """Parse ``git status --porcelain -z`` output.

    Rename and copy entries are followed by their source path as a separate
    NUL-terminated field.
    """
    changes: List[PathChange] = []
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        entry = fields[i]
        i += 1
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]
        original = None
        if x in ("R", "C") or y in ("R", "C"):
            if i < len(fields):
                original = fields[i]
            i += 1
        if x == "!" and y == "!":
            continue
        changes.append(PathChange(path=path, index_status=x, worktree_status=y, original_path=original))
    return changes


def _batches(paths: Sequence[str], limit: int) -> Iterable[List[str]]:
    batch: List[str] = []
    size = 0
    for path in paths:
        cost = len(path.encode("utf-8", "surrogateescape")) + 1
        if batch and size + cost > limit:
            yield batch
            batch, size = [], 0
        batch.append(path)
        size += cost
    if batch:
        yield batch


def build_git_env(
    repo_url: str,
    *,
    ssh_key: Optional[Path] = None,
    token: Optional[str] = None,
    base: Optional[dict] = None,
) -> dict:
    """Prepare the environment propagated to every git operation."""
    env = dict(base if base is not None else os.environ)
    # Fail fast instead of hanging when credentials are required
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env.setdefault("GCM_INTERACTIVE", "never")

    if token and repo_url.startswith("https://"):
        # git asks "Username for ..." then "Password for ..."
        askpass_script = (
            f'{sys.executable} -c "import sys; '
            f'print(\\"x-access-token\\" if \\"Username\\" in sys.argv[1] '
            f'else \\"{token}\\")"'
        )
        env["GIT_ASKPASS"] = askpass_script
    else:
        env.setdefault("GIT_ASKPASS", "echo")

    if ssh_key:
        env["GIT_SSH_COMMAND"] = (
            f"ssh -i {ssh_key} -o IdentitiesOnly=yes -o BatchMode=yes"
        )
    elif repo_url.startswith("git@") or repo_url.startswith("ssh://"):
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def _is_non_empty_dir(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


class GitRepository:
    """Local clone of the site repository.

    Not thread-safe; the scheduler guarantees a single sync run at a time.
    """

    def __init__(self, repo: Repo, *, remote: str = DEFAULT_REMOTE, env: Optional[dict] = None):
        self.repo = repo
        self.remote_name = remote
        self._env = env if env is not None else dict(os.environ)

    @property
    def workdir(self) -> Path:
        return Path(self.repo.working_tree_dir)

    @property
    def remote_url(self) -> str:
        return self.repo.remote(self.remote_name).url

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    @classmethod
    def open_or_clone(
        cls,
        url: str,
        local_path: Path,
        checkout_branch: Optional[str] = None,
        *,
        remote: str = DEFAULT_REMOTE,
        ssh_key: Optional[Path] = None,
        token: Optional[str] = None,
    ) -> "GitRepository":
        """Clone ``url`` into ``local_path``, or open the clone already there.

        Raises:
            CloneError: Clone failed, or ``local_path`` is a non-empty
                directory that is not a git repository
        """
        local_path = Path(local_path)
        env = build_git_env(url, ssh_key=ssh_key, token=token)

        if _is_non_empty_dir(local_path):
            return cls._open_existing(local_path, remote=remote, env=env)

        log_debug(f"GIT_OP_START: clone {url}")
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            kwargs = {"env": env, "origin": remote}
            if checkout_branch:
                kwargs["branch"] = checkout_branch
            repo = Repo.clone_from(url, local_path, **kwargs)
        except GitCommandError as e:
            if "already exists and is not an empty directory" in str(e):
                return cls._open_existing(local_path, remote=remote, env=env)
            raise CloneError(f"Failed to clone {url}: {e}") from e
        except OSError as e:
            raise CloneError(f"Failed to clone {url}: {e}") from e
        log_debug(f"GIT_OP_END: clone {url}")
        log_info(f"Cloned {url} to {local_path}", branch=checkout_branch)
        return cls(repo, remote=remote, env=env)

    @classmethod
    def _open_existing(cls, local_path: Path, *, remote: str, env: dict) -> "GitRepository":
        try:
            repo = Repo(local_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise CloneError(
                f"{local_path} exists and is not a git repository",
                already_exists=True,
            ) from e
        log_info(f"Repository already exists at {local_path}, reusing it")
        return cls(repo, remote=remote, env=env)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def fetch(self, refspecs: Optional[Sequence[str]] = None, *, prune: bool = True) -> None:
        if refspecs is None:
            refspecs = [f"refs/heads/*:refs/remotes/{self.remote_name}/*"]
        log_debug(f"GIT_OP_START: fetch {self.remote_name}")
        with self.repo.git.custom_environment(**self._env):
            self.repo.remote(self.remote_name).fetch(list(refspecs), prune=prune)
        log_debug(f"GIT_OP_END: fetch {self.remote_name}")

    def list_references(self) -> List[RefRecord]:
        """References advertised by the remote (``git ls-remote``)."""
        with self.repo.git.custom_environment(**self._env):
            output = self.repo.git.ls_remote(self.remote_name)
        return parse_ls_remote(output)

    def tracking_references(self) -> List[RefRecord]:
        """Local remote-tracking refs, renamed as the remote's branch refs."""
        records: List[RefRecord] = []
        try:
            remote_refs = self.repo.remote(self.remote_name).refs
        except (ValueError, AssertionError):
            return records
        for ref in remote_refs:
            if ref.remote_head == "HEAD":
                continue
            records.append(RefRecord(name=HEADS_PREFIX + ref.remote_head, target_id=ref.commit.hexsha))
        return records

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def current_branch(self) -> Optional[str]:
        if self.repo.head.is_detached:
            return None
        try:
            return self.repo.active_branch.name
        except TypeError:
            return None

    def checked_out_target(self, name: str) -> Optional[str]:
        """Target id of local branch ``name`` if it is currently checked out."""
        if self.current_branch() != name:
            return None
        try:
            return self.repo.head.commit.hexsha
        except ValueError:
            # unborn branch
            return None

    def head_id(self) -> str:
        return self.repo.head.commit.hexsha

    def create_or_update_branch(self, name: str, target_id: str, *, force: bool = True) -> git.Head:
        """Point local branch ``name`` at ``target_id``, creating it if needed.

        Raises:
            BranchError: If the target is not in the local object store or git
                refuses the update
        """
        try:
            if self.current_branch() == name:
                # `git branch -f` refuses to move the checked-out branch
                self.repo.head.reset(target_id, index=True, working_tree=True)
                return self.repo.heads[name]
            return self.repo.create_head(name, target_id, force=force)
        except (GitCommandError, BadName, BadObject, ValueError, OSError) as e:
            raise BranchError(f"Failed to point {name} at {target_id[:12]}: {e}") from e

    def set_upstream(self, name: str) -> None:
        with self.repo.git.custom_environment(**self._env):
            self.repo.git.branch("--set-upstream-to", f"{self.remote_name}/{name}", name)

    def upstream(self, name: str) -> Optional[str]:
        tracking = self.repo.heads[name].tracking_branch()
        return tracking.name if tracking is not None else None

    def checkout(self, name: str, *, force: bool = True) -> None:
        args = ["--force", name] if force else [name]
        log_debug(f"GIT_OP_START: checkout {name}")
        with self.repo.git.custom_environment(**self._env):
            self.repo.git.checkout(*args)
        log_debug(f"GIT_OP_END: checkout {name}")

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def status(self) -> List[PathChange]:
        output = self.repo.git.status("--porcelain", "-z", "--untracked-files=all")
        return parse_porcelain(output)

    def stage_and_commit(
        self,
        paths: Iterable[str],
        author: Identity,
        committer: Identity,
        message: str,
        parent_id: str,
    ) -> str:
        """Stage ``paths`` (additions, edits and removals) and commit on HEAD.

        Returns:
            The new commit id

        Raises:
            CommitError: If staging or committing fails
        """
        paths = list(paths)
        try:
            with self.repo.git.custom_environment(**self._env):
                for batch in _batches(paths, ADD_BATCH_BYTES):
                    self.repo.git.add("-A", "--", *batch)
            index = self.repo.index
            parent = self.repo.commit(parent_id)
            commit = index.commit(
                message,
                parent_commits=[parent],
                author=author.to_actor(),
                committer=committer.to_actor(),
                head=True,
            )
        except (GitCommandError, BadName, BadObject, ValueError, OSError) as e:
            raise CommitError(f"Failed to commit: {e}") from e
        return commit.hexsha

    def push(self, name: str) -> None:
        """Push local branch ``name`` to the same name on the remote.

        Raises:
            PushError: If git fails or the remote rejects the update
        """
        refspec = f"refs/heads/{name}:refs/heads/{name}"
        log_debug(f"GIT_OP_START: push {refspec}")
        try:
            with self.repo.git.custom_environment(**self._env):
                infos = self.repo.remote(self.remote_name).push(refspec)
        except (GitCommandError, ValueError) as e:
            raise PushError(f"Failed to push {name}: {e}") from e
        for info in infos:
            if info.flags & (PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE):
                raise PushError(f"Push of {name} rejected: {info.summary.strip()}")
        log_debug(f"GIT_OP_END: push {refspec}")
