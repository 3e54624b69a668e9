"""Build executor: runs the install and build commands for a sync run."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Mapping, Optional

from .errors import BuildExecutorError
from .observability import log_debug, log_info


@dataclass(frozen=True)
class BuildResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _preview(text: str, limit: int = 160) -> str:
    lines = text.strip().splitlines()
    return lines[-1][:limit] if lines else ""


class BuildExecutor:
    """Runs shell-style command strings as subprocesses.

    Commands are split with ``shlex`` and executed without a shell.
    """

    def __init__(self, *, timeout: Optional[float] = None):
        self.timeout = timeout

    def run(self, command: str, cwd: Path, env: Optional[Mapping[str, str]] = None) -> BuildResult:
        """Run ``command`` in ``cwd``.

        Raises:
            BuildExecutorError: The command could not be started, timed out,
                or exited non-zero
        """
        argv = shlex.split(command)
        if not argv:
            raise BuildExecutorError("Empty build command")

        log_info(f"Running: {command}", cwd=str(cwd))
        start = time.time()
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=dict(env) if env is not None else os.environ.copy(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except TimeoutExpired as e:
            raise BuildExecutorError(f"'{command}' timed out after {e.timeout}s") from e
        except OSError as e:
            raise BuildExecutorError(f"Failed to start '{command}': {e}") from e

        result = BuildResult(
            command=command,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration=time.time() - start,
        )
        log_debug(
            f"DONE rc={result.exit_code} elapsed={result.duration:.2f}s "
            f"stdout='{_preview(result.stdout)}' stderr='{_preview(result.stderr)}'"
        )
        if not result.ok:
            raise BuildExecutorError(
                f"'{command}' exited with status {result.exit_code}: {_preview(result.stderr)}",
                result,
            )
        return result
