"""Debounced, mutually exclusive job scheduler.

Repeated requests for the same job key are coalesced: the job runs once the
key has been quiet for ``delay`` seconds, every caller of the cycle gets the
same future, and a key never has more than one run in flight.

Per-key state machine::

    IDLE --request--> ARMED --deadline--> RUNNING --done--> IDLE
                      ^   |                  |
                      +---+ request          | request
                      (re-arm timer)         v
                                         successor cycle, armed when
                                         the current run finishes

Everything here runs on one asyncio event loop and must only be called from
it. Jobs are coroutine functions; blocking work belongs in a thread
(``asyncio.to_thread``).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from .observability import log_action, log_debug, log_error, log_info

Job = Callable[[], Awaitable[Any]]


class JobState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"


@dataclass
class JobDescriptor:
    """Scheduling state for one coalescing cycle of a job key."""

    key: Hashable
    job: Job
    completion: asyncio.Future
    state: JobState = JobState.IDLE
    armed_at: float = 0.0
    deadline: float = 0.0
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    requests: int = 0
    successor: Optional["JobDescriptor"] = None
    # set when a successor's timer elapses before the current run finished
    due: bool = False
    started_at: Optional[float] = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


def _job_name(job: Job) -> str:
    return getattr(job, "__qualname__", None) or getattr(job, "__name__", None) or repr(job)


class DebounceScheduler:
    """Coalesces bursts of job requests into single deferred runs.

    Args:
        delay: Quiet period in seconds. Every request while a cycle is armed
            pushes the deadline back to ``delay`` after that request.
        arm_while_running: When a request arrives during a run, start the
            next cycle's quiet period immediately instead of after the run.
            Runs still never overlap.
    """

    def __init__(self, delay: float, *, arm_while_running: bool = False):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self.arm_while_running = arm_while_running
        self._jobs: Dict[Hashable, JobDescriptor] = {}
        self._last_outcome: Dict[Hashable, Dict[str, Any]] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request(self, key: Hashable, job: Job) -> asyncio.Future:
        """Ask for ``job`` to run under ``key``.

        Returns:
            The future of the cycle this request was coalesced into. It
            resolves with the job's result or exception.
        """
        if self._closed:
            raise RuntimeError("scheduler is closed")
        loop = asyncio.get_running_loop()
        desc = self._jobs.get(key)

        if desc is None:
            desc = self._new_descriptor(loop, key, job)
            self._jobs[key] = desc
            self._arm(loop, desc)
            log_info(f"Rate limited: {_job_name(job)} for {self.delay:.0f}s", key=str(key))
            return desc.completion

        if desc.state is JobState.ARMED:
            desc.job = job
            desc.requests += 1
            self._arm(loop, desc)
            total = desc.deadline - desc.armed_at
            log_info(
                f"Rate limited: {_job_name(job)} (total delay: {total:.0f}s)",
                key=str(key),
                requests=desc.requests,
            )
            return desc.completion

        # RUNNING: park the request on the next cycle
        successor = desc.successor
        if successor is None:
            successor = self._new_descriptor(loop, key, job)
            desc.successor = successor
        else:
            successor.job = job
            successor.requests += 1
        if self.arm_while_running:
            self._arm(loop, successor)
        log_info(
            f"Delayed: concurrent runs are not allowed for {_job_name(job)}",
            key=str(key),
        )
        return successor.completion

    def state(self, key: Hashable) -> JobState:
        desc = self._jobs.get(key)
        return desc.state if desc is not None else JobState.IDLE

    def trigger_now(self, key: Hashable) -> bool:
        """Start an armed cycle immediately instead of waiting for its deadline.

        Returns:
            True if a run was started
        """
        desc = self._jobs.get(key)
        if desc is None or desc.state is not JobState.ARMED:
            return False
        desc.cancel_timer()
        self._start(desc)
        return True

    def status(self) -> Dict[str, Any]:
        loop_time = self._loop_time()
        jobs: Dict[str, Any] = {}
        for key, desc in self._jobs.items():
            entry: Dict[str, Any] = {
                "state": desc.state.value,
                "requests": desc.requests,
            }
            if desc.state is JobState.ARMED and loop_time is not None:
                entry["due_in"] = round(max(0.0, desc.deadline - loop_time), 3)
            if desc.successor is not None:
                entry["queued_requests"] = desc.successor.requests
            jobs[str(key)] = entry
        for key, outcome in self._last_outcome.items():
            jobs.setdefault(str(key), {"state": JobState.IDLE.value})["last"] = outcome
        return {"delay": self.delay, "arm_while_running": self.arm_while_running, "jobs": jobs}

    async def close(self) -> None:
        """Cancel pending cycles and wait for in-flight runs to finish."""
        self._closed = True
        running = []
        for desc in list(self._jobs.values()):
            pending = [desc.successor] if desc.successor is not None else []
            if desc.state is JobState.ARMED:
                pending.append(desc)
            elif desc.task is not None:
                running.append(desc.task)
            for cycle in pending:
                cycle.cancel_timer()
                if not cycle.completion.done():
                    cycle.completion.cancel()
            desc.successor = None
            if desc.state is JobState.ARMED:
                del self._jobs[desc.key]
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _new_descriptor(self, loop: asyncio.AbstractEventLoop, key: Hashable, job: Job) -> JobDescriptor:
        completion = loop.create_future()
        completion.add_done_callback(lambda fut, key=key: self._consume(key, fut))
        return JobDescriptor(key=key, job=job, completion=completion, requests=1, armed_at=loop.time())

    def _arm(self, loop: asyncio.AbstractEventLoop, desc: JobDescriptor) -> None:
        desc.cancel_timer()
        desc.due = False
        if self._jobs.get(desc.key) is desc:
            desc.state = JobState.ARMED
        desc.deadline = loop.time() + self.delay
        desc.timer = loop.call_later(self.delay, self._on_deadline, desc)
        log_debug("scheduler.arm", key=str(desc.key), deadline=round(desc.deadline, 3))

    def _on_deadline(self, desc: JobDescriptor) -> None:
        desc.timer = None
        current = self._jobs.get(desc.key)
        if current is desc and desc.state is JobState.ARMED:
            self._start(desc)
        elif current is not None and current.successor is desc:
            # previous run still in flight; start as soon as it ends
            desc.due = True

    def _start(self, desc: JobDescriptor) -> None:
        loop = asyncio.get_running_loop()
        desc.state = JobState.RUNNING
        desc.started_at = loop.time()
        log_debug("scheduler.start", key=str(desc.key), requests=desc.requests)
        desc.task = loop.create_task(self._execute(desc))

    async def _execute(self, desc: JobDescriptor) -> None:
        try:
            result = await desc.job()
        except asyncio.CancelledError:
            if not desc.completion.done():
                desc.completion.cancel()
            self._finish(desc)
            raise
        except Exception as exc:
            if not desc.completion.done():
                desc.completion.set_exception(exc)
        else:
            if not desc.completion.done():
                desc.completion.set_result(result)
        self._finish(desc)

    def _finish(self, desc: JobDescriptor) -> None:
        loop = asyncio.get_running_loop()
        delayed = (desc.started_at or loop.time()) - desc.armed_at
        self._last_outcome[desc.key] = {
            "ok": desc.completion.done()
            and not desc.completion.cancelled()
            and desc.completion.exception() is None,
            "requests": desc.requests,
            "delayed": round(delayed, 3),
        }
        successor = desc.successor
        desc.successor = None
        desc.task = None
        if self._jobs.get(desc.key) is desc:
            del self._jobs[desc.key]

        if successor is None or self._closed:
            return

        self._jobs[desc.key] = successor
        if successor.due:
            successor.due = False
            self._start(successor)
        elif successor.timer is not None:
            successor.state = JobState.ARMED
        else:
            self._arm(loop, successor)

    def _consume(self, key: Hashable, fut: asyncio.Future) -> None:
        """Report a finished cycle; also marks its exception as retrieved."""
        if fut.cancelled():
            log_action("scheduler.cycle", outcome="cancelled", key=str(key))
            return
        exc = fut.exception()
        outcome = self._last_outcome.get(key, {})
        status = "OK" if exc is None else "FAILED"
        log_info(
            f"{status} running {key} (delayed {outcome.get('delayed', 0.0):.0f}s)",
            requests=outcome.get("requests"),
        )
        if exc is not None:
            log_error(f"Job {key} failed: {exc!r}")
        log_action("scheduler.cycle", outcome="ok" if exc is None else "error", key=str(key))

    def _loop_time(self) -> Optional[float]:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return None
