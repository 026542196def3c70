"""In-memory registry of conversion jobs keyed by fingerprint.

The ledger guarantees that at most one caller drives a conversion for a
fingerprint at a time. The first caller becomes the leader; everybody who
arrives while that job is pending or running becomes a follower and gets a
waiter future that resolves with the leader's outcome. Successful jobs stay
joinable for a short grace period, failed jobs are dropped at once so the
next request retries cleanly.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)


class Role(str, Enum):
    LEADER = "leader"
    FOLLOWER = "follower"


class ConversionJob:
    """One attempt to produce the artifact for a fingerprint.

    Only :class:`JobLedger` mutates a job; callers read it.
    """

    def __init__(self, fingerprint: str, locator: str | None, created_at: float) -> None:
        self.fingerprint = fingerprint
        self.locator = locator
        self.state = JobState.PENDING
        self.result: Any = None
        self.error: BaseException | None = None
        self.created_at = created_at
        self.started_at: float | None = None
        self.finished_at: float | None = None
        self.waiters: list[Future] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def __repr__(self) -> str:
        return f"ConversionJob(fingerprint={self.fingerprint[:12]!r}, state={self.state.value!r})"


def _deliver(waiter: Future, job: ConversionJob) -> bool:
    try:
        if job.error is not None:
            waiter.set_exception(job.error)
        else:
            waiter.set_result(job.result)
    except InvalidStateError:
        # Waiter was cancelled by a caller that stopped waiting.
        return False
    return True


class JobLedger:
    def __init__(self, grace_seconds: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._grace_seconds = max(0.0, float(grace_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, ConversionJob] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _expired_locked(self, job: ConversionJob, now: float) -> bool:
        if job.state is not JobState.SUCCEEDED or job.finished_at is None:
            return False
        return now - job.finished_at >= self._grace_seconds

    def _purge_expired_locked(self, now: float) -> None:
        expired = [key for key, job in self._jobs.items() if self._expired_locked(job, now)]
        for key in expired:
            self._jobs.pop(key, None)

    def acquire_or_join(self, fingerprint: str, locator: str | None = None) -> tuple[Role, ConversionJob, Future]:
        """Atomically become the leader for ``fingerprint`` or join its job.

        Returns ``(role, job, waiter)``. The waiter future resolves with the
        job's result (or raises its error) once the job completes; for a job
        already finished inside its grace period it is resolved on return.
        A leader must eventually call :meth:`complete`.
        """
        waiter: Future = Future()
        with self._lock:
            now = self._clock()
            self._purge_expired_locked(now)
            job = self._jobs.get(fingerprint)
            if job is None:
                job = ConversionJob(fingerprint, locator, created_at=now)
                job.waiters.append(waiter)
                self._jobs[fingerprint] = job
                return Role.LEADER, job, waiter
            if job.is_terminal:
                _deliver(waiter, job)
                return Role.FOLLOWER, job, waiter
            job.waiters.append(waiter)
            waiting = len(job.waiters)
        logger.info("job_coalesced fingerprint=%s waiters=%d", fingerprint[:12], waiting)
        return Role.FOLLOWER, job, waiter

    def mark_running(self, fingerprint: str) -> bool:
        with self._lock:
            job = self._jobs.get(fingerprint)
            if job is None or job.state is not JobState.PENDING:
                return False
            job.state = JobState.RUNNING
            job.started_at = self._clock()
            return True

    def complete(self, fingerprint: str, result: Any = None, error: BaseException | None = None) -> int:
        """Resolve the job for ``fingerprint`` and notify every waiter once.

        Pass ``error`` for a failed job. Returns the number of waiters that
        received the outcome; a second call for the same job is a no-op
        returning 0.
        """
        with self._lock:
            job = self._jobs.get(fingerprint)
            if job is None or job.is_terminal:
                logger.warning("job_complete_ignored fingerprint=%s", fingerprint[:12])
                return 0
            job.finished_at = self._clock()
            if error is not None:
                job.state = JobState.FAILED
                job.error = error
                self._jobs.pop(fingerprint, None)
            else:
                job.state = JobState.SUCCEEDED
                job.result = result
                if self._grace_seconds <= 0:
                    self._jobs.pop(fingerprint, None)
            waiters = job.waiters
            job.waiters = []

        delivered = 0
        for waiter in waiters:
            if _deliver(waiter, job):
                delivered += 1
        return delivered

    def abandon(self, fingerprint: str, waiter: Future) -> None:
        """Detach a waiter whose caller gave up; the job itself continues."""
        with self._lock:
            job = self._jobs.get(fingerprint)
            if job is not None and waiter in job.waiters:
                job.waiters.remove(waiter)
        waiter.cancel()

    def fail_all(self, error_factory: Callable[[ConversionJob], BaseException]) -> int:
        with self._lock:
            pending = [job for job in self._jobs.values() if not job.is_terminal]
        for job in pending:
            self.complete(job.fingerprint, error=error_factory(job))
        return len(pending)

    def get(self, fingerprint: str) -> ConversionJob | None:
        with self._lock:
            job = self._jobs.get(fingerprint)
            if job is not None and self._expired_locked(job, self._clock()):
                self._jobs.pop(fingerprint, None)
                return None
            return job

    def snapshot(self) -> list[dict]:
        with self._lock:
            now = self._clock()
            self._purge_expired_locked(now)
            return [
                {
                    "fingerprint": job.fingerprint,
                    "state": job.state.value,
                    "age_sec": round(now - job.created_at, 3),
                    "waiters": len(job.waiters),
                }
                for job in self._jobs.values()
            ]
