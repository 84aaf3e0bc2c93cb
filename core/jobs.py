"""Background job scheduling.

``JobScheduler`` is the boundary the bulk dispatcher talks to:

    enqueue(job_type, payload, retry) -> job_id
    get(job_id) -> JobRecord | None

``InProcessScheduler`` implements it on a thread pool. Each job owns its
retry policy: on failure it is re-run after an exponentially growing,
jittered delay until ``max_attempts`` is reached. A per-attempt timeout is
delivered to the handler as a ``threading.Event``; handlers are expected
to wind down gracefully when it is set.

Finished jobs are kept for ``retention`` seconds and pruned on the next
submission, so long-lived schedulers do not grow without bound.

Submission problems (scheduler shut down, unknown job type, pool refusing
work) raise ``DispatchError`` from ``enqueue`` itself. Failures inside a
job never surface there; they are only visible through ``get``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Protocol

from core.errors import DispatchError
from core.models import JobRecord, JobStatus

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

#: A job handler receives the payload and a cancel event, and returns a
#: JSON-ready result dict (or None).
JobHandler = Callable[[dict[str, Any], threading.Event], Optional[dict[str, Any]]]


@dataclass
class RetryPolicy:
    """Retry configuration attached to a job at enqueue time."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    #: Seconds before the attempt's cancel event is set; None for no limit.
    attempt_timeout: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.job_max_attempts,
            base_delay=settings.job_backoff_base,
            max_delay=settings.job_backoff_max,
            attempt_timeout=settings.job_attempt_timeout,
        )

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number *attempt* (1-based)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        if self.jitter:
            # Up to 10% jitter so simultaneous failures don't retry in lockstep
            delay *= 1.0 + 0.1 * random.random()
        return min(delay, self.max_delay)


class JobScheduler(Protocol):
    def enqueue(self, job_type: str, payload: dict[str, Any], retry: Optional[RetryPolicy] = None) -> str: ...

    def get(self, job_id: str) -> Optional[JobRecord]: ...

    def cancel(self, job_id: str) -> bool: ...


class InProcessScheduler:
    """Thread-pool job scheduler with per-job retry and status tracking."""

    def __init__(
        self,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        retention: Optional[float] = 3600.0,
    ) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, JobRecord] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._sleep = sleep
        #: Seconds a finished job stays visible through ``get``; None keeps it forever.
        self.retention = retention

    @classmethod
    def from_settings(cls, settings: Settings) -> InProcessScheduler:
        return cls(max_workers=settings.job_workers, retention=settings.job_retention)

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register *handler* for jobs of *job_type*."""
        self._handlers[job_type] = handler

    # ── Submission ─────────────────────────────────────────────────────────

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        retry: Optional[RetryPolicy] = None,
    ) -> str:
        """Queue a job and return its ID.

        Raises:
            DispatchError: If the scheduler is shut down, the job type has no
                handler, or the worker pool refuses the submission.
        """
        if self._closed:
            raise DispatchError("Job scheduler is shut down.")
        if job_type not in self._handlers:
            raise DispatchError(f"No handler registered for job type {job_type!r}.")

        self.prune_finished()
        retry = retry or RetryPolicy()
        job = JobRecord(id=uuid.uuid4().hex, job_type=job_type, payload=dict(payload))
        with self._lock:
            self._jobs[job.id] = job
        try:
            future = self._pool.submit(self._execute, job.id, retry)
        except RuntimeError as exc:
            with self._lock:
                del self._jobs[job.id]
            raise DispatchError(f"Could not submit {job_type!r} job: {exc}") from exc

        with self._lock:
            self._futures[job.id] = future
        logger.debug("Enqueued job id=%s type=%s", job.id, job_type)
        return job.id

    # ── Status ─────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Return a snapshot of the job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def prune_finished(self) -> int:
        """Forget finished jobs older than ``retention``; return how many were dropped."""
        if self.retention is None:
            return 0
        now = _now()
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.finished and job.finished_at is not None
                and (now - job.finished_at).total_seconds() >= self.retention
            ]
            for job_id in expired:
                del self._jobs[job_id]
                self._futures.pop(job_id, None)
        if expired:
            logger.debug("Pruned %d finished jobs", len(expired))
        return len(expired)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started yet. Returns True on success."""
        with self._lock:
            future = self._futures.get(job_id)
            job = self._jobs.get(job_id)
        if future is None or job is None or not future.cancel():
            return False
        self._update(job_id, status=JobStatus.FAILED, error="cancelled", finished_at=_now())
        return True

    def wait(self, job_ids: Iterable[str], timeout: Optional[float] = None) -> None:
        """Block until the given jobs finish (or *timeout* elapses)."""
        with self._lock:
            futures = [self._futures[j] for j in job_ids if j in self._futures]
        wait_futures(futures, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._pool.shutdown(wait=wait)

    # ── Execution ──────────────────────────────────────────────────────────

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs[job_id]
            for key, value in changes.items():
                setattr(job, key, value)

    def _execute(self, job_id: str, retry: RetryPolicy) -> None:
        with self._lock:
            job = self._jobs[job_id]
            handler = self._handlers[job.job_type]
            payload = dict(job.payload)

        for attempt in range(1, retry.max_attempts + 1):
            self._update(job_id, status=JobStatus.RUNNING, attempts=attempt)
            cancel_event = threading.Event()
            timer = None
            if retry.attempt_timeout:
                timer = threading.Timer(retry.attempt_timeout, cancel_event.set)
                timer.daemon = True
                timer.start()
            try:
                result = handler(payload, cancel_event)
            except Exception as exc:
                logger.warning(
                    "Job id=%s type=%s attempt %d/%d failed: %s",
                    job_id, job.job_type, attempt, retry.max_attempts, exc,
                )
                if attempt >= retry.max_attempts:
                    self._update(
                        job_id, status=JobStatus.FAILED, error=str(exc) or exc.__class__.__name__,
                        finished_at=_now(),
                    )
                    logger.error("Job id=%s failed after %d attempts", job_id, attempt)
                    return
                self._update(job_id, status=JobStatus.RETRYING, error=str(exc))
                self._sleep(retry.get_delay(attempt))
            else:
                self._update(
                    job_id, status=JobStatus.SUCCEEDED, result=result, error=None,
                    finished_at=_now(),
                )
                logger.info("Job id=%s succeeded on attempt %d", job_id, attempt)
                return
            finally:
                if timer is not None:
                    timer.cancel()


def _now() -> datetime:
    return datetime.now(timezone.utc)
