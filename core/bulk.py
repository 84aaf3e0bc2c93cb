"""Bulk donor research.

``BulkResearchDispatcher.dispatch_bulk`` fans a research run out over many
donors by enqueueing one independent ``donor-research`` job per subject.
It returns as soon as every job is accepted; research results are only
observable later through ``batch_status``.

Isolation is per job: each subject gets its own retry policy and its
failures never touch another subject's job. A scheduler that refuses a
submission is reported synchronously as ``DispatchError``, and any jobs
already accepted for that batch are cancelled where possible.

``DonorResearchJob`` is the handler each job runs: load the donor, build
the research request, run the controller, save the run as the live
version and record the high-potential-donor flag on the donor.

The dispatcher remembers at most ``max_batches`` batches; the oldest are
forgotten first.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional

from core import history as hist
from core.donors import build_request
from core.errors import DispatchError
from core.jobs import RetryPolicy
from core.models import BulkDispatchResult, BulkJobStatus, JobStatus

if TYPE_CHECKING:
    from config.settings import Settings
    from core.jobs import JobScheduler
    from core.researcher import ResearchController

logger = logging.getLogger(__name__)

DONOR_RESEARCH_JOB = "donor-research"
DEFAULT_MAX_BATCHES = 500


class BulkResearchDispatcher:
    """Submits per-subject research jobs and tracks them as one batch."""

    def __init__(
        self,
        scheduler: JobScheduler,
        retry_policy: Optional[RetryPolicy] = None,
        max_batches: int = DEFAULT_MAX_BATCHES,
    ) -> None:
        self.scheduler = scheduler
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_batches = max(1, max_batches)
        self._batches: dict[str, dict[int, str]] = {}
        self._lock = threading.Lock()

    def dispatch_bulk(self, subject_ids: Iterable[int]) -> BulkDispatchResult:
        """Enqueue one research job per subject and return immediately.

        Args:
            subject_ids: Donor IDs; duplicates are submitted once.

        Returns:
            The batch ``job_id`` for status polling and the accepted count.

        Raises:
            ValueError: If no subject IDs are given.
            DispatchError: If the scheduler rejects any submission.
        """
        ids = list(dict.fromkeys(int(s) for s in subject_ids))
        if not ids:
            raise ValueError("At least one subject id is required.")

        batch_id = uuid.uuid4().hex
        jobs: dict[int, str] = {}
        for subject_id in ids:
            payload = {"subject_id": subject_id, "batch_id": batch_id}
            try:
                jobs[subject_id] = self.scheduler.enqueue(
                    DONOR_RESEARCH_JOB, payload, retry=self.retry_policy,
                )
            except Exception as exc:
                logger.error(
                    "Bulk dispatch %s rejected at subject=%d (%d/%d accepted): %s",
                    batch_id, subject_id, len(jobs), len(ids), exc,
                )
                self._cancel_all(jobs.values())
                if isinstance(exc, DispatchError):
                    raise
                raise DispatchError(f"Failed to start bulk donor research: {exc}") from exc

        with self._lock:
            self._batches[batch_id] = jobs
            while len(self._batches) > self.max_batches:
                # dicts keep insertion order, so the first key is the oldest batch
                del self._batches[next(iter(self._batches))]
        logger.info("Bulk donor research %s started for %d subjects", batch_id, len(jobs))
        return BulkDispatchResult(job_id=batch_id, accepted=len(jobs))

    def dispatch_unresearched(self, donor_ids: Optional[Iterable[int]] = None, limit: Optional[int] = None) -> BulkDispatchResult:
        """Dispatch research for donors that have never been researched.

        Raises:
            ValueError: If no donor needs research.
            DispatchError: If the scheduler rejects a submission.
        """
        ids = hist.unresearched_donor_ids(donor_ids, limit=limit)
        if not ids:
            raise ValueError("No donors found that need research.")
        return self.dispatch_bulk(ids)

    def batch_status(self, job_id: str) -> Optional[BulkJobStatus]:
        """Aggregate the per-subject job states of a batch, or None if unknown."""
        with self._lock:
            jobs = self._batches.get(job_id)
            if jobs is None:
                return None
            jobs = dict(jobs)

        status = BulkJobStatus(job_id=job_id, accepted=len(jobs))
        for subject_id, child_id in jobs.items():
            record = self.scheduler.get(child_id)
            if record is None:
                continue
            status.jobs[subject_id] = record
            if record.status == JobStatus.SUCCEEDED:
                status.succeeded += 1
            elif record.status == JobStatus.FAILED:
                status.failed += 1
            elif record.status == JobStatus.QUEUED:
                status.queued += 1
            else:
                status.running += 1
        return status

    def _cancel_all(self, job_ids: Iterable[str]) -> None:
        for job_id in job_ids:
            try:
                self.scheduler.cancel(job_id)
            except Exception as exc:
                logger.warning("Could not cancel job id=%s: %s", job_id, exc)


class DonorResearchJob:
    """Job handler: research one donor and save the run as its live version."""

    def __init__(
        self,
        controller: ResearchController,
        settings: Settings,
        organization_description: str = "nonprofit organization",
    ) -> None:
        self.controller = controller
        self.settings = settings
        self.organization_description = organization_description

    def __call__(self, payload: dict[str, Any], cancel_event: threading.Event) -> dict[str, Any]:
        """Run the research for ``payload["subject_id"]``.

        Raises:
            LookupError: If the donor does not exist.
            ResearchError: If the run fails; the scheduler decides on retries.
        """
        subject_id = int(payload["subject_id"])
        donor = hist.get_donor(subject_id)
        if donor is None:
            raise LookupError(f"Donor {subject_id} not found")

        request = build_request(donor, self.organization_description)
        logger.info("Starting research for donor %d: %s", subject_id, donor.full_name)

        run = self.controller.run_research(
            request.subject,
            request.initial_query,
            self.settings.max_iterations,
            research_topic=request.research_topic,
            seed_queries=request.seed_queries,
            cancel_event=cancel_event,
            donor=donor,
        )
        research_id = hist.save(subject_id, run, set_live=True)

        high_potential = None
        if run.structured_data is not None:
            high_potential = run.structured_data.high_potential_donor
            try:
                hist.set_high_potential(subject_id, high_potential)
            except Exception as exc:
                logger.error(
                    "Failed to update high-potential flag for donor %d: %s", subject_id, exc,
                )

        logger.info("Completed research for donor %d (research id=%d)", subject_id, research_id)
        return {
            "subject_id": subject_id,
            "research_id": research_id,
            "termination_reason": run.termination_reason.value,
            "iterations": run.iterations,
            "citations": len(run.citations),
            "total_tokens": run.token_usage.total_tokens,
            "high_potential_donor": high_potential,
        }
