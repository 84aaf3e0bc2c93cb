"""Tests for core/bulk.py: bulk dispatch isolation and the donor research job."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

import core.history as hist
from core.bulk import DONOR_RESEARCH_JOB, BulkResearchDispatcher, DonorResearchJob
from core.errors import DispatchError, SynthesisError
from core.jobs import InProcessScheduler, RetryPolicy
from core.models import DonorAssessment, DonorProfile, JobStatus, ResearchRun, TerminationReason


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_bulk.db"))
    hist.init_db()
    yield


@pytest.fixture
def scheduler():
    s = InProcessScheduler(max_workers=3, sleep=lambda seconds: None)
    yield s
    s.shutdown()


def make_run(subject: str = "Jane Doe") -> ResearchRun:
    return ResearchRun(
        subject=subject,
        research_topic=f"What motivates {subject}?",
        iterations=1,
        termination_reason=TerminationReason.SUFFICIENT_EVIDENCE,
        answer="answer",
    )


# ── Dispatcher ─────────────────────────────────────────────────────────────────


class TestDispatchBulk:
    def test_one_failing_subject_is_isolated(self, scheduler):
        def handler(payload, cancel):
            if payload["subject_id"] == 2:
                raise RuntimeError("research failed for subject 2")
            return {"subject_id": payload["subject_id"]}

        scheduler.register(DONOR_RESEARCH_JOB, handler)
        dispatcher = BulkResearchDispatcher(scheduler, RetryPolicy(max_attempts=2, jitter=False))

        result = dispatcher.dispatch_bulk([1, 2, 3])

        assert result.accepted == 3
        assert result.job_id

        status = dispatcher.batch_status(result.job_id)
        scheduler.wait([job.id for job in status.jobs.values()], timeout=5)
        status = dispatcher.batch_status(result.job_id)

        assert status.finished
        assert status.succeeded == 2
        assert status.failed == 1
        assert status.jobs[1].status == JobStatus.SUCCEEDED
        assert status.jobs[2].status == JobStatus.FAILED
        assert status.jobs[2].attempts == 2
        assert status.jobs[3].status == JobStatus.SUCCEEDED

    def test_duplicate_ids_submitted_once(self, scheduler):
        scheduler.register(DONOR_RESEARCH_JOB, lambda payload, cancel: None)
        result = BulkResearchDispatcher(scheduler).dispatch_bulk([5, 5, 6])
        assert result.accepted == 2

    def test_empty_input_raises(self, scheduler):
        with pytest.raises(ValueError):
            BulkResearchDispatcher(scheduler).dispatch_bulk([])

    def test_scheduler_rejection_is_synchronous(self):
        scheduler = MagicMock()
        scheduler.enqueue.side_effect = ["job-a", DispatchError("queue full")]

        with pytest.raises(DispatchError, match="queue full"):
            BulkResearchDispatcher(scheduler).dispatch_bulk([1, 2, 3])

        scheduler.cancel.assert_called_once_with("job-a")

    def test_unexpected_scheduler_error_wrapped(self):
        scheduler = MagicMock()
        scheduler.enqueue.side_effect = ConnectionError("broker unreachable")

        with pytest.raises(DispatchError, match="broker unreachable"):
            BulkResearchDispatcher(scheduler).dispatch_bulk([1])

    def test_payload_carries_subject_and_batch(self):
        scheduler = MagicMock()
        scheduler.enqueue.return_value = "job-1"
        policy = RetryPolicy(max_attempts=5)

        result = BulkResearchDispatcher(scheduler, policy).dispatch_bulk([9])

        args, kwargs = scheduler.enqueue.call_args
        assert args[0] == DONOR_RESEARCH_JOB
        assert args[1] == {"subject_id": 9, "batch_id": result.job_id}
        assert kwargs["retry"] is policy

    def test_unknown_batch_status(self, scheduler):
        assert BulkResearchDispatcher(scheduler).batch_status("missing") is None

    def test_oldest_batches_forgotten_past_cap(self):
        scheduler = MagicMock()
        scheduler.enqueue.return_value = "job"
        dispatcher = BulkResearchDispatcher(scheduler, max_batches=2)

        first = dispatcher.dispatch_bulk([1])
        second = dispatcher.dispatch_bulk([2])
        third = dispatcher.dispatch_bulk([3])

        assert dispatcher.batch_status(first.job_id) is None
        assert dispatcher.batch_status(second.job_id) is not None
        assert dispatcher.batch_status(third.job_id) is not None


class TestDispatchUnresearched:
    def test_dispatches_only_unresearched(self):
        for donor_id in (1, 2, 3):
            hist.upsert_donor(DonorProfile(id=donor_id, full_name=f"Donor {donor_id}"))
        hist.save(2, make_run())
        scheduler = MagicMock()
        scheduler.enqueue.side_effect = ["job-1", "job-3"]

        result = BulkResearchDispatcher(scheduler).dispatch_unresearched()

        assert result.accepted == 2
        subject_ids = [c.args[1]["subject_id"] for c in scheduler.enqueue.call_args_list]
        assert subject_ids == [1, 3]

    def test_nothing_to_research(self):
        with pytest.raises(ValueError, match="No donors"):
            BulkResearchDispatcher(MagicMock()).dispatch_unresearched()


# ── Job handler ────────────────────────────────────────────────────────────────


class TestDonorResearchJob:
    def make_job(self, controller):
        settings = MagicMock()
        settings.max_iterations = 2
        return DonorResearchJob(controller, settings, organization_description="youth literacy nonprofit")

    def test_runs_research_and_saves_live(self):
        hist.upsert_donor(DonorProfile(id=4, full_name="Jane Doe", state="CA", email="jane@example.com"))
        controller = MagicMock()
        controller.run_research.return_value = make_run()
        cancel = threading.Event()

        result = self.make_job(controller)({"subject_id": 4}, cancel)

        args, kwargs = controller.run_research.call_args
        assert args == ("Jane Doe", "Jane Doe philanthropy", 2)
        assert kwargs["seed_queries"] == ["Jane Doe CA", "Jane Doe jane@example.com"]
        assert kwargs["cancel_event"] is cancel
        assert kwargs["donor"].id == 4
        assert "youth literacy nonprofit" in kwargs["research_topic"]

        live = hist.get_live(4)
        assert live.id == result["research_id"]
        assert result["termination_reason"] == "sufficient-evidence"

    def test_missing_donor_raises(self):
        with pytest.raises(LookupError):
            self.make_job(MagicMock())({"subject_id": 404}, threading.Event())

    def test_failed_run_is_not_saved(self):
        hist.upsert_donor(DonorProfile(id=5, full_name="John Roe"))
        controller = MagicMock()
        controller.run_research.side_effect = SynthesisError("overloaded")

        with pytest.raises(SynthesisError):
            self.make_job(controller)({"subject_id": 5}, threading.Event())

        assert hist.get_live(5) is None

    def test_high_potential_flag_saved_on_donor(self):
        hist.upsert_donor(DonorProfile(id=6, full_name="Ann Lee"))
        run = make_run("Ann Lee").model_copy(update={"structured_data": DonorAssessment(
            employer="Acme Corp",
            high_potential_donor=True,
            high_potential_donor_rationale="Senior executive with a giving history.",
        )})
        controller = MagicMock()
        controller.run_research.return_value = run

        result = self.make_job(controller)({"subject_id": 6}, threading.Event())

        assert result["high_potential_donor"] is True
        assert hist.get_donor(6).high_potential_donor is True

    def test_flag_update_failure_does_not_fail_job(self, monkeypatch, caplog):
        hist.upsert_donor(DonorProfile(id=8, full_name="Bo Park"))
        run = make_run("Bo Park").model_copy(update={"structured_data": DonorAssessment(
            high_potential_donor=False, high_potential_donor_rationale="Little public information.",
        )})
        controller = MagicMock()
        controller.run_research.return_value = run
        monkeypatch.setattr(hist, "set_high_potential", MagicMock(side_effect=RuntimeError("db locked")))

        result = self.make_job(controller)({"subject_id": 8}, threading.Event())

        assert hist.get_live(8).id == result["research_id"]
        assert "db locked" in caplog.text

    def test_no_assessment_leaves_flag_unset(self):
        hist.upsert_donor(DonorProfile(id=9, full_name="Cy Ng"))
        controller = MagicMock()
        controller.run_research.return_value = make_run("Cy Ng")

        result = self.make_job(controller)({"subject_id": 9}, threading.Event())

        assert result["high_potential_donor"] is None
        assert hist.get_donor(9).high_potential_donor is None
