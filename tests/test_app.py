"""Tests for web/app.py: JSON API over fake research collaborators."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

import core.history as hist
from config.settings import Settings
from core.errors import DispatchError, ReflectionError
from core.jobs import InProcessScheduler
from core.models import DonorAssessment, DonorProfile, ResearchRun, RunState, TerminationReason
from web.app import create_app


def make_run(answer: str = "Jane Doe cares about literacy.") -> ResearchRun:
    return ResearchRun(
        subject="Jane Doe",
        research_topic="Jane Doe philanthropy",
        iterations=1,
        state=RunState.DONE,
        termination_reason=TerminationReason.SUFFICIENT_EVIDENCE,
        answer=answer,
    )


@pytest.fixture
def controller():
    controller = MagicMock()
    controller.run_research.return_value = make_run()
    return controller


@pytest.fixture
def scheduler():
    s = InProcessScheduler(max_workers=2, sleep=lambda seconds: None)
    yield s
    s.shutdown()


@pytest.fixture
def client(tmp_path, monkeypatch, controller, scheduler):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_app.db"))
    monkeypatch.setenv("RESEARCH_MAX_ITERATIONS", "3")
    app = create_app(Settings(), controller=controller, scheduler=scheduler)
    app.config["TESTING"] = True
    return app.test_client()


class TestStartResearch:
    def test_runs_research(self, client, controller):
        response = client.post("/api/research", json={"subject": "Jane Doe"})

        assert response.status_code == 200
        data = response.get_json()
        assert data["answer"] == "Jane Doe cares about literacy."
        assert data["termination_reason"] == "sufficient-evidence"
        assert "token_usage" in data
        args, _ = controller.run_research.call_args
        assert args == ("Jane Doe", "Jane Doe philanthropy", 3)

    def test_missing_subject(self, client):
        response = client.post("/api/research", json={})
        assert response.status_code == 400

    def test_saves_when_subject_id_given(self, client):
        response = client.post("/api/research", json={"subject": "Jane Doe", "subject_id": 7})

        research_id = response.get_json()["research_id"]
        assert hist.get_live(7).id == research_id

    def test_non_integer_subject_id_rejected_before_research(self, client, controller):
        response = client.post("/api/research", json={"subject": "Jane Doe", "subject_id": "abc"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "subject_id must be an integer"
        controller.run_research.assert_not_called()

    def test_known_donor_is_passed_and_flag_saved(self, client, controller):
        hist.upsert_donor(DonorProfile(id=7, full_name="Jane Doe", state="OR"))
        controller.run_research.return_value = make_run().model_copy(
            update={"structured_data": DonorAssessment(
                high_potential_donor=True, high_potential_donor_rationale="Board seats.",
            )}
        )

        response = client.post("/api/research", json={"subject": "Jane Doe", "subject_id": "7"})

        assert response.status_code == 200
        _, kwargs = controller.run_research.call_args
        assert kwargs["donor"].full_name == "Jane Doe"
        assert hist.get_donor(7).high_potential_donor is True

    def test_failed_run_returns_502(self, client, controller):
        failed = make_run().model_copy(update={"state": RunState.FAILED, "answer": None})
        controller.run_research.side_effect = ReflectionError("unparseable verdict", run=failed)

        response = client.post("/api/research", json={"subject": "Jane Doe"})

        assert response.status_code == 502
        data = response.get_json()
        assert data["error"] == "unparseable verdict"
        assert data["run"]["state"] == "failed"


class TestStoredResearch:
    def test_live_and_versions(self, client):
        first = hist.save(1, make_run("first"))
        hist.save(1, make_run("second"))

        live = client.get("/api/research/1").get_json()
        assert live["version"] == 2
        assert live["run"]["answer"] == "second"

        v1 = client.get("/api/research/1?version=1").get_json()
        assert v1["id"] == first

        versions = client.get("/api/research/1/versions").get_json()
        assert [v["version"] for v in versions] == [2, 1]

    def test_set_live(self, client):
        first = hist.save(1, make_run("first"))
        hist.save(1, make_run("second"))

        response = client.post(f"/api/research/1/live/{first}")

        assert response.status_code == 200
        assert client.get("/api/research/1").get_json()["id"] == first

    def test_set_live_unknown(self, client):
        assert client.post("/api/research/1/live/999").status_code == 404

    def test_missing_research(self, client):
        assert client.get("/api/research/404").status_code == 404


class TestBulkResearch:
    def test_dispatch_returns_202(self, client, scheduler):
        for donor_id in (1, 2):
            hist.upsert_donor(DonorProfile(id=donor_id, full_name=f"Donor {donor_id}"))

        response = client.post("/api/research/bulk", json={"subject_ids": [1, 2]})

        assert response.status_code == 202
        data = response.get_json()
        assert data["accepted"] == 2

        status = client.get(f"/api/jobs/{data['job_id']}")
        assert status.status_code == 200
        assert status.get_json()["accepted"] == 2

    def test_nothing_to_research(self, client):
        response = client.post("/api/research/bulk", json={})
        assert response.status_code == 400

    def test_scheduler_rejection_returns_503(self, client, scheduler):
        scheduler.shutdown()
        response = client.post("/api/research/bulk", json={"subject_ids": [1]})
        assert response.status_code == 503

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/unknown").status_code == 404
