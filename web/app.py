"""
Flask web server for the donor research pipeline.

Routes
──────
POST /api/research                                Run one research synchronously (JSON)
GET  /api/research/<subject_id>                   Live research for a donor (?version=N)
GET  /api/research/<subject_id>/versions          All research versions for a donor
POST /api/research/<subject_id>/live/<research_id>  Mark a version live
POST /api/research/bulk                           Dispatch background research (202)
GET  /api/jobs/<job_id>                           Bulk dispatch status
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv
from flask import Flask, jsonify, request

# Allow running as `python web/app.py` from the project root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

from config.settings import Settings
from core import history as hist
from core.bulk import DONOR_RESEARCH_JOB, BulkResearchDispatcher, DonorResearchJob
from core.errors import DispatchError, ResearchError
from core.jobs import InProcessScheduler, RetryPolicy
from core.researcher import ResearchController, build_controller

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _record_json(record) -> dict:
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "research_topic": record.research_topic,
        "version": record.version,
        "is_live": record.is_live,
        "created_at": record.created_at.isoformat(),
        "run": record.run.to_dict(),
    }


def create_app(
    settings: Settings | None = None,
    controller: ResearchController | None = None,
    scheduler: InProcessScheduler | None = None,
) -> Flask:
    """Build the Flask app; tests inject fake collaborators here."""
    settings = settings or Settings()
    controller = controller or build_controller(settings)
    scheduler = scheduler or InProcessScheduler.from_settings(settings)
    scheduler.register(DONOR_RESEARCH_JOB, DonorResearchJob(controller, settings))
    dispatcher = BulkResearchDispatcher(scheduler, RetryPolicy.from_settings(settings))

    app = Flask(__name__)

    hist.init_db()

    # ── Single research ────────────────────────────────────────────────────

    @app.route("/api/research", methods=["POST"])
    def start_research():
        """Run one research loop and return the completed run.

        JSON body:
          subject         (required) person or organisation name
          initial_query   first search query (default: "<subject> philanthropy")
          research_topic  question to answer (default: the initial query)
          max_iterations  iteration budget (default: settings)
          subject_id      when given, the donor record guides identification and
                          the run is saved as the donor's live version
        """
        body = request.get_json(silent=True) or {}
        subject = str(body.get("subject", "")).strip()
        if not subject:
            return jsonify({"error": "subject is required"}), 400

        initial_query = str(body.get("initial_query") or f"{subject} philanthropy")
        try:
            max_iterations = int(body.get("max_iterations") or settings.max_iterations)
        except (TypeError, ValueError):
            return jsonify({"error": "max_iterations must be an integer"}), 400

        subject_id = body.get("subject_id")
        if subject_id is not None:
            try:
                subject_id = int(subject_id)
            except (TypeError, ValueError):
                return jsonify({"error": "subject_id must be an integer"}), 400
        donor = hist.get_donor(subject_id) if subject_id is not None else None

        try:
            run = controller.run_research(
                subject,
                initial_query,
                max_iterations,
                research_topic=body.get("research_topic"),
                donor=donor,
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        except ResearchError as exc:
            logger.exception("Research failed for subject=%r", subject)
            payload = {"error": str(exc)}
            if exc.run is not None:
                payload["run"] = exc.run.to_dict()
            return jsonify(payload), 502

        data = run.to_dict()
        if subject_id is not None:
            data["research_id"] = hist.save(subject_id, run, set_live=True)
            if donor is not None and run.structured_data is not None:
                try:
                    hist.set_high_potential(subject_id, run.structured_data.high_potential_donor)
                except Exception as exc:
                    logger.error("Failed to update high-potential flag for donor %d: %s", subject_id, exc)
        return jsonify(data)

    # ── Stored research ────────────────────────────────────────────────────

    @app.route("/api/research/<int:subject_id>")
    def get_research(subject_id: int):
        """Return the live research for a donor, or ``?version=N``."""
        version = request.args.get("version", type=int)
        record = hist.get_version(subject_id, version) if version else hist.get_live(subject_id)
        if record is None:
            return jsonify({"error": "Not found"}), 404
        return jsonify(_record_json(record))

    @app.route("/api/research/<int:subject_id>/versions")
    def list_research_versions(subject_id: int):
        return jsonify([_record_json(r) for r in hist.list_versions(subject_id)])

    @app.route("/api/research/<int:subject_id>/live/<int:research_id>", methods=["POST"])
    def set_live_version(subject_id: int, research_id: int):
        try:
            record = hist.set_live(research_id, subject_id)
        except LookupError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify(_record_json(record))

    # ── Bulk research ──────────────────────────────────────────────────────

    @app.route("/api/research/bulk", methods=["POST"])
    def bulk_research():
        """Dispatch one background research job per donor.

        JSON body:
          subject_ids  list of donor ids; omitted → every unresearched donor
          limit        cap on unresearched donors picked up
        """
        body = request.get_json(silent=True) or {}
        try:
            if body.get("subject_ids"):
                result = dispatcher.dispatch_bulk(body["subject_ids"])
            else:
                result = dispatcher.dispatch_unresearched(limit=body.get("limit"))
        except (TypeError, ValueError) as exc:
            return jsonify({"error": str(exc)}), 400
        except DispatchError as exc:
            logger.exception("Bulk dispatch rejected")
            return jsonify({"error": str(exc)}), 503
        return jsonify(result.model_dump()), 202

    @app.route("/api/jobs/<job_id>")
    def job_status(job_id: str):
        status = dispatcher.batch_status(job_id)
        if status is None:
            return jsonify({"error": "Not found"}), 404
        data = status.model_dump(mode="json")
        data["finished"] = status.finished
        return jsonify(data)

    return app


# ── Entry point ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    settings = Settings()
    settings.validate()
    create_app(settings).run(debug=settings.debug, host="0.0.0.0", port=settings.port)
