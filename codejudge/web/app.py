"""Flask application exposing the judge over HTTP/JSON."""

from __future__ import annotations

import json
import queue

from flask import Flask, Response, jsonify, request, stream_with_context

from codejudge.errors import (
    AdmissionError,
    ChallengeNotFoundError,
    ChallengeStoreError,
    UnknownSubmissionError,
    ValidationError,
)
from codejudge.models import Submission
from codejudge.service import JudgeService

EVENT_STREAM_TIMEOUT = 300  # seconds without a status change before the stream gives up


def create_app(service: JudgeService) -> Flask:
    app = Flask(__name__)
    app.extensions["codejudge"] = service

    # ---------------------------------------------------------------------------
    # Error mapping
    # ---------------------------------------------------------------------------

    @app.errorhandler(ChallengeNotFoundError)
    @app.errorhandler(UnknownSubmissionError)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(ValidationError)
    def invalid(e):
        body = {"error": str(e)}
        supported = getattr(e, "supported", None)
        if supported:
            body["supportedLanguages"] = supported
        return jsonify(body), 400

    @app.errorhandler(AdmissionError)
    def overloaded(e):
        resp = jsonify({"error": str(e), "retryAfter": e.retry_after})
        resp.status_code = 429
        resp.headers["Retry-After"] = str(max(1, round(e.retry_after)))
        return resp

    @app.errorhandler(ChallengeStoreError)
    def upstream_failed(e):
        return jsonify({"error": str(e)}), 502

    # ---------------------------------------------------------------------------
    # Submit API
    # ---------------------------------------------------------------------------

    def _submit(challenge_id, data: dict):
        source = data.get("sourceCode", data.get("source_code", data.get("code", "")))
        submission_id = service.submit(
            challenge_id=str(challenge_id),
            user_id=str(data.get("userId", data.get("user_id", "anonymous"))),
            language=str(data.get("language", "")),
            source_code=source or "",
        )
        return jsonify({"submissionId": submission_id, "status": "QUEUED"}), 202

    @app.route("/api/submissions", methods=["POST"])
    def create_submission():
        data = request.get_json(silent=True) or {}
        challenge_id = data.get("challengeId", data.get("challenge_id"))
        if challenge_id in (None, ""):
            return jsonify({"error": "challengeId is required"}), 400
        return _submit(challenge_id, data)

    @app.route("/api/challenges/<challenge_id>/execute", methods=["POST"])
    @app.route("/api/challenges/<challenge_id>/submissions", methods=["POST"])
    def create_challenge_submission(challenge_id: str):
        return _submit(challenge_id, request.get_json(silent=True) or {})

    @app.route("/api/challenges/<challenge_id>/submissions", methods=["GET"])
    def challenge_submissions(challenge_id: str):
        user_id = request.args.get("userId") or request.args.get("user_id")
        if not user_id:
            return jsonify({"error": "userId is required"}), 400
        return jsonify({"submissions": service.history(user_id, challenge_id)})

    # ---------------------------------------------------------------------------
    # Verdict Query
    # ---------------------------------------------------------------------------

    @app.route("/api/submissions/<submission_id>")
    def get_submission(submission_id: str):
        return jsonify(service.query(submission_id))

    @app.route("/api/submissions/<submission_id>", methods=["DELETE"])
    def cancel_submission(submission_id: str):
        if service.cancel(submission_id):
            return jsonify({"submissionId": submission_id, "cancelled": True}), 202
        # Raises 404 for unknown ids; a finished submission is a 409.
        current = service.query(submission_id)
        return jsonify({"error": "Submission is not cancellable", "status": current["status"]}), 409

    @app.route("/api/submissions/<submission_id>/events")
    def submission_events(submission_id: str):
        """Server-sent events with every status change until the submission is terminal."""
        updates: queue.Queue = queue.Queue()

        def on_change(submission: Submission) -> None:
            if submission.id == submission_id:
                updates.put(submission.to_public_dict())

        unsubscribe = service.scheduler.subscribe(on_change)
        try:
            current = service.query(submission_id)
        except UnknownSubmissionError:
            unsubscribe()
            raise

        def generate():
            try:
                msg = current
                while True:
                    yield f"data: {json.dumps(msg)}\n\n"
                    if msg["status"] not in ("QUEUED", "RUNNING"):
                        break
                    try:
                        msg = updates.get(timeout=EVENT_STREAM_TIMEOUT)
                    except queue.Empty:
                        yield f"data: {json.dumps({'error': 'Timed out waiting for a verdict'})}\n\n"
                        break
            finally:
                unsubscribe()

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.route("/api/users/<user_id>/submissions")
    def user_submissions(user_id: str):
        challenge_id = request.args.get("challengeId") or None
        return jsonify({"submissions": service.history(user_id, challenge_id)})

    # ---------------------------------------------------------------------------
    # Registry / health
    # ---------------------------------------------------------------------------

    @app.route("/api/languages")
    def languages():
        return jsonify({"languages": service.languages()})

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok", **service.scheduler.stats()})

    return app
