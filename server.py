"""HTTP API for the scorecard: completion, HubSpot sync, queue inspection, health."""

import os
import sys
import hashlib
import hmac

from flask import Flask, request, jsonify
from flask_cors import CORS

from scorecard import assessments
from scorecard.errors import NotFoundError, ValidationError
from scorecard.health import HealthMonitor
from scorecard.rate_limiter import get_rate_limiter
from scorecard.retry_queue import RetryQueueService
from scorecard.worker import start_background_worker

app = Flask(__name__)
ALLOWED_ORIGINS = os.getenv('ALLOWED_ORIGINS', 'http://localhost:3000').split(',')
CORS(app, resources={r"/api/*": {"origins": ALLOWED_ORIGINS}})

WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")


# ─── Request plumbing ────────────────────────────────────────────────────────

@app.before_request
def verify_signature():
    """When WEBHOOK_SECRET is set, POSTs must carry sha256(secret + body) in X-Scorecard-Signature."""
    if not WEBHOOK_SECRET or request.method != "POST":
        return None
    signature = request.headers.get("X-Scorecard-Signature", "")
    body = request.get_data(as_text=True)
    expected = hashlib.sha256((WEBHOOK_SECRET + body).encode()).hexdigest()
    if not hmac.compare_digest(signature, expected):
        return jsonify({"error": "Invalid signature"}), 401
    return None


@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({"success": False, "error": "VALIDATION_ERROR", "message": str(e)}), 400


@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({"success": False, "error": "NOT_FOUND", "message": str(e)}), 404


def _json_body():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _with_rate_limit_headers(response):
    for name, value in get_rate_limiter().get_rate_limit_headers().items():
        response.headers[name] = value
    return response


# ─── Assessments ─────────────────────────────────────────────────────────────

@app.route("/api/assessments/complete", methods=["POST"])
def complete_assessment():
    """
    Score, store and sync a finished assessment.

    Body: {"sessionId": "...", "responses": {"q1_value": "A", ...},
           "contact": {"email": ..., "firstName": ..., ...},
           "completionTimeSeconds": 240}
    """
    data = _json_body()
    result = assessments.complete_assessment(
        data.get("sessionId") or data.get("session_id"),
        data.get("responses"),
        contact_info=data.get("contact") or data.get("contact_info"),
        completion_time_seconds=data.get("completionTimeSeconds") or data.get("completion_time_seconds"),
    )
    return _with_rate_limit_headers(jsonify({"success": True, **result}))


@app.route("/api/assessments/<assessment_id>", methods=["GET"])
def get_assessment(assessment_id):
    return jsonify(assessments.get_assessment(assessment_id).to_dict())


# ─── HubSpot ─────────────────────────────────────────────────────────────────

@app.route("/api/hubspot/contact", methods=["POST"])
def hubspot_contact():
    """Sync an assessment to HubSpot now; on failure it is queued and 502 returned."""
    result = assessments.sync_contact(_json_body())
    response = jsonify(result)
    response.headers["X-HubSpot-Sync-Status"] = result["sync_status"]
    if not result["success"]:
        response.status_code = 502
        if result.get("retry_after"):
            response.headers["Retry-After"] = str(result["retry_after"])
    return _with_rate_limit_headers(response)


# ─── Privacy ─────────────────────────────────────────────────────────────────

@app.route("/api/privacy/delete", methods=["POST"])
def delete_user_data():
    """Body: {"email": "..."}"""
    return jsonify(assessments.delete_user_data(_json_body().get("email")))


@app.route("/api/privacy/withdraw-consent", methods=["POST"])
def withdraw_consent():
    """Body: {"email": "...", "withdrawalType": "full" | "marketing_only"}"""
    data = _json_body()
    withdrawal_type = data.get("withdrawalType") or data.get("withdrawal_type") or "full"
    return jsonify(assessments.process_consent_withdrawal(data.get("email"), withdrawal_type))


# ─── Queue ───────────────────────────────────────────────────────────────────

@app.route("/api/queue/stats", methods=["GET"])
def queue_stats():
    queue = RetryQueueService()
    return jsonify({**queue.get_queue_statistics(), "failed_by_error_type": queue.get_error_stats()})


@app.route("/api/queue/dead-letter", methods=["GET"])
def dead_letter():
    entries = RetryQueueService().get_dead_letter_queue()
    return jsonify({"count": len(entries), "entries": [e.to_dict() for e in entries]})


@app.route("/api/queue/process", methods=["POST"])
def process_queue():
    """Process one batch now. Optional JSON body: {"batch_size": 10}"""
    data = request.get_json(silent=True) or {}
    batch_size = data.get("batch_size")
    if batch_size is not None and (not isinstance(batch_size, int) or batch_size <= 0):
        raise ValidationError("batch_size must be a positive integer")

    queue = RetryQueueService()
    queue.release_stale_claims()
    result = queue.process_pending_queue(batch_size)
    return _with_rate_limit_headers(jsonify(result.to_dict()))


# ─── Monitoring ──────────────────────────────────────────────────────────────

@app.route("/health", methods=["GET"])
def health():
    result = HealthMonitor().perform_health_check()
    return jsonify(result), 503 if result["status"] == "unhealthy" else 200


@app.route("/metrics", methods=["GET"])
def metrics():
    return jsonify(HealthMonitor().get_metrics())


# ─── Entry point ──────────────────────────────────────────────────────────────

if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    if os.getenv("RUN_WORKER", "true").lower() in ("1", "true", "yes"):
        start_background_worker()
    print(f"Scorecard API starting on port {port}...", file=sys.stderr)
    app.run(host="0.0.0.0", port=port)
