"""
Approval Service

Thin HTTP wrapper around one ApprovalCoordinator and one HistoryStore. Every
recorded decision becomes a commit on the current branch, and every
notification is appended to the audit log when one is configured. Requests
are served on several threads; the coordinator and the store each serialise
their own mutations.

Usage:
    python -m approval_core.service                        # defaults + APPROVAL_* env vars
    python -m approval_core.service --config approval.json
    python -m approval_core.service --port 5011
"""
import argparse
import logging
import re
import time
from typing import Optional

from flask import Flask, jsonify, request

from approval_core.audit.logger import AuditLog
from approval_core.config import ApprovalConfig
from approval_core.engine.coordinator import ApprovalCoordinator
from approval_core.engine.risk import explain_risk_level
from approval_core.engine.types import ProposedAction, TaskContext, parse_ts
from approval_core.errors import ApprovalError, ConflictError, NotFoundError, StateError
from approval_core.events import EventBus
from approval_core.history.recorder import HistoryRecorder
from approval_core.history.repository import HistoryStore
from approval_core.history.snapshot import open_store, save_snapshot

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFoundError, 404, "NOT_FOUND"),
    (ConflictError, 409, "CONFLICT"),
    (StateError, 400, "INVALID_STATE"),
]


def _error(code: str, message: str, status: int):
    return jsonify({"status": "error", "code": code, "message": message}), status


def _body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _parse_submission(data):
    if not isinstance(data.get("intent"), str):
        raise ValueError("intent must be a string")
    actions = data.get("actions", [])
    if not isinstance(actions, list):
        raise ValueError("actions must be a list")
    context = TaskContext.from_dict(data)
    return context, [ProposedAction.from_dict(a) for a in actions], data.get("category")


def create_approval_app(config: ApprovalConfig,
                        coordinator: Optional[ApprovalCoordinator] = None,
                        store: Optional[HistoryStore] = None) -> Flask:
    """Create the approval Flask application."""
    app = Flask(__name__)
    app.config["APPROVAL"] = config

    bus = coordinator.bus if coordinator else (store.bus if store else EventBus())
    coordinator = coordinator or ApprovalCoordinator(config, bus=bus)
    store = store or open_store(config.snapshot_path, config, bus=bus)
    if config.audit_log_path:
        AuditLog(config.audit_log_path).attach(bus)
    HistoryRecorder(store, bus).attach()

    app.coordinator = coordinator
    app.history = store
    app.start_time = time.time()

    @app.errorhandler(ApprovalError)
    def handle_approval_error(e):
        for cls, status, code in ERROR_STATUS:
            if isinstance(e, cls):
                return _error(code, str(e), status)
        return _error("APPROVAL_ERROR", str(e), 400)

    @app.errorhandler(ValueError)
    @app.errorhandler(re.error)
    def handle_value_error(e):
        return _error("INVALID_REQUEST", str(e), 400)

    @app.before_request
    def sweep_timeouts():
        coordinator.expire_overdue()

    @app.after_request
    def persist(response):
        if config.snapshot_path and request.method != "GET" and response.status_code < 400:
            save_snapshot(store, config.snapshot_path)
        return response

    # -- approvals --------------------------------------------------------

    @app.route("/assess", methods=["POST"])
    def assess():
        context, actions, category = _parse_submission(_body())
        if context.trust_rank is None:
            context.trust_rank = coordinator.trust_rank
        result = coordinator.assessor.assess(context, actions, category)
        data = result.to_dict()
        data["explanation"] = explain_risk_level(result.overall_risk)
        return jsonify(data)

    @app.route("/requests", methods=["POST"])
    def submit_request():
        context, actions, category = _parse_submission(_body())
        with coordinator.lock:
            if not coordinator.has_capacity():
                return _error("TOO_MANY_PENDING", f"At most {config.max_pending} requests may be pending", 429)
            decision = coordinator.submit(context, actions, category)
        body = {"assessment": decision.assessment.to_dict() if decision.assessment else None}
        if decision.pending:
            body.update({"status": "pending", "request": decision.request.to_dict()})
            return jsonify(body), 202
        body.update({"status": "resolved", "response": decision.response.to_dict()})
        return jsonify(body), 200

    @app.route("/requests", methods=["GET"])
    def list_requests():
        return jsonify({"requests": [r.to_dict() for r in coordinator.list_pending()]})

    @app.route("/requests/<request_id>", methods=["GET"])
    def get_request(request_id):
        req = coordinator.get_pending(request_id)
        if req is None:
            raise NotFoundError(f"Approval request {request_id} not found")
        return jsonify(req.to_dict())

    @app.route("/requests/<request_id>/respond", methods=["POST"])
    def respond(request_id):
        data = _body()
        if "action" not in data:
            return _error("MISSING_FIELD", "Missing required field: action", 400)
        response = coordinator.respond(
            request_id,
            data["action"],
            comment=data.get("comment"),
            trust_rank=data.get("trust_rank"),
            quick_decision=bool(data.get("quick_decision", False)),
        )
        return jsonify({"status": "recorded", "response": response.to_dict()})

    @app.route("/requests/<request_id>", methods=["DELETE"])
    def cancel_request(request_id):
        reason = request.args.get("reason", "Cancelled by caller")
        coordinator.cancel(request_id, reason)
        return jsonify({"status": "cancelled", "request_id": request_id})

    @app.route("/trust", methods=["GET"])
    def get_trust():
        return jsonify(coordinator.trust_settings.to_dict())

    @app.route("/trust", methods=["PUT"])
    def set_trust():
        data = _body()
        if "rank" not in data:
            return _error("MISSING_FIELD", "Missing required field: rank", 400)
        coordinator.set_trust_rank(data["rank"], data.get("reason", "Set via API"))
        return jsonify(coordinator.trust_settings.to_dict())

    @app.route("/stats", methods=["GET"])
    def approval_stats():
        return jsonify(coordinator.statistics())

    # -- history ----------------------------------------------------------

    @app.route("/history/log", methods=["GET"])
    def history_log():
        args = request.args
        commits = store.get_log(
            branch=args.get("branch"),
            author=args.get("author"),
            since=parse_ts(args["since"]) if args.get("since") else None,
            until=parse_ts(args["until"]) if args.get("until") else None,
            grep=args.get("grep"),
            limit=args.get("limit", type=int),
        )
        return jsonify({"commits": [c.to_dict() for c in commits]})

    @app.route("/history/commits/<ref>", methods=["GET"])
    def history_commit(ref):
        return jsonify(store.get_commit(store.resolve(ref)).to_dict())

    @app.route("/history/branches", methods=["GET"])
    def history_branches():
        merged = request.args.get("merged", "").lower() in ("1", "true", "yes")
        return jsonify({
            "current": store.repo.current_branch,
            "branches": [b.to_dict() for b in store.list_branches(merged=merged)],
        })

    @app.route("/history/branches", methods=["POST"])
    def history_create_branch():
        data = _body()
        branch = store.create_branch(data.get("name", ""), base=data.get("base"))
        return jsonify(branch.to_dict()), 201

    @app.route("/history/branches/<path:name>", methods=["DELETE"])
    def history_delete_branch(name):
        force = request.args.get("force", "").lower() in ("1", "true", "yes")
        store.delete_branch(name, force=force)
        return jsonify({"status": "deleted", "name": name})

    @app.route("/history/checkout", methods=["POST"])
    def history_checkout():
        branch = store.checkout_branch(_body().get("name", ""))
        return jsonify(branch.to_dict())

    @app.route("/history/merge", methods=["POST"])
    def history_merge():
        data = _body()
        target = data.get("target") or store.repo.current_branch
        commit = store.merge_branch(data.get("source", ""), target, message=data.get("message"))
        return jsonify(commit.to_dict()), 201

    @app.route("/history/revert", methods=["POST"])
    def history_revert():
        data = _body()
        no_commit = bool(data.get("no_commit", False))
        commit = store.revert_commit(data.get("ref", ""), message=data.get("message"), no_commit=no_commit)
        return jsonify(commit.to_dict()), 200 if no_commit else 201

    @app.route("/history/tags", methods=["GET"])
    def history_tags():
        return jsonify({"tags": store.list_tags()})

    @app.route("/history/tags", methods=["POST"])
    def history_create_tag():
        data = _body()
        target = store.create_tag(data.get("name", ""), data.get("ref"), force=bool(data.get("force", False)))
        return jsonify({"name": data["name"], "commit_id": target}), 201

    @app.route("/history/tags/<name>", methods=["DELETE"])
    def history_delete_tag(name):
        store.delete_tag(name)
        return jsonify({"status": "deleted", "name": name})

    @app.route("/history/merge-requests", methods=["POST"])
    def history_create_mr():
        data = _body()
        mr = store.create_merge_request(
            data.get("title", ""),
            data.get("source", ""),
            data.get("target", store.repo.default_branch),
            author=data.get("author"),
            description=data.get("description", ""),
        )
        return jsonify(mr.to_dict()), 201

    @app.route("/history/merge-requests/<mr_id>", methods=["GET"])
    def history_get_mr(mr_id):
        return jsonify(store.get_merge_request(mr_id).to_dict())

    @app.route("/history/merge-requests/<mr_id>/reviews", methods=["POST"])
    def history_review_mr(mr_id):
        data = _body()
        review = store.add_review(mr_id, data.get("reviewer", ""), data.get("status", ""), data.get("comment"))
        return jsonify(review.to_dict()), 201

    @app.route("/history/merge-requests/<mr_id>/close", methods=["POST"])
    def history_close_mr(mr_id):
        return jsonify(store.close_merge_request(mr_id).to_dict())

    @app.route("/history/stats", methods=["GET"])
    def history_stats():
        return jsonify(store.get_statistics())

    @app.route("/history/export", methods=["GET"])
    def history_export():
        return jsonify(store.export_repository())

    @app.route("/status", methods=["GET"])
    def service_status():
        return jsonify({
            "service": "approvals",
            "version": "0.1.0",
            "mode": config.mode,
            "enabled": config.enabled,
            "uptime_seconds": int(time.time() - app.start_time),
            "trust_rank": coordinator.trust_rank.value,
            "pending": len(coordinator.list_pending()),
            "history": store.status(),
        })

    return app


def main():
    parser = argparse.ArgumentParser(description="Approval Service")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: 5010)")
    parser.add_argument("--config", type=str, default=None, help="JSON config file")
    parser.add_argument("--mode", type=str, default=None, choices=["development", "production"], help="Operating mode")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [APPROVAL] %(levelname)s %(name)s: %(message)s",
    )

    # config file, then env vars, then CLI args
    config = ApprovalConfig.from_env()
    if args.config:
        config = ApprovalConfig.from_file(args.config, **{
            k: v for k, v in config.to_dict().items() if v != getattr(ApprovalConfig(), k)
        })
    if args.port is not None:
        config.port = args.port
    if args.mode is not None:
        config.mode = args.mode

    logger.info("Starting approval service on :%d (mode=%s, rank=%s)", config.port, config.mode, config.default_trust_rank)
    app = create_approval_app(config)
    app.run(host="127.0.0.1", port=config.port, debug=(config.mode == "development"))


if __name__ == "__main__":
    main()
