"""
Task Bins board server
----------------------
JSON API over the SQLite record store, one collection per user.

API (all under /api/users/<user_id>/tasks):
    GET    /                  → { tasks, count }         ?order_by=order|createdAt|title
    POST   /                  → 201 { id }               body: { title, note?, status?, order? }
    PATCH  /<id>              → { ok }  | 404            body: partial fields
    DELETE /<id>              → { ok }                   idempotent
    POST   /batch             → { ok }  | 404            body: { updates: [{ id, fields }] }
    GET    /health            → { status, db }

Mutating routes require X-API-Key when TASKBINS_API_SECRET is set.
"""
import hmac
import logging
import os
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request

from .store import NotFound, SQLiteRecordStore, StoreUnavailable

logger = logging.getLogger(__name__)


def create_app(db_path: str, api_secret: Optional[str] = None) -> Flask:
    """Build the Flask app. `api_secret` defaults to $TASKBINS_API_SECRET."""
    app = Flask(__name__)
    app.config["DB_PATH"] = str(db_path)
    app.config["API_SECRET"] = (
        api_secret if api_secret is not None else os.environ.get("TASKBINS_API_SECRET", "")
    )
    stores = {}

    # ── Helpers ──────────────────────────────────────────────────────────────

    def store_for(user_id: str) -> SQLiteRecordStore:
        if user_id not in stores:
            stores[user_id] = SQLiteRecordStore(app.config["DB_PATH"], user_id=user_id)
        return stores[user_id]

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            secret = app.config["API_SECRET"]
            if not secret:
                return f(*args, **kwargs)
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    @app.errorhandler(StoreUnavailable)
    def handle_unavailable(e):
        logger.error(f"Store unavailable: {e}")
        return jsonify({"error": str(e)}), 503

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({"error": str(e), "id": e.record_id}), 404

    @app.errorhandler(ValueError)
    def handle_invalid(e):
        return jsonify({"error": str(e)}), 400

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.route("/api/users/<user_id>/tasks", methods=["GET"])
    def list_tasks(user_id):
        order_by = request.args.get("order_by", "order")
        tasks = store_for(user_id).list_records(order_by)
        return jsonify({"tasks": tasks, "count": len(tasks)})

    @app.route("/api/users/<user_id>/tasks", methods=["POST"])
    @require_api_key
    def create_task(user_id):
        data = _json_object()
        record_id = store_for(user_id).create_record(data)
        logger.info(f"Created task {record_id} for {user_id}")
        return jsonify({"id": record_id}), 201

    @app.route("/api/users/<user_id>/tasks/batch", methods=["POST"])
    @require_api_key
    def batch_update(user_id):
        data = _json_object()
        updates = data.get("updates")
        if not isinstance(updates, list):
            raise ValueError("updates must be a list")
        pairs = []
        for entry in updates:
            if not isinstance(entry, dict) or not entry.get("id") or not isinstance(entry.get("fields"), dict):
                raise ValueError("each update needs an id and a fields object")
            pairs.append((str(entry["id"]), entry["fields"]))
        store_for(user_id).batch_update_records(pairs)
        logger.info(f"Batch updated {len(pairs)} tasks for {user_id}")
        return jsonify({"ok": True})

    @app.route("/api/users/<user_id>/tasks/<task_id>", methods=["PATCH"])
    @require_api_key
    def update_task(user_id, task_id):
        store_for(user_id).update_record(task_id, _json_object())
        return jsonify({"ok": True})

    @app.route("/api/users/<user_id>/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def delete_task(user_id, task_id):
        store_for(user_id).delete_record(task_id)
        return jsonify({"ok": True})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": app.config["DB_PATH"]})

    return app


def _json_object() -> dict:
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data
