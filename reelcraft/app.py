import logging
import os
import re
from typing import Optional

from flask import Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS

from .config import MB, Settings
from .engine.errors import ValidationFailed
from .engine.guard import validate_request
from .engine.store import JobStore
from .engine.worker import RenderScheduler

logger = logging.getLogger(__name__)

OWNER_HEADER = "X-User-Email"
_RENDER_FILE = re.compile(r"^[A-Za-z0-9._-]+\.mp4$")


def _owner() -> Optional[str]:
    owner = (request.headers.get(OWNER_HEADER) or "").strip().lower()
    return owner or None


def _no_cache(resp):
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    start_worker: bool = False,
) -> Flask:
    """
    Build the HTTP adapter around the render core.

    No worker runs unless `start_worker` is set; then exactly one scheduler
    is constructed for this app and kept on `app.extensions["render_scheduler"]`.
    """
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    store = store or JobStore(settings.database_url)

    app = Flask(__name__)
    # base64 inflates payloads by a third
    app.config["MAX_CONTENT_LENGTH"] = int(settings.max_total_bytes * 1.4) + MB
    app.extensions["render_settings"] = settings
    app.extensions["job_store"] = store

    allowed_origins = ["http://localhost:3000", "https://localhost:3000"]
    if os.environ.get("CORS_ORIGINS"):
        allowed_origins.extend(o.strip() for o in os.environ["CORS_ORIGINS"].split(",") if o.strip())
    CORS(
        app,
        origins=allowed_origins,
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", OWNER_HEADER],
        methods=["GET", "POST", "OPTIONS"],
    )

    @app.route("/", methods=["GET"])
    def health_check():
        """Health check endpoint"""
        return jsonify({"status": "healthy", "message": "Reel render API is running", "version": "1.0.0"}), 200

    @app.route("/api/render", methods=["POST"])
    def create_render():
        owner = _owner()
        if not owner:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        payload = request.get_json(silent=True)
        try:
            items, options = validate_request(payload, settings)
        except ValidationFailed as e:
            logger.info(f"Rejected render request from {owner}: {e.public_message()}")
            return jsonify({"ok": False, "error": e.public_message()}), 400
        job = store.create_job(owner, items, options)
        return jsonify({"ok": True, "jobId": job.id, "status": job.status}), 202

    @app.route("/api/render-status", methods=["GET"])
    def render_status():
        owner = _owner()
        if not owner:
            return _no_cache(jsonify({"ok": False, "error": "unauthorized"})), 401
        job_id = request.args.get("jobId", "").strip()
        if not job_id:
            return _no_cache(jsonify({"ok": False, "error": "missing jobId"})), 400
        job = store.get_job_for_owner(job_id, owner)
        if job is None:
            return _no_cache(jsonify({"ok": False, "error": "not_found"})), 404
        return _no_cache(jsonify({"ok": True, **job.status_view()})), 200

    @app.route("/api/my-renders", methods=["GET"])
    def my_renders():
        owner = _owner()
        if not owner:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        rows = store.list_renders(owner, limit=settings.retention_per_owner)
        return _no_cache(jsonify({"ok": True, "renders": [r.to_dict() for r in rows]})), 200

    @app.route(f"{settings.renders_url_prefix.rstrip('/')}/<path:filename>", methods=["GET"])
    def serve_render(filename: str):
        if not _RENDER_FILE.match(filename) or filename.startswith("."):
            return jsonify({"error": "Render not found"}), 404
        return send_from_directory(os.path.abspath(settings.renders_dir), filename, mimetype="video/mp4")

    @app.errorhandler(413)
    def too_large(e):
        limit_mb = current_app.config["MAX_CONTENT_LENGTH"] / MB
        return jsonify({"ok": False, "error": "payload too large", "max_size_mb": round(limit_mb, 1)}), 413

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "Internal server error"}), 500

    if start_worker:
        scheduler = RenderScheduler(store, settings)
        scheduler.start()
        app.extensions["render_scheduler"] = scheduler

    return app


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    run_worker = os.environ.get("RUN_WORKER", "true").lower() in ("true", "1", "yes")
    app = create_app(settings, start_worker=run_worker)

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 6741))
    debug = os.environ.get("DEBUG", "false").lower() in ("true", "1", "yes")
    logger.info(f"Server will be available at: http://{host}:{port}")
    # the reloader would fork a second scheduler
    app.run(host=host, port=port, debug=debug, use_reloader=False)


if __name__ == "__main__":
    main()
