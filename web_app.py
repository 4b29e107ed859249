"""
FAIRPLAY — Provably Fair Casino Engine
HTTP entry point.
"""
import logging
import os
import secrets

# ── Structured logging ──
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("fairplay")

from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from config.settings import FairPlayConfig
from tools.fair_repository import FairRepository
from tools.ledger import LedgerEngine
from tools.seed_manager import SeedManager


def create_app(repository=None, config=None) -> Flask:
    """Build the app around one repository; tests pass a temp SQLite one."""
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    app.config["FAIRPLAY_ADMIN_TOKEN"] = FairPlayConfig.ADMIN_TOKEN
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.secret_key = FairPlayConfig.SECRET_KEY or secrets.token_hex(32)
    if not FairPlayConfig.SECRET_KEY:
        logger.warning("FLASK_SECRET_KEY not set, player sessions end when the process restarts")
    if config:
        app.config.update(config)

    repo = repository or FairRepository()
    seeds = SeedManager(repo)
    seeds.initialize()
    app.extensions["fairplay"] = {
        "repository": repo,
        "seeds": seeds,
        "ledger": LedgerEngine(repo, seeds=seeds),
    }

    from api.fair_routes import fair_bp
    app.register_blueprint(fair_bp)
    logger.info("Registered provably fair API at /api/fair/")

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "storage": "postgresql" if repo.is_postgres else "sqlite"})

    @app.errorhandler(404)
    def error_404(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def error_500(e):
        logger.error(f"500 error on {request.path}: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    logger.info(f"FAIRPLAY — http://localhost:{port}")
    create_app().run(debug=os.getenv("FLASK_DEBUG", "false").lower() == "true",
                     host="0.0.0.0", port=port)
