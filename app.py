"""
Invoice Portal API
Health, queue status and import settings endpoints for the background job
system. The scheduler and the queue workers run as separate processes.
"""

import logging
import os
from typing import Any, Dict, Optional

from flask import Flask, request

from config import ALLOWED_ORIGINS, CORS_ENABLED, FLASK_DEBUG, FLASK_HOST, FLASK_PORT
from utils.logging_setup import configure_logging
from utils.rate_limiting import limiter

logger = logging.getLogger(__name__)


def add_security_headers(response):
    """Add security headers and CORS support."""
    if CORS_ENABLED:
        origin = request.headers.get("Origin")
        if origin and (origin in ALLOWED_ORIGINS or "*" in ALLOWED_ORIGINS):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
            response.headers["Access-Control-Allow-Credentials"] = "true"

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


def create_app(config_overrides: Optional[Dict[str, Any]] = None) -> Flask:
    configure_logging()
    app = Flask(__name__)
    if config_overrides:
        app.config.update(config_overrides)

    # === Rate limiting ===
    limiter.init_app(app)

    # === Error handling ===
    from utils.error_handlers import register_error_handlers
    register_error_handlers(app)

    # === Request logging ===
    from utils.request_logging import register_request_logging
    register_request_logging(app)
    app.after_request(add_security_headers)

    # === Monitoring ===
    from utils.monitoring import register_monitoring_routes
    register_monitoring_routes(app)

    # === Routes ===
    from api.scheduler_endpoints import scheduler_bp
    from api.import_settings_endpoints import import_settings_bp
    app.register_blueprint(scheduler_bp)
    app.register_blueprint(import_settings_bp)

    @app.route("/api/<path:path>", methods=["OPTIONS"])
    def handle_options(path):
        """Handle CORS preflight requests."""
        return "", 200

    logger.info("API routes registered")
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", FLASK_PORT))
    create_app().run(host=FLASK_HOST, port=port, debug=FLASK_DEBUG, use_reloader=False)
