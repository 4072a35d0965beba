"""
Request Logging Middleware
Logs every API request with its duration and feeds the HTTP metrics
"""

import time
import logging
from functools import wraps
from flask import request, g
from typing import Callable

from utils.monitoring import track_request

logger = logging.getLogger(__name__)


def _endpoint_label() -> str:
    # Route rule keeps metric cardinality bounded
    if request.url_rule is not None:
        return request.url_rule.rule
    return "unmatched"


def log_request_info():
    """Remember when the request started"""
    g.start_time = time.time()
    logger.debug(
        f"{request.method} {request.path} received",
        extra={"method": request.method, "path": request.path, "remote_addr": request.remote_addr}
    )


def log_response_info(response):
    """Log method, path, status and duration; add X-Response-Time"""
    if hasattr(g, 'start_time'):
        duration = time.time() - g.start_time
        logger.info(
            f"{request.method} {request.path} {response.status_code} {duration * 1000:.1f}ms",
            extra={
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            }
        )
        track_request(request.method, _endpoint_label(), response.status_code, duration)
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

    return response


def log_job_trigger(func: Callable) -> Callable:
    """Decorator for endpoints that start background work; logs start and failure"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        logger.info(f"Manual trigger: {func.__name__}", extra={"endpoint": request.path})
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Manual trigger failed: {func.__name__}: {e}", exc_info=True)
            raise

    return wrapper


def register_request_logging(app):
    """Register request logging middleware with Flask app"""
    app.before_request(log_request_info)
    app.after_request(log_response_info)
