"""
Error Handling
Structured JSON error responses for the portal API
"""

from flask import jsonify
from typing import Dict, Any, Optional
from werkzeug.exceptions import HTTPException
import logging

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception class for API errors"""
    status_code = 500
    message = "An error occurred"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None,
                 error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.status_code = status_code or self.status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details
        }


class ValidationError(APIError):
    """Validation error (400)"""
    status_code = 400
    message = "Validation error"


class NotFoundError(APIError):
    """Resource not found (404)"""
    status_code = 404
    message = "Resource not found"


class ServiceUnavailableError(APIError):
    """Redis or the database is unreachable (503)"""
    status_code = 503
    message = "Service unavailable"


class RateLimitError(APIError):
    """Rate limit exceeded (429)"""
    status_code = 429
    message = "Too many requests, please try again later"


def _error_body(error_code: str, message: str, status_code: int, details: Optional[Dict[str, Any]] = None):
    return jsonify({
        "error": True,
        "error_code": error_code,
        "message": message,
        "status_code": status_code,
        "details": details or {}
    }), status_code


def register_error_handlers(app):
    """Register error handlers with Flask app"""

    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):
        logger.warning(
            f"API Error: {error.error_code}: {error.message}",
            extra={"error_code": error.error_code, "status_code": error.status_code}
        )
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(429)
    def handle_rate_limit(error):
        return _error_body("RATE_LIMITED", RateLimitError.message, 429,
                           {"limit": str(getattr(error, "description", ""))})

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        code = (error.name or "error").upper().replace(" ", "_")
        return _error_body(code, error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_generic_exception(error: Exception):
        logger.error(f"Unhandled exception: {error}", exc_info=True)
        return _error_body("INTERNAL_SERVER_ERROR", "An unexpected error occurred", 500,
                           {"exception_type": type(error).__name__})
