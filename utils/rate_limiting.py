"""
Rate Limiting
Shared Flask-Limiter instance; routes pick their limits from config.RATE_LIMITS
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config import DEFAULT_RATE_LIMIT, RATE_LIMITS

limiter = Limiter(
    get_remote_address,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri="memory://",
)


def limit_for(path: str, fallback: str = "60 per minute") -> str:
    return RATE_LIMITS.get(path, fallback)
