"""
Logging setup shared by the web app, the scheduler and the queue worker
"""

import logging
import sys

from config import LOG_LEVEL

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Attach one stdout handler to the root logger; safe to call repeatedly"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    # Prevent duplicate handlers
    if not any(getattr(h, "_portal_handler", False) for h in root.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        console_handler._portal_handler = True
        root.addHandler(console_handler)

    return root
