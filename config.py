"""
Configuration Management
Centralized configuration for the portal, its queues and the scheduler
"""

import os
from dotenv import load_dotenv

load_dotenv()

# === Database Configuration ===
DB_TYPE = os.environ.get("DB_TYPE", "mysql")  # mysql or sqlite

# MySQL Configuration
MYSQL_HOST = os.environ.get("MYSQL_HOST", "localhost")
MYSQL_USER = os.environ.get("MYSQL_USER", "root")
MYSQL_PASSWORD = os.environ.get("MYSQL_PASSWORD", "")
MYSQL_DATABASE = os.environ.get("MYSQL_DATABASE", "invoice_portal")
MYSQL_PORT = int(os.environ.get("MYSQL_PORT", "3306"))

# SQLite Configuration (local development)
DB_PATH = os.environ.get(
    "DATABASE_PATH",
    os.path.join(os.path.dirname(__file__), "invoice_portal.db")
)

# Database connection string
def get_database_url():
    """Get database connection URL based on DB_TYPE"""
    if DB_TYPE == "mysql":
        return f"mysql+pymysql://{MYSQL_USER}:{MYSQL_PASSWORD}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DATABASE}"
    else:
        return f"sqlite:///{DB_PATH}"

# === Redis Configuration (for Celery and health keys) ===
REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")
REDIS_PORT = int(os.environ.get("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.environ.get("REDIS_PASSWORD") or None
REDIS_DB = int(os.environ.get("REDIS_DB", "0"))
REDIS_CONFIGURED = bool(os.environ.get("REDIS_URL") or os.environ.get("REDIS_HOST"))

def get_redis_url():
    """REDIS_URL wins over the individual host/port/password/db settings"""
    url = os.environ.get("REDIS_URL")
    if url:
        return url
    auth = f":{REDIS_PASSWORD}@" if REDIS_PASSWORD else ""
    return f"redis://{auth}{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"

REDIS_URL = get_redis_url()

# Reconnect policy: delay grows by 50 ms per attempt up to 2 s, give up after 20 tries
REDIS_MAX_RECONNECT_ATTEMPTS = int(os.environ.get("REDIS_MAX_RECONNECT_ATTEMPTS", "20"))
REDIS_RECONNECT_STEP_MS = 50
REDIS_RECONNECT_CAP_MS = 2000

# === Scheduler Configuration ===
TIMEZONE = os.environ.get("TZ", "UTC")

SCHEDULER_HEARTBEAT_KEY = "scheduler:heartbeat"
SCHEDULER_LAST_RUN_KEY = "scheduler:last_run"
WORKER_HEARTBEAT_KEY = "worker:heartbeat"
HEARTBEAT_TTL_SECONDS = 60
HEARTBEAT_INTERVAL_SECONDS = int(os.environ.get("HEARTBEAT_INTERVAL_SECONDS", "30"))
STATUS_INTERVAL_SECONDS = int(os.environ.get("SCHEDULER_STATUS_INTERVAL_SECONDS", "3600"))
SCHEDULER_TICK_SECONDS = float(os.environ.get("SCHEDULER_TICK_SECONDS", "1"))

REDIS_READY_MAX_RETRIES = int(os.environ.get("REDIS_READY_MAX_RETRIES", "10"))
REDIS_READY_RETRY_DELAY_SECONDS = float(os.environ.get("REDIS_READY_RETRY_DELAY_SECONDS", "2"))

# Scheduler downtime (hours) above which a missed-job warning is logged
MISSED_JOB_THRESHOLD_HOURS = 25

DEFAULT_IMPORT_FREQUENCY_MINUTES = 60

# === Queue Worker Monitoring ===
QUEUE_ALERT_THRESHOLD = int(os.environ.get("QUEUE_ALERT_THRESHOLD", "100"))
FAILED_ALERT_THRESHOLD = int(os.environ.get("FAILED_ALERT_THRESHOLD", "10"))
HEALTH_MONITOR_INTERVAL_SECONDS = 60
STATS_INTERVAL_SECONDS = 60

# === Email Rate Limiting ===
EMAIL_PROVIDER = os.environ.get("EMAIL_PROVIDER", "smtp").lower()
EMAIL_RATE_MAX = int(os.environ.get("EMAIL_RATE_MAX", "10"))
EMAIL_RATE_DURATION_MS = int(os.environ.get("EMAIL_RATE_DURATION_MS", "10000"))

EMAIL_RATE_LIMITS = {
    # provider: (max jobs, per duration in ms)
    "office365": (
        int(os.environ.get("EMAIL_RATE_MAX_OFFICE365", "2")),
        int(os.environ.get("EMAIL_RATE_DURATION_MS_OFFICE365", "4000")),
    ),
    "smtp2go": (
        int(os.environ.get("EMAIL_RATE_MAX_SMTP2GO", "40")),
        int(os.environ.get("EMAIL_RATE_DURATION_MS_SMTP2GO", "1000")),
    ),
    "smtp": (
        int(os.environ.get("EMAIL_RATE_MAX_SMTP", "3")),
        int(os.environ.get("EMAIL_RATE_DURATION_MS_SMTP", "4000")),
    ),
    "resend": (
        int(os.environ.get("EMAIL_RATE_MAX_RESEND", "10")),
        int(os.environ.get("EMAIL_RATE_DURATION_MS_RESEND", "1000")),
    ),
}

# === SMTP Configuration ===
SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
SMTP_SECURE = os.environ.get("SMTP_SECURE", "0") == "1"  # implicit TLS (port 465)
EMAIL_FROM = os.environ.get("EMAIL_FROM", "noreply@invoice-portal.local")

# === File Storage Configuration ===
UPLOAD_FOLDER = os.environ.get(
    "UPLOAD_FOLDER",
    os.path.join(os.path.dirname(__file__), "uploads")
)

# Local FTP drop folders (vsftpd writes into the inbound folder)
FTP_INBOUND_PATH = os.environ.get("FTP_INBOUND_PATH", "/mnt/data/ftp-inbound")
FTP_PROCESSED_PATH = os.environ.get("FTP_PROCESSED_PATH", "/mnt/data/ftp-processed")
FTP_FAILED_PATH = os.environ.get("FTP_FAILED_PATH", "/mnt/data/ftp-failed")

IMPORT_ALLOWED_EXTENSIONS = {".pdf", ".xlsx", ".xls"}

# Files younger than this are assumed to still be uploading
MIN_FILE_AGE_SECONDS = 30
RECENTLY_PROCESSED_WINDOW_SECONDS = 60 * 60

# === Parsing Configuration ===
SUPPLIER_NAME_MATCH_THRESHOLD = float(os.environ.get("SUPPLIER_NAME_MATCH_THRESHOLD", "0.7"))

# === Settings Cache ===
SETTINGS_CACHE_TTL_SECONDS = int(os.environ.get("SETTINGS_CACHE_TTL_SECONDS", "60"))

# === Rate Limiting ===
DEFAULT_RATE_LIMIT = os.environ.get("RATE_LIMIT", "30 per minute")

RATE_LIMITS = {
    "/api/health": os.environ.get("RATE_LIMIT_HEALTH", "120 per minute"),
    "/api/scheduler/health": os.environ.get("RATE_LIMIT_SCHEDULER_HEALTH", "60 per minute"),
    "/api/queues/status": os.environ.get("RATE_LIMIT_QUEUE_STATUS", "60 per minute"),
    "/api/import-settings": os.environ.get("RATE_LIMIT_IMPORT_SETTINGS", "30 per minute"),
    "/api/import-settings/trigger": os.environ.get("RATE_LIMIT_IMPORT_TRIGGER", "5 per minute"),
}

# === Security Configuration ===
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
CORS_ENABLED = os.environ.get("CORS_ENABLED", "1") == "1"

# === Logging ===
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# === Flask Configuration ===
FLASK_DEBUG = os.environ.get("FLASK_DEBUG", "0") == "1"
FLASK_HOST = os.environ.get("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.environ.get("FLASK_PORT", "5001"))

PORTAL_NAME = os.environ.get("PORTAL_NAME", "Invoice Portal")
