import json
import os
from dotenv import load_dotenv
from typing import Dict, List

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017/outreach_governor")
DATABASE_NAME = os.getenv("DATABASE_NAME", "outreach_governor")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))  # server selection + connect

# Storage backend: "mongo" for production, "memory" for dry runs
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "mongo").lower()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")  # optional local log file
LOG_STRUCTURED = os.getenv("LOG_STRUCTURED", "false").lower() == "true"  # JSON logs for ELK

# Timezone used when rendering timestamps for humans (storage is always UTC)
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "America/New_York")

# ── Job scheduler ────────────────────────────────────────────────────
SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))
JOB_BATCH_SIZE = int(os.getenv("JOB_BATCH_SIZE", "10"))
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
RETRY_BASE_MINUTES = float(os.getenv("RETRY_BASE_MINUTES", "1"))
RETRY_CAP_MINUTES = float(os.getenv("RETRY_CAP_MINUTES", "5"))
STUCK_JOB_TIMEOUT_MINUTES = int(os.getenv("STUCK_JOB_TIMEOUT_MINUTES", "30"))

# Periodic sub-task intervals (seconds)
TOKEN_REFRESH_INTERVAL = int(os.getenv("TOKEN_REFRESH_INTERVAL", "600"))
PIPELINE_UPDATE_INTERVAL = int(os.getenv("PIPELINE_UPDATE_INTERVAL", "300"))
STUCK_JOB_CHECK_INTERVAL = int(os.getenv("STUCK_JOB_CHECK_INTERVAL", "300"))
CACHE_PURGE_INTERVAL = int(os.getenv("CACHE_PURGE_INTERVAL", "3600"))
USAGE_PRUNE_INTERVAL = int(os.getenv("USAGE_PRUNE_INTERVAL", "86400"))
QUOTA_ALERT_INTERVAL = int(os.getenv("QUOTA_ALERT_INTERVAL", "900"))

# ── Connection pool ──────────────────────────────────────────────────
POOL_MAX_DB_CONNECTIONS = int(os.getenv("POOL_MAX_DB_CONNECTIONS", "10"))
POOL_MAX_IMAP_CONNECTIONS = int(os.getenv("POOL_MAX_IMAP_CONNECTIONS", "3"))
POOL_CONNECTION_TTL = int(os.getenv("POOL_CONNECTION_TTL", "300"))
POOL_SWEEP_INTERVAL = int(os.getenv("POOL_SWEEP_INTERVAL", "60"))
POOL_ALERT_INTERVAL = int(os.getenv("POOL_ALERT_INTERVAL", "900"))  # min seconds between exhaustion alerts per class

# IMAP mailboxes (reply monitoring handlers borrow sessions from the pool)
IMAP_HOST = os.getenv("IMAP_HOST", "imap.gmail.com")
IMAP_PORT = int(os.getenv("IMAP_PORT", "993"))
IMAP_TIMEOUT = int(os.getenv("IMAP_TIMEOUT", "30"))


def parse_imap_accounts() -> Dict[str, str]:
    """Parse IMAP_ACCOUNTS="a@x.com:pw1,b@x.com:pw2" into {email: password}"""
    accounts = {}
    for entry in os.getenv("IMAP_ACCOUNTS", "").split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        email, password = entry.split(":", 1)
        accounts[email.strip()] = password.strip()
    return accounts

IMAP_ACCOUNTS = parse_imap_accounts()

# ── Response cache ───────────────────────────────────────────────────
# Seconds each category of API response stays fresh
CACHE_TTLS = {
    "backlinks": int(os.getenv("CACHE_TTL_BACKLINKS", "86400")),                    # 24 h
    "domain_analysis": int(os.getenv("CACHE_TTL_DOMAIN_ANALYSIS", "43200")),        # 12 h
    "competitor_analysis": int(os.getenv("CACHE_TTL_COMPETITOR_ANALYSIS", "172800")),  # 48 h
    "summary": int(os.getenv("CACHE_TTL_SUMMARY", "21600")),                        # 6 h
    "default": int(os.getenv("CACHE_TTL_DEFAULT", "43200")),                        # 12 h
}
CACHE_PURGE_PROBABILITY = float(os.getenv("CACHE_PURGE_PROBABILITY", "0.01"))
CACHE_EXPIRED_WARNING_RATIO = float(os.getenv("CACHE_EXPIRED_WARNING_RATIO", "0.3"))

# ── Credential refresh ───────────────────────────────────────────────
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_TOKEN_URL = os.getenv("GOOGLE_TOKEN_URL", "https://oauth2.googleapis.com/token")
OAUTH_HTTP_TIMEOUT = int(os.getenv("OAUTH_HTTP_TIMEOUT", "30"))

TOKEN_EXPIRY_BUFFER_SECONDS = int(os.getenv("TOKEN_EXPIRY_BUFFER_SECONDS", "300"))  # refresh 5 min early
TOKEN_REFRESH_AHEAD_SECONDS = int(os.getenv("TOKEN_REFRESH_AHEAD_SECONDS", "600"))  # proactive window
LOCK_WAIT_SECONDS = float(os.getenv("LOCK_WAIT_SECONDS", "30"))
LOCK_POLL_SECONDS = float(os.getenv("LOCK_POLL_SECONDS", "0.5"))
LOCK_STALE_SECONDS = int(os.getenv("LOCK_STALE_SECONDS", "300"))
LOCK_BACKEND = os.getenv("LOCK_BACKEND", "mongo").lower()  # "mongo" or "file"
LOCK_DIR = os.getenv("LOCK_DIR", "/tmp/outreach_governor_locks")

# ── Rate limits ──────────────────────────────────────────────────────
# Per service: request limits per window, monthly credit quota, credit cost
# per operation. Month is a rolling 30 days.
SERVICE_LIMITS = {
    "dataforseo": {
        "windows": {
            "minute": {"seconds": 60, "limit": 30},
            "hour": {"seconds": 3600, "limit": 2000},
            "day": {"seconds": 86400, "limit": 1000},
            "month": {"seconds": 2592000, "limit": 25000},
        },
        "monthly_quota": 25000,
        "costs": {
            "backlinks": 1,
            "domain_analysis": 1,
            "competitor_analysis": 2,
            "summary": 1,
            "default": 1,
        },
    },
    "tomba": {
        "windows": {
            "minute": {"seconds": 60, "limit": 60},
            "hour": {"seconds": 3600, "limit": 3600},
            "day": {"seconds": 86400, "limit": 1667},
            "month": {"seconds": 2592000, "limit": 50000},
        },
        "monthly_quota": 50000,
        "costs": {
            "email_finder": 1,
            "email_verifier": 1,
            "domain_search": 1,
            "default": 1,
        },
    },
}

# SERVICE_LIMITS_JSON='{"tomba": {"monthly_quota": 10000}}' merges over the defaults
_limits_override = os.getenv("SERVICE_LIMITS_JSON")
if _limits_override:
    for _service, _settings in json.loads(_limits_override).items():
        SERVICE_LIMITS.setdefault(_service, {}).update(_settings)

QUOTA_WARNING_THRESHOLD = float(os.getenv("QUOTA_WARNING_THRESHOLD", "0.8"))
QUOTA_CRITICAL_THRESHOLD = float(os.getenv("QUOTA_CRITICAL_THRESHOLD", "0.95"))
USAGE_WARNING_PERCENT = float(os.getenv("USAGE_WARNING_PERCENT", "80"))
USAGE_CRITICAL_PERCENT = float(os.getenv("USAGE_CRITICAL_PERCENT", "90"))

# ── Alerts (webhook) ─────────────────────────────────────────────────
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()  # slack, discord or telegram
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")


def validate_config(require_oauth: bool = False) -> List[str]:
    """
    Check required settings. Raises ConfigurationError listing everything
    missing, returns a list of non-fatal warnings otherwise.
    """
    from governor.errors import ConfigurationError

    missing = []
    warnings = []

    if STORAGE_BACKEND not in ("mongo", "memory"):
        missing.append(f"STORAGE_BACKEND (unknown value '{STORAGE_BACKEND}')")
    if STORAGE_BACKEND == "mongo" and not DATABASE_URL:
        missing.append("DATABASE_URL")
    if require_oauth:
        if not GOOGLE_CLIENT_ID:
            missing.append("GOOGLE_CLIENT_ID")
        if not GOOGLE_CLIENT_SECRET:
            missing.append("GOOGLE_CLIENT_SECRET")
    if LOCK_BACKEND not in ("mongo", "file"):
        missing.append(f"LOCK_BACKEND (unknown value '{LOCK_BACKEND}')")

    for service, settings in SERVICE_LIMITS.items():
        if not settings.get("windows"):
            missing.append(f"SERVICE_LIMITS[{service}].windows")

    if not ALERT_WEBHOOK_URL:
        warnings.append("ALERT_WEBHOOK_URL not set, alerts are disabled")
    if RETRY_CAP_MINUTES < RETRY_BASE_MINUTES:
        warnings.append("RETRY_CAP_MINUTES is below RETRY_BASE_MINUTES")

    if missing:
        raise ConfigurationError(f"Missing or invalid configuration: {', '.join(missing)}")
    return warnings
