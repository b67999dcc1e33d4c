# payman_billing/billing/config.py
import os
from pathlib import Path

from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()

# === Directories ===
CURRENT_FILE = Path(__file__).resolve()  # .../payman_billing/billing/config.py
BILLING_DIR = CURRENT_FILE.parent  # .../payman_billing/billing
PROJECT_DIR = CURRENT_FILE.parents[1]  # .../payman_billing

APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"


def _parse_list(s: str) -> list[str]:
    if not s:
        return []
    import re
    return [token for token in re.split(r"[,\s;]+", s.strip()) if token]


def _parse_bool(s: str | None, default: bool = False) -> bool:
    if s is None:
        return default
    return s.strip().lower() in ("1", "true", "yes", "on")


# === MySQL Database ===
MYSQL_HOST = os.getenv("MYSQL_HOST", "127.0.0.1")
MYSQL_PORT = os.getenv("MYSQL_PORT", "3306")
MYSQL_USER = os.getenv("MYSQL_USER", "billing")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "")
MYSQL_DB = os.getenv("MYSQL_DB", "billing")

# DB_URL overrides the MySQL parts (sqlite:///billing.db for local runs)
DB_URL = os.getenv("DB_URL") or (
    f"mysql+pymysql://{MYSQL_USER}:{quote_plus(MYSQL_PASSWORD)}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}"
)

# === Redis ===
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "billing")

# === ZarinPal ===
ZARINPAL_MERCHANT_ID = os.getenv("ZARINPAL_MERCHANT_ID", "")
ZARINPAL_ACCESS_TOKEN = os.getenv("ZARINPAL_ACCESS_TOKEN", "")
ZARINPAL_SANDBOX = _parse_bool(os.getenv("ZARINPAL_SANDBOX"), default=False)
ZARINPAL_TIMEOUT_SEC = float(os.getenv("ZARINPAL_TIMEOUT_SEC", "15"))
# Return URL for charges (direct debit charges complete without a redirect, the gateway still wants one)
CALLBACK_BASE_URL = os.getenv("CALLBACK_BASE_URL", "http://localhost:8080").rstrip("/")

# === Webhook HTTP server ===
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8080"))

# --- inbound security gate ---
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "10"))
WEBHOOK_RATE_WINDOW_SEC = int(os.getenv("WEBHOOK_RATE_WINDOW_SEC", "60"))
WEBHOOK_TIMESTAMP_TOLERANCE_SEC = int(os.getenv("WEBHOOK_TIMESTAMP_TOLERANCE_SEC", "300"))
WEBHOOK_USER_AGENT_MARKER = os.getenv("WEBHOOK_USER_AGENT_MARKER", "zarinpal").lower()
WEBHOOK_ALLOWED_NETWORKS = _parse_list(
    os.getenv("WEBHOOK_ALLOWED_NETWORKS", "185.231.115.0/24,5.253.26.0/24")
)
# reverse proxies whose CF-Connecting-IP / X-Forwarded-For are believed; empty = use the socket peer
WEBHOOK_TRUSTED_PROXIES = _parse_list(os.getenv("WEBHOOK_TRUSTED_PROXIES", ""))
# "redis" in multi-instance deployments, "memory" for a single process
WEBHOOK_RATE_LIMIT_BACKEND = os.getenv("WEBHOOK_RATE_LIMIT_BACKEND", "memory").strip().lower()

# --- outbound delivery ---
OUTBOUND_WEBHOOK_URL = os.getenv("OUTBOUND_WEBHOOK_URL", "").strip()
OUTBOUND_WEBHOOK_SECRET = os.getenv("OUTBOUND_WEBHOOK_SECRET", "")
OUTBOUND_WEBHOOK_EVENTS = _parse_list(os.getenv("OUTBOUND_WEBHOOK_EVENTS", "*"))
OUTBOUND_WEBHOOK_TIMEOUT_SEC = float(os.getenv("OUTBOUND_WEBHOOK_TIMEOUT_SEC", "15"))
OUTBOUND_WEBHOOK_ATTEMPTS = int(os.getenv("OUTBOUND_WEBHOOK_ATTEMPTS", "2"))

# === Billing scheduler ===
BILLING_INTERVAL_SEC = int(os.getenv("BILLING_INTERVAL_SEC", "86400"))
BILLING_BATCH_LIMIT = int(os.getenv("BILLING_BATCH_LIMIT", "1000"))
BILLING_MAX_RETRIES = int(os.getenv("BILLING_MAX_RETRIES", "3"))
# hard ceiling on failures per subscription across cycles
BILLING_FAILURE_CEILING = int(os.getenv("BILLING_FAILURE_CEILING", "6"))
BILLING_PERIOD_DAYS = int(os.getenv("BILLING_PERIOD_DAYS", "30"))
BILLING_CIRCUIT_MIN_PROCESSED = int(os.getenv("BILLING_CIRCUIT_MIN_PROCESSED", "20"))
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "").strip()

# === Logging ===
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_PATH = os.getenv("LOG_PATH", "")

# === Admin API ===
# Bearer token for GET /webhooks/events; empty disables the check (development only)
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "").strip()
