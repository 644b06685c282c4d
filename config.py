import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "AUTH_TOKEN_SECRET",
    "PAYPAL_CLIENT_SECRET",
    "RESEND_API_KEY",
    "ADMIN_BOOTSTRAP_PASSWORD",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8010"))
APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite+pysqlite:///{os.path.join(ROOT_DIR, '.data', 'jeezy.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
SQLITE_BUSY_TIMEOUT_SECONDS = max(1, int(_get("SQLITE_BUSY_TIMEOUT_SECONDS", "30")))
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

# Bounded waits for the webhook reconciliation transaction.
RECONCILE_LOCK_TIMEOUT_MS = max(100, int(_get("RECONCILE_LOCK_TIMEOUT_MS", "5000")))
RECONCILE_STATEMENT_TIMEOUT_MS = max(100, int(_get("RECONCILE_STATEMENT_TIMEOUT_MS", "10000")))

AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()
AUTH_TOKEN_TTL_SECONDS = int(_get("AUTH_TOKEN_TTL_SECONDS", "43200"))
AUTH_COOKIE_NAME = str(_get("AUTH_COOKIE_NAME", "backendToken")).strip() or "backendToken"
AUTH_COOKIE_SECURE = _parse_bool(_get("AUTH_COOKIE_SECURE", "false"), False)
ADMIN_BOOTSTRAP_EMAIL = str(_get("ADMIN_BOOTSTRAP_EMAIL", "")).strip().lower()
ADMIN_BOOTSTRAP_PASSWORD = str(_get("ADMIN_BOOTSTRAP_PASSWORD", "")).strip()

PAYPAL_CLIENT_ID = str(_get("PAYPAL_CLIENT_ID", "")).strip()
PAYPAL_CLIENT_SECRET = str(_get("PAYPAL_CLIENT_SECRET", "")).strip()
PAYPAL_API_BASE_URL = str(_get("PAYPAL_API_BASE_URL", "https://api-m.sandbox.paypal.com")).strip().rstrip("/")
PAYPAL_WEBHOOK_ID = str(_get("PAYPAL_WEBHOOK_ID", "")).strip()
PAYPAL_PRODUCT_ID = str(_get("PAYPAL_PRODUCT_ID", "PROD_JEEZY_VIP")).strip()
PAYPAL_BRAND_NAME = str(_get("PAYPAL_BRAND_NAME", "Jeezy TV")).strip()
PAYPAL_RETURN_URL = str(_get("PAYPAL_RETURN_URL", "http://localhost:3000/payment/success")).strip()
PAYPAL_CANCEL_URL = str(_get("PAYPAL_CANCEL_URL", "http://localhost:3000/payment/cancel")).strip()
PAYPAL_TIMEOUT_SECONDS = max(1.0, float(_get("PAYPAL_TIMEOUT_SECONDS", "15")))
PAYPAL_CERT_TIMEOUT_SECONDS = max(1.0, float(_get("PAYPAL_CERT_TIMEOUT_SECONDS", "10")))

RESEND_API_KEY = str(_get("RESEND_API_KEY", "")).strip()
RESEND_API_BASE_URL = str(_get("RESEND_API_BASE_URL", "https://api.resend.com")).strip().rstrip("/")
EMAIL_FROM = str(_get("EMAIL_FROM", "Jeezy <no-reply@jeezy.tv>")).strip()
EMAIL_TIMEOUT_SECONDS = max(1.0, float(_get("EMAIL_TIMEOUT_SECONDS", "10")))

CORS_ORIGINS = [
    origin.strip()
    for origin in str(_get("CORS_ORIGINS", "http://localhost:3000")).split(",")
    if origin.strip()
]
