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

# Secrets are never read from config.yaml.
_ENV_ONLY_KEYS = {
    "LICENSE_PRIVATE_KEY",
    "LICENSE_PRIVATE_KEY_PATH",
    "GATEWAY_KEY",
    "ADMIN_TOKEN",
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


def _parse_term_prices(value: Any) -> Dict[str, str]:
    """
    Accept a YAML mapping (``{"1m": "5"}``) or an env string (``1m=5,1y=30``).

    Prices stay strings so the gateway receives exactly what was configured.
    """

    if isinstance(value, dict):
        return {str(k).strip(): str(v).strip() for k, v in value.items() if str(k).strip()}
    prices: Dict[str, str] = {}
    for item in str(value or "").split(","):
        if "=" not in item:
            continue
        term, price = item.split("=", 1)
        if term.strip() and price.strip():
            prices[term.strip()] = price.strip()
    return prices


REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "true"), True)
API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8010"))
APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.vipserver', 'vipserver.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

LICENSE_PRIVATE_KEY = str(_get("LICENSE_PRIVATE_KEY", "")).strip()
LICENSE_PRIVATE_KEY_PATH = str(_get("LICENSE_PRIVATE_KEY_PATH", "")).strip()
# Optional: only needed by the verifying side when no private key is configured.
LICENSE_PUBLIC_KEY = str(_get("LICENSE_PUBLIC_KEY", "")).strip()

PAYMENT_GATEWAY = str(_get("PAYMENT_GATEWAY", "mock")).strip().lower() or "mock"
GATEWAY_API_BASE = str(_get("GATEWAY_API_BASE", "https://zpayz.cn")).strip().rstrip("/")
GATEWAY_PID = str(_get("GATEWAY_PID", "")).strip()
GATEWAY_KEY = str(_get("GATEWAY_KEY", "")).strip()
GATEWAY_PAY_TYPE = str(_get("GATEWAY_PAY_TYPE", "alipay")).strip() or "alipay"
GATEWAY_TIMEOUT_SECONDS = max(1.0, float(_get("GATEWAY_TIMEOUT_SECONDS", "10")))
PUBLIC_BASE_URL = str(_get("PUBLIC_BASE_URL", "")).strip().rstrip("/")
PRODUCT_NAME_PREFIX = str(_get("PRODUCT_NAME_PREFIX", "【任务笔记管理插件】"))
TERM_PRICES = _parse_term_prices(_get("TERM_PRICES", "1m=5,1y=30,Lifetime=99"))

ADMIN_TOKEN = str(_get("ADMIN_TOKEN", "")).strip()

RATE_LIMIT_SCOPE = str(_get("RATE_LIMIT_SCOPE", "ip")).strip().lower() or "ip"  # ip | global
RATE_LIMIT_WINDOW_SECONDS = max(1, int(_get("RATE_LIMIT_WINDOW_SECONDS", "60")))
RATE_LIMIT_MAX_REQUESTS = max(1, int(_get("RATE_LIMIT_MAX_REQUESTS", "60")))
RATE_LIMIT_ENABLED = _parse_bool(_get("RATE_LIMIT_ENABLED", "true"), True)

CORS_ORIGINS = [
    origin.strip()
    for origin in str(_get("CORS_ORIGINS", "*")).split(",")
    if origin.strip()
]
