import os
from dataclasses import dataclass
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
    "PAYMONGO_WEBHOOK_SECRET",
    "PAYMONGO_SECRET_KEY",
    "SETTLEMENT_SERVICE_TOKEN",
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


APP_VERSION = str(_get("APP_VERSION", "0.3.0"))
API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8020"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.geminiagri', 'settlement.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "paymongo")).strip().lower() or "paymongo"
PAYMONGO_WEBHOOK_SECRET = str(_get("PAYMONGO_WEBHOOK_SECRET", "")).strip()
PAYMONGO_SECRET_KEY = str(_get("PAYMONGO_SECRET_KEY", "")).strip()
PAYMONGO_API_BASE_URL = str(_get("PAYMONGO_API_BASE_URL", "https://api.paymongo.com/v1")).strip().rstrip("/")
PAYMONGO_TIMEOUT_SECONDS = max(1.0, float(_get("PAYMONGO_TIMEOUT_SECONDS", "10")))
PAYMONGO_WEBHOOK_TOLERANCE_SECONDS = max(1, int(_get("PAYMONGO_WEBHOOK_TOLERANCE_SECONDS", "300")))
CREDIT_ORDER_PREFIX = str(_get("CREDIT_ORDER_PREFIX", "CREDITS-")).strip() or "CREDITS-"
DEFAULT_CURRENCY = str(_get("DEFAULT_CURRENCY", "PHP")).strip().upper() or "PHP"
STATEMENT_DESCRIPTOR = str(_get("STATEMENT_DESCRIPTOR", "GEMINIAGRI")).strip()
SETTLEMENT_SERVICE_TOKEN = str(_get("SETTLEMENT_SERVICE_TOKEN", "")).strip()

CORS_ORIGINS = [
    origin.strip()
    for origin in str(_get("CORS_ORIGINS", "*")).split(",")
    if origin.strip()
]


@dataclass(frozen=True)
class SettlementConfig:
    """
    Runtime settings handed to the app factory and the settlement services.

    Business code receives this object explicitly; only this module reads
    the process environment.
    """

    app_env: str = "dev"
    webhook_secret: str = ""
    provider_secret_key: str = ""
    provider_name: str = "paymongo"
    provider_api_base_url: str = "https://api.paymongo.com/v1"
    provider_timeout_seconds: float = 10.0
    webhook_tolerance_seconds: int = 300
    credit_order_prefix: str = "CREDITS-"
    default_currency: str = "PHP"
    statement_descriptor: str = "GEMINIAGRI"
    service_token: str = ""
    bootstrap_db: bool = True
    cors_origins: tuple[str, ...] = ("*",)

    @property
    def is_production(self) -> bool:
        return str(self.app_env or "").strip().lower() in {"prod", "production"}


def load_settlement_config() -> SettlementConfig:
    return SettlementConfig(
        app_env=APP_ENV,
        webhook_secret=PAYMONGO_WEBHOOK_SECRET,
        provider_secret_key=PAYMONGO_SECRET_KEY,
        provider_name=PAYMENT_PROVIDER,
        provider_api_base_url=PAYMONGO_API_BASE_URL,
        provider_timeout_seconds=PAYMONGO_TIMEOUT_SECONDS,
        webhook_tolerance_seconds=PAYMONGO_WEBHOOK_TOLERANCE_SECONDS,
        credit_order_prefix=CREDIT_ORDER_PREFIX,
        default_currency=DEFAULT_CURRENCY,
        statement_descriptor=STATEMENT_DESCRIPTOR,
        service_token=SETTLEMENT_SERVICE_TOKEN,
        bootstrap_db=STARTUP_BOOTSTRAP_ENABLED,
        cors_origins=tuple(CORS_ORIGINS) or ("*",),
    )
