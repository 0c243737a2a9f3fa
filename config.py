# Coinmeter Runtime Configuration
# Environment variables (COINMETER_*), optionally from a .env file.
# Read once into a frozen RuntimeSettings at startup; nothing else reads os.environ.

# Auto-load .env file (must be before any os.environ reads)
from dotenv import load_dotenv
load_dotenv()

import os
from dataclasses import dataclass

DEFAULT_DB_FILE = os.path.join(os.path.dirname(__file__), "coinmeter.db")
DEFAULT_LOG_FILE = os.path.join(os.path.dirname(__file__), "coinmeter.log")

CACHE_BACKENDS = ("memory", "redis")
DEV_ENVIRONMENTS = {"dev", "development", "test"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class RuntimeSettings:
    """Process-level settings. Billing rates are not here; they live in the DB."""
    env: str = "dev"
    db_path: str = DEFAULT_DB_FILE
    api_token: str = ""
    log_file: str = DEFAULT_LOG_FILE
    log_level: str = "INFO"

    # Provisioning backend
    provisioning_url: str = ""
    provisioning_api_key: str = ""

    # Request queue / circuit breaker
    queue_concurrency: int = 5
    request_timeout_sec: float = 15.0
    max_retries: int = 3
    circuit_threshold: int = 5
    circuit_cooldown_sec: float = 60.0

    # Cache
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_prefix: str = "prov:"
    status_ttl_sec: int = 15

    @property
    def auth_required(self) -> bool:
        return self.env not in DEV_ENVIRONMENTS

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """Build settings from COINMETER_* variables. Raises ValueError on bad input."""
        cache_backend = os.environ.get("COINMETER_CACHE_BACKEND", "memory").strip().lower()
        if cache_backend not in CACHE_BACKENDS:
            raise ValueError(
                f"COINMETER_CACHE_BACKEND must be one of {CACHE_BACKENDS}, got {cache_backend!r}"
            )
        log_level = os.environ.get("COINMETER_LOG_LEVEL", "INFO").strip().upper()

        return cls(
            env=os.environ.get("COINMETER_ENV", "dev").strip().lower(),
            db_path=os.environ.get("COINMETER_DB_PATH", DEFAULT_DB_FILE),
            api_token=os.environ.get("COINMETER_API_TOKEN", ""),
            log_file=os.environ.get("COINMETER_LOG_FILE", DEFAULT_LOG_FILE),
            log_level=log_level,
            provisioning_url=os.environ.get("COINMETER_PROVISIONING_URL", "").rstrip("/"),
            provisioning_api_key=os.environ.get("COINMETER_PROVISIONING_API_KEY", ""),
            queue_concurrency=_env_int("COINMETER_QUEUE_CONCURRENCY", 5, minimum=1),
            request_timeout_sec=_env_float("COINMETER_REQUEST_TIMEOUT_SEC", 15.0),
            max_retries=_env_int("COINMETER_MAX_RETRIES", 3, minimum=1),
            circuit_threshold=_env_int("COINMETER_CIRCUIT_THRESHOLD", 5, minimum=1),
            circuit_cooldown_sec=_env_float("COINMETER_CIRCUIT_COOLDOWN_SEC", 60.0),
            cache_backend=cache_backend,
            redis_url=os.environ.get("COINMETER_REDIS_URL", "redis://localhost:6379/0"),
            cache_prefix=os.environ.get("COINMETER_CACHE_PREFIX", "prov:"),
            status_ttl_sec=_env_int("COINMETER_STATUS_TTL_SEC", 15),
        )
