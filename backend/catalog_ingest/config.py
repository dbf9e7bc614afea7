"""
Runtime configuration for the ingestion pipeline.

Settings are read from the environment exactly once, at process start, and
passed explicitly into every component. Nothing else in the package reads
os.environ.
"""

import os
from pathlib import Path
from typing import Mapping, Optional, Sequence, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError


DEFAULT_API_BASE = "https://api.sinaliteuppy.com"
DEFAULT_AUDIENCE = "https://apiconnect.sinalite.com"
DEFAULT_STORE_CODES = ("en_ca", "en_us")

# Retry / rate limiting defaults
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY = 0.8
DEFAULT_REQUEST_DELAY = 0.25

DATABASE_URL_KEYS = ("DATABASE_URL", "POSTGRES_URL", "NEON_URL")


class Settings(BaseModel):
    """Immutable pipeline settings."""

    model_config = ConfigDict(frozen=True)

    database_url: Optional[str] = None
    client_id: str
    client_secret: str
    api_base: str = DEFAULT_API_BASE
    auth_url: str
    audience: str = DEFAULT_AUDIENCE
    store_codes: Tuple[str, ...] = DEFAULT_STORE_CODES
    storefront_locale: str
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    request_delay: float = Field(default=DEFAULT_REQUEST_DELAY, ge=0)
    workers: int = Field(default=1, ge=1)
    log_level: str = "INFO"

    @field_validator("api_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("store_codes")
    @classmethod
    def _require_store_codes(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value:
            raise ValueError("at least one store code is required")
        return value

    @property
    def uses_sqlite(self) -> bool:
        return bool(self.database_url) and self.database_url.startswith("sqlite:")


def load_env_file(env_path: Optional[Path] = None) -> None:
    """Load a .env file into the process environment (existing vars win)."""
    if env_path is None:
        env_path = Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()


def pick_env(env: Mapping[str, str], *keys: str) -> Optional[str]:
    """Return the first non-blank value among the given keys."""
    for key in keys:
        value = env.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def split_store_codes(raw: str) -> Tuple[str, ...]:
    return tuple(code.strip() for code in raw.split(",") if code.strip())


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    *,
    store_codes: Optional[Sequence[str]] = None,
    workers: Optional[int] = None,
    log_level: Optional[str] = None,
    require_database: bool = True,
) -> Settings:
    """
    Build Settings from an environment mapping.

    Args:
        env: Environment to read (defaults to os.environ)
        store_codes: CLI override for SINALITE_STORE_CODES
        workers: CLI override for SINALITE_WORKERS
        log_level: CLI override for LOG_LEVEL
        require_database: False for dry runs, which never touch the database

    Raises:
        ConfigError: a required variable is missing or a value is invalid
    """
    if env is None:
        env = os.environ

    missing = []
    database_url = pick_env(env, *DATABASE_URL_KEYS)
    if require_database and not database_url:
        missing.append("DATABASE_URL")
    client_id = pick_env(env, "SINALITE_CLIENT_ID")
    if not client_id:
        missing.append("SINALITE_CLIENT_ID")
    client_secret = pick_env(env, "SINALITE_CLIENT_SECRET")
    if not client_secret:
        missing.append("SINALITE_CLIENT_SECRET")
    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    api_base = (pick_env(env, "SINALITE_API_BASE", "SINALITE_BASE_URL") or DEFAULT_API_BASE).rstrip("/")

    if store_codes:
        codes = tuple(c.strip() for c in store_codes if c and c.strip())
    else:
        raw_codes = pick_env(env, "SINALITE_STORE_CODES")
        codes = split_store_codes(raw_codes) if raw_codes else DEFAULT_STORE_CODES

    values = {
        "database_url": database_url,
        "client_id": client_id,
        "client_secret": client_secret,
        "api_base": api_base,
        "auth_url": pick_env(env, "SINALITE_AUTH_URL") or f"{api_base}/auth/token",
        "audience": pick_env(env, "SINALITE_AUDIENCE", "SINALITE_API_AUDIENCE") or DEFAULT_AUDIENCE,
        "store_codes": codes,
        "storefront_locale": pick_env(env, "SINALITE_STOREFRONT_LOCALE") or (codes[0] if codes else "en_us"),
        "log_level": (log_level or pick_env(env, "LOG_LEVEL") or "INFO").upper(),
    }

    numeric = {
        "request_timeout": "SINALITE_REQUEST_TIMEOUT",
        "max_retries": "SINALITE_MAX_RETRIES",
        "retry_base_delay": "SINALITE_RETRY_BASE_DELAY",
        "request_delay": "SINALITE_REQUEST_DELAY",
        "workers": "SINALITE_WORKERS",
    }
    for field_name, key in numeric.items():
        raw = pick_env(env, key)
        if raw is not None:
            values[field_name] = raw
    if workers is not None:
        values["workers"] = workers

    try:
        return Settings(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
