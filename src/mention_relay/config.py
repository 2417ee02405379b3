"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI, tests) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class ResponderSettings:
    """External responder service used to generate clone replies.

    Backends:
        - "http": POST the conversation to an external chat service
        - "llm": call a model directly through LiteLLM

    Example .env:
        RESPONDER_BACKEND=http
        RESPONDER_URL=http://127.0.0.1:8000
        RESPONDER_API_KEY=secret
        RESPONDER_TIMEOUT_SECONDS=120
    """

    backend: str  # "http" | "llm"
    url: str
    chat_path: str
    api_key: str | None
    index_name: str
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class LlmSettings:
    """LiteLLM-related settings and defaults."""

    default_model: str
    temperature: float
    max_tokens: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    database: DatabaseSettings
    responder: ResponderSettings
    llm: LlmSettings
    # Scheduler trigger for out-of-band mention processing
    dispatch_poll_interval_seconds: int
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _responder_backend(value: str) -> str:
    v = (value or "").strip().lower()
    if v in {"http", "llm"}:
        return v
    return "http"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./mention_relay.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    timeout = _float(_decouple_config("RESPONDER_TIMEOUT_SECONDS", default="120"), default=120.0)
    responder_settings = ResponderSettings(
        backend=_responder_backend(_decouple_config("RESPONDER_BACKEND", default="http")),
        url=_decouple_config("RESPONDER_URL", default="http://127.0.0.1:8000").rstrip("/"),
        chat_path=_decouple_config("RESPONDER_CHAT_PATH", default="/chat"),
        api_key=_decouple_config("RESPONDER_API_KEY", default="") or None,
        index_name=_decouple_config("RESPONDER_INDEX", default="clones"),
        timeout_seconds=timeout if timeout > 0 else 120.0,
    )

    llm_settings = LlmSettings(
        default_model=_decouple_config("LLM_DEFAULT_MODEL", default="gpt-4o-mini"),
        temperature=_float(_decouple_config("LLM_TEMPERATURE", default="0.2"), default=0.2),
        max_tokens=_int(_decouple_config("LLM_MAX_TOKENS", default="512"), default=512),
    )

    return Settings(
        environment=environment,
        database=database_settings,
        responder=responder_settings,
        llm=llm_settings,
        dispatch_poll_interval_seconds=_int(
            _decouple_config("DISPATCH_POLL_INTERVAL_SECONDS", default="30"), default=30
        ),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
