"""
Configuration loader for the dispatch gateway.
Reads settings from YAML file with environment variable substitution,
then applies the gateway's environment overrides (USE_REDIS, DELAY_QUEUE, ...).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_DELAY_MS = 500


@dataclass
class QueueConfig:
    use_redis: bool = False                 # false → in-memory queue only
    redis_url: str = "redis://localhost:6379"
    prefix: str = "WA_API"                  # key namespace for all queue keys
    default_delay_ms: int = DEFAULT_DELAY_MS
    max_queue_size: int = 1000              # in-memory capacity
    redis_grace_seconds: float = 5.0        # time allowed for the first PING
    enqueue_ready_timeout: float = 5.0      # enqueue waits this long for redis
    attempts: int = 3
    backoff_delay_ms: int = 2000            # first retry delay, doubles per attempt
    remove_on_complete: int = 100           # completed history kept per queue
    remove_on_fail: int = 50                # failed history kept per queue
    poll_interval: float = 0.2              # worker idle sleep (seconds)
    message_preview_chars: int = 120


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./wa_gateway.db"


@dataclass
class WhatsAppConfig:
    bridge_url: str = "http://localhost:3001"
    api_token: str = ""
    timeout: float = 30.0


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    api_keys: list[str] = field(default_factory=list)
    allowed_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"]
    )


@dataclass
class Settings:
    app_name: str = "WA Dispatch Gateway"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _apply_env_overrides(settings: Settings, env: dict[str, str]) -> None:
    q = settings.queue
    if "USE_REDIS" in env:
        q.use_redis = _as_bool(env["USE_REDIS"])
    if env.get("REDIS_URL"):
        q.redis_url = env["REDIS_URL"]
    elif env.get("REDIS_HOST") or env.get("REDIS_PORT"):
        host = env.get("REDIS_HOST", "localhost")
        port = env.get("REDIS_PORT", "6379")
        q.redis_url = f"redis://{host}:{port}"
    if env.get("REDIS_PREFIX"):
        q.prefix = env["REDIS_PREFIX"]
    if "DELAY_QUEUE" in env:
        q.default_delay_ms = _as_int(env["DELAY_QUEUE"], q.default_delay_ms)
    if "MAX_QUEUE_SIZE" in env:
        q.max_queue_size = _as_int(env["MAX_QUEUE_SIZE"], q.max_queue_size)

    if env.get("DATABASE_URL"):
        settings.database.url = env["DATABASE_URL"]
    if env.get("WHATSAPP_BRIDGE_URL"):
        settings.whatsapp.bridge_url = env["WHATSAPP_BRIDGE_URL"]
    if env.get("WHATSAPP_BRIDGE_TOKEN"):
        settings.whatsapp.api_token = env["WHATSAPP_BRIDGE_TOKEN"]

    if env.get("API_KEYS"):
        settings.api.api_keys = _split_csv(env["API_KEYS"])
    if env.get("ALLOWED_ORIGINS"):
        settings.api.allowed_origins = _split_csv(env["ALLOWED_ORIGINS"])
    if "PORT" in env:
        settings.api.port = _as_int(env["PORT"], settings.api.port)


def load_settings(config_path: str = None, env: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WA_GATEWAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )
    if env is None:
        env = dict(os.environ)

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "queue" in raw:
            q = raw["queue"] or {}
            d = QueueConfig()
            settings.queue = QueueConfig(
                use_redis=_as_bool(q.get("use_redis", d.use_redis)),
                redis_url=q.get("redis_url", d.redis_url),
                prefix=q.get("prefix", d.prefix),
                default_delay_ms=_as_int(q.get("default_delay_ms"), d.default_delay_ms),
                max_queue_size=_as_int(q.get("max_queue_size"), d.max_queue_size),
                redis_grace_seconds=float(q.get("redis_grace_seconds", d.redis_grace_seconds)),
                enqueue_ready_timeout=float(q.get("enqueue_ready_timeout", d.enqueue_ready_timeout)),
                attempts=_as_int(q.get("attempts"), d.attempts),
                backoff_delay_ms=_as_int(q.get("backoff_delay_ms"), d.backoff_delay_ms),
                remove_on_complete=_as_int(q.get("remove_on_complete"), d.remove_on_complete),
                remove_on_fail=_as_int(q.get("remove_on_fail"), d.remove_on_fail),
                poll_interval=float(q.get("poll_interval", d.poll_interval)),
                message_preview_chars=_as_int(q.get("message_preview_chars"), d.message_preview_chars),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(url=db.get("url", settings.database.url))

        if "whatsapp" in raw:
            wa = raw["whatsapp"] or {}
            settings.whatsapp = WhatsAppConfig(
                bridge_url=wa.get("bridge_url", settings.whatsapp.bridge_url),
                api_token=wa.get("api_token", ""),
                timeout=float(wa.get("timeout", settings.whatsapp.timeout)),
            )

        if "api" in raw:
            api = raw["api"] or {}
            settings.api = ApiConfig(
                host=api.get("host", settings.api.host),
                port=_as_int(api.get("port"), settings.api.port),
                api_keys=list(api.get("api_keys") or []),
                allowed_origins=list(api.get("allowed_origins") or settings.api.allowed_origins),
            )

    _apply_env_overrides(settings, env)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
