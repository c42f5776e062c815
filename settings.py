"""Process configuration read from environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

_FALSE_VALUES = {"0", "false", "no", "off"}
_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when an environment variable holds an invalid value."""


@dataclass(frozen=True)
class Settings:
    """Everything the server needs to start."""

    templates_dir: Path
    assets_dir: Path
    host: str = "0.0.0.0"
    port: int = 8080
    live_reload: bool = True
    debounce: float = 0.1  # seconds
    listener_queue_size: int = 16
    log_level: str = "INFO"


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> Settings:
    """Build Settings from the environment, resolving paths against cwd."""

    env = os.environ if environ is None else environ
    base = Path.cwd() if cwd is None else cwd

    port = _parse_int(env.get("PORT", "8080"), "PORT")
    if not 1 <= port <= 65535:
        raise ConfigError("PORT must be between 1 and 65535")

    debounce_ms = _parse_int(env.get("RELOAD_DEBOUNCE_MS", "100"), "RELOAD_DEBOUNCE_MS")
    if debounce_ms < 0:
        raise ConfigError("RELOAD_DEBOUNCE_MS must not be negative")

    queue_size = _parse_int(env.get("LISTENER_QUEUE_SIZE", "16"), "LISTENER_QUEUE_SIZE")
    if queue_size < 1:
        raise ConfigError("LISTENER_QUEUE_SIZE must be at least 1")

    log_level = env.get("LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL {log_level!r} is not a logging level")

    host = env.get("HOST", "0.0.0.0").strip()
    if not host:
        raise ConfigError("HOST must not be empty")

    return Settings(
        templates_dir=_resolve(env.get("TEMPLATES_DIR", "templates"), base),
        assets_dir=_resolve(env.get("ASSETS_DIR", "assets"), base),
        host=host,
        port=port,
        live_reload=_parse_bool(env.get("LIVE_RELOAD", "1"), "LIVE_RELOAD"),
        debounce=debounce_ms / 1000.0,
        listener_queue_size=queue_size,
        log_level=log_level,
    )


def _resolve(raw: str, base: Path) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _parse_bool(value: str, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be one of: {', '.join(sorted(_TRUE_VALUES | _FALSE_VALUES))}")
