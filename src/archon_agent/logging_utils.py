from __future__ import annotations

import collections
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, OrderedDict

from .config import LogConfig

_MAX_CACHED_LOGGERS = 16
_MAX_FIELD_CHARS = 2000
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


def setup_rotating_logger(name: str, log_config: LogConfig) -> logging.Logger:
    """
    Configure (or retrieve) an isolated rotating logger for the given name.
    Each logger owns a single handler so repeated runs never stack handlers.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        return existing

    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        for h in list(evicted.handlers):
            try:
                h.close()
            except Exception:
                pass
        evicted.handlers.clear()
    return logger


def _normalize_field(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [_normalize_field(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _normalize_field(v) for k, v in value.items()}
    text = str(value)
    if len(text) > _MAX_FIELD_CHARS:
        return text[:_MAX_FIELD_CHARS] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a single JSON line describing a structured event."""
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _normalize_field(value)
    if exc is not None:
        payload["error"] = str(exc) or type(exc).__name__
        payload["error_type"] = type(exc).__name__
    try:
        logger.log(level, json.dumps(payload, sort_keys=False))
    except Exception:
        pass


def configure_console(level: int = logging.INFO) -> None:
    """Mirror package logs to stderr for CI runs."""
    root = logging.getLogger("archon_agent")
    if any(getattr(h, "_archon_console", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
    handler._archon_console = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)


__all__ = ["configure_console", "log_event", "setup_rotating_logger"]
