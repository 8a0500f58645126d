"""HTTP handlers for reading and changing the server configuration."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Mapping

from ngmon.config import (
    ConfigError,
    ContinueProfilingConfig,
    get_global_config,
    store_global_config,
)
from ngmon.persist import save_config_into_storage

log = logging.getLogger(__name__)


def handle_get_config() -> tuple[int, dict[str, Any] | None]:
    """Return the status code and body for a config read."""
    cfg = get_global_config()
    return 200, (cfg.to_dict() if cfg is not None else None)


def handle_post_config(body: bytes | str) -> tuple[int, dict[str, str]]:
    """Apply a config change and return the status code and body."""
    try:
        modify_config(body)
    except (ConfigError, sqlite3.Error, OSError, RuntimeError) as exc:
        return 503, {"status": "error", "message": str(exc)}
    return 200, {"status": "ok"}


def modify_config(body: bytes | str) -> None:
    """Decode a JSON object of module settings and apply each of them."""
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ConfigError(str(exc)) from exc
    text = body.lstrip(" \t\r\n")
    if not text:
        raise ConfigError("EOF")
    try:
        request, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(str(exc)) from exc
    if request is None:
        return
    if not isinstance(request, dict):
        raise ConfigError(f"cannot decode {type(request).__name__} into a config object")

    for key, value in request.items():
        if key != "continuous_profiling":
            raise ConfigError(f"config {key} not support modify or unknow")
        if not isinstance(value, dict):
            raise ConfigError(f"{key} config value is invalid: {value}")
        modify_continuous_profiling(value)


def _same(old: Any, new: Any) -> bool:
    if isinstance(old, bool) or isinstance(new, bool):
        return isinstance(old, bool) and isinstance(new, bool) and old == new
    return old == new


def modify_continuous_profiling(changes: Mapping[str, Any]) -> None:
    """Merge ``changes`` into the continuous profiling settings, validate and save."""
    cfg = get_global_config()
    if cfg is None:
        raise ConfigError("global config is not initialized")
    current = cfg.continue_profiling.to_dict()

    for key, new_value in changes.items():
        if key not in current:
            raise ConfigError(f"unknow config `{key}`")
        old_value = current[key]
        if _same(old_value, new_value):
            continue
        current[key] = new_value
        log.info(
            "handle continuous profiling config modify, name: %s, old-value: %r, new-value: %r",
            key, old_value, new_value,
        )

    data = json.dumps(current, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    new_cfg = ContinueProfilingConfig.from_dict(json.loads(data))
    if not new_cfg.valid():
        raise ConfigError(f"new config is invalid: {data}")
    cfg.continue_profiling = new_cfg
    store_global_config(cfg)
    save_config_into_storage()