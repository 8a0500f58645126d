"""Persistence of runtime-modifiable settings in the document database."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Callable

from ngmon.config import (
    ConfigError,
    ContinueProfilingConfig,
    get_global_config,
    store_global_config,
)

log = logging.getLogger(__name__)

CONFIG_TABLE_NAME = "ng_monitoring_config"
CONTINUOUS_PROFILING_MODULE = "continuous_profiling"

_get_db: Callable[[], sqlite3.Connection] | None = None


def _db() -> sqlite3.Connection:
    if _get_db is None:
        raise RuntimeError("config storage is not initialized")
    return _get_db()


def load_config_from_storage(get_db: Callable[[], sqlite3.Connection]) -> None:
    """Create the config table if needed and apply the settings stored in it."""
    global _get_db
    _get_db = get_db
    db = get_db()
    with db:
        db.execute(
            f"CREATE TABLE IF NOT EXISTS {CONFIG_TABLE_NAME} "
            "(module TEXT PRIMARY KEY, config TEXT)"
        )
    rows = db.execute(f"SELECT module, config FROM {CONFIG_TABLE_NAME}").fetchall()
    if not rows:
        return

    global_cfg = get_global_config()
    if global_cfg is None:
        raise ConfigError("global config is not initialized")

    for module, cfg_str in rows:
        if module != CONTINUOUS_PROFILING_MODULE:
            raise ConfigError(
                f"unknow module config in storage, module: {module}, config: {cfg_str}"
            )
        try:
            data = json.loads(cfg_str)
        except (TypeError, ValueError) as exc:
            raise ConfigError(str(exc)) from exc
        new_cfg = (
            ContinueProfilingConfig() if data is None else ContinueProfilingConfig.from_dict(data)
        )
        if new_cfg.valid():
            global_cfg.continue_profiling = new_cfg
        else:
            log.info("load invalid config, module: %s, module-config: %s", module, new_cfg)
        log.info("load config from storage, module: %s, module-config: %s", module, cfg_str)
    store_global_config(global_cfg)


def save_config_into_storage() -> str:
    """Replace the stored settings with the current ones; return what was saved."""
    db = _db()
    cfg = get_global_config()
    if cfg is None:
        raise ConfigError("global config is not initialized")
    data = json.dumps(cfg.continue_profiling.to_dict(), separators=(",", ":"))
    with db:
        db.execute(f"DELETE FROM {CONFIG_TABLE_NAME}")
        db.execute(
            f"INSERT INTO {CONFIG_TABLE_NAME} (module, config) VALUES (?, ?)",
            (CONTINUOUS_PROFILING_MODULE, data),
        )
    log.info("save config into storage, module: %s, config: %s", CONTINUOUS_PROFILING_MODULE, data)
    return data