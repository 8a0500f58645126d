"""The document database: an SQLite store with its own log file and maintenance loop."""

from __future__ import annotations

import enum
import logging
import os
import sqlite3
import threading
import time
from typing import Any, TextIO

from ngmon.config import (
    LEVEL_DEBUG,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_WARN,
    Config,
    ConfigError,
)
from ngmon.utils import go_with_recovery

log = logging.getLogger(__name__)

DB_DIR_NAME = "docdb"
DB_FILE_NAME = "data.db"
LOG_DIR_NAME = "docdb-log"
LOG_FILE_NAME = "docdb.log"
GC_INTERVAL = 10 * 60.0


class LoggingLevel(enum.IntEnum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


_LEVELS = {
    LEVEL_DEBUG: LoggingLevel.DEBUG,
    LEVEL_INFO: LoggingLevel.INFO,
    LEVEL_WARN: LoggingLevel.WARN,
    LEVEL_ERROR: LoggingLevel.ERROR,
}


class StorageLogger:
    """Writes level-filtered, timestamped lines to the storage log file."""

    def __init__(self, stream: TextIO, level: LoggingLevel, prefix: str = "docdb ") -> None:
        self.stream = stream
        self.level = level
        self.prefix = prefix
        self._lock = threading.Lock()

    def _printf(self, fmt: str, args: tuple[Any, ...]) -> None:
        message = fmt % args if args else fmt
        line = f"{self.prefix}{time.strftime('%Y/%m/%d %H:%M:%S')} {message}"
        if not line.endswith("\n"):
            line += "\n"
        with self._lock:
            self.stream.write(line)
            self.stream.flush()

    def errorf(self, fmt: str, *args: Any) -> None:
        if self.level <= LoggingLevel.ERROR:
            self._printf("ERROR: " + fmt, args)

    def warningf(self, fmt: str, *args: Any) -> None:
        if self.level <= LoggingLevel.WARN:
            self._printf("WARN: " + fmt, args)

    def infof(self, fmt: str, *args: Any) -> None:
        if self.level <= LoggingLevel.INFO:
            self._printf("INFO: " + fmt, args)

    def debugf(self, fmt: str, *args: Any) -> None:
        if self.level <= LoggingLevel.DEBUG:
            self._printf("DEBUG: " + fmt, args)

    def close(self) -> None:
        with self._lock:
            self.stream.close()


def init_logger(cfg: Config) -> StorageLogger:
    """Open the storage log in the log path, or under the storage path if none is set."""
    level = _LEVELS.get(cfg.log.level)
    if level is None:
        raise ConfigError(f"Unsupported log level: {cfg.log.level}")
    if cfg.log.path:
        log_dir = cfg.log.path
    else:
        log_dir = os.path.join(cfg.storage.path, LOG_DIR_NAME)
        os.makedirs(log_dir, exist_ok=True)
    file_name = os.path.join(log_dir, LOG_FILE_NAME)
    try:
        stream = open(file_name, "a", encoding="utf-8")
    except OSError:
        log.warning("Failed to init logger, filename: %s", file_name)
        raise
    return StorageLogger(stream, level)


_db: sqlite3.Connection | None = None
_closed: threading.Event | None = None
_gc_thread: threading.Thread | None = None
_logger: StorageLogger | None = None


def _run_gc(conn: sqlite3.Connection, logger: StorageLogger | None) -> None:
    try:
        conn.execute("PRAGMA incremental_vacuum").fetchall()
    except sqlite3.Error as exc:
        log.error("document database vacuum failed: %s", exc)
        if logger is not None:
            logger.errorf("vacuum failed: %s", exc)
        return
    log.info("document database vacuum success")
    if logger is not None:
        logger.infof("vacuum success")


def _gc_loop(conn: sqlite3.Connection, closed: threading.Event, logger: StorageLogger | None) -> None:
    log.info("document database starts to run the vacuum loop")
    try:
        _run_gc(conn, logger)
        while not closed.wait(GC_INTERVAL):
            _run_gc(conn, logger)
    finally:
        log.info("document database stops running the vacuum loop")


def init(cfg: Config) -> sqlite3.Connection:
    """Open the document database under the storage path and start its maintenance loop."""
    global _db, _closed, _gc_thread, _logger
    data_path = os.path.join(cfg.storage.path, DB_DIR_NAME)
    try:
        logger: StorageLogger | None = init_logger(cfg)
    except OSError:
        logger = None
    os.makedirs(data_path, exist_ok=True)
    try:
        conn = sqlite3.connect(
            os.path.join(data_path, DB_FILE_NAME), check_same_thread=False, isolation_level=None
        )
        conn.execute("PRAGMA auto_vacuum = INCREMENTAL")
    except sqlite3.Error as exc:
        log.error("failed to open a document database, path: %s, error: %s", data_path, exc)
        if logger is not None:
            logger.close()
        raise

    closed = threading.Event()
    thread = threading.Thread(
        target=go_with_recovery,
        args=(lambda: _gc_loop(conn, closed, logger),),
        name="docdb-gc",
        daemon=True,
    )
    thread.start()
    _db, _closed, _gc_thread, _logger = conn, closed, thread, logger
    return conn


def get() -> sqlite3.Connection | None:
    return _db


def stop() -> None:
    """Stop the maintenance loop and close the database."""
    global _db, _closed, _gc_thread, _logger
    if _db is None or _closed is None:
        raise RuntimeError("document database is not initialized")
    _closed.set()
    if _gc_thread is not None:
        _gc_thread.join(timeout=5)
    _db.close()
    if _logger is not None:
        _logger.close()
    _db, _closed, _gc_thread, _logger = None, None, None, None