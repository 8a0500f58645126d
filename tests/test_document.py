import io
import os

import pytest

from ngmon import document
from ngmon.config import ConfigError, get_default_config
from ngmon.document import LoggingLevel, StorageLogger


def _cfg(tmp_path, log_path="", level="INFO"):
    cfg = get_default_config()
    cfg.storage.path = str(tmp_path / "storage")
    cfg.log.path = log_path
    cfg.log.level = level
    return cfg


def test_init_logger_uses_log_path(tmp_path):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    logger = document.init_logger(_cfg(tmp_path, log_path=str(log_dir)))
    logger.errorf("boom %d", 42)
    logger.close()
    content = (log_dir / "docdb.log").read_text()
    assert content.count("\n") == 1
    assert content.rstrip("\n").endswith("ERROR: boom 42")


def test_init_logger_defaults_under_storage(tmp_path):
    cfg = _cfg(tmp_path)
    logger = document.init_logger(cfg)
    logger.infof("hello")
    logger.close()
    path = os.path.join(cfg.storage.path, "docdb-log", "docdb.log")
    with open(path) as fh:
        assert "INFO: hello" in fh.read()


def test_logger_appends(tmp_path):
    cfg = _cfg(tmp_path)
    for word in ("first", "second"):
        logger = document.init_logger(cfg)
        logger.warningf(word)
        logger.close()
    with open(os.path.join(cfg.storage.path, "docdb-log", "docdb.log")) as fh:
        lines = fh.read().splitlines()
    assert [line.split("WARN: ")[1] for line in lines] == ["first", "second"]


def test_level_filtering():
    out = io.StringIO()
    logger = StorageLogger(out, LoggingLevel.WARN)
    logger.debugf("d")
    logger.infof("i")
    logger.warningf("w")
    logger.errorf("e")
    lines = out.getvalue().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("WARN: w")
    assert lines[1].endswith("ERROR: e")


def test_debug_level_writes_everything():
    out = io.StringIO()
    logger = StorageLogger(out, LoggingLevel.DEBUG)
    logger.debugf("%s", "a")
    logger.infof("%s", "b")
    logger.warningf("%s", "c")
    logger.errorf("%s", "d")
    tails = [line.split(": ", 1)[1] for line in out.getvalue().splitlines()]
    assert tails == ["a", "b", "c", "d"]


def test_init_logger_rejects_unknown_level(tmp_path):
    with pytest.raises(ConfigError):
        document.init_logger(_cfg(tmp_path, level="TRACE"))


def test_init_get_stop_round_trip(tmp_path):
    cfg = _cfg(tmp_path)
    db = document.init(cfg)
    assert document.get() is db
    db.execute("CREATE TABLE IF NOT EXISTS kv (k TEXT PRIMARY KEY, v TEXT)")
    db.execute("INSERT INTO kv VALUES (?, ?)", ("key", "value"))
    document.stop()
    assert document.get() is None

    db = document.init(cfg)
    try:
        assert db.execute("SELECT v FROM kv WHERE k = ?", ("key",)).fetchone() == ("value",)
        assert os.path.isdir(os.path.join(cfg.storage.path, "docdb"))
    finally:
        document.stop()


def test_stop_without_init_raises():
    with pytest.raises(RuntimeError):
        document.stop()