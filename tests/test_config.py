import logging
import queue
import threading
import time

import pytest

from ngmon.config import (
    DEF_PROFILE_SECONDS,
    DEF_PROFILING_DATA_RETENTION_SECONDS,
    DEF_PROFILING_ENABLE,
    DEF_PROFILING_INTERVAL_SECONDS,
    DEF_PROFILING_TIMEOUT_SECONDS,
    PD,
    Config,
    ConfigError,
    ContinueProfilingConfig,
    Log,
    Security,
    Storage,
    get_default_config,
    get_global_config,
    init_config,
    reload_config,
    reload_routine,
    store_global_config,
    subscribe_config_change,
)


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def test_default_config():
    cfg = get_default_config()
    assert cfg.address == "0.0.0.0:12020"
    assert cfg.log.level == "INFO"
    assert cfg.log.path == ""
    assert cfg.storage.path == "data"
    assert cfg.pd.endpoints == []
    assert cfg.continue_profiling.to_dict() == {
        "enable": DEF_PROFILING_ENABLE,
        "profile_seconds": DEF_PROFILE_SECONDS,
        "interval_seconds": DEF_PROFILING_INTERVAL_SECONDS,
        "timeout_seconds": DEF_PROFILING_TIMEOUT_SECONDS,
        "data_retention_seconds": DEF_PROFILING_DATA_RETENTION_SECONDS,
    }


def test_default_config_is_fresh_copy():
    first = get_default_config()
    first.pd.endpoints.append("10.0.0.1:2379")
    first.continue_profiling.enable = True
    second = get_default_config()
    assert second.pd.endpoints == []
    assert second.continue_profiling.enable is DEF_PROFILING_ENABLE


@pytest.mark.parametrize(
    "values, expected",
    [
        ((10, 60, 120, 3600), True),
        ((0, 60, 120, 3600), False),
        ((10, 0, 120, 3600), False),
        ((10, 60, 0, 3600), False),
        ((10, 60, 120, 0), False),
        ((61, 60, 120, 3600), False),
        ((10, 60, 5, 3600), False),
        ((60, 60, 60, 1), True),
    ],
)
def test_continue_profiling_valid(values, expected):
    profile, interval, timeout, retention = values
    cfg = ContinueProfilingConfig(
        enable=True,
        profile_seconds=profile,
        interval_seconds=interval,
        timeout_seconds=timeout,
        data_retention_seconds=retention,
    )
    assert cfg.valid() is expected


def test_continue_profiling_round_trip():
    cfg = get_default_config().continue_profiling
    assert ContinueProfilingConfig.from_dict(cfg.to_dict()) == cfg


def test_continue_profiling_from_dict_ignores_unknown_and_missing():
    cfg = ContinueProfilingConfig.from_dict({"enable": True, "profile_seconds": 6.0, "other": 1})
    assert cfg.enable is True
    assert cfg.profile_seconds == 6
    assert cfg.interval_seconds == 0


@pytest.mark.parametrize(
    "data",
    [
        {"enable": 1},
        {"profile_seconds": "6"},
        {"profile_seconds": 6.5},
        {"interval_seconds": True},
        ["enable"],
    ],
)
def test_continue_profiling_from_dict_rejects_bad_types(data):
    with pytest.raises(ConfigError):
        ContinueProfilingConfig.from_dict(data)


def test_validate_default_with_endpoints():
    cfg = get_default_config()
    cfg.pd.endpoints = ["127.0.0.1:2379"]
    cfg.validate()
    assert cfg.to_dict()["pd"] == {"endpoints": ["127.0.0.1:2379"]}


def test_validate_empty_address():
    cfg = get_default_config()
    cfg.address = ""
    with pytest.raises(ConfigError, match="unexpected empty address"):
        cfg.validate()


def test_validate_empty_pd():
    with pytest.raises(ConfigError, match="unexpected empty pd endpoints"):
        get_default_config().validate()


def test_log_validate():
    with pytest.raises(ConfigError, match="unexpected empty log level"):
        Log(level="").validate()
    with pytest.raises(ConfigError) as info:
        Log(level="TRACE").validate()
    assert str(info.value) == "log level should be DEBUG, INFO, WARN or ERROR"


def test_storage_validate():
    with pytest.raises(ConfigError, match="unexpected empty storage path"):
        Storage(path="").validate()


def test_pd_equal_ignores_order():
    assert PD(["b:1", "a:1"]).equal(PD(["a:1", "b:1"])) is True
    assert PD(["a:1"]).equal(PD(["a:1", "b:1"])) is False
    assert PD(["a:1"]).equal(PD(["c:1"])) is False


def test_load_toml(tmp_path):
    path = _write(
        tmp_path / "ngm.toml",
        'address = "127.0.0.1:9000"\n'
        'advertise-address = "10.1.1.1:9000"\n'
        "[pd]\n"
        'endpoints = ["10.0.0.1:2379", "10.0.0.2:2379"]\n'
        "[log]\n"
        'path = "logs"\n'
        'level = "WARN"\n'
        "[storage]\n"
        'path = "store"\n'
        "[security]\n"
        'ca-path = "ca.pem"\n',
    )
    cfg = get_default_config()
    cfg.load(path)
    assert cfg.address == "127.0.0.1:9000"
    assert cfg.advertise_address == "10.1.1.1:9000"
    assert cfg.pd.endpoints == ["10.0.0.1:2379", "10.0.0.2:2379"]
    assert cfg.log == Log(path="logs", level="WARN")
    assert cfg.storage.path == "store"
    assert cfg.security.ca_path == "ca.pem"
    assert cfg.security.cert_path == ""


def test_load_keeps_unset_fields(tmp_path):
    path = _write(tmp_path / "ngm.toml", "[pd]\nendpoints = [\"a:1\"]\n")
    cfg = get_default_config()
    cfg.load(path)
    assert cfg.address == get_default_config().address
    assert cfg.pd.endpoints == ["a:1"]


def test_load_bad_type(tmp_path):
    path = _write(tmp_path / "ngm.toml", "address = 5\n")
    with pytest.raises(ConfigError):
        Config().load(path)


def test_load_bad_syntax(tmp_path):
    path = _write(tmp_path / "ngm.toml", "address = \n")
    with pytest.raises(ConfigError):
        Config().load(path)


def test_init_config_override_and_advertise(tmp_path):
    path = _write(tmp_path / "ngm.toml", '[pd]\nendpoints = ["10.0.0.1:2379"]\n')

    def override(cfg):
        cfg.address = "127.0.0.1:12021"

    cfg = init_config(str(path), override)
    assert cfg.address == "127.0.0.1:12021"
    assert cfg.advertise_address == "127.0.0.1:12021"
    assert cfg.pd.endpoints == ["10.0.0.1:2379"]
    assert get_global_config() is cfg


def test_init_config_invalid():
    with pytest.raises(ConfigError, match="unexpected empty pd endpoints"):
        init_config("", None)


def test_subscribe_config_change():
    ch = subscribe_config_change()
    cfg = get_default_config()
    store_global_config(cfg)
    assert ch.get(timeout=1) is cfg
    store_global_config(cfg)
    store_global_config(cfg)
    assert ch.get_nowait() is cfg
    with pytest.raises(queue.Empty):
        ch.get_nowait()


def test_http_scheme_and_partial_security():
    cfg = get_default_config()
    assert cfg.http_scheme() == "http"
    cfg.security = Security(ca_path="ca.pem", cert_path="cert.pem")
    assert cfg.security.tls_context() is None
    assert cfg.http_scheme() == "http"


def test_tls_context_missing_files(tmp_path):
    security = Security(
        ca_path=str(tmp_path / "ca.pem"),
        cert_path=str(tmp_path / "cert.pem"),
        key_path=str(tmp_path / "key.pem"),
    )
    with pytest.raises(ConfigError, match="Failed to load certificates"):
        security.tls_context()


def test_http_client_config():
    security = Security(ca_path="ca.pem", cert_path="cert.pem", key_path="key.pem")
    assert security.http_client_config() == {
        "tls_config": {"ca_file": "ca.pem", "cert_file": "cert.pem", "key_file": "key.pem"}
    }


def test_to_dict_keys():
    data = get_default_config().to_dict()
    assert data["address"] == "0.0.0.0:12020"
    assert data["storage"] == {"path": "data"}
    assert data["security"] == {"ca_path": "", "cert_path": "", "key_path": ""}
    assert data["continuous_profiling"]["timeout_seconds"] == DEF_PROFILING_TIMEOUT_SECONDS


def test_reload_config_changes_endpoints(tmp_path):
    current = get_default_config()
    current.pd.endpoints = ["a:1"]
    path = _write(tmp_path / "ngm.toml", '[pd]\nendpoints = ["b:1", "c:1"]\n')
    assert reload_config(path, current) is True
    assert current.pd.endpoints == ["b:1", "c:1"]
    assert get_global_config() is current
    assert reload_config(path, current) is False


def test_reload_config_rejects_empty_and_missing(tmp_path):
    current = get_default_config()
    current.pd.endpoints = ["a:1"]
    empty = _write(tmp_path / "empty.toml", 'address = "x:1"\n')
    assert reload_config(empty, current) is False
    assert reload_config(tmp_path / "missing.toml", current) is False
    assert current.pd.endpoints == ["a:1"]


def test_reload_routine_empty_path_returns():
    current = get_default_config()
    stop = threading.Event()
    worker = threading.Thread(target=reload_routine, args=(stop, "", current, threading.Event()))
    worker.start()
    worker.join(timeout=2)
    assert not worker.is_alive()


def test_reload_routine_reloads_on_trigger(tmp_path):
    current = get_default_config()
    current.pd.endpoints = ["a:1"]
    path = _write(tmp_path / "ngm.toml", '[pd]\nendpoints = ["d:1"]\n')
    stop = threading.Event()
    trigger = threading.Event()
    worker = threading.Thread(target=reload_routine, args=(stop, str(path), current, trigger))
    worker.start()
    trigger.set()
    deadline = time.monotonic() + 2
    while current.pd.endpoints != ["d:1"] and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    worker.join(timeout=2)
    assert current.pd.endpoints == ["d:1"]
    assert not worker.is_alive()


def test_init_default_logger_writes_file(tmp_path):
    logger = Log(path=str(tmp_path), level="DEBUG").init_default_logger()
    try:
        assert logger.level == logging.DEBUG
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in (tmp_path / "ng.log").read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


def test_init_default_logger_bad_level():
    with pytest.raises(ConfigError):
        Log(level="LOUD").init_default_logger()