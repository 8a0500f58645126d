import json
import sqlite3

import pytest

from ngmon import config_service
from ngmon.config import ConfigError, get_default_config, get_global_config, store_global_config
from ngmon.persist import CONFIG_TABLE_NAME, load_config_from_storage


def _encode(body):
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    store_global_config(get_default_config())
    load_config_from_storage(lambda: conn)
    yield conn
    conn.close()


def test_get_config(db):
    status, body = config_service.handle_get_config()
    assert status == 200
    assert len(_encode(body)) > 10
    assert body == get_global_config().to_dict()
    assert body["continuous_profiling"]["timeout_seconds"] == 120


def test_http_service_cases(db):
    status, body = config_service.handle_post_config(
        b'{"continuous_profiling": {"enable": true,"profile_seconds":6,"interval_seconds":11}}'
    )
    assert status == 200
    assert body == {"status": "ok"}
    cfg = get_global_config()
    assert cfg.continue_profiling.enable is True
    assert cfg.continue_profiling.profile_seconds == 6
    assert cfg.continue_profiling.interval_seconds == 11

    status, body = config_service.handle_post_config(
        b'{"continuous_profiling": {"enable": true,"profile_seconds":1000,"interval_seconds":11}}'
    )
    assert status == 503
    assert _encode(body) == (
        '{"message":"new config is invalid: {\\"data_retention_seconds\\":259200,'
        '\\"enable\\":true,\\"interval_seconds\\":11,\\"profile_seconds\\":1000,'
        '\\"timeout_seconds\\":120}","status":"error"}'
    )

    status, body = config_service.handle_post_config(b"")
    assert status == 503
    assert _encode(body) == '{"message":"EOF","status":"error"}'

    status, body = config_service.handle_post_config(b'{"unknown_module": {"enable": true}}')
    assert status == 503
    assert _encode(body) == (
        '{"message":"config unknown_module not support modify or unknow","status":"error"}'
    )

    cfg = get_global_config()
    assert cfg.continue_profiling.enable is True
    assert cfg.continue_profiling.profile_seconds == 6
    assert cfg.continue_profiling.interval_seconds == 11


def test_successful_modify_is_saved(db):
    config_service.modify_config('{"continuous_profiling": {"enable": true}}')
    rows = db.execute(f"SELECT config FROM {CONFIG_TABLE_NAME}").fetchall()
    assert len(rows) == 1
    assert json.loads(rows[0][0]) == get_global_config().continue_profiling.to_dict()


def test_unknown_field_rejected(db):
    with pytest.raises(ConfigError, match="unknow config `foo`"):
        config_service.modify_continuous_profiling({"foo": 1})


def test_non_object_module_value_rejected(db):
    with pytest.raises(ConfigError, match="continuous_profiling config value is invalid: 5"):
        config_service.modify_config(b'{"continuous_profiling": 5}')


def test_wrong_value_type_rejected(db):
    status, _ = config_service.handle_post_config(b'{"continuous_profiling": {"enable": "yes"}}')
    assert status == 503
    assert get_global_config().continue_profiling.enable is False


def test_null_body_is_accepted(db):
    before = get_global_config().to_dict()
    assert config_service.handle_post_config(b"null") == (200, {"status": "ok"})
    assert get_global_config().to_dict() == before