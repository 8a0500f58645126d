import copy

import pytest

from ngmon.cli import build_parser, main, must_create_dirs, override_config
from ngmon.config import get_default_config


def _default():
    return copy.deepcopy(get_default_config())


def test_override_comma_separated_endpoints():
    args = build_parser().parse_args(["--pd.endpoints", "10.0.0.1:2379,10.0.0.2:2379"])
    cfg = _default()
    override_config(cfg, args)
    assert cfg.pd.endpoints == ["10.0.0.1:2379", "10.0.0.2:2379"]


def test_override_repeated_endpoints_accumulate():
    args = build_parser().parse_args(
        ["--pd.endpoints", "10.0.0.1:2379", "--pd.endpoints", "10.0.0.2:2379"]
    )
    cfg = _default()
    override_config(cfg, args)
    assert cfg.pd.endpoints == ["10.0.0.1:2379", "10.0.0.2:2379"]


def test_unset_flags_keep_defaults():
    args = build_parser().parse_args([])
    cfg = _default()
    override_config(cfg, args)
    default = _default()
    assert cfg.address == default.address
    assert cfg.storage.path == default.storage.path
    assert cfg.log.path == default.log.path
    assert cfg.pd.endpoints == default.pd.endpoints


def test_given_flags_override_even_when_empty():
    args = build_parser().parse_args(
        [
            "--address", "127.0.0.1:12020",
            "--log.path", "",
            "--storage.path", "store",
            "--advertise-address", "10.0.0.9:12020",
        ]
    )
    cfg = _default()
    cfg.log.path = "logs"
    override_config(cfg, args)
    assert cfg.address == "127.0.0.1:12020"
    assert cfg.log.path == ""
    assert cfg.storage.path == "store"
    assert cfg.advertise_address == "10.0.0.9:12020"


def test_must_create_dirs(tmp_path):
    cfg = _default()
    cfg.log.path = str(tmp_path / "log")
    cfg.storage.path = str(tmp_path / "data" / "nested")
    must_create_dirs(cfg)
    assert (tmp_path / "log").is_dir()
    assert (tmp_path / "data" / "nested").is_dir()
    must_create_dirs(cfg)
    assert (tmp_path / "data" / "nested").is_dir()


def test_must_create_dirs_fails_on_file(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    cfg = _default()
    cfg.log.path = ""
    cfg.storage.path = str(blocker)
    with pytest.raises(OSError):
        must_create_dirs(cfg)


def test_main_without_pd_endpoints_fails(tmp_path, capsys):
    code = main(["--storage.path", str(tmp_path)])
    assert code == 1
    assert "Failed to initialize config" in capsys.readouterr().err


def test_main_with_missing_config_file_fails(tmp_path, capsys):
    code = main(
        ["--config", str(tmp_path / "absent.toml"), "--pd.endpoints", "127.0.0.1:2379"]
    )
    assert code == 1
    assert "Failed to initialize config" in capsys.readouterr().err