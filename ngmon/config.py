"""Server configuration: defaults, TOML loading, validation and reloading."""

from __future__ import annotations

import logging
import os
import queue
import signal
import ssl
import sys
import threading
import tomllib
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping

log = logging.getLogger(__name__)

DEF_PROFILING_ENABLE = False
DEF_PROFILING_INTERVAL_SECONDS = 60
DEF_PROFILE_SECONDS = 10
DEF_PROFILING_TIMEOUT_SECONDS = 120
DEF_PROFILING_DATA_RETENTION_SECONDS = 3 * 24 * 60 * 60  # 3 days

LEVEL_DEBUG = "DEBUG"
LEVEL_INFO = "INFO"
LEVEL_WARN = "WARN"
LEVEL_ERROR = "ERROR"

_LOGGING_LEVELS = {
    LEVEL_DEBUG: logging.DEBUG,
    LEVEL_INFO: logging.INFO,
    LEVEL_WARN: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}

_POLL_INTERVAL = 0.05


class ConfigError(Exception):
    """Raised for an invalid or unreadable configuration."""


def _expect_str(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key}: expected a string, got {type(value).__name__}")
    return value


def _expect_table(value: Any, key: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key}: expected a table, got {type(value).__name__}")
    return value


@dataclass
class PD:
    endpoints: list[str] = field(default_factory=list)

    def validate(self) -> None:
        if not self.endpoints:
            raise ConfigError(
                "unexpected empty pd endpoints, please specify at least one, "
                'e.g. --pd.endpoints "127.0.0.1:2379"'
            )

    def equal(self, other: PD) -> bool:
        return sorted(self.endpoints) == sorted(other.endpoints)


@dataclass
class Storage:
    path: str = ""

    def validate(self) -> None:
        if not self.path:
            raise ConfigError("unexpected empty storage path")


@dataclass
class Log:
    path: str = ""
    level: str = ""

    def validate(self) -> None:
        if not self.level:
            raise ConfigError("unexpected empty log level")
        if self.level not in _LOGGING_LEVELS:
            raise ConfigError(
                f"log level should be {LEVEL_DEBUG}, {LEVEL_INFO}, {LEVEL_WARN} or {LEVEL_ERROR}"
            )

    def init_default_logger(self) -> logging.Logger:
        """Configure the package logger: a file in ``path`` or stdout."""
        if self.level not in _LOGGING_LEVELS:
            raise ConfigError(f"unsupported log level: {self.level!r}")
        logger = logging.getLogger(__name__.partition(".")[0])
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        if self.path:
            handler: logging.Handler = logging.FileHandler(os.path.join(self.path, "ng.log"))
        else:
            handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s")
        )
        logger.addHandler(handler)
        logger.setLevel(_LOGGING_LEVELS[self.level])
        return logger


@dataclass
class Security:
    ca_path: str = ""
    cert_path: str = ""
    key_path: str = ""
    _tls: ssl.SSLContext | None = field(default=None, init=False, repr=False, compare=False)

    def tls_context(self) -> ssl.SSLContext | None:
        """Client TLS context, or None unless CA, certificate and key are all set."""
        if self._tls is not None:
            return self._tls
        if not (self.ca_path and self.cert_path and self.key_path):
            return None
        try:
            context = ssl.create_default_context(cafile=self.ca_path)
            context.load_cert_chain(certfile=self.cert_path, keyfile=self.key_path)
        except (OSError, ssl.SSLError) as exc:
            raise ConfigError(f"Failed to load certificates: {exc}") from exc
        self._tls = context
        return context

    def http_client_config(self) -> dict[str, dict[str, str]]:
        return {
            "tls_config": {
                "ca_file": self.ca_path,
                "cert_file": self.cert_path,
                "key_file": self.key_path,
            }
        }

    def to_dict(self) -> dict[str, str]:
        return {"ca_path": self.ca_path, "cert_path": self.cert_path, "key_path": self.key_path}


@dataclass
class ContinueProfilingConfig:
    enable: bool = False
    profile_seconds: int = 0
    interval_seconds: int = 0
    timeout_seconds: int = 0
    data_retention_seconds: int = 0

    def valid(self) -> bool:
        if 0 in (
            self.profile_seconds,
            self.interval_seconds,
            self.timeout_seconds,
            self.data_retention_seconds,
        ):
            return False
        if self.profile_seconds > self.interval_seconds or self.profile_seconds > self.timeout_seconds:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContinueProfilingConfig:
        """Build from a decoded JSON object; unknown keys and nulls are ignored."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"cannot decode {type(data).__name__} into continuous profiling config")
        cfg = cls()
        names = set(asdict(cfg))
        for key, value in data.items():
            if key not in names or value is None:
                continue
            if key == "enable":
                if not isinstance(value, bool):
                    raise ConfigError(f"cannot use {value!r} as bool for field {key}")
            else:
                if (
                    isinstance(value, bool)
                    or not isinstance(value, (int, float))
                    or (isinstance(value, float) and not value.is_integer())
                ):
                    raise ConfigError(f"cannot use {value!r} as int for field {key}")
                value = int(value)
            setattr(cfg, key, value)
        return cfg


@dataclass
class Config:
    address: str = ""
    advertise_address: str = ""
    pd: PD = field(default_factory=PD)
    log: Log = field(default_factory=Log)
    storage: Storage = field(default_factory=Storage)
    continue_profiling: ContinueProfilingConfig = field(default_factory=ContinueProfilingConfig)
    security: Security = field(default_factory=Security)

    def load(self, file_name: str | os.PathLike[str]) -> None:
        """Overlay the settings found in a TOML file onto this config."""
        with open(file_name, "rb") as fh:
            try:
                data = tomllib.load(fh)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(str(exc)) from exc
        self._apply(data)

    def _apply(self, data: Mapping[str, Any]) -> None:
        if "address" in data:
            self.address = _expect_str(data["address"], "address")
        if "advertise-address" in data:
            self.advertise_address = _expect_str(data["advertise-address"], "advertise-address")
        if "pd" in data:
            pd = _expect_table(data["pd"], "pd")
            if "endpoints" in pd:
                endpoints = pd["endpoints"]
                if not isinstance(endpoints, list):
                    raise ConfigError("pd.endpoints: expected an array of strings")
                self.pd.endpoints = [_expect_str(e, "pd.endpoints") for e in endpoints]
        if "log" in data:
            table = _expect_table(data["log"], "log")
            if "path" in table:
                self.log.path = _expect_str(table["path"], "log.path")
            if "level" in table:
                self.log.level = _expect_str(table["level"], "log.level")
        if "storage" in data:
            table = _expect_table(data["storage"], "storage")
            if "path" in table:
                self.storage.path = _expect_str(table["path"], "storage.path")
        if "security" in data:
            table = _expect_table(data["security"], "security")
            for toml_key, attr in (("ca-path", "ca_path"), ("cert-path", "cert_path"), ("key-path", "key_path")):
                if toml_key in table:
                    setattr(self.security, attr, _expect_str(table[toml_key], f"security.{toml_key}"))

    def validate(self) -> None:
        if not self.address:
            raise ConfigError("unexpected empty address")
        self.pd.validate()
        self.log.validate()
        self.storage.validate()

    def http_scheme(self) -> str:
        return "https" if self.security.tls_context() is not None else "http"

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "advertise_address": self.advertise_address,
            "pd": {"endpoints": list(self.pd.endpoints)},
            "log": {"path": self.log.path, "level": self.log.level},
            "storage": {"path": self.storage.path},
            "continuous_profiling": self.continue_profiling.to_dict(),
            "security": self.security.to_dict(),
        }


def _default_config() -> Config:
    return Config(
        address="0.0.0.0:12020",
        pd=PD(endpoints=[]),
        log=Log(path="", level=LEVEL_INFO),
        storage=Storage(path="data"),
        continue_profiling=ContinueProfilingConfig(
            enable=DEF_PROFILING_ENABLE,
            profile_seconds=DEF_PROFILE_SECONDS,
            interval_seconds=DEF_PROFILING_INTERVAL_SECONDS,
            timeout_seconds=DEF_PROFILING_TIMEOUT_SECONDS,
            data_retention_seconds=DEF_PROFILING_DATA_RETENTION_SECONDS,
        ),
    )


_global_lock = threading.Lock()
_global_config: Config | None = None
_subscribers: list[queue.Queue[Config]] = []


def subscribe_config_change() -> queue.Queue[Config]:
    """Return a queue that receives the config whenever it is replaced."""
    ch: queue.Queue[Config] = queue.Queue(maxsize=1)
    with _global_lock:
        _subscribers.append(ch)
    return ch


def _notify_config_change(config: Config) -> None:
    with _global_lock:
        subscribers = list(_subscribers)
    for ch in subscribers:
        try:
            ch.put_nowait(config)
        except queue.Full:
            pass


def get_global_config() -> Config | None:
    with _global_lock:
        return _global_config


def get_default_config() -> Config:
    return _default_config()


def store_global_config(config: Config) -> None:
    global _global_config
    with _global_lock:
        _global_config = config
    _notify_config_change(config)


def init_config(
    config_path: str | os.PathLike[str] | None,
    override: Callable[[Config], None] | None,
) -> Config:
    """Build, validate and publish the startup configuration."""
    config = _default_config()
    if config_path:
        config.load(config_path)
    if override is not None:
        override(config)
    if not config.advertise_address:
        config.advertise_address = config.address
    config.validate()
    store_global_config(config)
    return config


def reload_config(config_path: str | os.PathLike[str], current: Config) -> bool:
    """Reload PD endpoints from the file; return True if they changed."""
    new_cfg = Config()
    try:
        new_cfg.load(config_path)
    except (OSError, ConfigError) as exc:
        log.warning("failed to reload config: %s", exc)
        return False
    if not new_cfg.pd.endpoints:
        log.warning("unexpected empty PD endpoints")
        return False
    if current.pd.equal(new_cfg.pd):
        return False
    current.pd = new_cfg.pd
    store_global_config(current)
    log.info("PD endpoints changed: %s", current.pd.endpoints)
    return True


def _sighup_event() -> threading.Event:
    event = threading.Event()
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is None:
        return event
    try:
        signal.signal(sighup, lambda _signum, _frame: event.set())
    except ValueError:
        log.warning("cannot install SIGHUP handler outside the main thread")
    return event


def reload_routine(
    stop: threading.Event,
    config_path: str | os.PathLike[str] | None,
    current: Config,
    trigger: threading.Event | None = None,
) -> None:
    """Reload the config each time ``trigger`` is set, until ``stop`` is set.

    Without a trigger, one set by SIGHUP is used.
    """
    if not config_path:
        log.warning(
            "failed to reload config due to empty config path. "
            'Please specify the command line argument "--config <path>"'
        )
        return
    if trigger is None:
        trigger = _sighup_event()
    while not stop.is_set():
        if not trigger.wait(_POLL_INTERVAL):
            continue
        trigger.clear()
        if stop.is_set():
            return
        log.info("received SIGHUP and ready to reload config")
        reload_config(config_path, current)