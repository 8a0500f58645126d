"""Command line entry point of the monitoring server."""

from __future__ import annotations

import argparse
import contextlib
import csv
import logging
import os
import signal
import sqlite3
import sys
import threading
from typing import Sequence

from ngmon import document
from ngmon.app import Application, HTTPService, init_database, init_topsql, stop_database
from ngmon.config import Config, ConfigError, init_config, reload_config
from ngmon.persist import load_config_from_storage
from ngmon.utils import print_info

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ng-monitoring-server")
    parser.add_argument(
        "--address", dest="address", default=None,
        help="TCP address to listen for http connections",
    )
    parser.add_argument(
        "--pd.endpoints", dest="pd_endpoints", action="append", default=None,
        help="Addresses of PD instances within the TiDB cluster. Multiple addresses are "
        "separated by commas, e.g. --pd.endpoints 10.0.0.1:2379,10.0.0.2:2379",
    )
    parser.add_argument(
        "--log.path", dest="log_path", default=None, help="Log path of ng monitoring server"
    )
    parser.add_argument(
        "--storage.path", dest="storage_path", default=None,
        help="Storage path of ng monitoring server",
    )
    parser.add_argument("--config", dest="config", default=None, help="config file path")
    parser.add_argument(
        "--advertise-address", dest="advertise_address", default=None,
        help="ngm server advertise IP:PORT",
    )
    return parser


def _split_endpoints(values: Sequence[str]) -> list[str]:
    endpoints: list[str] = []
    for value in values:
        if value == "":
            continue
        endpoints.extend(next(csv.reader([value])))
    return endpoints


def override_config(cfg: Config, args: argparse.Namespace) -> None:
    """Apply the flags that were given on the command line to ``cfg``."""
    if args.address is not None:
        cfg.address = args.address
    if args.pd_endpoints is not None:
        cfg.pd.endpoints = _split_endpoints(args.pd_endpoints)
    if args.log_path is not None:
        cfg.log.path = args.log_path
    if args.storage_path is not None:
        cfg.storage.path = args.storage_path
    if args.advertise_address is not None:
        cfg.advertise_address = args.advertise_address


def must_create_dirs(cfg: Config) -> None:
    """Create the log directory, if one is set, and the storage directory."""
    if cfg.log.path:
        os.makedirs(cfg.log.path, exist_ok=True)
    os.makedirs(cfg.storage.path, exist_ok=True)


def _wait_for_signal(config_path: str, cfg: Config) -> str:
    received: list[str] = []
    done = threading.Event()

    def on_stop(signum: int, _frame: object) -> None:
        received.append(signal.Signals(signum).name)
        done.set()

    def on_hup(_signum: int, _frame: object) -> None:
        log.info("received SIGHUP and ready to reload config")
        try:
            reload_config(config_path, cfg)
        except Exception as exc:
            log.warning("failed to reload config: %s", exc)

    previous = {sig: signal.signal(sig, on_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is not None:
        if config_path:
            previous[sighup] = signal.signal(sighup, on_hup)
        else:
            log.warning(
                "failed to reload config due to empty config path. "
                'Please specify the command line argument "--config <path>"'
            )
    try:
        while not done.wait(0.5):
            pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return received[0]


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config_path = args.config or ""

    try:
        cfg = init_config(config_path, lambda c: override_config(c, args))
    except (ConfigError, OSError, ValueError) as exc:
        print(f"Failed to initialize config, err: {exc}", file=sys.stderr)
        return 1

    cfg.log.init_default_logger()
    print_info()
    log.info("config: %s", cfg.to_dict())

    try:
        must_create_dirs(cfg)
    except OSError as exc:
        log.error("failed to init log or storage path: %s", exc)
        return 1

    with contextlib.ExitStack() as cleanup:
        try:
            db = init_database(cfg)
        except (OSError, sqlite3.Error) as exc:
            log.error("failed to initialize database: %s", exc)
            return 1
        cleanup.callback(stop_database)

        try:
            load_config_from_storage(document.get)
        except (ConfigError, sqlite3.Error, RuntimeError) as exc:
            print(f"Failed to load config from storage, err: {exc}", file=sys.stderr)
            return 1

        try:
            topsql = init_topsql(db, None, None)
        except sqlite3.Error as exc:
            log.error("Failed to initialize topsql: %s", exc)
            return 1

        service = HTTPService(cfg.address, Application(topsql), cfg.log.path)
        try:
            service.start()
        except (OSError, ValueError) as exc:
            log.error("failed to listen, address: %s, error: %s", cfg.address, exc)
            return 1
        cleanup.callback(service.stop)

        sig = _wait_for_signal(config_path, cfg)
        log.info("received signal %s", sig)
    return 0


if __name__ == "__main__":
    sys.exit(main())