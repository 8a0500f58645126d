"""The HTTP front of the server: routing, the WSGI application and the listener."""

from __future__ import annotations

import json
import logging
import os
import platform
import socket
import sqlite3
import sys
import threading
import time
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable, Mapping, TextIO
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from ngmon import document
from ngmon.config import Config
from ngmon.config_service import handle_get_config, handle_post_config
from ngmon.query import DefaultQuery, SelectHandler
from ngmon.store import DefaultStore, InsertHandler
from ngmon.topsql_service import TopSQLService
from ngmon.utils import go_with_recovery

log = logging.getLogger(__name__)

JSON_TYPE = "application/json; charset=utf-8"
TEXT_TYPE = "text/plain; charset=utf-8"
METRICS_TYPE = "text/plain; version=0.0.4; charset=utf-8"
SERVICE_LOG_NAME = "service.log"

Response = tuple[int, str, bytes]

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _json(value: Any, *, sort_top: bool = False) -> bytes:
    if sort_top and isinstance(value, dict):
        value = dict(sorted(value.items()))
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in _HTML_ESCAPES:
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def _not_found() -> Response:
    return 404, TEXT_TYPE, b"404 page not found"


class Application:
    """Routes requests to the health, config, Top SQL and metrics handlers."""

    def __init__(self, topsql: TopSQLService | None = None) -> None:
        self._topsql_routes = topsql.routes() if topsql is not None else {}
        self._started = time.time()

    def handle(
        self,
        method: str,
        path: str,
        query: Mapping[str, Any] | None = None,
        body: bytes | str = b"",
    ) -> Response:
        """Serve one request; return (status, content type, body)."""
        try:
            return self._dispatch(method.upper(), path, query or {}, body)
        except Exception:
            log.exception("panic recovered while serving %s %s", method, path)
            return 500, TEXT_TYPE, b""

    def _dispatch(
        self, method: str, path: str, query: Mapping[str, Any], body: bytes | str
    ) -> Response:
        if path == "/health":
            if method != "GET":
                return _not_found()
            return 200, JSON_TYPE, _json({"health": True})

        if path == "/config":
            if method == "GET":
                status, payload = handle_get_config()
                return status, JSON_TYPE, _json(payload)
            if method == "POST":
                status, payload = handle_post_config(body)
                return status, JSON_TYPE, _json(payload, sort_top=True)
            return _not_found()

        if path == "/metrics":
            return 200, METRICS_TYPE, self._metrics()

        if path.startswith("/topsql/") and method == "GET":
            route = self._topsql_routes.get(path[len("/topsql"):])
            if route is None:
                return _not_found()
            status, payload = route(query)
            return status, JSON_TYPE, _json(payload, sort_top=True)

        return _not_found()

    def _metrics(self) -> bytes:
        lines = [
            "# HELP process_start_time_seconds Start time of the process since unix epoch in seconds.",
            "# TYPE process_start_time_seconds gauge",
            f"process_start_time_seconds {self._started:.3f}",
            "# HELP python_info Python platform information.",
            "# TYPE python_info gauge",
            f'python_info{{implementation="{platform.python_implementation()}",'
            f'version="{platform.python_version()}"}} 1',
        ]
        return ("\n".join(lines) + "\n").encode("utf-8")

    def __call__(
        self, environ: Mapping[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET")
        path = environ.get("PATH_INFO", "/") or "/"
        query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""

        status, content_type, payload = self.handle(method, path, query, body)
        phrase = HTTPStatus(status).phrase
        start_response(
            f"{status} {phrase}",
            [("Content-Type", content_type), ("Content-Length", str(len(payload)))],
        )
        return [payload]


class _Server(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _Server6(_Server):
    address_family = socket.AF_INET6


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"address {address}: invalid port") from None


def _handler_for(stream: TextIO) -> type[WSGIRequestHandler]:
    lock = threading.Lock()

    class _Handler(WSGIRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            stamp = time.strftime("%Y/%m/%d - %H:%M:%S")
            line = f"[HTTP] {stamp} | {self.address_string()} | {format % args}\n"
            with lock:
                stream.write(line)
                stream.flush()

    return _Handler


class HTTPService:
    """Serves an application on a TCP address in a background thread."""

    def __init__(self, address: str, app: Callable[..., Iterable[bytes]], log_path: str = "") -> None:
        self._address = address
        self._app = app
        self._log_path = log_path
        self._server: WSGIServer | None = None
        self._thread: threading.Thread | None = None
        self._log_stream: TextIO | None = None

    def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("http service is already running")
        host, port = _split_host_port(self._address)
        if self._log_path:
            stream: TextIO = open(
                os.path.join(self._log_path, SERVICE_LOG_NAME), "a", encoding="utf-8"
            )
            self._log_stream = stream
        else:
            stream = sys.stdout
        server_class = _Server6 if ":" in host else _Server
        try:
            self._server = make_server(
                host, port, self._app,
                server_class=server_class,
                handler_class=_handler_for(stream),
            )
        except OSError as exc:
            log.error("failed to listen, address: %s, error: %s", self._address, exc)
            self._close_log()
            raise
        self._thread = threading.Thread(
            target=go_with_recovery,
            args=(self._server.serve_forever,),
            name="http-service",
            daemon=True,
        )
        self._thread.start()
        log.info("starting http service, address: %s", self._address)

    def stop(self) -> None:
        if self._server is None:
            return
        log.info("shutting down http server")
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        self._close_log()
        log.info("http server is down")

    def address(self) -> str:
        """The address the service is bound to, as host:port."""
        if self._server is None:
            raise RuntimeError("http service is not running")
        host, port = self._server.server_address[:2]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"

    def _close_log(self) -> None:
        if self._log_stream is not None:
            self._log_stream.close()
            self._log_stream = None


def init_topsql(
    db: sqlite3.Connection,
    insert_handler: InsertHandler | None,
    select_handler: SelectHandler | None,
) -> TopSQLService:
    """Set up the Top SQL store and query over ``db`` and return its HTTP service."""
    DefaultStore(insert_handler, db)
    return TopSQLService(DefaultQuery(select_handler, db))


def init_database(cfg: Config) -> sqlite3.Connection:
    """Open the databases under the storage path."""
    conn = document.init(cfg)
    log.info("Initialize database successfully, path: %s", cfg.storage.path)
    return conn


def stop_database() -> None:
    log.info("Stopping document database")
    document.stop()
    log.info("Stop document database successfully")