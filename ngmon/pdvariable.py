"""Watches the cluster's global variables kept in the PD key-value store."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Iterable, Protocol

from ngmon.utils import go_with_recovery

log = logging.getLogger(__name__)

GLOBAL_CONFIG_PATH = "/global/config/"
DEFAULT_RETRY_COUNT = 5
DEFAULT_RETRY_INTERVAL = 0.2
LOAD_INTERVAL = 60.0
REWATCH_DELAY = 1.0

EVENT_PUT = "PUT"
EVENT_DELETE = "DELETE"

_POLL_INTERVAL = 0.1
_WATCH_CLOSED = object()

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class _Client(Protocol):
    def get(self, prefix: str) -> Iterable[tuple[Any, Any]]: ...

    def watch(self, prefix: str) -> Iterable[Iterable[tuple[str, Any, Any]]]: ...


@dataclass
class PDVariable:
    enable_top_sql: bool = False


def default_pd_variable() -> PDVariable:
    return PDVariable(enable_top_sql=False)


def parse_bool(value: str) -> bool:
    """Parse the boolean spellings accepted by the PD store."""
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _close_queue(ch: queue.Queue) -> None:
    while True:
        try:
            ch.put_nowait(None)
            return
        except queue.Full:
            try:
                ch.get_nowait()
            except queue.Empty:
                pass


class VariableLoader:
    """Keeps ``cfg`` in step with the store and notifies subscribers of changes.

    ``client.get(prefix)`` returns (key, value) pairs; ``client.watch(prefix)``
    yields batches of (kind, key, value) events, kind being EVENT_PUT or
    EVENT_DELETE, and ends when the watch is closed.
    """

    def __init__(self, client: _Client) -> None:
        self._client = client
        self.cfg = default_pd_variable()
        self._lock = threading.RLock()
        self._subscribers: list[queue.Queue[PDVariable | None]] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def parse_global_config(self, key: Any, value: Any, cfg: PDVariable) -> None:
        key, value = _text(key), _text(value)
        if key.startswith(GLOBAL_CONFIG_PATH):
            key = key[len(GLOBAL_CONFIG_PATH):]
        if key == "enable_resource_metering":
            try:
                cfg.enable_top_sql = parse_bool(value)
            except ValueError:
                raise ValueError(
                    f"global config enable_resource_metering has invalid value: {value}"
                ) from None

    def load_all_global_config(self) -> PDVariable | None:
        """Read every global variable, retrying; None if the loader was stopped."""
        last_exc: Exception | None = None
        for _ in range(DEFAULT_RETRY_COUNT):
            if self._stop.is_set():
                return None
            try:
                kvs = list(self._client.get(GLOBAL_CONFIG_PATH))
            except Exception as exc:
                log.debug("load global config failed: %s", exc)
                last_exc = exc
                self._stop.wait(DEFAULT_RETRY_INTERVAL)
                continue
            cfg = default_pd_variable()
            for key, value in kvs:
                self.parse_global_config(key, value, cfg)
            return cfg
        assert last_exc is not None
        raise last_exc

    def handle_events(self, events: Iterable[tuple[str, Any, Any]]) -> bool:
        """Apply a batch of watch events; notify and return True if cfg changed."""
        with self._lock:
            old = replace(self.cfg)
            for kind, key, value in events:
                if kind != EVENT_PUT:
                    continue
                try:
                    self.parse_global_config(key, value, self.cfg)
                except ValueError as exc:
                    log.error("load global config failed: %s", exc)
                log.info("watch global config changed: %s", self.cfg)
            changed = old != self.cfg
            if changed:
                self.notify_subscribers()
        return changed

    def subscribe(self) -> queue.Queue[PDVariable | None]:
        """Return a queue receiving a copy of the variables on each change, None on stop."""
        ch: queue.Queue[PDVariable | None] = queue.Queue(maxsize=1)
        with self._lock:
            self._subscribers.append(ch)
        return ch

    def notify_subscribers(self) -> None:
        with self._lock:
            for ch in self._subscribers:
                try:
                    ch.put_nowait(replace(self.cfg))
                except queue.Full:
                    pass

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("loader is already running")
        self._stop.clear()
        self._thread = threading.Thread(
            target=go_with_recovery, args=(self._run,), name="pdvariable-loader", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        with self._lock:
            for ch in self._subscribers:
                _close_queue(ch)
            self._subscribers.clear()

    def _start_watch(self, out: queue.Queue) -> None:
        stream = self._client.watch(GLOBAL_CONFIG_PATH)

        def forward() -> None:
            try:
                for batch in stream:
                    out.put(list(batch))
            except Exception as exc:
                log.warning("global config watch failed: %s", exc)
            finally:
                out.put(_WATCH_CLOSED)

        threading.Thread(target=forward, name="pdvariable-watch", daemon=True).start()

    def _periodic_load(self) -> None:
        try:
            cfg = self.load_all_global_config()
        except Exception as exc:
            log.error("load global config failed: %s", exc)
            return
        if cfg is None:
            return
        with self._lock:
            if cfg == self.cfg:
                return
            self.cfg = cfg
            log.info("load global config: %s", self.cfg)
            self.notify_subscribers()

    def _run(self) -> None:
        batches: queue.Queue = queue.Queue()
        try:
            self._start_watch(batches)
        except Exception as exc:
            log.error("failed to watch global config: %s", exc)
            return

        try:
            cfg = self.load_all_global_config()
        except Exception as exc:
            log.error("first load global config failed: %s", exc)
        else:
            if cfg is not None:
                with self._lock:
                    self.cfg = cfg
                    log.info("first load global config: %s", self.cfg)
                    self.notify_subscribers()

        next_load = time.monotonic() + LOAD_INTERVAL
        while not self._stop.is_set():
            wait = min(_POLL_INTERVAL, max(0.0, next_load - time.monotonic()))
            try:
                item = batches.get(timeout=wait)
            except queue.Empty:
                if time.monotonic() >= next_load:
                    next_load = time.monotonic() + LOAD_INTERVAL
                    self._periodic_load()
                continue
            if item is _WATCH_CLOSED:
                if self._stop.is_set():
                    return
                log.info("global config watch channel closed")
                try:
                    self._start_watch(batches)
                except Exception as exc:
                    log.error("failed to watch global config: %s", exc)
                    return
                self._stop.wait(REWATCH_DELAY)
                continue
            self.handle_events(item)


_loader: VariableLoader | None = None


def init(client: _Client) -> VariableLoader:
    """Start the process-wide loader on ``client``."""
    global _loader
    _loader = VariableLoader(client)
    _loader.start()
    return _loader


def subscribe() -> queue.Queue[PDVariable | None]:
    if _loader is None:
        raise RuntimeError("pd variable loader is not initialized")
    return _loader.subscribe()


def stop() -> None:
    if _loader is not None:
        _loader.stop()