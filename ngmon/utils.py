"""Small helpers shared by the server components."""

from __future__ import annotations

import logging
import platform
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

log = logging.getLogger(__name__)

# Version information, replaced at build time when available.
BUILD_TS = "None"
GIT_HASH = "None"
GIT_BRANCH = "None"


class RateLimit:
    """Bounded concurrency: at most ``capacity`` tokens may be held at once."""

    _POLL_INTERVAL = 0.05

    def __init__(self, n: int) -> None:
        if n < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = n
        self._held = 0
        self._cond = threading.Condition()

    def get_token(self, done: threading.Event | None = None) -> bool:
        """Acquire a token, blocking until one is free.

        Returns True if ``done`` was set before a token could be taken,
        False once a token is held.
        """
        with self._cond:
            while True:
                if done is not None and done.is_set():
                    return True
                if self._held < self._capacity:
                    self._held += 1
                    return False
                self._cond.wait(self._POLL_INTERVAL if done is not None else None)

    def put_token(self) -> None:
        """Give a token back."""
        with self._cond:
            if self._held == 0:
                raise RuntimeError("put a redundant token")
            self._held -= 1
            self._cond.notify()

    def capacity(self) -> int:
        return self._capacity


@dataclass
class ResponseWriter:
    """Collects the status, headers and body written by an HTTP handler."""

    body: bytearray = field(default_factory=bytearray)
    headers: dict[str, str] = field(default_factory=dict)
    code: int = 200

    def header(self) -> dict[str, str]:
        return self.headers

    def write(self, data: bytes) -> int:
        self.body.extend(data)
        return len(data)

    def write_header(self, status_code: int) -> None:
        self.code = status_code

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def ok(self) -> bool:
        return 200 <= self.code < 300


def go_with_recovery(
    func: Callable[[], Any],
    recover_fn: Callable[[BaseException | None], Any] | None = None,
) -> None:
    """Run ``func``, catching and logging any exception it raises.

    ``recover_fn`` is always called afterwards with the caught exception,
    or with None if ``func`` finished normally.
    """
    try:
        func()
    except Exception as exc:
        if recover_fn is not None:
            recover_fn(exc)
        log.error("panic in the recoverable goroutine: %r", exc, exc_info=exc)
    else:
        if recover_fn is not None:
            recover_fn(None)


def print_info() -> dict[str, str]:
    """Log the build information and return it."""
    info = {
        "Git Commit Hash": GIT_HASH,
        "Git Branch": GIT_BRANCH,
        "UTC Build Time": BUILD_TS,
        "PythonVersion": platform.python_version(),
    }
    log.info(
        "Welcome to ng-monitoring. %s",
        ", ".join(f"{key}: {value}" for key, value in info.items()),
    )
    return info