"""HTTP handlers of the Top SQL API."""

from __future__ import annotations

import functools
import json
import math
import re
import sqlite3
import time
from typing import Any, Callable, Mapping

from ngmon.query import Query
from ngmon.store import (
    METRIC_NAME_CPU_TIME,
    METRIC_NAME_READ_INDEX,
    METRIC_NAME_READ_ROW,
    METRIC_NAME_WRITE_INDEX,
    METRIC_NAME_WRITE_ROW,
)

METRIC_NAMES = (
    METRIC_NAME_CPU_TIME,
    METRIC_NAME_READ_ROW,
    METRIC_NAME_READ_INDEX,
    METRIC_NAME_WRITE_ROW,
    METRIC_NAME_WRITE_INDEX,
)

WEEK_SECS = 7 * 24 * 60 * 60
DEFAULT_TOP = "-1"
DEFAULT_WINDOW = "1m"

_INT64_MAX = (1 << 63) - 1
_INT64_MIN = -(1 << 63)
_FLOAT_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_INT_RE = re.compile(r"[+-]?[0-9]+")

_NANOSECOND = 1
_UNITS = {
    "ns": _NANOSECOND,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

Response = tuple[int, dict[str, Any]]


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def parse_duration(text: str) -> int:
    """Parse a duration such as "1m", "1.5h" or "300ms" into nanoseconds."""
    orig = text
    invalid = ValueError(f"time: invalid duration {_quote(orig)}")
    s = text
    negative = False
    if s and s[0] in "+-":
        negative = s[0] == "-"
        s = s[1:]
    if s == "0":
        return 0
    if not s:
        raise invalid

    total = 0
    while s:
        if not (s[0] == "." or s[0].isdigit()):
            raise invalid
        match = re.match(r"([0-9]*)(?:\.([0-9]*))?", s)
        assert match is not None
        whole, frac = match.group(1), match.group(2)
        if not whole and not frac:
            raise invalid
        s = s[match.end():]

        unit_end = 0
        while unit_end < len(s) and s[unit_end] != "." and not s[unit_end].isdigit():
            unit_end += 1
        unit_text, s = s[:unit_end], s[unit_end:]
        if not unit_text:
            raise ValueError(f"time: missing unit in duration {_quote(orig)}")
        unit = _UNITS.get(unit_text)
        if unit is None:
            raise ValueError(f"time: unknown unit {_quote(unit_text)} in duration {_quote(orig)}")

        value = int(whole or "0") * unit
        if frac:
            value += int(frac) * unit // (10 ** len(frac))
        total += value
        if total > _INT64_MAX + (1 if negative else 0):
            raise invalid

    return -total if negative else total


def _parse_float(raw: str) -> float:
    if not _FLOAT_RE.fullmatch(raw):
        raise ValueError(f"parsing {_quote(raw)}: invalid syntax")
    value = float(raw)
    if math.isinf(value):
        raise ValueError(f"parsing {_quote(raw)}: value out of range")
    return value


def _parse_int(raw: str) -> int:
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"parsing {_quote(raw)}: invalid syntax")
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"parsing {_quote(raw)}: value out of range")
    return value


def _param(params: Mapping[str, Any], key: str, default: str) -> str:
    raw = params.get(key)
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None or raw == "":
        return default
    return str(raw)


def _error(status: int, message: str) -> Response:
    return status, {"status": "error", "message": message}


class TopSQLService:
    """Serves instance lists and per-metric Top SQL rankings."""

    def __init__(self, query: Query) -> None:
        self._query = query

    def routes(self) -> dict[str, Callable[[Mapping[str, Any]], Response]]:
        """Map each GET path to a handler taking the query parameters."""
        routes: dict[str, Callable[[Mapping[str, Any]], Response]] = {
            "/v1/instances": lambda _params: self.instances(),
        }
        for name in METRIC_NAMES:
            routes["/v1/" + name] = functools.partial(self.query_metric, name)
        return routes

    def instances(self) -> Response:
        try:
            items = self._query.all_instances()
        except (ValueError, RuntimeError, OSError, sqlite3.Error) as exc:
            return _error(503, str(exc))
        return 200, {"status": "ok", "data": [item.to_dict() for item in items]}

    def query_metric(self, name: str, params: Mapping[str, Any]) -> Response:
        instance = _param(params, "instance", "")
        if not instance:
            return _error(400, "no instance")

        now = int(time.time())
        try:
            start_secs = _parse_float(_param(params, "start", str(now - 2 * WEEK_SECS)))
            end_secs = _parse_float(_param(params, "end", str(now)))
            top = _parse_int(_param(params, "top", DEFAULT_TOP))
            window_ns = parse_duration(_param(params, "window", DEFAULT_WINDOW))
        except ValueError as exc:
            return _error(400, str(exc))
        seconds = abs(window_ns) // 1_000_000_000
        window_secs = seconds if window_ns >= 0 else -seconds

        try:
            items = self._query.top_sql(
                name, int(start_secs), int(end_secs), window_secs, top, instance
            )
        except (ValueError, RuntimeError, OSError, sqlite3.Error) as exc:
            return _error(503, str(exc))
        return 200, {"status": "ok", "data": [item.to_dict() for item in items]}