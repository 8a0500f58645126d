"""Top SQL queries: ranked statements from the time-series database, texts from the document database."""

from __future__ import annotations

import abc
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from ngmon.store import (
    METRIC_NAME_CPU_TIME,
    METRIC_NAME_READ_INDEX,
    METRIC_NAME_READ_ROW,
    METRIC_NAME_WRITE_INDEX,
    METRIC_NAME_WRITE_ROW,
)
from ngmon.utils import ResponseWriter

log = logging.getLogger(__name__)

QUERY_RANGE_PATH = "/api/v1/query_range"

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1
_UINT_RE = re.compile(r"[0-9]+")

SelectHandler = Callable[[ResponseWriter, str, str, Mapping[str, str], bytes], Any]
"""Called as handler(writer, method, path, query, body)."""

_METRIC_FIELDS = {
    METRIC_NAME_CPU_TIME: "cpu_time_millis",
    METRIC_NAME_READ_ROW: "read_rows",
    METRIC_NAME_READ_INDEX: "read_indexes",
    METRIC_NAME_WRITE_ROW: "write_rows",
    METRIC_NAME_WRITE_INDEX: "write_indexes",
}


@dataclass
class PlanItem:
    plan_digest: str = ""
    plan_text: str = ""
    timestamp_secs: list[int] = field(default_factory=list)
    cpu_time_millis: list[int] = field(default_factory=list)
    read_rows: list[int] = field(default_factory=list)
    read_indexes: list[int] = field(default_factory=list)
    write_rows: list[int] = field(default_factory=list)
    write_indexes: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_secs": list(self.timestamp_secs) if self.timestamp_secs else None,
        }
        for key in _METRIC_FIELDS.values():
            values = getattr(self, key)
            if values:
                data[key] = list(values)
        return data


@dataclass
class TopSQLItem:
    sql_digest: str = ""
    sql_text: str = ""
    plans: list[PlanItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "plans": [plan.to_dict() for plan in self.plans] if self.plans else None,
        }


@dataclass
class InstanceItem:
    instance: str = ""
    instance_type: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"instance": self.instance, "instance_type": self.instance_type}


@dataclass
class PlanSeries:
    plan_digest: str = ""
    timestamp_secs: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)


@dataclass
class SQLGroup:
    sql_digest: str = ""
    plan_series: list[PlanSeries] = field(default_factory=list)
    value_sum: int = 0


class Query(abc.ABC):
    """Read side of the Top SQL data."""

    @abc.abstractmethod
    def top_sql(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
    ) -> list[TopSQLItem]: ...

    @abc.abstractmethod
    def all_instances(self) -> list[InstanceItem]: ...

    @abc.abstractmethod
    def close(self) -> None: ...


def _optional_str(container: Mapping[str, Any], key: str) -> str:
    value = container.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string, got {type(value).__name__}")
    return value


def _parse_uint(text: Any) -> int | None:
    if not isinstance(text, str):
        raise ValueError(f"metric value must be a string, got {type(text).__name__}")
    if not _UINT_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _UINT64_MASK else None


def group_by_sql_digest(results: Iterable[Mapping[str, Any]]) -> list[SQLGroup]:
    """Group query results by SQL digest, then by plan digest, summing the values."""
    groups: dict[str, SQLGroup] = {}
    for result in results:
        metric = result.get("metric") or {}
        sql_digest = _optional_str(metric, "sql_digest")
        plan_digest = _optional_str(metric, "plan_digest")

        group = groups.setdefault(sql_digest, SQLGroup(sql_digest=sql_digest))
        series = next((s for s in group.plan_series if s.plan_digest == plan_digest), None)
        if series is None:
            series = PlanSeries(plan_digest=plan_digest)
            group.plan_series.append(series)

        for value in result.get("values") or ():
            if value is None or len(value) != 2:
                continue
            raw_ts, raw_value = value
            if isinstance(raw_ts, bool) or not isinstance(raw_ts, (int, float)):
                raise ValueError(f"metric timestamp must be a number, got {raw_ts!r}")
            parsed = _parse_uint(raw_value)
            if parsed is None:
                continue
            v = parsed & _UINT32_MASK
            group.value_sum = (group.value_sum + v) & _UINT32_MASK
            series.timestamp_secs.append(int(raw_ts) & _UINT64_MASK)
            series.values.append(v)
    return list(groups.values())


def keep_top_k(groups: Sequence[SQLGroup], top: int) -> list[SQLGroup]:
    """Keep the ``top`` groups with the largest sums; ties go to the larger digest."""
    if top <= 0 or len(groups) <= top:
        return list(groups)
    ranked = sorted(groups, key=lambda g: (g.value_sum, g.sql_digest), reverse=True)
    return ranked[:top]


def top_k(results: Iterable[Mapping[str, Any]], top: int) -> list[SQLGroup]:
    return keep_top_k(group_by_sql_digest(results), top)


def _truncated_mod(a: int, b: int) -> int:
    remainder = abs(a) % abs(b)
    return remainder if a >= 0 else -remainder


def _decode_results(body: bytes) -> list[Mapping[str, Any]]:
    data = json.loads(body)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError(f"cannot decode {type(data).__name__} into a metric response")
    payload = data.get("data")
    if payload is None:
        return []
    if not isinstance(payload, dict):
        raise ValueError("metric response data must be an object")
    results = payload.get("result")
    if results is None:
        return []
    if not isinstance(results, list):
        raise ValueError("metric response result must be an array")

    decoded: list[Mapping[str, Any]] = []
    for result in results:
        if result is None:
            result = {}
        if not isinstance(result, dict):
            raise ValueError("metric result must be an object")
        metric = result.get("metric")
        if metric is not None and not isinstance(metric, dict):
            raise ValueError("metric labels must be an object")
        values = result.get("values")
        if values is not None:
            if not isinstance(values, list):
                raise ValueError("metric values must be an array")
            for value in values:
                if value is not None and not isinstance(value, list):
                    raise ValueError("metric value must be an array")
        decoded.append(result)
    return decoded


class DefaultQuery(Query):
    """Reads metrics through a select handler and texts from an SQLite database."""

    def __init__(self, select_handler: SelectHandler | None, document_db: sqlite3.Connection) -> None:
        self._select_handler = select_handler
        self._db = document_db

    def top_sql(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
    ) -> list[TopSQLItem]:
        results = self._fetch_timeseries_db(name, start_secs, end_secs, window_secs, instance)
        return self._fill_text(name, top_k(results, top))

    def all_instances(self) -> list[InstanceItem]:
        rows = self._db.execute("SELECT instance, instance_type FROM instance").fetchall()
        return [InstanceItem(instance or "", instance_type or "") for instance, instance_type in rows]

    def close(self) -> None:
        pass

    def _fetch_timeseries_db(
        self, name: str, start_secs: int, end_secs: int, window_secs: int, instance: str
    ) -> list[Mapping[str, Any]]:
        if self._select_handler is None:
            raise RuntimeError("empty query handler")
        if window_secs == 0:
            raise ValueError("window must not be zero")

        start = start_secs - _truncated_mod(start_secs, window_secs)
        end = end_secs - _truncated_mod(end_secs, window_secs) + window_secs
        params = {
            "query": f'sum_over_time({name}{{instance="{instance}"}}[{window_secs}])',
            "start": str(start),
            "end": str(end),
            "step": str(window_secs),
        }
        writer = ResponseWriter()
        writer.headers["Accept"] = "application/json"
        self._select_handler(writer, "GET", QUERY_RANGE_PATH, params, b"")
        if not writer.ok():
            log.warning("failed to fetch timeseries db: %s", writer.text())
        return _decode_results(bytes(writer.body))

    def _lookup_text(self, sql: str, digest: str) -> str:
        if not digest:
            return ""
        try:
            row = self._db.execute(sql, (digest,)).fetchone()
        except sqlite3.Error:
            return ""
        if row is None or not isinstance(row[0], str):
            return ""
        return row[0]

    def _fill_text(self, name: str, groups: Iterable[SQLGroup]) -> list[TopSQLItem]:
        metric_field = _METRIC_FIELDS.get(name)
        items = []
        for group in groups:
            item = TopSQLItem(
                sql_digest=group.sql_digest,
                sql_text=self._lookup_text(
                    "SELECT sql_text FROM sql_digest WHERE digest = ?", group.sql_digest
                ),
            )
            for series in group.plan_series:
                plan = PlanItem(
                    plan_digest=series.plan_digest,
                    plan_text=self._lookup_text(
                        "SELECT plan_text FROM plan_digest WHERE digest = ?", series.plan_digest
                    ),
                    timestamp_secs=list(series.timestamp_secs),
                )
                if metric_field is not None:
                    setattr(plan, metric_field, list(series.values))
                item.plans.append(plan)
            items.append(item)
        return items