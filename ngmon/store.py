"""Storage of Top SQL data: metrics go to the time-series database, metadata to the document database."""

from __future__ import annotations

import abc
import enum
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from ngmon.utils import ResponseWriter

log = logging.getLogger(__name__)

METRIC_NAME_CPU_TIME = "cpu_time"
METRIC_NAME_READ_ROW = "read_row"
METRIC_NAME_READ_INDEX = "read_index"
METRIC_NAME_WRITE_ROW = "write_row"
METRIC_NAME_WRITE_INDEX = "write_index"

IMPORT_PATH = "/api/v1/import"

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1

InsertHandler = Callable[[ResponseWriter, str, str, Mapping[str, str], bytes], Any]
"""Called as handler(writer, method, path, query, body)."""

_CREATE_TABLE_STMTS = (
    "CREATE TABLE IF NOT EXISTS sql_digest "
    "(digest VARCHAR(255) PRIMARY KEY, sql_text TEXT, is_internal BOOLEAN)",
    "CREATE TABLE IF NOT EXISTS plan_digest "
    "(digest VARCHAR(255) PRIMARY KEY, plan_text TEXT)",
    "CREATE TABLE IF NOT EXISTS instance "
    "(instance VARCHAR(255) PRIMARY KEY, instance_type TEXT)",
)


class TagLabel(enum.IntEnum):
    UNKNOWN = 0
    ROW = 1
    INDEX = 2


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("unexpected EOF")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result & _UINT64_MASK, pos
        shift += 7
        if shift >= 64:
            raise ValueError("integer overflow")


def _read_bytes(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = _read_varint(data, pos)
    end = pos + length
    if end > len(data):
        raise ValueError("unexpected EOF")
    return bytes(data[pos:end]), end


def _skip_field(data: bytes, pos: int, wire_type: int) -> int:
    if wire_type == 0:
        _, pos = _read_varint(data, pos)
        return pos
    if wire_type == 2:
        _, pos = _read_bytes(data, pos)
        return pos
    width = {1: 8, 5: 4}.get(wire_type)
    if width is None:
        raise ValueError(f"illegal wireType {wire_type}")
    if pos + width > len(data):
        raise ValueError("unexpected EOF")
    return pos + width


@dataclass
class ResourceGroupTag:
    sql_digest: bytes = b""
    plan_digest: bytes = b""
    label: TagLabel | int | None = None

    @classmethod
    def parse(cls, data: bytes) -> ResourceGroupTag:
        """Decode the protobuf wire form of a resource group tag."""
        tag = cls()
        pos = 0
        data = bytes(data)
        while pos < len(data):
            key, pos = _read_varint(data, pos)
            field_num, wire_type = key >> 3, key & 7
            if field_num <= 0:
                raise ValueError(f"illegal tag {field_num} (wire type {wire_type})")
            if field_num in (1, 2):
                if wire_type != 2:
                    name = "SqlDigest" if field_num == 1 else "PlanDigest"
                    raise ValueError(f"wrong wireType = {wire_type} for field {name}")
                value, pos = _read_bytes(data, pos)
                if field_num == 1:
                    tag.sql_digest = value
                else:
                    tag.plan_digest = value
            elif field_num == 3:
                if wire_type != 0:
                    raise ValueError(f"wrong wireType = {wire_type} for field Label")
                raw, pos = _read_varint(data, pos)
                raw &= _UINT32_MASK
                if raw >= 1 << 31:
                    raw -= 1 << 32
                try:
                    tag.label = TagLabel(raw)
                except ValueError:
                    tag.label = raw
            else:
                pos = _skip_field(data, pos, wire_type)
        return tag


@dataclass
class CPUTimeRecord:
    sql_digest: bytes = b""
    plan_digest: bytes = b""
    record_list_timestamp_sec: list[int] = field(default_factory=list)
    record_list_cpu_time_ms: list[int] = field(default_factory=list)


@dataclass
class ResourceUsageRecord:
    resource_group_tag: bytes = b""
    record_list_timestamp_sec: list[int] = field(default_factory=list)
    record_list_cpu_time_ms: list[int] = field(default_factory=list)
    record_list_read_keys: list[int] = field(default_factory=list)
    record_list_write_keys: list[int] = field(default_factory=list)


@dataclass
class SQLMeta:
    sql_digest: bytes = b""
    normalized_sql: str = ""
    is_internal_sql: bool = False


@dataclass
class PlanMeta:
    plan_digest: bytes = b""
    normalized_plan: str = ""


@dataclass
class TopSQLTags:
    name: str = ""
    instance: str = ""
    instance_type: str = ""
    sql_digest: str = ""
    plan_digest: str = ""

    def to_dict(self) -> dict[str, str]:
        tags = {
            "__name__": self.name,
            "instance": self.instance,
            "instance_type": self.instance_type,
            "sql_digest": self.sql_digest,
        }
        if self.plan_digest:
            tags["plan_digest"] = self.plan_digest
        return tags


@dataclass
class Metric:
    metric: TopSQLTags = field(default_factory=TopSQLTags)
    timestamps: list[int] = field(default_factory=list)  # in milliseconds
    values: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.to_dict(),
            "timestamps": list(self.timestamps) if self.timestamps else None,
            "values": list(self.values) if self.values else None,
        }


def encode_metric(metric: Metric) -> bytes:
    """One JSON line in the import format of the time-series database."""
    text = json.dumps(metric.to_dict(), separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return (text + "\n").encode("utf-8")


def top_sql_proto_to_metric(instance: str, instance_type: str, record: CPUTimeRecord) -> Metric:
    """Turn a CPU time record into a cpu_time metric."""
    cpu_times = record.record_list_cpu_time_ms
    timestamps = record.record_list_timestamp_sec
    if len(timestamps) < len(cpu_times):
        raise ValueError(
            f"record has {len(cpu_times)} cpu times but only {len(timestamps)} timestamps"
        )
    metric = Metric(
        metric=TopSQLTags(
            name=METRIC_NAME_CPU_TIME,
            instance=instance,
            instance_type=instance_type,
            sql_digest=bytes(record.sql_digest).hex(),
            plan_digest=bytes(record.plan_digest).hex(),
        )
    )
    for ts, cpu_time in zip(timestamps, cpu_times):
        metric.timestamps.append((ts * 1000) & _UINT64_MASK)
        metric.values.append(cpu_time)
    return metric


def _padded(values: Sequence[int], n: int) -> list[int]:
    head = list(values[:n])
    return head + [0] * (n - len(head))


def rs_metering_proto_to_metrics(
    instance: str, instance_type: str, record: ResourceUsageRecord
) -> list[Metric]:
    """Turn a resource usage record into cpu time, row and index metrics."""
    tag = ResourceGroupTag.parse(record.resource_group_tag)
    sql_digest = tag.sql_digest.hex()
    plan_digest = tag.plan_digest.hex()

    def new(name: str) -> Metric:
        return Metric(
            metric=TopSQLTags(
                name=name,
                instance=instance,
                instance_type=instance_type,
                sql_digest=sql_digest,
                plan_digest=plan_digest,
            )
        )

    m_cpu = new(METRIC_NAME_CPU_TIME)
    m_read_row = new(METRIC_NAME_READ_ROW)
    m_read_index = new(METRIC_NAME_READ_INDEX)
    m_write_row = new(METRIC_NAME_WRITE_ROW)
    m_write_index = new(METRIC_NAME_WRITE_INDEX)

    n = len(record.record_list_timestamp_sec)
    cpu_times = _padded(record.record_list_cpu_time_ms, n)
    read_keys = _padded(record.record_list_read_keys, n)
    write_keys = _padded(record.record_list_write_keys, n)
    is_row = tag.label == TagLabel.ROW
    is_index = tag.label == TagLabel.INDEX

    for ts, cpu, read, write in zip(
        record.record_list_timestamp_sec, cpu_times, read_keys, write_keys
    ):
        ts_millis = (ts * 1000) & _UINT64_MASK
        m_cpu.timestamps.append(ts_millis)
        m_cpu.values.append(cpu)
        for keys, m_row, m_index in (
            (read, m_read_row, m_read_index),
            (write, m_write_row, m_write_index),
        ):
            m_row.timestamps.append(ts_millis)
            m_row.values.append(keys if is_row else 0)
            m_index.timestamps.append(ts_millis)
            m_index.values.append(keys if is_index else 0)

    return [m_cpu, m_read_row, m_read_index, m_write_row, m_write_index]


class Store(abc.ABC):
    """Destination of the data scraped from the cluster components."""

    @abc.abstractmethod
    def instance(self, instance: str, instance_type: str) -> None: ...

    @abc.abstractmethod
    def top_sql_record(self, instance: str, instance_type: str, record: CPUTimeRecord) -> None: ...

    @abc.abstractmethod
    def resource_metering_record(
        self, instance: str, instance_type: str, record: ResourceUsageRecord
    ) -> None: ...

    @abc.abstractmethod
    def sql_meta(self, meta: SQLMeta) -> None: ...

    @abc.abstractmethod
    def plan_meta(self, meta: PlanMeta) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...


class DefaultStore(Store):
    """Writes metrics through an insert handler and metadata into an SQLite database."""

    def __init__(self, insert_handler: InsertHandler | None, document_db: sqlite3.Connection) -> None:
        self._insert_handler = insert_handler
        self._db = document_db
        with self._db:
            for stmt in _CREATE_TABLE_STMTS:
                self._db.execute(stmt)

    def instance(self, instance: str, instance_type: str) -> None:
        with self._db:
            self._db.execute(
                "INSERT OR IGNORE INTO instance(instance, instance_type) VALUES (?, ?)",
                (instance, instance_type),
            )

    def top_sql_record(self, instance: str, instance_type: str, record: CPUTimeRecord) -> None:
        self._write_timeseries_db(top_sql_proto_to_metric(instance, instance_type, record))

    def resource_metering_record(
        self, instance: str, instance_type: str, record: ResourceUsageRecord
    ) -> None:
        for metric in rs_metering_proto_to_metrics(instance, instance_type, record):
            self._write_timeseries_db(metric)

    def sql_meta(self, meta: SQLMeta) -> None:
        with self._db:
            self._db.execute(
                "INSERT OR IGNORE INTO sql_digest(digest, sql_text, is_internal) VALUES (?, ?, ?)",
                (bytes(meta.sql_digest).hex(), meta.normalized_sql, bool(meta.is_internal_sql)),
            )

    def plan_meta(self, meta: PlanMeta) -> None:
        with self._db:
            self._db.execute(
                "INSERT OR IGNORE INTO plan_digest(digest, plan_text) VALUES (?, ?)",
                (bytes(meta.plan_digest).hex(), meta.normalized_plan),
            )

    def close(self) -> None:
        pass

    def _write_timeseries_db(self, metric: Metric) -> None:
        if self._insert_handler is None:
            raise RuntimeError("empty insert handler")
        body = encode_metric(metric)
        writer = ResponseWriter()
        self._insert_handler(writer, "POST", IMPORT_PATH, {}, body)
        if not writer.ok():
            log.warning("failed to write timeseries db: %s", writer.text())