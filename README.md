# ngmon

A monitoring server that keeps instance, SQL and plan metadata for Top SQL
in an SQLite document store, ranks Top SQL metrics read from a time-series
backend, and serves queries and runtime configuration over HTTP.

It needs nothing beyond the Python standard library (Python 3.11 or later).

## Installing

    pip install .

To run the tests as well:

    pip install ".[test]"
    pytest

## Running

    ngmon --pd.endpoints 127.0.0.1:2379 --storage.path data

Options:

- `--address` — TCP address for HTTP connections (default `0.0.0.0:12020`)
- `--advertise-address` — address the server advertises (defaults to the listen address)
- `--pd.endpoints` — comma-separated PD addresses; may be given more than once; at least one is required
- `--log.path` — directory for log files; standard output when unset
- `--storage.path` — directory for stored data (default `data`)
- `--config` — a TOML configuration file

Options given on the command line take precedence over the configuration
file. The server runs until it receives SIGINT or SIGTERM.

Files it writes:

- `<storage.path>/docdb/data.db` — the SQLite document database
- `ng.log` and `service.log` (HTTP access log) in `--log.path`, when set
- `docdb.log` in `--log.path`, or in `<storage.path>/docdb-log/` otherwise

## Configuration file

```toml
address = "0.0.0.0:12020"
advertise-address = "10.0.0.5:12020"

[pd]
endpoints = ["10.0.0.1:2379", "10.0.0.2:2379"]

[log]
path = "log"
level = "INFO"      # DEBUG, INFO, WARN or ERROR

[storage]
path = "data"

[security]
ca-path = "ca.pem"
cert-path = "client.pem"
key-path = "client-key.pem"
```

When a configuration file is given, sending the process SIGHUP reads the PD
endpoints from it again; other settings are left as they are.

## HTTP endpoints

- `GET /health` — `{"health": true}`
- `GET /config` — the current configuration
- `POST /config` — change settings at run time, for example
  `{"continuous_profiling": {"enable": true, "profile_seconds": 6, "interval_seconds": 11}}`.
  The merged continuous profiling settings are checked (no zero values,
  `profile_seconds` no larger than the interval or the timeout) before they
  are taken up, and are saved in the document database, from which they are
  loaded again at start-up. Failures answer 503 with
  `{"message": ..., "status": "error"}`.
- `GET /metrics` — process start time and Python version in the
  Prometheus text format
- `GET /topsql/v1/instances` — the known instances and their types
- `GET /topsql/v1/<metric>?instance=<addr>&start=<secs>&end=<secs>&top=<n>&window=<duration>`
  for `cpu_time`, `read_row`, `read_index`, `write_row` and `write_index`.
  `instance` is required; `start` defaults to two weeks ago, `end` to now,
  `top` to all groups and `window` to `1m` (durations such as `30s`, `1.5h`).

## Using it as a library

```python
from ngmon.config import Config, init_config
from ngmon.query import top_k

def override(cfg: Config) -> None:
    cfg.pd.endpoints = ["127.0.0.1:2379"]

cfg = init_config("", override)

results = [
    {"metric": {"sql_digest": "aa", "plan_digest": "p1"},
     "values": [[1639541000, "5"], [1639541060, "7"]]},
    {"metric": {"sql_digest": "bb", "plan_digest": "p2"},
     "values": [[1639541000, "3"]]},
]
groups = top_k(results, 1)   # the group for "aa", value_sum 12
```

Other pieces that can be used on their own:

- `ngmon.store.DefaultStore` writes metadata into an SQLite connection and
  sends metrics, one JSON line each, to an insert handler called as
  `handler(writer, method, path, query, body)` with a
  `ngmon.utils.ResponseWriter`. `ngmon.query.DefaultQuery` reads through a
  select handler of the same shape.
- `ngmon.app.Application` is a WSGI application; `ngmon.app.HTTPService`
  serves one on a TCP address in a background thread.
- `ngmon.pdvariable.VariableLoader` follows the `enable_resource_metering`
  global variable through a client with `get(prefix)` and `watch(prefix)`
  methods and hands each change to its subscribers' queues.

## What it does not do

- There is no time-series database in the package. The `ngmon` command
  starts the Top SQL service with no insert or select handler, so the
  metric endpoints answer 503 with `empty query handler` until the package
  is used as a library with handlers supplied.
- It does not connect to cluster components to collect Top SQL records,
  and the `ngmon` command does not start the PD variable watcher; records
  reach the store only through `DefaultStore` calls made by the caller.