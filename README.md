# promfed

Building blocks for a Prometheus-style query layer that reads from several
stores:

- **`promfed.query.iter`**: series sets and sample iterators over chunked
  store data. It covers time-bounded iteration (`BoundedSeriesIterator`),
  concatenation of overlapping chunks (`ChunkSeriesIterator`) and replica
  deduplication (`DedupSeriesSet`, `DedupSeriesIterator`). Iterators use a
  cursor protocol of `next()`, `seek(t)`, `at()` and `err()`, and
  `expand_series` drains one into a list of `(timestamp, value)` pairs.
- **`promfed.query.querier`**: `Querier` fetches series for `[mint, maxt]`
  from a proxy object. `aggrs_from_func` picks the downsampled aggregates
  that match the wrapping function. `sort_dedup_labels` and `DedupSeriesSet`
  merge replicas along a replica label. Store warnings go to a partial error
  reporter as `PartialError`. `new_queryable_creator` returns a factory of
  `Queryable` objects, which create queriers with fixed options.
- **`promfed.query.api`**: helpers for an HTTP query API. `parse_time`,
  `parse_duration` and `parse_bool` parse request parameters.
  `validate_range_params` checks range queries, including the limit of 11,000
  points per series. `respond` and `respond_error` build
  `(status, headers, body)` JSON replies. `status_code_for` maps an
  `ErrorType` to an HTTP status, and `cors_headers` returns the CORS headers.
- **`promfed.reloader`**: `Reloader` watches a config file and a rule
  directory. It expands `$(VAR)` environment references into an output file
  and POSTs to a reload URL when their contents change. The module also
  provides `expand_env` and `reload_url_from_base`.
- **`promfed.shipper`**: `ShipperMeta`, `read_meta_file` and
  `write_meta_file` handle the `thanos.shipper.json` record of uploaded
  block IDs. `write_meta_file` writes the file atomically.
- **`promfed.runutil`**: `repeat`, `retry`, `retry_with_log`,
  `close_with_log_on_err` and `close_with_err_capture`.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Example: deduplicating replicas

```python
from promfed.query.iter import DedupSeriesIterator, ListSeriesIterator, expand_series

a = ListSeriesIterator([(10000, 1.0), (20000, 1.0), (40000, 1.0)])
b = ListSeriesIterator([(10000, 2.0), (20000, 2.0), (30000, 2.0), (40000, 2.0)])
print(expand_series(DedupSeriesIterator(a, b)))
# [(10000, 1.0), (20000, 1.0), (40000, 1.0)]
```

The iterator stays on one replica. It switches to the other only when the
current one has a gap larger than twice its last sample interval.

## Example: querying a proxy

A proxy is any object with `series(request, server)`, which calls
`server.send(SeriesResponse.of_series(...))` or
`server.send(SeriesResponse.of_warning(...))`, and with
`label_values(name)`, which returns a `LabelValuesResponse`.

```python
from promfed.query.iter import expand_series
from promfed.query.querier import Querier

with Querier(1, 300, "replica", proxy, deduplicate=True) as q:
    series_set = q.select("", ("=", "job", "node"))
    while series_set.next():
        series = series_set.at()
        print(series.labels, expand_series(series.iterator()))
```

## Example: expanding environment variables

```python
import os
from promfed.reloader import expand_env

os.environ["TARGET_PORT"] = "9090"
print(expand_env(b"port: $(TARGET_PORT)\n"))
# b'port: 9090\n'
```

A reference to an unset variable raises `ReloaderError`.

## Example: running the reloader

```python
import threading
from promfed.reloader import Reloader, reload_url_from_base

stop = threading.Event()
reloader = Reloader(
    reload_url_from_base("http://localhost:9090"),
    cfg_file="prometheus.yml.tmpl",
    cfg_envsubst_file="prometheus.yml",
    rule_dir="rules",
)
reloader.watch(stop)  # blocks until stop.set() is called from another thread
```

## What this package does not do

- It keeps no set of live store connections and does no health checking
  or dialing of stores. Callers supply the proxy object that `Querier` talks to.
- It does not run an HTTP server, route requests or evaluate PromQL.
  `promfed.query.api` only parses parameters and builds replies.
- `promfed.shipper` reads and writes the upload record. It does not find
  blocks or upload them to object storage.
- It does not decode compressed chunk data. Chunks hold their samples as
  `(timestamp, value)` pairs, and iterating counter aggregates is reported as
  unsupported.
- There is no command-line program.