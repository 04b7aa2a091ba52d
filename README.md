# tapenet

`tapenet` keeps a local copy of tapes and their segments and serves them to
other nodes over JSON-RPC. It uses only the standard library.

It provides:

- `tapenet.store.TapeStore`, a persistent store kept in a SQLite file
  (`tapestore.sqlite3`) inside a directory. It maps tape numbers to tape
  addresses in both directions, holds segment data keyed by tape address and
  segment number, and records archive health (the last processed slot and the
  drift behind the chain tip);
- `tapenet.web`, a JSON-RPC 2.0 API over the store with the methods
  `getHealth`, `getTapeAddress`, `getTapeNumber`, `getSegment`, `getTape` and
  `getSegmentByAddress`, plus an HTTP server for it;
- `tapenet.snapshot`, which packs a store into a gzip-compressed tar archive
  and restores a store from one;
- `tapenet.metrics`, counters, gauges and histograms rendered in the
  Prometheus text format and served over HTTP at `/metrics`;
- `tapenet.pubkey.Pubkey`, 32-byte addresses written in base58, with
  `b58encode` and `b58decode`;
- `tapenet.rpc_types`, the `RpcMethod` names, `ErrorCode` values and the
  `RpcError` exception used by the API.

## The store

```python
from tapenet.pubkey import Pubkey
from tapenet.store import TapeStore, TapeNotFound

with TapeStore("db_tapestore") as store:
    address = Pubkey.new_unique()
    store.write_tape(1, address)
    store.write_segment(address, 0, b"\x01\x02\x03")
    store.write_segment(address, 1, b"\x04\x05\x06")

    assert store.read_tape_number(address) == 1
    assert store.read_tape_address(1) == address
    assert store.read_segment(1, 0) == b"\x01\x02\x03"
    assert store.read_segment_by_address(address, 1) == b"\x04\x05\x06"
    assert store.read_tape_segments(address) == [
        (0, b"\x01\x02\x03"),
        (1, b"\x04\x05\x06"),
    ]
    assert store.read_segment_count(address) == 2

    store.update_health(last_processed_slot=1000, drift=3)
    assert store.get_health() == (1000, 3)

    stats = store.read_local_stats()
    print(stats.tapes, stats.segments, stats.size_bytes)

    try:
        store.read_tape_address(99)
    except TapeNotFound as exc:
        print(exc)
```

`write_tapes_batch(tape_numbers, addresses)` and
`write_segments_batch(tape_addresses, segment_numbers, data_list)` write many
entries in one transaction. `read_tape_segments` returns segments ordered by
segment number. `read_local_stats` counts tapes and segments and adds up the
sizes of the files in the store's directory.

Segment data may be at most `max_segment_size` bytes, 128 by default
(`TapeStore(path, max_segment_size=...)`).

Every failure raises a subclass of `StoreError`: `TapeNotFound`,
`SegmentNotFound`, `TapeNotFoundForAddress`, `SegmentNotFoundForAddress`,
`HealthNotFound`, `InvalidPubkey`, `SegmentSizeExceeded`, `InvalidSegmentKey`
and `InvalidKeyValuePairLen` (batch writes whose lists differ in length).
Database and file errors are raised as `StoreError` itself.

### Primary and reader stores

One process writes to the primary store; others open it without write access:

```python
from tapenet.store import primary, secondary_web, run_refresh_store

writer = primary(".")               # ./db_tapestore, created if missing
reader = secondary_web(".")         # reads ./db_tapestore
stop = run_refresh_store(reader, 15)  # reader.catch_up_with_primary() every 15 s
...
stop.set()
```

`secondary_mine` and `read_only` work the same way; all four take an optional
base directory and default to the current one. `secondary_web` and
`secondary_mine` also create `db_tapestore_read_web` and
`db_tapestore_read_mine` next to the primary. `TapeStore.open_read_only` and
`TapeStore.open_secondary` open a store at an explicit path and raise
`StoreError` if there is none. The refresh thread stops, and sets the returned
event, if a refresh fails.

## The JSON-RPC API

`handle_rpc` answers one decoded request against a store:

```python
from tapenet.web import handle_rpc

response = handle_rpc(store, {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "getTapeAddress",
    "params": {"tape_number": 1},
})
# {"jsonrpc": "2.0", "result": "<base58 address>", "id": 1}
```

| method                | params                              | result                                   |
|-----------------------|-------------------------------------|------------------------------------------|
| `getHealth`           | any                                 | `{"last_processed_slot": ..., "drift": ...}` |
| `getTapeAddress`      | `tape_number`                       | base58 address                           |
| `getTapeNumber`       | `tape_address`                      | tape number                              |
| `getSegment`          | `tape_number`, `segment_number`     | base64 data                              |
| `getTape`             | `tape_address`                      | list of `{"segment_number", "data"}`     |
| `getSegmentByAddress` | `tape_address`, `segment_number`    | base64 data                              |

The response carries either `result` or `error`. Error codes follow JSON-RPC:
`-32601` for an unknown method, `-32602` for missing or invalid parameters
(numbers must be unsigned 64-bit integers, addresses valid base58 keys) and
`-32000` for lookups that fail in the store. A request that is not an object,
has no string `method` or has no `params` member raises `ValueError` instead.
Each call to a known method is timed and counted in the metrics.

The `rpc_get_*` functions answer single methods directly and raise `RpcError`;
`make_response(request_id, result, error)` builds the response body.

### Serving over HTTP

`make_server(store, host="127.0.0.1", port=0)` returns a
`ThreadingHTTPServer` that answers `POST /api` with a JSON body; port 0 picks a
free port. Requests without a JSON content type get 415, bodies that are not
JSON get 400, malformed requests get 422, other methods on `/api` get 405 and
other paths 404.

`web_loop(store, port)` starts the web metrics server, keeps the store
refreshed with `run_refresh_store`, and serves the API on `127.0.0.1:<port>`
until interrupted.

## Snapshots

```python
from tapenet.snapshot import create_snapshot, load_from_snapshot

create_snapshot(store, "tapestore.tar.gz")
restored = load_from_snapshot("tapestore.tar.gz", "restored_db")
```

`create_snapshot` copies the database consistently and writes it as a
`.tar.gz`. `load_from_snapshot` deletes the target directory if it exists,
unpacks the archive into it (refusing entries that are links or that lead
outside it) and opens the result as a `TapeStore`. Failures raise
`StoreError`.

## Metrics

```python
from tapenet.metrics import Process, run_metrics_server

server = run_metrics_server(Process.WEB)  # 0.0.0.0:8873/metrics
```

Each `Process` has a default port: 8873 for `WEB`, 8874 for `MINE` and 8875 for
`ARCHIVE`; `host` and `port` can be given. The server runs in a background
thread; if it cannot bind, the error is logged and `None` returned.

The first call to `register_process_metrics` (which `run_metrics_server` makes)
registers that process's collectors in the shared `REGISTRY`; later calls do
nothing. `WEB` registers RPC calls by method and status and their latency;
`MINE` registers attempts, solved challenges, iteration time and the current
iteration; `ARCHIVE` registers tapes and segments written. The store updates
the tape and segment counters on every write.

Helper functions update the collectors: `inc_td_api_status_total`,
`record_td_api_latency`, `record_metrics(method, func)`,
`inc_tape_mining_attempts_total`, `inc_tape_mining_challenges_solved_total`,
`observe_tape_mining_duration`, `set_current_mining_iteration`,
`inc_total_tapes_written`, `inc_total_tapes_written_batch`,
`inc_total_segments_written` and `inc_total_segments_written_batch`.
`IntCounter`, `IntGauge`, `Histogram` and `Registry` can also be used on
their own.

## What it does not do

`tapenet` stores and serves tape data that something else writes into it. It
does not connect to a chain: it does not fetch blocks, sync tapes or segments,
pack segments or mine. The mining and archiving metrics are there to be
updated by such code, but nothing in the package updates them apart from the
store's write counters. There is no command-line program; the server is
started from Python with `web_loop` or `make_server`.