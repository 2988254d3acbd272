# percas

Building blocks for a persistent key-value cache node, used as a library.

| Module | What it holds |
| --- | --- |
| `percas.config` | `Config` and its sections, `Config.default()`, `known_option_entries()`, `node_file_path()` |
| `percas.newtype` | `DiskThrottle`, `IopsCounter`, `IopsMode`, `parse_duration()`, `format_duration()` |
| `percas.loader` | `load_config()` and `LoadConfigResult` |
| `percas.engine` | `CacheEngine`, `CacheStatistics`, `EngineError` |
| `percas.runtime` | `Runtime`, `Builder`, `JoinHandle`, `make_runtime()`, `num_cpus()` |
| `percas.node` | `NodeInfo`, `PersistentNodeInfo` |
| `percas.member` | `Membership`, `MemberState`, `MemberStatus` |
| `percas.ring` | `HashRing` |
| `percas.gossip` | `GossipState`, `Transport`, the `Ping` / `Ack` / `Sync` messages, `make_app()` |
| `percas.proxy` | `Proxy` and the route results `Local` / `RemoteAddr` |
| `percas.client` | `ClientFactory`, `Client`, `ClientError`, `TooManyRequestsError` |
| `percas.errors` | `ClusterError`, `TransportError`, `InternalError` |

## Configuration

```python
from percas.loader import load_config

result = load_config("config.toml")
for warning in result.warnings:
    print(warning)
config = result.config
print(config.storage.disk_capacity)
```

`load_config` reads a TOML file and then applies the `PERCAS_CONFIG_*`
environment variables. It reads `os.environ` unless you pass a mapping as
`environ`. Each entry of `known_option_entries()` pairs a variable with a path
in the document and a type. For example, `PERCAS_CONFIG_STORAGE_DISK_CAPACITY`
sets `storage.disk_capacity` as an integer. A variable with the prefix that is
not a known entry raises `ConfigError`. So does an unparsable value, or an
entry whose type cannot be set from the environment, such as the `array`
entry `server.initial_advertise_peer_addrs`. When a variable creates a missing
parent table, a warning is added to `result.warnings`.

Unknown fields in the document are rejected. The `server.mode` field selects
`StandaloneServerConfig` (`"standalone"`) or `ClusterServerConfig`
(`"cluster"`). `Config.default()` gives a standalone server listening on
`0.0.0.0:7654`, data in `/var/lib/percas/data`, and a disk capacity of
512 MiB. `Config.to_dict()` gives the plain document form and leaves out unset
options.

Durations such as `telemetry.metrics.opentelemetry.push_interval` accept ISO
8601 (`"PT30S"`) or friendly forms (`"1m 30s"`).

## Cache engine

```python
import asyncio

from percas.engine import CacheEngine


async def main():
    engine = await CacheEngine.try_new("/tmp/percas-data", 512 * 1024, 1024 * 1024, None)
    with engine:
        engine.put(b"foo", b"bar")
        print(await engine.get(b"foo"))  # b"bar"
        engine.delete(b"foo")
        print(engine.statistics())


asyncio.run(main())
```

Every `put` writes to a FIFO memory tier and to one file per entry under the
data directory. Each tier evicts its oldest entries first to stay within its
budget. The memory budget is 80% of `memory_capacity`. When `memory_capacity`
is `None`, the budget is 80% of the process's resident memory. Entries already
on disk are recovered when the engine is opened, and unreadable ones are
discarded. Passing a `DiskThrottle` limits disk IOPS and throughput.

## Runtime

```python
from percas.runtime import Builder


async def work():
    return 1 + 1

with Builder("my_runtime", "my_thread").worker_threads(2).build() as runtime:
    print(runtime.block_on(work()))                          # 2
    print(runtime.spawn_blocking(lambda: "hello").result())  # "hello"
```

`spawn` returns a `JoinHandle`. You can wait on it with `result()` or `await`
it from another event loop.

## Consistent hashing

```python
from percas.ring import HashRing

ring = HashRing.from_nodes(["node1", "node2", "node3"])
owner = ring.lookup("key1")
alive = ring.lookup_until("key1", lambda node: node != "node2")
```

Each node is placed on the ring `replica_count()` times, 256 by default.
`HashRing(replica_count)` sets another count. A ring position is the first
eight bytes of a SHA-256 digest, read big-endian. Nodes may be `str`, `bytes`
or `uuid.UUID`.

## Cluster membership

`GossipState(node, initial_peers, directory)` keeps a node's view of the
cluster. `await state.start(shutdown_event, host, port)` does the following:

- serves `POST /gossip` and `GET /members` on that address;
- pings and then syncs with the initial peers;
- starts the periodic tasks: ping, anti-entropy sync, ring rebuild and
  dead-member removal.

It returns the tasks, and they finish once `shutdown_event` is set. When
another node reports this node as dead, the node advances its incarnation and
writes it to `node_file_path(directory)`.

`Proxy(state).route(key)` returns `Local()` when this node owns the key, and
`RemoteAddr(addr)` with the owner's advertised address otherwise. The owner is
the first alive member found on the ring.

## Client

```python
import asyncio

from percas.client import ClientFactory, TooManyRequestsError


async def main():
    async with ClientFactory() as factory:
        client = factory.make_client("http://127.0.0.1:7654/")
        try:
            await client.put("greeting", b"hello")
            print(await client.get("greeting"))  # b"hello", or None when absent
            await client.delete("greeting")
        except TooManyRequestsError:
            print("server is busy, try again later")


asyncio.run(main())
```

A `get` of a missing key returns `None`. A server that answers
"429 Too Many Requests" raises `TooManyRequestsError`. Connection failures and
any other unexpected status raise `ClientError`.

## What this package does not do

- There is no command-line program.
- There is no HTTP server that serves the key-value API `Client` talks to.
- `Proxy` decides where a key belongs but does not forward requests.
- Telemetry settings are parsed and validated, but no logging, tracing or
  metrics exporters are set up from them.

## Tests

The test suite uses pytest and pytest-asyncio. Both are listed under the
`test` extra:

```
pip install -e ".[test]"
pytest
```