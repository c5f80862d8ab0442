# servicekit

Building blocks for backend services:

- **`servicekit.breaker`** – a circuit breaker that stops calling a failing
  operation and lets trial calls through again after a cool-down.
- **`servicekit.cache`** – a byte-valued cache with an in-memory backend and
  a Redis backend, plus `get_or_load` for cache-aside loading in which
  concurrent misses for one key share a single load.
- **`servicekit.discovery`** – service discovery with a static resolver and a
  resolver that queries the Consul health API.
- **`servicekit.eda`** – event-driven helpers:
  - `broker` – `Message`, `Publisher` and `Subscriber` abstractions, a
    backend registry and an in-process `MemoryBroker` with consumer groups;
  - `event` – event metadata, JSON envelopes, an in-process dispatcher and an
    outbox dispatcher that stores events through your own writer inside your
    transaction;
  - `migration` – `CREATE TABLE` statements for the outbox, inbox and inbox
    retry tables on PostgreSQL and MySQL.

Python 3.10 or later is required. The only runtime dependency is `redis`,
used by the Redis cache backend. All times (TTLs, timeouts, intervals) are in
seconds.

## Circuit breaker

```python
from servicekit.breaker import Breaker, BreakerError, BreakerOpenError, State

breaker = Breaker("payments")

def charge():
    ...  # call the remote service; raise on failure
    return "ok"

try:
    result = breaker.execute(charge)
except BreakerOpenError:
    ...  # the circuit is open; the call was not made
except BreakerError:
    ...  # charge() raised; the original exception is the __cause__

print(breaker.state())   # State.CLOSED, State.OPEN or State.HALF_OPEN
print(breaker.counts())  # Counts(requests=..., consecutive_failures=..., ...)
```

`Breaker(name, max_requests=1, interval=0.0, timeout=60.0, ready_to_trip=None)`:

- by default the breaker opens after five consecutive failures; pass
  `ready_to_trip`, a function of `Counts` returning `bool`, to change that;
- it stays open for `timeout` seconds, then goes half-open and allows
  `max_requests` trial calls; further calls while half-open raise
  `BreakerError`;
- with `interval` above zero, the counts are cleared every `interval`
  seconds while closed.

`execute(fn, cancel=None)` returns what `fn` returns. `cancel` may be any
object with `is_set()`, such as a `threading.Event`; when it is set the call
raises `OperationCancelledError` instead of a breaker error.

## Cache

```python
from servicekit import cache

store = cache.new(cache.Config(backend="memory"))

store.set("greeting", b"hello", ttl=60)
assert store.get("greeting") == b"hello"
assert store.exists("greeting")
store.delete("greeting")

def load_user():
    return b'{"id": 1}'

value = cache.get_or_load(store, "user:1", 60, load_user)
```

- A missing or expired key raises `CacheNotFoundError`.
- A TTL of zero or less means the value never expires.
- `get_or_load(cache, key, ttl, loader)` calls `loader()` with no arguments
  on a miss, stores its result and returns it; a failure to store is ignored,
  a failure of the loader propagates.
- `new(config)` uses `"memory"` when `config.backend` is empty; the
  `"redis"` backend connects to `config.addr`, given as `host:port` or as a
  `redis://` URL. An unknown name raises `UnknownBackendError`, whose message
  lists `registered_names()`.
- `register(name, factory)` and `unregister(name)` manage backends; a
  factory takes a `Config` and returns a `Cache`.
- `MemoryCache()` and `RedisCache(client)` can be built directly;
  `RedisCache` accepts a `redis.Redis` or any client with the same
  `get`/`set`/`delete`/`exists` methods.

## Service discovery

```python
from servicekit import discovery

resolver = discovery.static({
    "user-service": ["localhost:9001", "localhost:9002"],
})
assert resolver.resolve("user-service") == ["localhost:9001", "localhost:9002"]
```

- An unknown service, or one with no addresses, raises
  `ServiceNotFoundError`.
- `static(addresses)` copies the map, so later changes to it have no effect.
- `consul(addr, only_healthy=True)` returns a `ConsulResolver` that asks the
  agent at `addr` (or `CONSUL_HTTP_ADDR`, or `127.0.0.1:8500`) for the
  service's instances, only passing ones by default, and returns them as
  `address:port`. Network or decoding failures raise `DiscoveryError`.
- `new(config)` requires `config.backend` (`"static"` or `"consul"`); an
  empty or unknown name raises `DiscoveryError`. `register`, `unregister`
  and `registered_names` manage the backends.

## Brokers and events

```python
from servicekit.eda import broker, event

publisher, subscriber = broker.new(broker.Config(backend="memory"))

received = []
subscriber.subscribe("invoices", received.append, broker.SubscribeConfig(group="billing"))

meta = event.new_meta("invoice.published", 1).with_correlation("corr-1", "cause-1")
envelope = event.new_envelope(meta, {"id": "inv-1"})
publisher.publish(envelope.to_broker_message("invoices", "inv-1"))

restored = event.from_broker_message(received[0])
assert restored.meta.name == "invoice.published"
assert restored.decode_payload() == {"id": "inv-1"}
```

### Broker

- `broker.new(config)` returns a `(publisher, subscriber)` pair; an unknown
  backend raises `UnknownBackendError`. Only the `"memory"` backend is
  registered; add others with `broker.register(name, factory)`.
- `MemoryBroker` delivers synchronously during `publish`. Handlers without a
  group all receive each message; within a non-empty consumer group only the
  first subscribed handler does. Exceptions raised by handlers are ignored.
  `close()` drops all subscriptions.
- `SubscribeConfig` holds `group`, `concurrency` (default 1), `max_retries`
  (default 3) and `ack_timeout` (default 30.0); the memory broker uses only
  `group`.

### Events

- `new_meta(name, version)` sets a fresh time-ordered UUID (version 7, also
  available as `new_id()`) and the current UTC time. `with_correlation` and
  `with_source` return modified copies.
- `to_broker_message(topic, key)` encodes the whole envelope as JSON and sets
  the headers `event_name`, `event_version`, `correlation_id` and
  `causation_id`.
- Encoding or decoding failures raise `EventError`.
- `InProcessDispatcher.on(event_name, handler)` registers a handler that
  receives the `Envelope`; `dispatch(*events)` runs handlers in registration
  order and raises `DispatchError` at the first failure.
- `OutboxDispatcher(writer, tx_from_context, source)` stores each event
  through `writer.store(tx, topic, key, envelope)`, with topic
  `meta.name`, key `meta.headers["entity_id"]` (empty if absent) and
  `source` applied to the metadata. `tx_from_context()` must return the
  active transaction or `None`; with `None` it raises `NoTransactionError`.
  `writer` implements the `Storer` interface.

## Migrations

`servicekit.eda.migration` holds `POSTGRES_OUTBOX`, `POSTGRES_INBOX`,
`POSTGRES_INBOX_DLQ_RETRIES`, `MYSQL_OUTBOX`, `MYSQL_INBOX` and
`MYSQL_INBOX_DLQ_RETRIES`. Copy them into your migration tool.

## What the package does not do

- It ships no networked message broker: only the in-process memory broker
  is registered.
- It does not write to or read from an outbox table itself: you supply the
  `Storer` that writes rows, and there is no relay that publishes them.
- It never runs SQL; the migration statements are plain strings.
- It has no command-line interface.