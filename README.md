# zonelimit

Sliding-window rate limiting for HTTP applications, with no dependencies
outside the standard library.

Requests are sorted into **zones**. Each zone has a list of request
matcher sets, a **key** template that splits the zone into independent
limiters (one per client address, per path, or one shared limiter for a
static key), a **window** and a maximum number of **events** within that
window. When a limit is exceeded the request is refused with status 429
and a `Retry-After` header giving the number of seconds, rounded up, until
the next request would be allowed.

## Modules

- `zonelimit.ringbuffer` – `RingBufferRateLimiter`, which allows at most
  N events in any window of length W. `now()` and `set_clock()` control
  the clock it uses (`set_clock(None)` restores the system clock).
- `zonelimit.ratelimit` – `Request`, `MatcherSet`, `any_match`,
  `RateLimit` (one zone), `RateLimitersMap` (the limiters of a zone by
  key) and `ZoneRegistry` (a reference-counted store that keeps zone state
  across reconfiguration).
- `zonelimit.handler` – `Handler`, the middleware itself, plus
  `Replacer` and the `RateLimitExceeded` exception.
- `zonelimit.distributed` – state sharing between instances:
  `DistributedRateLimiting`, `RLState`, `write_rate_limit_state`, and the
  storage backends `Storage`, `FileStorage` and `MemoryStorage`.
- `zonelimit.metrics` – `MetricsCollector`, `register_metrics`,
  `get_metrics`, `reset_metrics`, and the `LabeledCounter`,
  `LabeledGauge` and `LabeledHistogram` they are built from.
- `zonelimit.durations` – `parse_duration` and `format_duration`.
- `zonelimit.caddyfile` – `parse_rate_limit` and `tokenize` for the
  `rate_limit { ... }` block syntax.

## Configuring a handler

A handler is built from a plain dictionary:

```python
import threading

from zonelimit.distributed import MemoryStorage
from zonelimit.handler import Handler

handler = Handler.from_dict({
    "rate_limits": {
        "api": {
            "match": [{"method": ["GET"]}],
            "key": "{http.request.remote.host}",
            "window": "60s",
            "max_events": 10,
        },
    },
    "jitter": 0.2,
    "sweep_interval": "1m",
})

stop = threading.Event()
handler.provision(MemoryStorage(), stop)
```

Handler keys: `rate_limits`, `jitter`, `sweep_interval`, `distributed`,
`storage` and `log_key`; unknown keys raise `ValueError`. Zone keys:
`match`, `key`, `window` and `max_events`. Durations may be strings in
the `300ms`, `10s`, `5m`, `1h30m` forms or plain numbers of seconds.

A zone's window must be greater than zero and its `max_events` at least
zero; jitter must not be negative. Zones are checked from the tightest
limit to the most permissive. The sweep interval defaults to one minute.
Zone names are shared through the handler's `registry` (by default the
module-level `zonelimit.handler.ZONES`), so a zone keeps its limiters when
a new handler with the same zone name is provisioned.

### Matchers

Each entry in `match` is a mapping with any of:

- `method` – one or more HTTP methods;
- `path` – glob patterns, compared case-insensitively;
- `host` – host names (any port is ignored);
- `header` – header names mapped to glob patterns for their values
  (an empty list only requires the header to be present).

All matchers in a set must match; a zone applies if any set matches, or
always if it has none.

### Keys

The key template may use these placeholders, filled from the request:
`{http.request.method}`, `{http.request.uri}`, `{http.request.uri.path}`,
`{http.request.uri.query}`, `{http.request.orig_uri}`,
`{http.request.orig_uri.path}`, `{http.request.orig_uri.query}`,
`{http.request.host}`, `{http.request.port}`, `{http.request.hostport}`,
`{http.request.remote}`, `{http.request.remote.host}`,
`{http.request.remote.port}` and `{http.request.header.<Name>}`.
Unknown placeholders expand to an empty string.

### Serving requests

`handler.serve(request, next_handler)` checks every matching zone and
then returns `next_handler(request)`. When a zone is full it raises
`RateLimitExceeded`, which carries `zone`, `key`, `wait`, `remote_ip`,
`retry_after` and `headers` (the `Retry-After` header). With jitter set,
up to `jitter × wait` is added to the wait at random.

Each refusal is logged through the `logging` module (including the key
only when `log_key` is set), and every callable in `handler.listeners` is
called with `"rate_limit_exceeded"` and a dictionary holding `zone`,
`wait` and `remote_ip`.

### Wrapping a WSGI application

```python
application = handler.wsgi_app(application)
```

Requests that fit within every matching zone are passed on to the wrapped
application; the others receive `429 Too Many Requests` with a
`Retry-After` header and an empty body.

### Distributed limiting

Add a `distributed` section to share state between instances that use
the same storage:

```python
handler = Handler.from_dict({
    "rate_limits": {
        "api": {"key": "static", "window": "60s", "max_events": 10},
    },
    "distributed": {
        "read_interval": "5s",
        "write_interval": "5s",
        "purge_age": "2h",
    },
    "storage": {"module": "file_system", "root": "/var/lib/zonelimit"},
})
```

Each instance writes its limiter state as JSON under
`rate_limit/instances/<instance_id>.rlstate` and reads the files of the
other instances; their counts are added to the local count when deciding
whether a request is allowed. Read and write intervals default to five
seconds; without `purge_age`, other instances' states are never deleted.
Storage may be given in the configuration (`file_system` with a `root`,
or `memory`), passed to `provision()`, or left to default to an
in-memory store. Distributed limiting is eventually consistent: shorter
intervals give more precise limits at the cost of more storage traffic.
All instances should use the same zone configuration.

When the handler is no longer needed, call `handler.cleanup()`: it
releases its zones from the registry and sets the stop event, ending the
background sweeping and syncing threads.

## Metrics

`provision()` registers one global set of metrics (`get_metrics()`):

- `requests_total` and `declined_total` counters by zone and key (a key
  of `""` holds the zone-wide total);
- `process_time` histogram of the time spent on rate limiting;
- `keys_total` gauge of the keys held per zone;
- `config` counter labelled with each zone's name, event limit and window.

They are kept in memory; nothing is exported over the network.

## Configuration block syntax

`zonelimit.caddyfile.parse_rate_limit(text)` returns an unprovisioned
`Handler` from text of this form:

```
rate_limit {
    zone <name> {
        key    <string>
        window <duration>
        events <max_events>
        match {
            method <methods...>
            path   <patterns...>
            host   <hosts...>
            header <name> <patterns...>
        }
    }
    distributed {
        read_interval  <duration>
        write_interval <duration>
        purge_age      <duration>
    }
    log_key
    storage memory
    storage file_system <root>
    jitter  <percent>
    sweep_interval <duration>
}
```

Each zone needs both a window and a number of events. Repeated settings,
unknown subdirectives and matchers, and malformed values raise
`CaddyfileError`, whose `line` attribute gives the line at fault.

## What this package does not do

It has no command-line program and no HTTP server of its own: it is a
library to be used from Python code, either through `Handler.serve` or
as WSGI middleware around an existing application. Storage is limited to
the local file system and process memory unless you supply your own
`Storage` subclass.

## Testing

The tests use pytest, which is installed with the `test` extra:

```
pip install -e .[test]
pytest
```