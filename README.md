# anubis

Building blocks for putting a screening layer in front of a web application.
Everything here is plain Python with no third-party dependencies.

## What is inside

- `anubis.middleware` — WSGI middleware for request and response headers:
  - `x_forwarded_for_update(strip_private, app)` rewrites `X-Forwarded-For`
    from the connection's remote address, dropping loopback, link-local and
    CGNAT hops (and private ones when `strip_private` is true) and keeping
    only the last remaining address. Requests from a unix socket
    (`REMOTE_ADDR` of `@`) are left alone.
  - `x_forwarded_for_to_x_real_ip(app)` sets `X-Real-Ip` from the first public
    address in `X-Forwarded-For` (see `parse_xff`) when it is not already set.
  - `remote_x_real_ip(use_remote_address, bind_network, app)` sets `X-Real-Ip`
    from the remote address, or to `127.0.0.1` when `bind_network` is `"unix"`.
  - `gzip_middleware(level, app)` compresses responses for clients that accept
    gzip; `level` must be between -2 and 9.
  - `unchanging_cache(version, app)` adds a one-year `Cache-Control` header
    unless `version` is `"devel"`; `no_store_cache(app)` adds `no-store`.
  - `no_browsing(app)` answers 404 for any path ending in `/`.
  - `compute_xff_header(remote_addr, orig_xff_header, pref)` is the pure
    function behind the `X-Forwarded-For` rewrite, driven by
    `XFFComputePreferences`. It raises `CantSplitHostPortError` or
    `CantParseRemoteIPError` (both `XFFError`, a `ValueError`) for a bad
    remote address.
  - `split_host_port` splits `host:port` and `[host]:port` addresses.
  - `register_mime_types()` registers `.mjs` as `text/javascript`; it runs
    when the module is imported.
- `anubis.hashing` — `sha256sum` (hex SHA-256) and `fast_hash`, the XXH64 hash
  (`xxh64`) of a string rendered as lower-case hex without zero padding, for
  cache keys and rule identifiers.
- `anubis.logs` — `init_logging(level)` sends JSON log records to stderr at a
  level named `DEBUG`, `INFO`, `WARN` or `ERROR` (optionally with an offset
  such as `INFO+2`), falling back to INFO for unknown names;
  `get_request_logger(headers)` returns a logger that attaches a request's
  User-Agent, Accept-Language, Priority, X-Forwarded-For and X-Real-Ip to every
  record; `ErrorLogFilter` is a writable stream that drops any message
  containing "context canceled"; `get_filtered_http_logger()` returns a stderr
  logger that goes through it.
- `anubis.health` — a process-wide registry of `ServingStatus` values per
  service name through `set_health` and `get_health`. The empty service name
  starts out as `SERVING`.
- `anubis.dnsbl` — query-name building (`reverse`, `reverse4`, `reverse6`) and
  `lookup`, which resolves an address against the DroneBL zone through the
  system resolver and returns a `DroneBLResponse`.
- `anubis.thoth` — a `Client` holding an IP-to-ASN service, a prefix cache in
  front of such a service (`IPToASNWithCache`, which answers reserved and
  private ranges locally as not announced), and `ASNChecker` and
  `GeoIPChecker`, which match a request's `X-Real-Ip` header against AS numbers
  or lower-case country codes. Lookup failures count as no match.
  `using_client` and `from_context` make a client current for a block of code.
- `anubis.thothmock` — `MockIpToASNService`, an in-memory service with fixed
  answers; `mock_ip_to_asn_service()` returns one preloaded with a few
  addresses, and `with_mock_thoth()` makes a client backed by it current.
- `anubis.ogtags` — `OGTagCache`, which fetches a page from the upstream
  (over HTTP, HTTPS or a `unix:` socket path), extracts approved Open Graph,
  Twitter and fediverse meta tags plus `description`, `keywords` and `author`,
  and caches them in a `MemoryCache`. `parse_html` and `HtmlNode` give the
  small document tree it works on.
- `anubis.devtools` — `unbreak_docker()` runs
  `docker network connect bridge <hostname>` so a development container can
  reach containers on the default bridge network; failures are ignored.

## Examples

Computing an `X-Forwarded-For` chain:

```python
from anubis.middleware import XFFComputePreferences, compute_xff_header

prefs = XFFComputePreferences(strip_private=True)
compute_xff_header("127.0.0.1:80", "1.1.1.1,10.0.0.1", prefs)
# '1.1.1.1,127.0.0.1'
```

Wrapping a WSGI application:

```python
from anubis.middleware import (
    no_browsing,
    x_forwarded_for_to_x_real_ip,
    x_forwarded_for_update,
)

app = x_forwarded_for_update(True, x_forwarded_for_to_x_real_ip(no_browsing(app)))
```

Building a DNSBL query name:

```python
from anubis.dnsbl import reverse4

reverse4("1.2.3.4")
# '4.3.2.1'
```

Checking a request against an ASN list with the mock service:

```python
from anubis.thoth import Client
from anubis.thothmock import mock_ip_to_asn_service

client = Client()
client.with_ip_to_asn_service(mock_ip_to_asn_service())

checker = client.asn_checker_for([13335])
checker.check({"X-Real-Ip": "1.1.1.1"})   # True
checker.check({"X-Real-Ip": "2.2.2.2"})   # False
```

Extracting tags from a page already in hand:

```python
from anubis.ogtags import OGTagCache, parse_html

cache = OGTagCache("http://localhost:8080", time_to_live=60)
doc = parse_html('<meta property="og:title" content="Hello">')
cache.extract_og_tags(doc)
# {'og:title': 'Hello'}
```

Hashing:

```python
from anubis.hashing import fast_hash, sha256sum

sha256sum("hello")   # 64 hex characters
fast_hash("hello")   # at most 16 hex characters
```

## What this package does not do

- It has no command and no server of its own: the middleware is meant to be
  wrapped around your WSGI application and run by a WSGI server of your choice.
- It does not talk to a remote IP-to-ASN service. `Client` works with any
  object that has a `lookup(ip_address)` method returning a `LookupResponse`;
  the only one provided is `MockIpToASNService`.
- Caches are in memory only (`MemoryCache`, and the prefix table of
  `IPToASNWithCache`); nothing is persisted or shared between processes.
- The health registry is a plain in-process table; it does not serve health
  checks over the network.

## Testing

The test suite uses pytest; install the package with its `test` extra to get it.