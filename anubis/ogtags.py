"""Open Graph tag fetching, extraction and caching for link previews."""

from __future__ import annotations

import http.client
import logging
import re
import socket
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Any
from urllib.parse import SplitResult, quote, urljoin, urlsplit

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 8 << 20
HTTP_TIMEOUT = 5.0
MAX_REDIRECTS = 10
CACHE_PREFIX = "ogtags:"
USER_AGENT = "Anubis-OGTag-Fetcher/1.0"
DEFAULT_APPROVED_TAGS = ("description", "keywords", "author")
DEFAULT_APPROVED_PREFIXES = ("og:", "twitter:", "fediverse:")

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
_VOID_ELEMENTS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img", "input",
        "link", "meta", "param", "source", "track", "wbr",
    }
)
_MIME_WORD = r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+"
_MEDIA_TYPE_RE = re.compile(rf"^{_MIME_WORD}(?:/{_MIME_WORD})?$")
_PARAM_RE = re.compile(rf'^\s*{_MIME_WORD}\s*=\s*(?:{_MIME_WORD}|"(?:[^"\\]|\\.)*")\s*$')
_LONE_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")


class OGHandledError(Exception):
    """A fetch failed in a way that was already dealt with; no tags result."""


class MemoryCache:
    """A thread-safe in-memory key/value store with per-entry expiry."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        """Return the value under ``key``; raise KeyError when absent or expired."""
        with self._lock:
            try:
                value, expires = self._items[key]
            except KeyError:
                raise KeyError(key) from None
            if expires is not None and time.monotonic() >= expires:
                del self._items[key]
                raise KeyError(key)
        return _copy(value)

    def set(self, key: str, value: Any, ttl: float | None) -> None:
        """Store ``value`` for ``ttl`` seconds; a missing or non-positive ttl never expires."""
        expires = time.monotonic() + ttl if ttl and ttl > 0 else None
        with self._lock:
            self._items[key] = (_copy(value), expires)


def _copy(value: Any) -> Any:
    return dict(value) if isinstance(value, dict) else value


@dataclass(eq=False)
class HtmlNode:
    """A node of a parsed HTML document.

    ``kind`` is one of "document", "element", "text", "comment" or "doctype";
    for elements ``data`` is the lower-case tag name.
    """

    kind: str
    data: str = ""
    attrs: list[tuple[str, str]] = field(default_factory=list)
    children: list[HtmlNode] = field(default_factory=list)


class _TreeBuilder(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.root = HtmlNode("document")
        self._stack = [self.root]

    def _append(self, node: HtmlNode) -> None:
        self._stack[-1].children.append(node)

    @staticmethod
    def _element(tag: str, attrs) -> HtmlNode:
        return HtmlNode("element", tag, [(key, value or "") for key, value in attrs])

    def handle_starttag(self, tag, attrs):
        node = self._element(tag, attrs)
        self._append(node)
        if tag not in _VOID_ELEMENTS:
            self._stack.append(node)

    def handle_startendtag(self, tag, attrs):
        self._append(self._element(tag, attrs))

    def handle_endtag(self, tag):
        for depth, node in enumerate(reversed(self._stack)):
            if node.kind == "element" and node.data == tag:
                del self._stack[len(self._stack) - 1 - depth :]
                return

    def handle_data(self, data):
        self._append(HtmlNode("text", data))

    def handle_comment(self, data):
        self._append(HtmlNode("comment", data))

    def handle_decl(self, decl):
        self._append(HtmlNode("doctype", decl))


def parse_html(text: str) -> HtmlNode:
    """Parse ``text`` into a tree of HtmlNode rooted at a document node."""
    builder = _TreeBuilder()
    builder.feed(text)
    builder.close()
    return builder.root


def _iter_nodes(root: HtmlNode) -> Iterator[HtmlNode]:
    pending = [root]
    while pending:
        node = pending.pop()
        yield node
        pending.extend(reversed(node.children))


def is_og_meta_tag(node: HtmlNode | None) -> bool:
    """Return True if ``node`` is any <meta> element."""
    return node is not None and node.kind == "element" and node.data == "meta"


def _parse_media_type(value: str) -> str:
    base, _, params = value.partition(";")
    base = base.strip().lower()
    if not base:
        raise ValueError("mime: no media type")
    if not _MEDIA_TYPE_RE.match(base):
        raise ValueError("mime: expected word after slash")
    for param in params.split(";") if params else ():
        if param.strip() and not _PARAM_RE.match(param):
            raise ValueError("mime: invalid media parameter")
    return base


def _escape_path(path: str) -> str:
    return quote(_LONE_PERCENT.sub("%25", path), safe="$&+,/:;=@%")


def _url_parts(url: Any) -> tuple[str, str]:
    if isinstance(url, str):
        url = urlsplit(url)
    return url.path or "", url.query or ""


def _parse_target(target: str) -> SplitResult:
    if not target:
        return urlsplit("http://localhost")
    try:
        return urlsplit(target)
    except ValueError as err:
        logger.debug("og: failed to parse target URL %r, treating as non-unix: %s", target, err)
        if "://" not in target and not target.startswith("unix:"):
            try:
                return urlsplit("http://" + target)
            except ValueError:
                pass
        return SplitResult("http", target, "", "", "")


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: float) -> None:
        super().__init__("unix", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self._socket_path)
        except BaseException:
            sock.close()
            raise
        self.sock = sock


class OGTagCache:
    """Fetches Open Graph tags from the protected site and caches them."""

    def __init__(
        self,
        target: str,
        backend: MemoryCache | None = None,
        *,
        enabled: bool = False,
        time_to_live: float = 0.0,
        consider_host: bool = False,
        override: dict[str, str] | None = None,
    ) -> None:
        self.target_url = _parse_target(target)
        self.socket_path = self.target_url.path if self.target_url.scheme == "unix" else None
        self.cache = backend if backend is not None else MemoryCache()
        self.unix_prefix = "http://unix"
        self.approved_tags = list(DEFAULT_APPROVED_TAGS)
        self.approved_prefixes = list(DEFAULT_APPROVED_PREFIXES)
        self.og_time_to_live = time_to_live
        self.og_cache_consider_host = consider_host
        self.og_passthrough = enabled
        self.og_override = dict(override or {})

    def get_og_tags(self, url: Any, original_host: str) -> dict[str, str] | None:
        """Return the approved tags of the page at ``url``, using the cache.

        Returns None when the page could not be used for reasons already
        handled, such as a refused connection or a non-OK status.
        """
        if url is None:
            raise ValueError("nil URL provided, cannot fetch OG tags")
        if self.og_override:
            return self.og_override

        target = self.get_target(url)
        cache_key = self.generate_cache_key(target, original_host)

        cached = self.check_cache(cache_key)
        if cached is not None:
            return cached

        try:
            document = self.fetch_html_document(target, original_host, cache_key)
        except ConnectionRefusedError:
            logger.debug("Connection refused, returning empty tags")
            return None
        except OGHandledError:
            return None

        tags = self.extract_og_tags(document)
        self._store(cache_key, tags, self.og_time_to_live)
        return tags

    def get_target(self, url: Any) -> str:
        """Build the upstream URL for the path and query of ``url``."""
        path, query = _url_parts(url)
        escaped = _escape_path(path)
        suffix = f"?{query}" if query else ""
        if self.target_url.scheme == "unix":
            return f"{self.unix_prefix}{escaped}{suffix}"
        host = self.target_url.netloc.rpartition("@")[2]
        return f"{self.target_url.scheme}://{host}{escaped}{suffix}"

    def generate_cache_key(self, target: str, original_host: str) -> str:
        if self.og_cache_consider_host:
            return f"{target}|{original_host}"
        return target

    def check_cache(self, cache_key: str) -> dict[str, str] | None:
        """Return cached tags for ``cache_key``, or None on a miss."""
        try:
            tags = self.cache.get(CACHE_PREFIX + cache_key)
        except KeyError:
            logger.debug("cache miss: %s", cache_key)
            return None
        logger.debug("cache hit: %s", tags)
        return tags

    def _store(self, cache_key: str, tags: dict[str, str], ttl: float) -> None:
        self.cache.set(CACHE_PREFIX + cache_key, tags, ttl)

    def _connection(self, parts: SplitResult) -> http.client.HTTPConnection:
        if self.socket_path is not None:
            return _UnixHTTPConnection(self.socket_path, HTTP_TIMEOUT)
        if not parts.hostname:
            raise ValueError(f"failed to create http request: no host in {parts.geturl()!r}")
        if parts.scheme == "http":
            return http.client.HTTPConnection(parts.hostname, parts.port, timeout=HTTP_TIMEOUT)
        if parts.scheme == "https":
            return http.client.HTTPSConnection(parts.hostname, parts.port, timeout=HTTP_TIMEOUT)
        raise ValueError(f"unsupported protocol scheme {parts.scheme!r}")

    def _open(self, url: str, original_host: str):
        current = url
        host = original_host
        for _ in range(MAX_REDIRECTS + 1):
            parts = urlsplit(current)
            conn = self._connection(parts)
            headers = {"X-Forwarded-Proto": "https", "User-Agent": USER_AGENT}
            if host:
                headers["Host"] = host
            request_path = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
            try:
                conn.request("GET", request_path, headers=headers)
                response = conn.getresponse()
            except BaseException:
                conn.close()
                raise
            location = response.getheader("Location")
            if response.status in _REDIRECT_STATUSES and location:
                conn.close()
                target = urlsplit(location)
                if target.scheme or target.netloc:
                    host = ""
                current = urljoin(current, location)
                continue
            return conn, response
        raise http.client.HTTPException(f"stopped after {MAX_REDIRECTS} redirects")

    @staticmethod
    def _read_body(response: http.client.HTTPResponse) -> bytes:
        chunks: list[bytes] = []
        total = 0
        while chunk := response.read(64 * 1024):
            total += len(chunk)
            if total > MAX_CONTENT_LENGTH:
                raise ValueError(f"content too large: exceeded {MAX_CONTENT_LENGTH} bytes")
            chunks.append(chunk)
        remaining = getattr(response, "length", None)
        if remaining:
            raise http.client.IncompleteRead(b"".join(chunks), remaining)
        return b"".join(chunks)

    def fetch_html_document(self, url: str, original_host: str, cache_key: str) -> HtmlNode:
        """Fetch and parse the HTML page at ``url``.

        Non-OK answers and unusable content types are cached as empty and
        raise OGHandledError; timeouts are cached as empty for half the TTL.
        """
        try:
            conn, response = self._open(url, original_host)
        except TimeoutError:
            logger.debug("og: request timed out: %s", url)
            self._store(cache_key, {}, self.og_time_to_live / 2)
            raise

        try:
            if response.status != 200:
                logger.debug("og: received non-OK status code %d: %s", response.status, url)
                self._store(cache_key, {}, self.og_time_to_live)
                raise OGHandledError("og: handled error: page not found")

            content_type = response.getheader("Content-Type") or ""
            if not content_type:
                raise ValueError("missing Content-Type header")
            try:
                media_type = _parse_media_type(content_type)
            except ValueError as err:
                logger.debug("og: malformed Content-Type header %r: %s", content_type, url)
                raise OGHandledError(f"og: handled error malformed Content-Type header: {err}") from err
            if media_type not in ("text/html", "application/xhtml+xml"):
                logger.debug("og: unsupported Content-Type %s: %s", media_type, url)
                raise OGHandledError(f"og: handled error unsupported Content-Type: {media_type}")

            body = self._read_body(response)
        finally:
            conn.close()

        return parse_html(body.decode("utf-8", errors="replace"))

    def extract_og_tags(self, document: HtmlNode) -> dict[str, str]:
        """Collect the approved meta tags of ``document``; later tags win."""
        tags: dict[str, str] = {}
        for node in _iter_nodes(document):
            if is_og_meta_tag(node):
                prop, content = self.extract_meta_tag_info(node)
                if prop:
                    tags[prop] = content
        return tags

    def extract_meta_tag_info(self, node: HtmlNode) -> tuple[str, str]:
        """Return the approved property name (or '') and content of a meta tag."""
        property_key = ""
        content = ""
        for key, value in node.attrs:
            if key in ("property", "name"):
                property_key = value
            elif key == "content":
                content = value
            if property_key and content:
                break

        if not property_key:
            return "", content
        if any(property_key.startswith(prefix) for prefix in self.approved_prefixes):
            return property_key, content
        if property_key in self.approved_tags:
            return property_key, content
        return "", content