import os
import shutil
import socket
import socketserver
import tempfile
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import SplitResult, urlsplit

import pytest

from anubis.ogtags import (
    CACHE_PREFIX,
    HtmlNode,
    MemoryCache,
    OGHandledError,
    OGTagCache,
    is_og_meta_tag,
    parse_html,
)

OG_PAGE = b"""
<!DOCTYPE html>
<html>
<head>
    <meta property="og:title" content="Test Title" />
    <meta property="og:description" content="Test Description" />
    <meta property="og:image" content="http://example.com/image.jpg" />
</head>
<body><p>Hello, world!</p></body>
</html>
"""

GAMMA = "\u0393"
HEART = "\u2764\ufe0f"
PARTY = "\U0001f389"
CYRILLIC_PATH = (
    "/\u043f\u0440\u0438\u043c\u0435\u0440"
    "/\u043a\u0438\u0440\u0438\u043b\u043b\u0438\u0446\u0430"
)
CYRILLIC_QUERY = "q=\u0442\u0435\u0441\u0442"
CHINESE_PATH = "/\u4e2d\u6587/\u8def\u5f84"
CHINESE_QUERY = "\u67e5\u8be2=\u503c"


class _Site:
    def __init__(self, server, requests):
        self.server = server
        self.requests = requests
        host, port = server.server_address[:2]
        self.host = f"{host}:{port}"
        self.url = f"http://{self.host}"


def _handler_class(respond, requests):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            requests.append({"path": self.path, "headers": dict(self.headers)})
            status, headers, body = respond(self)
            self.send_response(status)
            for key, value in headers.items():
                self.send_header(key, value)
            if "Content-Length" not in headers:
                self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    return Handler


@pytest.fixture
def serve():
    servers = []

    def start(respond):
        requests = []
        server = ThreadingHTTPServer(("127.0.0.1", 0), _handler_class(respond, requests))
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return _Site(server, requests)

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


def _html(body=OG_PAGE, content_type="text/html"):
    return lambda handler: (200, {"Content-Type": content_type}, body)


def _new_cache(target, **kwargs):
    kwargs.setdefault("enabled", True)
    kwargs.setdefault("time_to_live", 60.0)
    return OGTagCache(target, MemoryCache(), **kwargs)


def _find(root, tag):
    if root.kind == "element" and root.data == tag:
        return root
    for child in root.children:
        found = _find(child, tag)
        if found is not None:
            return found
    return None


# --- memory cache ---------------------------------------------------------


def test_memory_cache_set_get_and_miss():
    store = MemoryCache()
    with pytest.raises(KeyError):
        store.get("missing")
    store.set("k", {"a": "b"}, 60)
    assert store.get("k") == {"a": "b"}


def test_memory_cache_expiry():
    store = MemoryCache()
    store.set("k", {"a": "b"}, 0.01)
    time.sleep(0.05)
    with pytest.raises(KeyError):
        store.get("k")


# --- cache behaviour ------------------------------------------------------


def test_cache_returns_default():
    want = {"og:title": "Foo bar", "og:description": "The best website ever made!!!1!"}
    cache = _new_cache("", override=want)
    result = cache.get_og_tags("https://anubis.techaro.lol", "anubis.techaro.lol")
    assert result == want


def test_check_cache():
    cache = _new_cache("http://example.com")
    expected = {"og:title": "Test Title", "og:description": "Test Description"}
    key = cache.generate_cache_key("http://example.com/page", "example.com")
    assert cache.check_cache(key) is None
    cache.cache.set(CACHE_PREFIX + key, expected, 60)
    assert cache.check_cache(key) == expected


def test_generate_cache_key_considers_host():
    assert _new_cache("", consider_host=True).generate_cache_key("t", "h") == "t|h"
    assert _new_cache("", consider_host=False).generate_cache_key("t", "h") == "t"


def test_get_og_tags_uses_cache(serve):
    site = serve(_html())
    cache = _new_cache(site.url)
    expected = {
        "og:title": "Test Title",
        "og:description": "Test Description",
        "og:image": "http://example.com/image.jpg",
    }
    first = cache.get_og_tags(site.url, site.host)
    second = cache.get_og_tags(site.url, site.host)
    third = cache.get_og_tags(site.url, site.host)
    assert first == expected
    assert second == expected
    assert third == first
    assert len(site.requests) == 1


@pytest.mark.parametrize(
    "consider_host, requests",
    [
        (False, [("host1", 1), ("host1", 1)]),
        (False, [("host1", 1), ("host2", 1)]),
        (True, [("host1", 1), ("host1", 1)]),
        (True, [("host1", 1), ("host2", 2), ("host2", 2), ("host1", 2)]),
    ],
)
def test_get_og_tags_with_host_consideration(serve, consider_host, requests):
    page = b"""<html><head>
        <meta property="og:title" content="Test Title" />
        <meta property="og:description" content="Test Description" />
        </head><body><p>Content</p></body></html>"""
    site = serve(_html(page))
    cache = _new_cache(site.url, consider_host=consider_host)
    for host, expected_loads in requests:
        tags = cache.get_og_tags(site.url, host)
        assert tags == {"og:title": "Test Title", "og:description": "Test Description"}
        assert len(site.requests) == expected_loads


# --- fetching -------------------------------------------------------------

VALID_PAGE = (
    b"<!DOCTYPE html><html><head><title>Test</title></head>"
    b"<body><p>Test content</p></body></html>"
)


@pytest.mark.parametrize(
    "status, content_type, body, extra_headers, expect_error",
    [
        (200, "text/html", VALID_PAGE, {}, False),
        (200, "text/html", b"", {}, False),
        (404, "text/html", b"", {}, True),
        (200, "video/mp4", b"*Insert rick roll here*", {}, True),
        (200, "text/html", b"X", {"Content-Length": str(5 * 1024 * 1024)}, True),
    ],
    ids=["valid", "empty", "not-found", "unsupported", "too-large"],
)
def test_fetch_html_document(serve, status, content_type, body, extra_headers, expect_error):
    def respond(handler):
        return status, {"Content-Type": content_type, **extra_headers}, body

    site = serve(respond)
    cache = _new_cache("")
    key = cache.generate_cache_key(site.url, "anything")
    if expect_error:
        with pytest.raises(Exception):
            cache.fetch_html_document(site.url, "anything", key)
    else:
        document = cache.fetch_html_document(site.url, "anything", key)
        assert document.kind == "document"


def test_fetch_sends_proxy_headers(serve):
    site = serve(_html())
    cache = _new_cache("")
    cache.fetch_html_document(site.url + "/x", "original.example.com", "k")
    headers = site.requests[0]["headers"]
    assert headers["Host"] == "original.example.com"
    assert headers["X-Forwarded-Proto"] == "https"
    assert headers["User-Agent"] == "Anubis-OGTag-Fetcher/1.0"


def test_fetch_not_found_is_handled_and_cached_empty(serve):
    site = serve(lambda handler: (404, {"Content-Type": "text/html"}, b""))
    cache = _new_cache("")
    with pytest.raises(OGHandledError):
        cache.fetch_html_document(site.url, "", "key")
    assert cache.check_cache("key") == {}


def test_fetch_missing_content_type(serve):
    site = serve(lambda handler: (200, {}, b"<html></html>"))
    cache = _new_cache("")
    with pytest.raises(ValueError, match="missing Content-Type"):
        cache.fetch_html_document(site.url, "", "key")


def test_fetch_malformed_content_type_is_handled(serve):
    site = serve(_html(content_type="text/"))
    cache = _new_cache(site.url)
    with pytest.raises(OGHandledError):
        cache.fetch_html_document(site.url, "", "key")
    assert cache.get_og_tags(site.url, "") is None


def test_fetch_follows_redirects(serve):
    def respond(handler):
        if handler.path == "/old":
            return 302, {"Location": "/new", "Content-Type": "text/html"}, b""
        return 200, {"Content-Type": "text/html"}, OG_PAGE

    site = serve(respond)
    cache = _new_cache(site.url)
    tags = cache.get_og_tags(site.url + "/old", site.host)
    assert tags["og:title"] == "Test Title"
    assert [r["path"] for r in site.requests] == ["/old", "/new"]


def test_connection_refused_returns_none():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    cache = _new_cache(f"http://127.0.0.1:{port}")
    assert cache.get_og_tags("/", "") is None
    with pytest.raises(ConnectionRefusedError):
        cache.fetch_html_document(f"http://127.0.0.1:{port}/", "", "k")


def test_get_og_tags_rejects_none():
    with pytest.raises(ValueError):
        _new_cache("").get_og_tags(None, "")


# --- integration ----------------------------------------------------------


def _integration_respond(handler):
    path = urlsplit(handler.path).path
    pages = {
        "/simple": b"""<html><head>
            <meta property="og:title" content="Simple Page" />
            <meta property="og:type" content="website" />
            </head><body><p>Simple page content</p></body></html>""",
        "/complete": b"""<html><head>
            <meta property="og:title" content="Complete Page" />
            <meta property="og:description" content="A page with many OG tags" />
            <meta property="og:image" content="http://example.com/image.jpg" />
            <meta property="og:url" content="http://example.com/complete" />
            <meta property="og:type" content="article" />
            </head><body><p>Complete page content</p></body></html>""",
        "/no-og": b"""<html><head><title>No OG Tags</title></head>
            <body><p>No OG tags here</p></body></html>""",
    }
    if path in pages:
        return 200, {"Content-Type": "text/html"}, pages[path]
    return 404, {"Content-Type": "text/html"}, b""


@pytest.mark.parametrize(
    "path, query, expected",
    [
        ("/simple", "", {"og:title": "Simple Page", "og:type": "website"}),
        (
            "/complete",
            "ref=test",
            {
                "og:title": "Complete Page",
                "og:description": "A page with many OG tags",
                "og:image": "http://example.com/image.jpg",
                "og:url": "http://example.com/complete",
                "og:type": "article",
            },
        ),
        ("/no-og", "", {}),
    ],
)
def test_integration_get_og_tags(serve, path, query, expected):
    site = serve(_integration_respond)
    cache = _new_cache(site.url)
    url = site.url + path + ("?" + query if query else "")
    assert cache.get_og_tags(url, site.host) == expected
    assert cache.get_og_tags(url, site.host) == expected
    assert len(site.requests) == 1


def test_integration_nonexistent_page(serve):
    site = serve(_integration_respond)
    cache = _new_cache(site.url)
    url = site.url + "/not-found"
    assert cache.get_og_tags(url, site.host) is None
    assert cache.get_og_tags(url, site.host) == {}
    assert len(site.requests) == 1


# --- construction and targets ---------------------------------------------


@pytest.mark.parametrize(
    "target, passthrough, ttl, expected_url",
    [
        ("http://example.com", True, 300.0, "http://example.com"),
        ("", False, 600.0, "http://localhost"),
    ],
)
def test_new_og_tag_cache(target, passthrough, ttl, expected_url):
    cache = OGTagCache(target, MemoryCache(), enabled=passthrough, time_to_live=ttl)
    assert cache.target_url.geturl() == expected_url
    assert cache.og_passthrough is passthrough
    assert cache.og_time_to_live == ttl


def test_new_og_tag_cache_unix_socket(tmp_path):
    socket_path = str(tmp_path / "test.sock")
    cache = _new_cache("unix://" + socket_path)
    assert cache.target_url.scheme == "unix"
    assert cache.target_url.path == socket_path
    assert cache.socket_path == socket_path
    with pytest.raises(OSError):
        cache.fetch_html_document("http://unix/", "", "k")


@pytest.mark.parametrize(
    "target, path, query, expected",
    [
        ("http://example.com", "", "", "http://example.com"),
        (
            "http://example.com",
            "/pag(#*((#@)" + GAMMA * 4 + "e/" + GAMMA,
            "id=123",
            "http://example.com/pag%28%23%2A%28%28%23@%29%CE%93%CE%93%CE%93%CE%93e/%CE%93?id=123",
        ),
        ("http://example.com", "/page", "id=123", "http://example.com/page?id=123"),
        (
            "unix:/tmp/anubis.sock",
            "/some/path",
            "key=value&flag=true",
            "http://unix/some/path?key=value&flag=true",
        ),
        ("unix:///var/run/anubis.sock", "/", "", "http://unix/"),
    ],
)
def test_get_target(target, path, query, expected):
    cache = _new_cache(target)
    url = SplitResult("", "", path, query, "")
    assert cache.get_target(url) == expected


class _UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


def test_integration_get_og_tags_unix_socket():
    directory = tempfile.mkdtemp()
    socket_path = os.path.join(directory, "t")
    requests = []
    page = (
        b'<!DOCTYPE html><html><head><meta property="og:title" content="Unix Socket Test" />'
        b"</head><body>Test</body></html>\n"
    )
    server = _UnixHTTPServer(socket_path, _handler_class(_html(page), requests))
    threading.Thread(target=server.serve_forever, daemon=True).start()
    try:
        cache = _new_cache("unix://" + socket_path)
        tags = cache.get_og_tags("/some/page?query=1", "")
        assert tags == {"og:title": "Unix Socket Test"}
        assert cache.get_og_tags("/some/page?query=1", "") == {"og:title": "Unix Socket Test"}
        assert [r["path"] for r in requests] == ["/some/page?query=1"]
    finally:
        server.shutdown()
        server.server_close()
        shutil.rmtree(directory, ignore_errors=True)


@pytest.mark.parametrize(
    "target, path, query",
    [
        ("http://example.com", "/", ""),
        ("http://example.com", "/path", "q=1"),
        ("unix:///tmp/socket", "/api", "key=value"),
        ("https://example.com:8080", "/path/to/resource", "a=1&b=2"),
        ("http://example.com", "/path with spaces", "q=hello world"),
        ("http://example.com", "/path/" + HEART + "/emoji", "emoji=" + PARTY),
        ("http://example.com", "/path/../../../etc/passwd", ""),
        ("http://example.com", "/path%2F%2E%2E%2F", "q=%3Cscript%3E"),
        ("unix:///var/run/app.sock", "/../../etc/passwd", ""),
        ("http://[::1]:8080", "/ipv6", "test=1"),
        ("http://example.com", "/very/long/path" * 100, "param=value&" * 100),
        ("http://example.com", CYRILLIC_PATH, CYRILLIC_QUERY),
        ("http://example.com", CHINESE_PATH, CHINESE_QUERY),
        ("", "/path", "q=1"),
    ],
)
def test_get_target_seed_inputs(target, path, query):
    cache = OGTagCache(target)
    url = SplitResult("", "", path, query, "")
    result = cache.get_target(url)
    assert result
    assert all(cache.get_target(url) == result for _ in range(3))
    parsed = urlsplit(result)
    if target.startswith("unix:"):
        assert parsed.scheme == "http"
        assert parsed.netloc == "unix"


@pytest.mark.parametrize(
    "target, path, query",
    [
        ("http://example.com", "/path/to/resource", "key=value&foo=bar"),
        ("http://example.com", "/pag(e)", "a=b"),
    ],
)
def test_get_target_round_trip(target, path, query):
    cache = OGTagCache(target)
    result = cache.get_target(SplitResult("", "", path, query, ""))
    parsed = urlsplit(result)
    assert parsed.query == query
    assert parsed.netloc == "example.com"
    bare = cache.get_target(SplitResult("", "", path, "", ""))
    assert parsed.path == bare[len("http://example.com"):]


# --- parsing --------------------------------------------------------------


def _restricted_cache():
    cache = _new_cache("", enabled=False)
    cache.approved_tags = ["description"]
    cache.approved_prefixes = ["og:"]
    return cache


@pytest.mark.parametrize(
    "html_text, expected",
    [
        (
            """<!DOCTYPE html><html><head>
            <meta property="og:title" content="Test Title" />
            <meta property="og:description" content="Test Description" />
            <meta name="description" content="Regular Description" />
            <meta name="keywords" content="test, keyword" />
            </head><body></body></html>""",
            {
                "og:title": "Test Title",
                "og:description": "Test Description",
                "description": "Regular Description",
            },
        ),
        (
            """<!DOCTYPE html><html><head>
            <meta name="og:title" content="Test Title" />
            <meta property="og:description" content="Test Description" />
            <meta name="twitter:card" content="summary" />
            </head><body></body></html>""",
            {"og:title": "Test Title", "og:description": "Test Description"},
        ),
        (
            """<!DOCTYPE html><html><head>
            <meta name="description" content="Test Description" />
            <meta name="keywords" content="Test" />
            </head><body></body></html>""",
            {"description": "Test Description"},
        ),
        (
            """<!DOCTYPE html><html><head>
            <meta property="og:title" content="" />
            <meta property="og:description" content="Test Description" />
            </head><body></body></html>""",
            {"og:title": "", "og:description": "Test Description"},
        ),
        (
            """<!DOCTYPE html><html><head>
            <meta property="description" content="Approved Description Tag" />
            </head><body></body></html>""",
            {"description": "Approved Description Tag"},
        ),
    ],
)
def test_extract_og_tags(html_text, expected):
    cache = _restricted_cache()
    assert cache.extract_og_tags(parse_html(html_text)) == expected


@pytest.mark.parametrize(
    "node_html, target, expected",
    [
        ('<meta property="og:title" content="Test">', "meta", True),
        ('<meta name="description" content="Test">', "meta", True),
        ("<div>Test</div>", "div", False),
    ],
)
def test_is_og_meta_tag(node_html, target, expected):
    doc = parse_html("<html><head>" + node_html + "</head><body></body></html>")
    node = _find(doc, target)
    assert node is not None
    assert is_og_meta_tag(node) is expected


def test_is_og_meta_tag_none():
    assert is_og_meta_tag(None) is False
    assert is_og_meta_tag(HtmlNode("text", "meta")) is False


@pytest.mark.parametrize(
    "node_html, expected_property, expected_content",
    [
        ('<meta property="og:title" content="Test Title">', "og:title", "Test Title"),
        ('<meta name="og:description" content="Test Description">', "og:description", "Test Description"),
        ('<meta name="description" content="Test Description">', "description", "Test Description"),
        ('<meta name="keywords" content="Test Keywords">', "", "Test Keywords"),
        ('<meta name="twitter:card" content="summary">', "", "summary"),
        ('<meta property="og:title">', "og:title", ""),
        ('<meta content="No property">', "", "No property"),
        (
            '<meta property="description" content="Approved Description Tag">',
            "description",
            "Approved Description Tag",
        ),
    ],
)
def test_extract_meta_tag_info(node_html, expected_property, expected_content):
    doc = parse_html("<html><head>" + node_html + "</head><body></body></html>")
    node = _find(doc, "meta")
    assert node is not None
    assert _restricted_cache().extract_meta_tag_info(node) == (expected_property, expected_content)


def test_default_approved_lists():
    cache = OGTagCache("http://example.com")
    doc = parse_html(
        """<html><head>
        <meta property="og:title" content="Test Title">
        <meta property="twitter:card" content="summary">
        <meta name="keywords" content="test,keywords,example">
        <meta name="author" content="Test Author">
        <meta property="fediverse:creator" content="someone">
        <meta property="unknown:tag" content="Should be ignored">
        </head><body></body></html>"""
    )
    assert cache.extract_og_tags(doc) == {
        "og:title": "Test Title",
        "twitter:card": "summary",
        "keywords": "test,keywords,example",
        "author": "Test Author",
        "fediverse:creator": "someone",
    }


DEEP_HTML = (
    "<html>"
    + "<div>" * 1000
    + '<meta property="og:title" content="Deep nesting">'
    + "</div>" * 1000
    + "</html>"
)


@pytest.mark.parametrize(
    "html_text",
    [
        '<html><head><meta property="og:title" content="Test"></head></html>',
        '<meta property="og:title" content="No HTML tags">',
        "<html><head>" + '<meta property="og:title" content="Many tags">' * 1000 + "</head></html>",
        '<html><head><meta property="og:title" content="<script>alert(1)</script>"></head></html>',
        '<html><head><meta property="og:title" content="Line1&#10;Line2"></head></html>',
        "<html><head><meta property=og:title content=no-quotes></head></html>",
        '<html><head><meta property="unknown:tag" content="Should be ignored"></head></html>',
        DEEP_HTML,
        '<html><head><meta property="" content="Empty property"></head></html>',
        "",
        '<html><head><!--<meta property="og:title" content="Commented out">--></head></html>',
        '<html><head><META PROPERTY="OG:TITLE" CONTENT="UPPERCASE"></head></html>',
    ],
)
def test_extract_og_tags_seed_inputs(html_text):
    cache = OGTagCache("http://example.com")
    doc = parse_html(html_text)
    tags = cache.extract_og_tags(doc)
    for prop in tags:
        approved = any(prop.startswith(p) for p in cache.approved_prefixes)
        assert approved or prop in cache.approved_tags
    assert cache.extract_og_tags(doc) == tags


def test_extract_og_tags_specific_seed_values():
    cache = OGTagCache("http://example.com")
    line_break = '<html><head><meta property="og:title" content="Line1&#10;Line2"></head></html>'
    assert cache.extract_og_tags(parse_html(line_break)) == {"og:title": "Line1\nLine2"}
    commented = '<html><head><!--<meta property="og:title" content="x">--></head></html>'
    assert cache.extract_og_tags(parse_html(commented)) == {}
    upper = '<html><head><META PROPERTY="OG:TITLE" CONTENT="UPPERCASE"></head></html>'
    assert cache.extract_og_tags(parse_html(upper)) == {}
    unquoted = "<html><head><meta property=og:title content=no-quotes></head></html>"
    assert cache.extract_og_tags(parse_html(unquoted)) == {"og:title": "no-quotes"}
    assert cache.extract_og_tags(parse_html(DEEP_HTML)) == {"og:title": "Deep nesting"}


@pytest.mark.parametrize(
    "value, content, key, expected_property",
    [
        ("og:title", "Test Title", "property", "og:title"),
        ("keywords", "test,keywords", "name", "keywords"),
        ("og:description", 'A description with "quotes"', "property", "og:description"),
        ("twitter:card", "summary", "property", "twitter:card"),
        ("unknown:tag", "Should be filtered", "property", ""),
        ("", "Content without property", "property", ""),
        ("og:title", "", "property", "og:title"),
    ],
)
def test_extract_meta_tag_info_seed_inputs(value, content, key, expected_property):
    node = HtmlNode("element", "meta", [(key, value), ("content", content)])
    prop, got_content = OGTagCache("http://example.com").extract_meta_tag_info(node)
    assert prop == expected_property
    assert got_content == content