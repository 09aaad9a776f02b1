"""WSGI middleware for client addresses, caching headers and compression."""

from __future__ import annotations

import ipaddress
import logging
import mimetypes
import zlib
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WSGIApp = Callable[..., Iterable[bytes]]

CGNAT = ipaddress.ip_network("100.64.0.0/10")

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)
_BROADCAST = ipaddress.ip_address("255.255.255.255")


@dataclass(frozen=True)
class XFFComputePreferences:
    """Which addresses to drop from an X-Forwarded-For chain, and whether to flatten it."""

    strip_private: bool = False
    strip_loopback: bool = False
    strip_cgnat: bool = False
    strip_llu: bool = False
    flatten: bool = False


class XFFError(ValueError):
    """An X-Forwarded-For header could not be computed."""


class CantSplitHostPortError(XFFError):
    """The remote address is not in host:port form."""


class CantParseRemoteIPError(XFFError):
    """The remote host is not an IP address."""


def _header_key(name: str) -> str:
    return "HTTP_" + name.upper().replace("-", "_")


def _unmap(ip):
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _is_private(ip) -> bool:
    ip = _unmap(ip)
    return any(ip.version == net.version and ip in net for net in _PRIVATE_NETWORKS)


def _is_loopback(ip) -> bool:
    return _unmap(ip).is_loopback


def _is_link_local_unicast(ip) -> bool:
    return _unmap(ip).is_link_local


def _in_cgnat(ip) -> bool:
    return ip.version == 4 and ip in CGNAT


def _is_global_unicast(ip) -> bool:
    ip = _unmap(ip)
    return not (
        ip == _BROADCAST
        or ip.is_unspecified
        or ip.is_loopback
        or ip.is_multicast
        or ip.is_link_local
    )


def split_host_port(address: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into host and port.

    Raises ValueError when the address has no port or too many colons.
    """
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        rest = address[end + 1 :]
        if not rest:
            raise ValueError(f"address {address}: missing port in address")
        if not rest.startswith(":") or ":" in rest[1:]:
            raise ValueError(f"address {address}: too many colons in address")
        host = address[1:end]
        if "[" in host or "]" in host:
            raise ValueError(f"address {address}: unexpected '[' in address")
        return host, rest[1:]
    index = address.rfind(":")
    if index < 0:
        raise ValueError(f"address {address}: missing port in address")
    host, port = address[:index], address[index + 1 :]
    if ":" in host:
        raise ValueError(f"address {address}: too many colons in address")
    if "[" in host or "]" in host or "[" in port or "]" in port:
        raise ValueError(f"address {address}: unexpected bracket in address")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _remote_addr(environ: dict) -> str:
    addr = environ.get("REMOTE_ADDR", "")
    if addr == "@":
        return addr
    return _join_host_port(addr, str(environ.get("REMOTE_PORT") or "0"))


def parse_xff(header: str) -> str:
    """Return the first public address in an X-Forwarded-For value, or ''."""
    for part in header.split(","):
        candidate = part.strip()
        try:
            ip = ipaddress.ip_address(candidate)
        except ValueError:
            continue
        if _is_global_unicast(ip) and not _is_private(ip):
            return candidate
    return ""


def compute_xff_header(
    remote_addr: str, orig_xff_header: str, pref: XFFComputePreferences
) -> str:
    """Append the remote address to an X-Forwarded-For chain and clean it up.

    Walking from the nearest hop outwards, addresses selected by ``pref`` are
    dropped and the walk stops at the first unparseable entry. With
    ``flatten`` only the last remaining address is returned.
    """
    try:
        remote_ip, _ = split_host_port(remote_addr)
    except ValueError as err:
        raise CantSplitHostPortError(f"internal: unable to split host and port: {err}") from err
    try:
        parsed_remote = ipaddress.ip_address(remote_ip)
    except ValueError as err:
        raise CantParseRemoteIPError(f"internal: unable to parse remote IP: {err}") from err

    chain = [item.strip() for item in orig_xff_header.split(",")] if orig_xff_header else []
    chain.append(str(parsed_remote))

    forwarded: list[str] = []
    for segment in reversed(chain):
        try:
            ip = ipaddress.ip_address(segment)
        except ValueError as err:
            logger.debug("failed to parse XFF segment: %s", err)
            break
        if pref.strip_private and _is_private(ip):
            continue
        if pref.strip_loopback and _is_loopback(ip):
            continue
        if pref.strip_llu and _is_link_local_unicast(ip):
            continue
        if pref.strip_cgnat and _in_cgnat(ip):
            continue
        forwarded.append(str(ip))
    forwarded.reverse()

    if not forwarded:
        return ""
    if pref.flatten:
        return forwarded[-1]
    return ",".join(forwarded)


def _new_compressor(level: int):
    if level == -2:
        return zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, 31, strategy=zlib.Z_HUFFMAN_ONLY)
    return zlib.compressobj(level, zlib.DEFLATED, 31)


def _compressed(result: Iterable[bytes], compressor) -> Iterator[bytes]:
    try:
        for chunk in result:
            out = compressor.compress(chunk)
            if out:
                yield out
        yield compressor.flush()
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()


def gzip_middleware(level: int, app: WSGIApp) -> WSGIApp:
    """Gzip responses for clients whose Accept-Encoding mentions gzip."""
    if not -2 <= level <= 9:
        raise ValueError(f"gzip: invalid compression level: {level}")

    def middleware(environ, start_response):
        if "gzip" not in environ.get("HTTP_ACCEPT_ENCODING", ""):
            return app(environ, start_response)

        compressor = _new_compressor(level)

        def gzip_start_response(status, headers, exc_info=None):
            headers = [
                (name, value)
                for name, value in headers
                if name.lower() not in ("content-encoding", "content-length")
            ]
            headers.append(("Content-Encoding", "gzip"))
            write = start_response(status, headers, exc_info)

            def gzip_write(data: bytes) -> None:
                out = compressor.compress(data)
                if out:
                    write(out)

            return gzip_write

        return _compressed(app(environ, gzip_start_response), compressor)

    return middleware


def _with_default_header(app: WSGIApp, name: str, value: str) -> WSGIApp:
    lowered = name.lower()

    def middleware(environ, start_response):
        def wrapped_start_response(status, headers, exc_info=None):
            if not any(key.lower() == lowered for key, _ in headers):
                headers = [*headers, (name, value)]
            return start_response(status, headers, exc_info)

        return app(environ, wrapped_start_response)

    return middleware


def unchanging_cache(version: str, app: WSGIApp) -> WSGIApp:
    """Cache responses for a year, except in development builds."""
    if version == "devel":
        return app
    return _with_default_header(app, "Cache-Control", "public, max-age=31536000")


def no_store_cache(app: WSGIApp) -> WSGIApp:
    """Mark responses as not to be stored by caches."""
    return _with_default_header(app, "Cache-Control", "no-store")


def remote_x_real_ip(use_remote_address: bool, bind_network: str, app: WSGIApp) -> WSGIApp:
    """Set X-Real-Ip from the connection's remote address when enabled."""
    if not use_remote_address:
        logger.debug("skipping middleware, useRemoteAddress is empty")
        return app

    if bind_network == "unix":
        def unix_middleware(environ, start_response):
            environ[_header_key("X-Real-Ip")] = "127.0.0.1"
            return app(environ, start_response)

        return unix_middleware

    def middleware(environ, start_response):
        host, _ = split_host_port(_remote_addr(environ))
        environ[_header_key("X-Real-Ip")] = host
        return app(environ, start_response)

    return middleware


def x_forwarded_for_to_x_real_ip(app: WSGIApp) -> WSGIApp:
    """Derive X-Real-Ip from X-Forwarded-For when it is not already set."""

    def middleware(environ, start_response):
        xff_header = environ.get(_header_key("X-Forwarded-For"), "")
        real_key = _header_key("X-Real-Ip")
        if not environ.get(real_key) and xff_header:
            ip = parse_xff(xff_header)
            logger.debug("setting x-real-ip: %s", ip)
            environ[real_key] = ip
        return app(environ, start_response)

    return middleware


def x_forwarded_for_update(strip_private: bool, app: WSGIApp) -> WSGIApp:
    """Add the remote address to X-Forwarded-For, stripping internal hops."""
    pref = XFFComputePreferences(
        strip_private=strip_private,
        strip_loopback=True,
        strip_cgnat=True,
        strip_llu=True,
        flatten=True,
    )
    key = _header_key("X-Forwarded-For")

    def middleware(environ, start_response):
        remote_addr = _remote_addr(environ)
        if remote_addr != "@":
            try:
                value = compute_xff_header(remote_addr, environ.get(key, ""), pref)
            except XFFError as err:
                logger.debug("computing X-Forwarded-For header failed: %s", err)
            else:
                if value:
                    environ[key] = value
                else:
                    environ.pop(key, None)
        return app(environ, start_response)

    return middleware


def no_browsing(app: WSGIApp) -> WSGIApp:
    """Answer 404 for any path ending in '/' to prevent directory listings."""

    def middleware(environ, start_response):
        path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
        if path.endswith("/"):
            start_response(
                "404 Not Found",
                [
                    ("Content-Type", "text/plain; charset=utf-8"),
                    ("X-Content-Type-Options", "nosniff"),
                ],
            )
            return [b"404 page not found\n"]
        return app(environ, start_response)

    return middleware


def register_mime_types() -> None:
    """Register MIME types the standard tables lack."""
    mimetypes.add_type("text/javascript", ".mjs")


register_mime_types()