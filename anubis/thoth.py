"""IP-to-ASN lookups with prefix caching, and the policy checkers built on them."""

from __future__ import annotations

import contextlib
import contextvars
import ipaddress
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from anubis.hashing import fast_hash

logger = logging.getLogger(__name__)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class LookupResponse:
    """What the IP-to-ASN service knows about one address."""

    announced: bool = False
    as_number: int = 0
    cidr: tuple[str, ...] = field(default_factory=tuple)
    country_code: str = ""
    description: str = ""


class ThothError(Exception):
    """An IP-to-ASN lookup failed."""


class LookupNotFoundError(ThothError):
    """The service has no record of the address."""


class LookupTimeoutError(ThothError, TimeoutError):
    """The service did not answer in time."""


class IPToASNService(Protocol):
    def lookup(self, ip_address: str) -> LookupResponse: ...


_RESERVED_PREFIXES = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "100.64.0.0/10",
    "192.0.0.0/24",
    "192.0.2.0/24",
    "198.18.0.0/15",
    "198.51.100.0/24",
    "203.0.113.0/24",
    "240.0.0.0/4",
    "255.255.255.255/32",
    "fc00::/7",
    "fe80::/10",
    "::1/128",
    "::/128",
    "100::/64",
    "2001:db8::/32",
)


class IPToASNWithCache:
    """Caches service answers by the prefixes they cover.

    Reserved and private ranges are answered locally as not announced.
    """

    def __init__(self, next_service: IPToASNService) -> None:
        self.next = next_service
        self._table: dict[Network, LookupResponse] = {}
        unannounced = LookupResponse(announced=False)
        for prefix in _RESERVED_PREFIXES:
            self._table[ipaddress.ip_network(prefix)] = unannounced

    def _cached(self, addr) -> LookupResponse | None:
        best: tuple[int, LookupResponse] | None = None
        for network, response in self._table.items():
            if network.version == addr.version and addr in network:
                if best is None or network.prefixlen > best[0]:
                    best = (network.prefixlen, response)
        return None if best is None else best[1]

    def lookup(self, ip_address: str) -> LookupResponse:
        try:
            addr = ipaddress.ip_address(ip_address)
        except ValueError as err:
            raise ValueError(f"input is not an IP address: {err}") from err

        cached = self._cached(addr)
        if cached is not None:
            return cached

        response = self.next.lookup(ip_address)

        errors = []
        for cidr in response.cidr:
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError as err:
                errors.append(str(err))
                continue
            self._table[network] = response
        if errors:
            logger.error("errors parsing IP prefixes: %s", "; ".join(errors))

        return response


def _real_ip(headers: Mapping[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == "x-real-ip":
            return value
    return ""


def _lookup_quietly(service: IPToASNService | None, headers: Mapping[str, str]) -> LookupResponse | None:
    if service is None:
        logger.error("no IP-to-ASN service configured")
        return None
    try:
        return service.lookup(_real_ip(headers))
    except TimeoutError as err:
        logger.debug("error contacting thoth: %s (actionable=False)", err)
    except Exception as err:  # any failure means "no match"
        logger.error("error contacting thoth, please contact support: %s (actionable=True)", err)
    return None


class ASNChecker:
    """Matches requests whose real IP is announced by one of the given ASNs."""

    def __init__(self, service: IPToASNService | None, asns: Iterable[int], rule_hash: str) -> None:
        self.ip_to_asn = service
        self.asns = frozenset(asns)
        self._hash = rule_hash

    def check(self, headers: Mapping[str, str]) -> bool:
        info = _lookup_quietly(self.ip_to_asn, headers)
        if info is None or not info.announced:
            return False
        return (info.as_number & 0xFFFFFFFF) in self.asns

    def hash(self) -> str:
        return self._hash


class GeoIPChecker:
    """Matches requests whose real IP is located in one of the given countries."""

    def __init__(self, service: IPToASNService | None, countries: Iterable[str], rule_hash: str) -> None:
        self.ip_to_asn = service
        self.countries = frozenset(countries)
        self._hash = rule_hash

    def check(self, headers: Mapping[str, str]) -> bool:
        info = _lookup_quietly(self.ip_to_asn, headers)
        if info is None or not info.announced:
            return False
        return info.country_code.lower() in self.countries

    def hash(self) -> str:
        return self._hash


class Client:
    """Holds the IP-to-ASN service and builds checkers from it."""

    def __init__(self, ip_to_asn: IPToASNService | None = None, connection=None) -> None:
        self.ip_to_asn = ip_to_asn
        self._connection = connection
        self.closed = False

    def asn_checker_for(self, asns: Iterable[int]) -> ASNChecker:
        asns = list(asns)
        text = "ASNChecker\n" + "".join(f"AS {asn}\n" for asn in asns)
        return ASNChecker(self.ip_to_asn, asns, fast_hash(text))

    def geoip_checker_for(self, countries: Iterable[str]) -> GeoIPChecker:
        countries = list(countries)
        text = "GeoIPChecker\n" + "".join(f"{cc}\n" for cc in countries)
        return GeoIPChecker(self.ip_to_asn, countries, text)

    def with_ip_to_asn_service(self, service: IPToASNService) -> None:
        self.ip_to_asn = service

    def close(self) -> None:
        if self._connection is not None and not self.closed:
            self._connection.close()
        self.closed = True


_current_client: contextvars.ContextVar[Client | None] = contextvars.ContextVar(
    "anubis_thoth_client", default=None
)


@contextlib.contextmanager
def using_client(client: Client) -> Iterator[Client]:
    """Make ``client`` the current client for the duration of the block."""
    token = _current_client.set(client)
    try:
        yield client
    finally:
        _current_client.reset(token)


def from_context() -> Client | None:
    """Return the current client, or None when none is set."""
    return _current_client.get()