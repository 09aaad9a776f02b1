"""DroneBL DNS blocklist lookups."""

from __future__ import annotations

import enum
import ipaddress
import socket

DNSBL_ZONE = "dnsbl.dronebl.org"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class DroneBLResponse(enum.IntEnum):
    """Listing classes reported by DroneBL."""

    ALL_GOOD = 0
    IRC_DRONE = 3
    BOTTLER = 5
    UNKNOWN_SPAMBOT_OR_DRONE = 6
    DDOS_DRONE = 7
    SOCKS_PROXY = 8
    HTTP_PROXY = 9
    PROXY_CHAIN = 10
    OPEN_PROXY = 11
    OPEN_DNS_RESOLVER = 12
    BRUTE_FORCE_ATTACKERS = 13
    OPEN_WINGATE_PROXY = 14
    COMPROMISED_ROUTER = 15
    AUTO_ROOTING_WORMS = 16
    AUTO_DETECTED_BOT_IP = 17
    UNKNOWN = 255

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int) and 0 <= value <= 255:
            member = int.__new__(cls, value)
            member._name_ = f"CODE_{value}"
            member._value_ = value
            return member
        return None

    def __str__(self) -> str:
        return _LABELS.get(self._value_, f"DroneBLResponse({self._value_})")


_LABELS = {
    0: "AllGood",
    3: "IRCDrone",
    5: "Bottler",
    6: "UnknownSpambotOrDrone",
    7: "DDOSDrone",
    8: "SOCKSProxy",
    9: "HTTPProxy",
    10: "ProxyChain",
    11: "OpenProxy",
    12: "OpenDNSResolver",
    13: "BruteForceAttackers",
    14: "OpenWingateProxy",
    15: "CompromisedRouter",
    16: "AutoRootingWorms",
    17: "AutoDetectedBotIP",
    255: "Unknown",
}

_NOT_FOUND_CODES = {
    code
    for code in (getattr(socket, "EAI_NONAME", None), getattr(socket, "EAI_NODATA", None))
    if code is not None
}


def _as_address(ip: str | IPAddress) -> IPAddress:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    return ipaddress.ip_address(ip)


def _as_ipv4(ip: IPAddress) -> ipaddress.IPv4Address | None:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


def reverse(ip: str | IPAddress) -> str:
    """Return the DNSBL query label for ``ip`` (reversed octets or nibbles)."""
    addr = _as_address(ip)
    if _as_ipv4(addr) is not None:
        return reverse4(addr)
    return reverse6(addr)


def reverse4(ip: str | IPAddress) -> str:
    """Return the dotted octets of an IPv4 address in reverse order."""
    addr = _as_ipv4(_as_address(ip))
    if addr is None:
        raise ValueError(f"{ip} is not an IPv4 address")
    return ".".join(reversed(str(addr).split(".")))


def reverse6(ip: str | IPAddress) -> str:
    """Return the nibbles of an address, lowest first, separated by dots."""
    addr = _as_address(ip)
    if isinstance(addr, ipaddress.IPv4Address):
        addr = ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + addr.packed)
    return ".".join(
        f"{byte & 0x0F:x}.{byte >> 4:x}" for byte in reversed(addr.packed)
    )


def lookup(ip: str) -> DroneBLResponse:
    """Look ``ip`` up in DroneBL.

    Returns ``ALL_GOOD`` when the address is not listed. Raises ValueError
    for input that is not an IP address and OSError for resolver failures.
    """
    try:
        addr = _as_address(ip)
    except ValueError as err:
        raise ValueError("dnsbl: input is not an IP address") from err

    query = f"{reverse(addr)}.{DNSBL_ZONE}"
    try:
        infos = socket.getaddrinfo(query, None, socket.AF_INET)
    except socket.gaierror as err:
        if err.errno in _NOT_FOUND_CODES:
            return DroneBLResponse.ALL_GOOD
        raise

    for info in infos:
        answer = ipaddress.IPv4Address(info[4][0])
        return DroneBLResponse(answer.packed[3])

    return DroneBLResponse.UNKNOWN_SPAMBOT_OR_DRONE