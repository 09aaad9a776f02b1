"""WSGI middleware and helpers for screening web traffic: forwarded headers, hashing, logging, health, DNSBL, IP-to-ASN checks and Open Graph tags."""

__version__ = "0.1.0"

__all__ = [
    "devtools",
    "dnsbl",
    "hashing",
    "health",
    "logs",
    "middleware",
    "ogtags",
    "thoth",
    "thothmock",
]