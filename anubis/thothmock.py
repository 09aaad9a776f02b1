"""An in-memory IP-to-ASN service with fixed answers, for tests."""

from __future__ import annotations

import contextlib
import ipaddress
from collections.abc import Iterator

from anubis.thoth import Client, LookupNotFoundError, LookupResponse, using_client


class MockIpToASNService:
    """Answers lookups from a fixed table of responses."""

    def __init__(self, responses: dict[str, LookupResponse] | None = None) -> None:
        self.responses = dict(responses or {})

    def lookup(self, ip_address: str) -> LookupResponse:
        ipaddress.ip_address(ip_address)
        try:
            return self.responses[ip_address]
        except KeyError:
            raise LookupNotFoundError("IP address not found in mock") from None


def mock_ip_to_asn_service() -> MockIpToASNService:
    """Return a mock service preloaded with a handful of known addresses."""
    cloudflare = LookupResponse(
        announced=True,
        as_number=13335,
        cidr=("1.1.1.0/24",),
        country_code="US",
        description="Cloudflare",
    )
    return MockIpToASNService(
        {
            "127.0.0.1": LookupResponse(announced=False),
            "::1": LookupResponse(announced=False),
            "10.10.10.10": cloudflare,
            "2.2.2.2": LookupResponse(
                announced=True,
                as_number=420,
                cidr=("2.2.2.0/24",),
                country_code="CA",
                description="test canada",
            ),
            "1.1.1.1": cloudflare,
        }
    )


@contextlib.contextmanager
def with_mock_thoth() -> Iterator[Client]:
    """Make a client backed by the mock service current for the block."""
    client = Client()
    client.with_ip_to_asn_service(mock_ip_to_asn_service())
    with using_client(client):
        yield client