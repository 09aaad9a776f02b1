"""Process-wide registry of service health states."""

from __future__ import annotations

import enum
import threading


class ServingStatus(enum.IntEnum):
    """Health states of a service."""

    UNKNOWN = 0
    SERVING = 1
    NOT_SERVING = 2
    SERVICE_UNKNOWN = 3


_lock = threading.Lock()
_statuses: dict[str, ServingStatus] = {"": ServingStatus.SERVING}


def set_health(service: str, status: ServingStatus) -> None:
    """Record the serving status of ``service``."""
    with _lock:
        _statuses[service] = ServingStatus(status)


def get_health(service: str) -> tuple[ServingStatus, bool]:
    """Return the status of ``service`` and whether it is known.

    Unknown services report ``UNKNOWN`` with ``False``.
    """
    with _lock:
        status = _statuses.get(service)
    if status is None:
        return ServingStatus.UNKNOWN, False
    return status, True