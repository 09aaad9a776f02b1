"""Helpers for running inside development containers."""

from __future__ import annotations

import socket
import subprocess


def unbreak_docker() -> int | None:
    """Attach this container to docker's default bridge network.

    Lets a dev container reach test containers on the bridge network.
    Failures are ignored; the command's exit code is returned, or ``None``
    when it could not be run at all.
    """
    try:
        hostname = socket.gethostname()
    except OSError:
        return None
    try:
        completed = subprocess.run(
            ["docker", "network", "connect", "bridge", hostname],
            check=False,
        )
    except OSError:
        return None
    return completed.returncode