"""Local TCP port allocation for the test harness."""

from __future__ import annotations

import socket

DEFAULT_START_PORT = 3000


class PortUnavailableError(RuntimeError):
    """No bindable port found in the probed range."""


def find_available_port(
    start: int = DEFAULT_START_PORT,
    *,
    host: str = "127.0.0.1",
    max_attempts: int = 100,
) -> int:
    """Return the first port at or above ``start`` that accepts a bind.

    The probe socket is closed before returning, so another process can take
    the port before the caller binds it again. That window is accepted for a
    local developer tool.
    """

    for port in range(start, min(start + max_attempts, 65_536)):
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            probe.bind((host, port))
            probe.listen(1)
        except OSError:
            continue
        finally:
            probe.close()
        return port
    raise PortUnavailableError(
        f"No free port on {host} in range {start}..{start + max_attempts - 1}.",
    )
