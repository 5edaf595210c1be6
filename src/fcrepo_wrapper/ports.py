"""Port resolution helpers for fcrepo_wrapper."""
from __future__ import annotations

import socket

LOCALHOST = "127.0.0.1"


class PortError(RuntimeError):
    """Raised when a free port cannot be obtained."""


def random_open_port(host: str = LOCALHOST) -> int:
    """Return a port the operating system reports as free on *host*."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return int(sock.getsockname()[1])
    except OSError as exc:
        raise PortError(f"Unable to find a free port on {host}: {exc}") from exc


def resolve_port(configured: object | None, *, host: str = LOCALHOST) -> str | int:
    """Return *configured* verbatim, or a freshly picked free port as a string.

    ``configured`` is the value produced by :func:`fcrepo_wrapper.config.build_configuration`,
    which has already applied the "explicit, else default" part of the rule;
    ``None`` therefore always means "pick any free port".
    """
    if configured is None:
        return str(random_open_port(host))
    if isinstance(configured, (str, int)) and not isinstance(configured, bool):
        return configured
    return str(configured)


__all__ = ["LOCALHOST", "PortError", "random_open_port", "resolve_port"]
