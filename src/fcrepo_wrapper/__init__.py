"""fcrepo_wrapper package bootstrap.

Download, install and run a Fedora Commons repository around a block of work::

    import fcrepo_wrapper

    def exercise(fcrepo):
        ...  # talk to fcrepo.url

    fcrepo_wrapper.wrap(exercise, {"port": None})
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TypeVar

from .instance import FcrepoInstance, ManagedServiceInstance
from .profiles import DEFAULT_FCREPO_VERSION

__all__ = [
    "DEFAULT_FCREPO_VERSION",
    "FcrepoInstance",
    "ManagedServiceInstance",
    "__version__",
    "default_instance",
    "get_version",
    "wrap",
]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.1.0"

T = TypeVar("T")


def get_version() -> str:
    """Return the current package version."""
    return __version__


def default_instance(options: Mapping[str, object] | None = None) -> FcrepoInstance:
    """Return a new Fedora instance; unset options fall back to the Fedora defaults."""
    return FcrepoInstance(options)


def wrap(
    work: Callable[[ManagedServiceInstance], T],
    options: Mapping[str, object] | None = None,
) -> T:
    """Run *work* with a Fedora instance started, stopping it afterwards."""
    return default_instance(options).wrap(work)
