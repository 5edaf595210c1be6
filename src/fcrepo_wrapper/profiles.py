"""Service profiles describing the pieces that differ between wrapped services."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

DATA_DIR = Path(__file__).resolve().parent / "data"
SPRING_NOOP_FILE = DATA_DIR / "spring-noop.xml"

DEFAULT_FCREPO_VERSION = "4.5.0"
DEFAULT_PORT = "8080"

_FCREPO_RELEASES = "https://github.com/fcrepo4/fcrepo4/releases/download"


def _no_java_options(options: Mapping[str, object]) -> list[str]:
    return []


@dataclass(frozen=True, slots=True)
class ServiceProfile:
    """Static description of a downloadable Java service.

    ``download_url_template`` and ``binary_name_template`` are formatted with
    ``version``. ``java_options_factory`` receives the merged options and
    returns the default JVM flags used when ``java_options`` is not supplied.
    """

    name: str
    default_version: str
    default_port: str
    download_url_template: str
    binary_name_template: str
    default_process_options: Mapping[str, object] = field(
        default_factory=lambda: MappingProxyType({})
    )
    health_path: str | None = "/"
    java_options_factory: Callable[[Mapping[str, object]], list[str]] = _no_java_options

    def download_url(self, version: str) -> str:
        """Return the default artifact URL for *version*."""
        return self.download_url_template.format(version=version)

    def binary_name(self, version: str) -> str:
        """Return the installed artifact filename for *version*."""
        return self.binary_name_template.format(version=version)

    def default_java_options(self, options: Mapping[str, object]) -> list[str]:
        """Return the default JVM flags for *options*."""
        return list(self.java_options_factory(options))


def fcrepo_java_options(options: Mapping[str, object]) -> list[str]:
    """Default JVM flags for the Fedora jetty-console jar."""
    flags = [
        "-Dfcrepo.log.http.api=WARN",
        # Silences the namespace misinterpretation warnings for
        # relations-external#isPartOf.
        "-Dfcrepo.log.kernel=ERROR",
    ]
    home_dir = options.get("fcrepo_home_dir")
    if home_dir:
        flags.append(f"-Dfcrepo.home={home_dir}")
    if not options.get("enable_jms", True):
        flags.append(f"-Dfcrepo.spring.jms.configuration={SPRING_NOOP_FILE.as_uri()}")
    flags.append("-Xmx512m")
    return flags


FCREPO_PROFILE = ServiceProfile(
    name="fcrepo",
    default_version=DEFAULT_FCREPO_VERSION,
    default_port=DEFAULT_PORT,
    download_url_template=(
        f"{_FCREPO_RELEASES}/fcrepo-{{version}}/fcrepo-webapp-{{version}}-jetty-console.jar"
    ),
    binary_name_template="fcrepo-webapp-{version}-jetty-console.jar",
    default_process_options=MappingProxyType({"headless": None}),
    health_path="/",
    java_options_factory=fcrepo_java_options,
)


__all__ = [
    "DEFAULT_FCREPO_VERSION",
    "DEFAULT_PORT",
    "FCREPO_PROFILE",
    "SPRING_NOOP_FILE",
    "ServiceProfile",
    "fcrepo_java_options",
]
