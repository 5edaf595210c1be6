"""Configuration loader for fcrepo_wrapper.

Options are layered from several sources, later sources winning:

1. ``.fcrepo_wrapper`` in the working directory, then ``~/.fcrepo_wrapper``.
2. Every path named by the ``config`` option (a string or a list of strings).
3. Environment variables prefixed with ``FCREPO_WRAPPER_``.
4. Explicit options supplied by the caller.

Config files are YAML documents with a mapping at the top level. Missing or
unparseable files are skipped. Environment values are coerced via PyYAML's
``safe_load`` so that booleans and numbers are parsed naturally, e.g.::

    export FCREPO_WRAPPER_PORT=8983
    export FCREPO_WRAPPER_VALIDATE=false

The merged mapping is turned into an immutable :class:`Configuration` once, by
:func:`build_configuration`; nothing is derived lazily afterwards.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import cast
from urllib.parse import urlparse

import yaml

from .profiles import FCREPO_PROFILE, ServiceProfile

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "FCREPO_WRAPPER_"
DEFAULT_CONFIGURATION_PATHS: tuple[str, ...] = (".fcrepo_wrapper", "~/.fcrepo_wrapper")
DEFAULT_POLL_INTERVAL = 1.0


class ConfigError(RuntimeError):
    """Raised when option values cannot be interpreted."""


@dataclass(frozen=True)
class Configuration:
    """Resolved, immutable settings for one managed service instance."""

    options: Mapping[str, object]
    profile: ServiceProfile
    version: str
    download_url: str
    download_dir: Path
    download_path: Path
    checksum_url: str
    checksum_path: Path
    instance_dir: Path
    binary_path: Path
    version_file: Path
    tmp_save_dir: Path | None
    port: str | int | None
    process_options: Mapping[str, object]
    java_bin: str
    java_options: tuple[str, ...]
    env: Mapping[str, str]
    expected_checksum: str | None
    validate: bool
    ignore_checksum_mismatch: bool
    managed: bool
    verbose: bool
    poll_interval: float
    start_timeout: float | None
    stop_timeout: float | None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the configuration."""
        return {
            "service": self.profile.name,
            "version": self.version,
            "download_url": self.download_url,
            "download_dir": str(self.download_dir),
            "download_path": str(self.download_path),
            "checksum_url": self.checksum_url,
            "checksum_path": str(self.checksum_path),
            "instance_dir": str(self.instance_dir),
            "binary_path": str(self.binary_path),
            "version_file": str(self.version_file),
            "tmp_save_dir": str(self.tmp_save_dir) if self.tmp_save_dir else None,
            "port": self.port,
            "process_options": dict(self.process_options),
            "java_bin": self.java_bin,
            "java_options": list(self.java_options),
            "env": dict(self.env),
            "md5sum": self.expected_checksum,
            "validate": self.validate,
            "ignore_md5sum": self.ignore_checksum_mismatch,
            "managed": self.managed,
            "verbose": self.verbose,
            "poll_interval": self.poll_interval,
            "start_timeout": self.start_timeout,
            "stop_timeout": self.stop_timeout,
        }


def load_options(
    options: Mapping[str, object] | None = None,
    *,
    search_paths: Sequence[str | os.PathLike[str]] | None = None,
    env: Mapping[str, str] | None = None,
) -> dict[str, object]:
    """Merge config files, environment overrides and *options* into one mapping."""
    explicit = _normalize_keys(options or {}, "options")
    verbose = _expect_bool(explicit.get("verbose"), "verbose", default=False)
    defaults = DEFAULT_CONFIGURATION_PATHS if search_paths is None else tuple(search_paths)
    paths = [*defaults, *_config_paths(explicit.get("config"))]

    merged: dict[str, object] = {}
    for path in paths:
        file_values = _load_yaml_file(Path(path).expanduser(), verbose=verbose)
        if file_values:
            _deep_merge(merged, file_values)

    resolved_env = os.environ if env is None else env
    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    _deep_merge(merged, explicit)
    return merged


def build_configuration(
    options: Mapping[str, object],
    profile: ServiceProfile = FCREPO_PROFILE,
) -> Configuration:
    """Derive every path and value needed to manage an instance from *options*."""
    raw = _normalize_keys(options, "options")
    if "enable_jms" in raw:
        raw["enable_jms"] = _expect_bool(raw["enable_jms"], "enable_jms", default=True)

    version = _expect_str(raw.get("version"), "version", default=profile.default_version)
    download_url = _expect_str(raw.get("url"), "url", default=profile.download_url(version))
    download_name = _url_basename(download_url)

    download_dir = _to_path(raw.get("download_dir"), "download_dir") or Path(tempfile.gettempdir())
    download_path = _to_path(raw.get("download_path"), "download_path") or (
        download_dir / download_name
    )

    checksum_url = _expect_str(raw.get("md5url"), "md5url", default=f"{download_url}.md5")
    checksum_path = download_dir / _url_basename(checksum_url)

    instance_dir = _to_path(raw.get("instance_dir"), "instance_dir") or (
        Path(tempfile.gettempdir()) / Path(download_name).stem
    )
    binary_path = instance_dir / profile.binary_name(version)
    version_file = _to_path(raw.get("version_file"), "version_file") or (
        instance_dir / "VERSION"
    )

    process_options = _as_dict(
        raw.get("fcrepo_options", profile.default_process_options),
        "fcrepo_options",
    )

    java_options_raw = raw.get("java_options")
    if java_options_raw is None:
        java_flags = profile.default_java_options(raw)
    else:
        java_flags = [str(item) for item in _as_sequence(java_options_raw, "java_options")]
    java_options = (*java_flags, "-jar", str(binary_path))

    env_map = {
        key: "" if value is None else str(value)
        for key, value in _as_dict(raw.get("env"), "env").items()
    }

    expected = raw.get("md5sum")
    expected_checksum = str(expected).strip() if expected not in (None, "") else None

    return Configuration(
        options=MappingProxyType(raw),
        profile=profile,
        version=version,
        download_url=download_url,
        download_dir=download_dir,
        download_path=download_path,
        checksum_url=checksum_url,
        checksum_path=checksum_path,
        instance_dir=instance_dir,
        binary_path=binary_path,
        version_file=version_file,
        tmp_save_dir=_to_path(raw.get("tmp_save_dir"), "tmp_save_dir"),
        port=_configured_port(raw, profile.default_port),
        process_options=MappingProxyType(process_options),
        java_bin=_expect_str(raw.get("java_bin"), "java_bin", default="java"),
        java_options=java_options,
        env=MappingProxyType(env_map),
        expected_checksum=expected_checksum,
        validate=_expect_bool(raw.get("validate"), "validate", default=True),
        ignore_checksum_mismatch=_expect_bool(
            raw.get("ignore_md5sum"), "ignore_md5sum", default=False
        ),
        managed=_expect_bool(raw.get("managed"), "managed", default=True),
        verbose=_expect_bool(raw.get("verbose"), "verbose", default=False),
        poll_interval=_expect_non_negative_float(
            raw.get("poll_interval"), "poll_interval", default=DEFAULT_POLL_INTERVAL
        ),
        start_timeout=_optional_timeout(raw.get("start_timeout"), "start_timeout"),
        stop_timeout=_optional_timeout(raw.get("stop_timeout"), "stop_timeout"),
    )


def _configured_port(raw: Mapping[str, object], default: str) -> str | int | None:
    # An explicit nil/empty port means "pick a free one when starting".
    if "port" in raw:
        value = raw["port"]
        if value is None or value == "" or value is False:
            return None
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return str(value)
    return default


def _config_paths(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, os.PathLike)):
        return [os.fspath(value)]
    if isinstance(value, Sequence) and not isinstance(value, bytes):
        paths: list[str] = []
        for item in value:
            if item is None:
                continue
            if not isinstance(item, (str, os.PathLike)):
                raise ConfigError(f"Config paths must be strings. Got {item!r}.")
            paths.append(os.fspath(item))
        return paths
    raise ConfigError(
        f"Expected config to be a path or a list of paths. Got {type(value).__name__}."
    )


def _load_yaml_file(path: Path, *, verbose: bool) -> dict[str, object]:
    log_skip = LOGGER.warning if verbose else LOGGER.debug
    if not path.is_file():
        return {}
    LOGGER.info("Loading configuration from %s", path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        log_skip("Unable to parse config %s: %s", path, exc)
        return {}
    if not isinstance(data, Mapping):
        log_skip("Unable to parse config %s: top level is not a mapping", path)
        return {}
    try:
        return _normalize_keys(data, f"file:{path}")
    except ConfigError as exc:
        log_skip("Unable to parse config %s: %s", path, exc)
        return {}


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        # Option names are lower case; nested keys (env vars, flags) keep their case.
        path_segments[0] = path_segments[0].lower()
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            merged = dict(existing)
            _deep_merge(merged, _as_dict(value, f"merge.{key}"))
            target[key] = merged
            continue
        if isinstance(value, Mapping):
            target[key] = dict(value)
            continue
        target[key] = value


def _normalize_keys(value: Mapping[str, object], label: str) -> dict[str, object]:
    # Top-level option names only; nested flag and env names are kept verbatim.
    return {
        key.strip().lstrip(":").replace("-", "_"): item
        for key, item in _as_dict(value, label).items()
    }


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    return parsed


def _url_basename(url: str) -> str:
    name = Path(urlparse(url).path).name
    if not name:
        raise ConfigError(f"Cannot determine a file name from URL {url!r}.")
    return name


def _to_path(value: object, label: str) -> Path | None:
    if value is None or value == "":
        return None
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert {label} value {value!r} to Path.")


def _expect_str(value: object, label: str, *, default: str) -> str:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a string. Got boolean {value!r}.")
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_bool(value: object, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        # Same coercion as environment values: true/false, yes/no, on/off.
        value = _coerce_value(value)
        if value is None:
            return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_non_negative_float(value: object, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _optional_timeout(value: object, label: str) -> float | None:
    if value is None:
        return None
    timeout = _expect_non_negative_float(value, label, default=0.0)
    if timeout == 0:
        raise ConfigError(f"{label} must be greater than zero when specified.")
    return timeout


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return value


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "Configuration",
    "ConfigError",
    "DEFAULT_CONFIGURATION_PATHS",
    "ENV_PREFIX",
    "build_configuration",
    "load_options",
]
