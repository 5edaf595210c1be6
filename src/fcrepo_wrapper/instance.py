"""Lifecycle management for a locally installed Java service.

A :class:`ManagedServiceInstance` walks one service through
``not installed -> installed -> running -> stopped``:

* :meth:`~ManagedServiceInstance.extract` downloads, verifies and installs the
  artifact, stamping the installed version into ``VERSION``. It is a no-op
  when the stamped version already matches.
* :meth:`~ManagedServiceInstance.start` spawns the JVM and blocks until the
  liveness probe answers.
* :meth:`~ManagedServiceInstance.stop` asks the process to shut down with
  ``SIGHUP`` and blocks until the probe reports it gone.
* :meth:`~ManagedServiceInstance.wrap` runs a unit of work between ``start``
  and ``stop``; ``stop`` runs on every exit path.

Neither polling loop has a timeout unless ``start_timeout``/``stop_timeout``
are configured.
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import socket
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import ClassVar, TypeVar

import requests

from .checksum import ChecksumVerifier
from .config import Configuration, build_configuration, load_options
from .downloader import ArtifactDownloader
from .ports import LOCALHOST, resolve_port
from .profiles import FCREPO_PROFILE, ServiceProfile

LOGGER = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0

T = TypeVar("T")


class NotInstalledError(RuntimeError):
    """Raised when an operation needs an installed artifact that is missing."""


class InstanceTimeoutError(RuntimeError):
    """Raised when a configured start or stop timeout elapses."""


class ManagedServiceInstance:
    """Download, install, run and stop one instance of a Java service.

    Subclasses provide a :class:`~fcrepo_wrapper.profiles.ServiceProfile`
    describing the service-specific pieces (artifact URL, default port,
    default flags, health path).
    """

    profile: ClassVar[ServiceProfile]

    def __init__(
        self,
        options: Mapping[str, object] | None = None,
        *,
        downloader: ArtifactDownloader | None = None,
        search_paths: Sequence[str | os.PathLike[str]] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Load layered options and resolve the configuration once."""
        merged = load_options(options, search_paths=search_paths, env=env)
        self.config: Configuration = build_configuration(merged, self.profile)
        self.downloader = downloader or ArtifactDownloader(show_progress=self.config.verbose)
        self.checksum = ChecksumVerifier(self.config, self.downloader)
        self._port = resolve_port(self.config.port, host=self.host)
        self._process: subprocess.Popen[bytes] | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        """Return the tracked process id, or ``None`` when not running."""
        return self._process.pid if self._process is not None else None

    @property
    def host(self) -> str:
        """Return the host the service is bound to."""
        return LOCALHOST

    @property
    def port(self) -> str | int:
        """Return the port resolved at construction."""
        return self._port

    @property
    def url(self) -> str:
        """Return a (likely) URL for the running service."""
        return f"http://{self.host}:{self.port}/"

    @property
    def version(self) -> str:
        """Return the configured service version."""
        return self.config.version

    @property
    def instance_dir(self) -> Path:
        """Return the directory the service is installed into."""
        return self.config.instance_dir

    @property
    def options(self) -> Mapping[str, object]:
        """Return the merged options the configuration was built from."""
        return self.config.options

    def process_arguments(self) -> list[str]:
        """Return the full argument vector used to launch the service."""
        flags: dict[str, object] = {**self.config.process_options, "port": self.port}
        rendered: list[str] = []
        for key, value in flags.items():
            rendered.extend([f"--{key}", _render_flag_value(value)])
        tokens = [token for token in rendered if token != ""]
        return [self.config.java_bin, *self.config.java_options, *tokens]

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def extracted(self) -> bool:
        """Return whether the configured version is installed at ``binary_path``."""
        return self.config.binary_path.exists() and self.extracted_version() == self.version

    def extracted_version(self) -> str | None:
        """Return the version recorded in the version file, if any."""
        try:
            return self.config.version_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def extract(self) -> Path:
        """Install the artifact into ``instance_dir`` unless already present."""
        if self.extracted():
            LOGGER.debug("%s %s already extracted at %s", self.profile.name, self.version,
                         self.instance_dir)
            return self.instance_dir

        artifact = self.download()

        self.instance_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(artifact, self.config.binary_path)
        # The version stamp is written only once the binary is in place.
        version_file = self.config.version_file
        version_file.parent.mkdir(parents=True, exist_ok=True)
        version_file.write_text(f"{self.version}\n", encoding="utf-8")
        LOGGER.info("Installed %s %s into %s", self.profile.name, self.version, self.instance_dir)
        return self.instance_dir

    def download(self) -> Path:
        """Return a verified artifact at ``download_path``, fetching it if needed."""
        path = self.config.download_path
        if path.exists() and self.checksum.is_valid(path):
            LOGGER.debug("Reusing downloaded artifact %s", path)
            return path
        self.downloader.fetch(self.config.download_url, path)
        self.checksum.enforce(path)
        return path

    def configure(self) -> None:
        """Fail unless the service has been extracted."""
        if not self.extracted():
            raise NotInstalledError(
                f"There is no {self.profile.name} instance at {self.instance_dir}. "
                "Run extract first."
            )

    def extract_and_configure(self) -> Path:
        """Extract the service and confirm the installation."""
        instance_dir = self.extract()
        self.configure()
        return instance_dir

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the service and block until it answers the liveness probe."""
        with self._lock:
            self.extract_and_configure()
            if not self.config.managed:
                return
            process = self._process
            if process is not None:
                if self.status():
                    LOGGER.debug("%s already running with pid %s", self.profile.name, self.pid)
                    return
                if process.poll() is None:
                    LOGGER.debug("Waiting for %s (pid %s) to answer", self.profile.name,
                                 process.pid)
                else:
                    self._process = None

            if self._process is None:
                args = self.process_arguments()
                environment = {**os.environ, **self.config.env}
                LOGGER.info("Starting %s on port %s", self.profile.name, self.port)
                LOGGER.debug("Command: %s", " ".join(args))
                self._process = self._spawn(args, environment)

            try:
                self._poll(
                    lambda: self.status(),
                    timeout=self.config.start_timeout,
                    action="start",
                )
            except BaseException:
                # Nothing else holds the handle of a child that never came up.
                self._abandon()
                raise
            LOGGER.info("%s running at %s (pid %s)", self.profile.name, self.url, self.pid)

    def stop(self) -> None:
        """Ask the service to exit and block until it is gone."""
        with self._lock:
            process = self._process
            try:
                if not (self.config.managed and process is not None and self.status()):
                    return
                LOGGER.info("Stopping %s (pid %s)", self.profile.name, process.pid)
                try:
                    process.send_signal(signal.SIGHUP)
                except ProcessLookupError:
                    return

                try:
                    self._poll(
                        lambda: not self.status(),
                        timeout=self.config.stop_timeout,
                        action="stop",
                    )
                except InstanceTimeoutError as exc:
                    LOGGER.warning("%s", exc)
                    return
                self._reap(process)
            finally:
                if process is not None:
                    # Collect an already-exited child without blocking.
                    process.poll()
                self._process = None

    def restart(self) -> None:
        """Stop then start the service when it is managed and running."""
        with self._lock:
            if self.config.managed and self.started():
                self.stop()
                self.start()

    def status(self) -> bool:
        """Return whether the managed service is up; never raises."""
        if not self.config.managed:
            return True
        pid = self.pid
        if pid is None:
            return False

        try:
            os.getpgid(pid)
        except (ProcessLookupError, PermissionError):
            return False

        try:
            port = int(self.port)
            with socket.create_connection((self.host, port), timeout=PROBE_TIMEOUT):
                pass
            if self.profile.health_path is not None:
                health_url = f"http://{self.host}:{port}{self.profile.health_path}"
                requests.get(health_url, timeout=PROBE_TIMEOUT).close()
        except (OSError, ValueError, requests.RequestException):
            return False
        return True

    def started(self) -> bool:
        """Return whether the service is running."""
        return self.status()

    # ------------------------------------------------------------------
    # Scoped use
    # ------------------------------------------------------------------

    @contextmanager
    def running(self) -> Iterator[ManagedServiceInstance]:
        """Yield a started instance, stopping it however the block exits."""
        try:
            self.extract_and_configure()
            self.start()
            yield self
        finally:
            self.stop()

    def wrap(self, work: Callable[[ManagedServiceInstance], T]) -> T:
        """Run ``work(instance)`` with the service started and always stop it afterwards."""
        with self.running() as instance:
            return work(instance)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def clean(self) -> None:
        """Stop the service and delete everything it downloaded or installed."""
        self.stop()
        self.remove_instance_dir()
        self.config.download_path.unlink(missing_ok=True)
        if self.config.tmp_save_dir is not None:
            shutil.rmtree(self.config.tmp_save_dir, ignore_errors=True)
        self.checksum.clean()
        self.config.version_file.unlink(missing_ok=True)

    def remove_instance_dir(self) -> None:
        """Delete the instance directory, ignoring errors."""
        shutil.rmtree(self.instance_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _spawn(self, args: Sequence[str], env: Mapping[str, str]) -> subprocess.Popen[bytes]:
        """Launch the service process (isolated for testing)."""
        return subprocess.Popen(list(args), env=dict(env))  # noqa: S603

    def _abandon(self) -> None:
        process = self._process
        self._process = None
        if process is None:
            return
        if process.poll() is not None:
            return
        LOGGER.warning("Killing %s (pid %s) after failed start", self.profile.name, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        self._reap(process)

    def _reap(self, process: subprocess.Popen[bytes]) -> None:
        try:
            process.wait(timeout=self.config.stop_timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("%s (pid %s) did not exit after stopping", self.profile.name,
                           process.pid)
        except ChildProcessError:
            return

    def _poll(self, done: Callable[[], bool], *, timeout: float | None, action: str) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not done():
            if deadline is not None and time.monotonic() >= deadline:
                raise InstanceTimeoutError(
                    f"{self.profile.name} did not {action} within {timeout:g} seconds."
                )
            time.sleep(self.config.poll_interval)


class FcrepoInstance(ManagedServiceInstance):
    """A Fedora Commons repository run from its jetty-console jar."""

    profile = FCREPO_PROFILE

    @property
    def md5(self) -> ChecksumVerifier:
        """Return the checksum verifier for the Fedora artifact."""
        return self.checksum


def _render_flag_value(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = [
    "FcrepoInstance",
    "InstanceTimeoutError",
    "ManagedServiceInstance",
    "NotInstalledError",
]
