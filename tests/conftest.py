"""Shared fakes and fixtures for the fcrepo_wrapper test suite."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterator, Mapping
from pathlib import Path

import pytest
import requests

from fcrepo_wrapper.downloader import ArtifactDownloader
from fcrepo_wrapper.instance import FcrepoInstance

ARTIFACT_BYTES = b"PK\x03\x04 fake fedora jetty-console jar " * 64
ARTIFACT_MD5 = hashlib.md5(ARTIFACT_BYTES).hexdigest()  # noqa: S324
DOWNLOAD_URL = (
    "https://github.com/fcrepo4/fcrepo4/releases/download/fcrepo-4.5.0/"
    "fcrepo-webapp-4.5.0-jetty-console.jar"
)
CHECKSUM_URL = f"{DOWNLOAD_URL}.md5"


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(
        self,
        body: bytes,
        *,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
        chunk_size: int = 256,
    ) -> None:
        self.body = body
        self.status_code = status_code
        self.headers = dict(headers if headers is not None else {"Content-Length": str(len(body))})
        self._chunk_size = chunk_size

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for offset in range(0, len(self.body), self._chunk_size):
            yield self.body[offset : offset + self._chunk_size]


class FakeSession:
    """Serve canned responses keyed by URL and record every request."""

    def __init__(self, resources: Mapping[str, FakeResponse | Exception] | None = None) -> None:
        self.resources = dict(resources or {})
        self.requests: list[str] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.requests.append(url)
        resource = self.resources.get(url)
        if resource is None:
            raise requests.ConnectionError(f"No route to {url}")
        if isinstance(resource, Exception):
            raise resource
        return resource


class FakeProcess:
    """Record the signals sent to a spawned service process."""

    def __init__(self, pid: int = 424242) -> None:
        self.pid = pid
        self.signals: list[int] = []
        self.killed = False
        self.wait_calls = 0
        self.returncode: int | None = None

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)

    def kill(self) -> None:
        self.killed = True

    def wait(self, timeout: float | None = None) -> int:
        self.wait_calls += 1
        self.returncode = 0
        return 0

    def poll(self) -> int | None:
        return self.returncode


@pytest.fixture
def fedora_session() -> FakeSession:
    """Return a session serving the default Fedora jar and its MD5 file."""
    return FakeSession(
        {
            DOWNLOAD_URL: FakeResponse(ARTIFACT_BYTES),
            CHECKSUM_URL: FakeResponse(
                f"{ARTIFACT_MD5}  fcrepo-webapp-4.5.0-jetty-console.jar\n".encode()
            ),
        }
    )


@pytest.fixture
def base_options(tmp_path: Path) -> dict[str, object]:
    """Return options that keep every file under ``tmp_path``."""
    return {
        "download_dir": str(tmp_path / "downloads"),
        "instance_dir": str(tmp_path / "instance"),
        "poll_interval": 0,
    }


@pytest.fixture
def make_instance(fedora_session: FakeSession):
    """Return a factory building isolated Fedora instances."""

    def _make(
        options: Mapping[str, object] | None = None,
        *,
        session: FakeSession | None = None,
    ) -> FcrepoInstance:
        downloader = ArtifactDownloader(session=session or fedora_session)  # type: ignore[arg-type]
        return FcrepoInstance(options or {}, downloader=downloader, search_paths=(), env={})

    return _make


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME and the working directory at ``tmp_path`` and drop env overrides."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FCREPO_WRAPPER_"):
            monkeypatch.delenv(key)
    return tmp_path
