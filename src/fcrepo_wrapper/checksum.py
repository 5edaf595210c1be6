"""MD5 verification of downloaded artifacts."""
from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from .config import Configuration
from .downloader import ArtifactDownloader

LOGGER = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 1 << 20


class ChecksumError(RuntimeError):
    """Raised when the expected checksum cannot be determined."""


class ChecksumMismatchError(ChecksumError):
    """Raised when a file's digest differs from the expected checksum."""

    def __init__(self, path: Path, expected: str, actual: str) -> None:
        """Record the offending file and both digests."""
        super().__init__(f"MD5 mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class ChecksumVerifier:
    """Compare artifact digests against an explicit or published MD5 checksum."""

    def __init__(self, config: Configuration, downloader: ArtifactDownloader) -> None:
        """Bind the verifier to a configuration and the downloader used for checksum files."""
        self.config = config
        self.downloader = downloader

    def expected_checksum(self) -> str:
        """Return the configured checksum, fetching the checksum file when needed."""
        if self.config.expected_checksum:
            return self.config.expected_checksum
        path = self.checksum_file()
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ChecksumError(f"Unable to read checksum file {path}: {exc}") from exc
        tokens = text.split()
        if not tokens:
            raise ChecksumError(f"Checksum file {path} is empty.")
        return tokens[0]

    def checksum_file(self) -> Path:
        """Return the local checksum file, downloading it once if absent."""
        path = self.config.checksum_path
        if not path.exists():
            self.downloader.fetch(self.config.checksum_url, path)
        return path

    def matches(self, path: Path, expected: str | None = None) -> bool:
        """Return whether the MD5 digest of *path* equals *expected*."""
        wanted = expected if expected is not None else self.expected_checksum()
        return file_md5(path) == wanted.strip().lower()

    def is_valid(self, path: Path) -> bool:
        """Return ``True`` when validation is disabled or *path* matches."""
        if not self.config.validate:
            return True
        return self.matches(path)

    def enforce(self, path: Path) -> None:
        """Raise :class:`ChecksumMismatchError` unless *path* is acceptable."""
        if not self.config.validate:
            return
        expected = self.expected_checksum().strip().lower()
        actual = file_md5(path)
        if actual == expected:
            LOGGER.debug("MD5 verified for %s", path)
            return
        if self.config.ignore_checksum_mismatch:
            LOGGER.warning(
                "Ignoring MD5 mismatch for %s (expected %s, got %s)", path, expected, actual
            )
            return
        raise ChecksumMismatchError(path, expected, actual)

    def clean(self) -> None:
        """Remove the cached checksum file."""
        self.config.checksum_path.unlink(missing_ok=True)


def file_md5(path: Path) -> str:
    """Return the hex MD5 digest of the file at *path*."""
    digest = hashlib.md5()  # noqa: S324 - upstream only publishes MD5 sums
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_READ_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["ChecksumError", "ChecksumMismatchError", "ChecksumVerifier", "file_md5"]
