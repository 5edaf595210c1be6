"""Streaming HTTP downloads for service artifacts and checksum files."""
from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import requests
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int | None], None]

DEFAULT_TIMEOUT = 30.0
DEFAULT_CHUNK_SIZE = 1 << 16
USER_AGENT = "fcrepo-wrapper"


class DownloadError(RuntimeError):
    """Raised when a remote resource cannot be fetched to disk."""


class ArtifactDownloader:
    """Fetch remote resources to local paths, reporting progress as bytes arrive."""

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        show_progress: bool = False,
        console: Console | None = None,
    ) -> None:
        """Initialise the downloader with transport and display settings."""
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.show_progress = show_progress
        self.console = console

    def fetch(
        self,
        url: str,
        destination: Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Stream *url* into *destination* and return the destination path.

        ``on_progress`` receives ``(bytes_so_far, total)`` after every chunk;
        ``total`` is ``None`` when the server does not announce a length.
        Any failure removes the partially written file and raises
        :class:`DownloadError`. Nothing is retried.
        """
        destination = Path(destination)
        LOGGER.info("Downloading %s to %s", url, destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with self.session.get(
                url,
                stream=True,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            ) as response:
                response.raise_for_status()
                total = _content_length(response.headers.get("Content-Length"))
                with self._progress(destination.name, total) as report:
                    downloaded = 0
                    with destination.open("wb") as handle:
                        for chunk in response.iter_content(chunk_size=self.chunk_size):
                            if not chunk:
                                continue
                            handle.write(chunk)
                            downloaded += len(chunk)
                            report(downloaded, total)
                            if on_progress is not None:
                                on_progress(downloaded, total)
        except requests.RequestException as exc:
            _discard(destination)
            raise DownloadError(f"Failed to download {url}: {exc}") from exc
        except OSError as exc:
            _discard(destination)
            raise DownloadError(f"Failed to write {destination}: {exc}") from exc

        LOGGER.info("Downloaded %s (%d bytes)", destination, downloaded)
        return destination

    def _progress(self, title: str, total: int | None) -> _ProgressReporter:
        if not self.show_progress:
            return _ProgressReporter(None, None)
        progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            transient=True,
        )
        task_id = progress.add_task(title, total=total)
        return _ProgressReporter(progress, task_id)


class _ProgressReporter:
    """Context manager that forwards byte counts to a rich progress bar."""

    def __init__(self, progress: Progress | None, task_id: object | None) -> None:
        self._progress = progress
        self._task_id = task_id

    def __enter__(self) -> Callable[[int, int | None], None]:
        if self._progress is not None:
            self._progress.start()
        return self._update

    def __exit__(self, *exc_info: object) -> None:
        if self._progress is not None:
            self._progress.stop()

    def _update(self, completed: int, total: int | None) -> None:
        if self._progress is None:
            return
        self._progress.update(self._task_id, completed=completed, total=total)  # type: ignore[arg-type]


def _content_length(value: str | None) -> int | None:
    if not value:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length > 0 else None


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        LOGGER.debug("Could not remove partial download %s: %s", path, exc)


__all__ = ["ArtifactDownloader", "DownloadError", "ProgressCallback"]
