"""Typer-powered command line for ``fcrepo_wrapper``.

Options given before the subcommand describe the instance; the subcommand
says what to do with it::

    fcrepo_wrapper --port 8983 --config .fcrepo_wrapper run
    fcrepo_wrapper --instance-dir /tmp/fcrepo clean
"""
from __future__ import annotations

import logging
import textwrap
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .checksum import ChecksumError
from .config import ConfigError
from .downloader import ArtifactDownloader, DownloadError
from .exit_codes import ExitCode
from .instance import FcrepoInstance, InstanceTimeoutError, NotInstalledError
from .ports import PortError

console = Console()

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    dir_okay=False,
    help="YAML config file to layer over the defaults (repeatable; later files win).",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Log progress and configuration loading.",
)
FCREPO_VERSION_OPTION = typer.Option(
    None,
    "--fcrepo-version",
    help="Fedora version to download and run.",
)
PORT_OPTION = typer.Option(
    None,
    "--port",
    "-p",
    help="Port to run Fedora on (use 'random' to pick a free port).",
)
URL_OPTION = typer.Option(None, "--url", help="Download URL for the Fedora jar.")
INSTANCE_DIR_OPTION = typer.Option(
    None,
    "--instance-dir",
    file_okay=False,
    help="Directory to install Fedora into.",
)
DOWNLOAD_DIR_OPTION = typer.Option(
    None,
    "--download-dir",
    file_okay=False,
    help="Directory holding the downloaded jar and its MD5 file.",
)
DOWNLOAD_PATH_OPTION = typer.Option(
    None,
    "--download-path",
    dir_okay=False,
    help="Exact path for the downloaded jar (overrides --download-dir).",
)
VERSION_FILE_OPTION = typer.Option(
    None,
    "--version-file",
    dir_okay=False,
    help="File recording the installed Fedora version.",
)
MD5SUM_OPTION = typer.Option(None, "--md5sum", help="Expected MD5 checksum of the jar.")
NO_CHECKSUM_OPTION = typer.Option(
    False,
    "--no-checksum",
    help="Skip MD5 validation of the downloaded jar.",
)
IGNORE_CHECKSUM_OPTION = typer.Option(
    False,
    "--ignore-checksum",
    help="Use the jar even when its MD5 checksum does not match.",
)
FCREPO_HOME_OPTION = typer.Option(
    None,
    "--fcrepo-home-dir",
    file_okay=False,
    help="Directory Fedora stores its repository data in.",
)
NO_JMS_OPTION = typer.Option(
    False,
    "--no-jms",
    help="Start Fedora with a no-op JMS configuration.",
)
UNMANAGED_OPTION = typer.Option(
    False,
    "--unmanaged",
    help="Assume Fedora is already running; never spawn or stop it.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit the configuration as JSON.")


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Download, install and run a Fedora Commons repository.

        Options before the subcommand configure the instance; values from
        .fcrepo_wrapper, ~/.fcrepo_wrapper, --config files and
        FCREPO_WRAPPER_* environment variables are layered underneath them.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Options collected by the root callback and shared by commands."""

    options: dict[str, object] = field(default_factory=dict)
    verbose: bool = False

    def instance(self) -> FcrepoInstance:
        """Build the instance described by the collected options."""
        downloader = ArtifactDownloader(show_progress=True, console=console)
        return FcrepoInstance(self.options, downloader=downloader)


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return RuntimeContext()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _collect_options(
    *,
    config: list[Path] | None,
    verbose: bool,
    fcrepo_version: str | None,
    port: str | None,
    url: str | None,
    instance_dir: Path | None,
    download_dir: Path | None,
    download_path: Path | None,
    version_file: Path | None,
    md5sum: str | None,
    no_checksum: bool,
    ignore_checksum: bool,
    fcrepo_home_dir: Path | None,
    no_jms: bool,
    unmanaged: bool,
) -> dict[str, object]:
    options: dict[str, object] = {}
    if config:
        options["config"] = [str(path) for path in config]
    if verbose:
        options["verbose"] = True
    if fcrepo_version:
        options["version"] = fcrepo_version
    if port is not None:
        options["port"] = None if port.strip().lower() in {"", "random"} else port.strip()
    if url:
        options["url"] = url
    for key, path_value in (
        ("instance_dir", instance_dir),
        ("download_dir", download_dir),
        ("download_path", download_path),
        ("version_file", version_file),
        ("fcrepo_home_dir", fcrepo_home_dir),
    ):
        if path_value is not None:
            options[key] = str(path_value)
    if md5sum:
        options["md5sum"] = md5sum
    if no_checksum:
        options["validate"] = False
    if ignore_checksum:
        options["ignore_md5sum"] = True
    if no_jms:
        options["enable_jms"] = False
    if unmanaged:
        options["managed"] = False
    return options


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the fcrepo_wrapper version and exit.",
    ),
    config: list[Path] | None = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
    fcrepo_version: str | None = FCREPO_VERSION_OPTION,
    port: str | None = PORT_OPTION,
    url: str | None = URL_OPTION,
    instance_dir: Path | None = INSTANCE_DIR_OPTION,
    download_dir: Path | None = DOWNLOAD_DIR_OPTION,
    download_path: Path | None = DOWNLOAD_PATH_OPTION,
    version_file: Path | None = VERSION_FILE_OPTION,
    md5sum: str | None = MD5SUM_OPTION,
    no_checksum: bool = NO_CHECKSUM_OPTION,
    ignore_checksum: bool = IGNORE_CHECKSUM_OPTION,
    fcrepo_home_dir: Path | None = FCREPO_HOME_OPTION,
    no_jms: bool = NO_JMS_OPTION,
    unmanaged: bool = UNMANAGED_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"fcrepo_wrapper {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _configure_logging(verbose)
    ctx.obj = RuntimeContext(
        options=_collect_options(
            config=config,
            verbose=verbose,
            fcrepo_version=fcrepo_version,
            port=port,
            url=url,
            instance_dir=instance_dir,
            download_dir=download_dir,
            download_path=download_path,
            version_file=version_file,
            md5sum=md5sum,
            no_checksum=no_checksum,
            ignore_checksum=ignore_checksum,
            fcrepo_home_dir=fcrepo_home_dir,
            no_jms=no_jms,
            unmanaged=unmanaged,
        ),
        verbose=verbose,
    )

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(message: str, *, rc: ExitCode) -> NoReturn:
    """Print *message* and terminate the command with *rc*."""
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(rc))


def _build_instance(runtime: RuntimeContext) -> FcrepoInstance:
    try:
        return runtime.instance()
    except ConfigError as exc:
        _command_error(f"Invalid configuration: {exc}", rc=ExitCode.CONFIG)
    except PortError as exc:
        _command_error(str(exc), rc=ExitCode.PROCESS)


def _wait_for_interrupt() -> None:
    """Block until the user presses Ctrl-C."""
    while True:
        time.sleep(1)


@app.command()
def run(ctx: typer.Context) -> None:
    """Install Fedora if needed, start it and keep it running until Ctrl-C."""
    runtime = _get_runtime(ctx)
    instance = _build_instance(runtime)
    console.print(
        f"Starting Fedora {instance.version} on port {instance.port} ... "
        "(press Ctrl-C to stop)"
    )
    try:
        with instance.running():
            console.print(f"[green]fcrepo_wrapper running on {instance.url}[/green]")
            _wait_for_interrupt()
    except KeyboardInterrupt:
        console.print("Stopped Fedora.")
    except (DownloadError, ChecksumError) as exc:
        _command_error(str(exc), rc=ExitCode.ARTIFACT)
    except (NotInstalledError, InstanceTimeoutError) as exc:
        _command_error(str(exc), rc=ExitCode.PROCESS)


@app.command()
def extract(ctx: typer.Context) -> None:
    """Download, verify and install Fedora without starting it."""
    runtime = _get_runtime(ctx)
    instance = _build_instance(runtime)
    try:
        instance_dir = instance.extract_and_configure()
    except (DownloadError, ChecksumError) as exc:
        _command_error(str(exc), rc=ExitCode.ARTIFACT)
    except NotInstalledError as exc:
        _command_error(str(exc), rc=ExitCode.PROCESS)
    console.print(f"[green]Fedora {instance.version} installed in {instance_dir}[/green]")


@app.command()
def clean(ctx: typer.Context) -> None:
    """Remove the installed instance, downloaded jar, MD5 file and version marker."""
    runtime = _get_runtime(ctx)
    instance = _build_instance(runtime)
    instance.clean()
    console.print(f"[green]Cleaned {instance.instance_dir}[/green]")


@app.command()
def info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the resolved configuration."""
    runtime = _get_runtime(ctx)
    instance = _build_instance(runtime)
    payload = instance.config.to_dict()
    payload["port"] = instance.port
    payload["url"] = instance.url
    payload["installed_version"] = instance.extracted_version()

    if json_output:
        console.print_json(data=payload)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


__all__ = ["app"]
