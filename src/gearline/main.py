"""CLI entrypoint for gearline."""

import logging
import os

import rich_click as click

from gearline import __version__
from gearline.controllers import (
    AdminCommand,
    EchoCommand,
    GearlineCliController,
    SubmitCommand,
    WorkerCommand,
)
from gearline.errors import GearmanError
from gearline.handlers import BUILTIN_FUNCTIONS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GearlineCliController()
LOGGING_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

_server_option = click.option(
    "--server",
    "servers",
    multiple=True,
    help="Job server as host[:port]. Can be repeated. Defaults to GEARLINE_SERVERS.",
)


@click.group()
@click.version_option(version=__version__, prog_name="gearline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to GEARLINE_LOG_LEVEL or WARNING.",
)
def gearline(log_level: str | None) -> None:
    """Gearman job protocol client and worker."""

    level = (log_level or os.getenv("GEARLINE_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(level=level, format=LOGGING_FORMAT)


@gearline.command("submit")
@click.argument("function")
@click.argument("workload")
@_server_option
@click.option(
    "--priority",
    type=click.Choice(["normal", "high", "low"]),
    default="normal",
    show_default=True,
    help="Queue priority of the job.",
)
@click.option("--background", is_flag=True, help="Fire and forget; do not wait for the result.")
@click.option("--epoch", type=int, default=None, help="Schedule as background job at unix time.")
@click.option("--unique", default=None, help="Uniqueness key used to coalesce duplicates.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop waiting after this many seconds.",
)
def submit(  # noqa: PLR0913
    function: str,
    workload: str,
    servers: tuple[str, ...],
    priority: str,
    background: bool,
    epoch: int | None,
    unique: str | None,
    timeout_seconds: float | None,
) -> None:
    """Submit one job and print its result."""

    result = _run(
        CONTROLLER.submit,
        SubmitCommand(
            servers=servers,
            function=function,
            workload=workload,
            priority=priority,
            background=background,
            epoch=epoch,
            unique=unique,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Job did not complete.")


@gearline.command("echo")
@click.argument("text")
@_server_option
def echo(text: str, servers: tuple[str, ...]) -> None:
    """Round-trip TEXT through a job server."""

    _emit_lines(_run(CONTROLLER.echo, EchoCommand(servers=servers, text=text)))


@gearline.command("worker")
@_server_option
@click.option(
    "--function",
    "functions",
    multiple=True,
    type=click.Choice(sorted(BUILTIN_FUNCTIONS)),
    help="Built-in function to serve. Can be repeated. Defaults to all.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after processing this many jobs.",
)
@click.option("--idle-exit", is_flag=True, help="Exit after the first idle wait with no jobs.")
def worker(
    servers: tuple[str, ...],
    functions: tuple[str, ...],
    max_jobs: int | None,
    idle_exit: bool,
) -> None:
    """Serve built-in demo functions until stopped."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                servers=servers,
                functions=functions,
                max_jobs=max_jobs,
                idle_exit=idle_exit,
            ),
        ),
    )


@gearline.group()
def admin() -> None:
    """Administrative text-protocol commands."""


_admin_server_option = click.option(
    "--server",
    default=None,
    help="Job server as host[:port]. Defaults to the first of GEARLINE_SERVERS.",
)


@admin.command("version")
@_admin_server_option
def admin_version(server: str | None) -> None:
    """Show the job server version."""

    _emit_lines(_run(CONTROLLER.admin, AdminCommand(server=server, action="version")))


@admin.command("status")
@_admin_server_option
def admin_status(server: str | None) -> None:
    """Show queue and worker counts per function."""

    _emit_lines(_run(CONTROLLER.admin, AdminCommand(server=server, action="status")))


@admin.command("workers")
@_admin_server_option
def admin_workers(server: str | None) -> None:
    """List connected workers and their abilities."""

    _emit_lines(_run(CONTROLLER.admin, AdminCommand(server=server, action="workers")))


@admin.command("maxqueue")
@click.argument("function")
@click.argument("size", type=int)
@_admin_server_option
def admin_maxqueue(function: str, size: int, server: str | None) -> None:
    """Set the maximum queue size for FUNCTION (negative means unlimited)."""

    _emit_lines(
        _run(
            CONTROLLER.admin,
            AdminCommand(server=server, action="maxqueue", function=function, size=size),
        ),
    )


@admin.command("shutdown")
@_admin_server_option
@click.option("--graceful", is_flag=True, help="Let running jobs finish first.")
def admin_shutdown(server: str | None, graceful: bool) -> None:
    """Shut the job server down."""

    _emit_lines(
        _run(
            CONTROLLER.admin,
            AdminCommand(server=server, action="shutdown", graceful=graceful),
        ),
    )


def _run(handler, command):  # noqa: ANN001, ANN202
    try:
        return handler(command)
    except (GearmanError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gearline()
