"""vcloud CLI entry point."""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from vcloud import __version__, admin, ssh
from vcloud.config import CloudConfig, load_config
from vcloud.copyrun import NotExecutableError, copy_and_run, split_run_args
from vcloud.fanout import FanOutError, FanOutRunner, RunReport
from vcloud.gcloud import build_list_cmd
from vcloud.location import Local, LocationError, Remote, check_copy_sides, parse_location
from vcloud.nodes import InventoryError, NodeSet, list_all, render_table
from vcloud.resolve import NoMatchError, match_names
from vcloud.ssh import RunResult


# Exit codes: runtime failures vs. bad command-line input.
EXIT_FAILURE = 1
EXIT_USAGE = 2

NODES_HELP = (
    "Comma-separated list of node name regexps, each matched against the "
    "full node name. Nodes matching any regexp are selected."
)
PARALLEL_HELP = (
    "Run on this many nodes in parallel: <0 all nodes, 0 or 1 sequentially, "
    "N>=2 at most N nodes at once. Defaults to the configured parallelism."
)
FAILFAST_HELP = "Skip unstarted nodes after the first failing node."

# Reason: Flags must precede <nodes>; everything after it is passed through
# untouched, so remote commands like 'uname -a' need no extra quoting.
PASSTHROUGH = {"allow_interspersed_args": False, "ignore_unknown_options": True}

app = typer.Typer(
    name="vcloud",
    help="vcloud: wrapper over the Google Compute Engine gcloud tool.",
    no_args_is_help=True,
)

console = Console(highlight=False)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    """Install a single stderr handler on the vcloud logger.

    Replaces any handler left over from an earlier invocation in the same
    process.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s" if verbose else "%(message)s"

    package_logger = logging.getLogger("vcloud")
    package_logger.setLevel(level)
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))
    package_logger.addHandler(handler)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"vcloud {__version__}")
        raise typer.Exit()


def _fail(message: str, code: int = EXIT_FAILURE) -> typer.Exit:
    console.print(f"Error: {message}", markup=False)
    return typer.Exit(code=code)


def _print_result(result: RunResult) -> None:
    typer.echo(result.render())


def _finish(report: RunReport) -> None:
    """Print the fan-out summary and exit non-zero if any node failed."""
    typer.echo("")
    typer.echo(report.summary())
    if not report.ok:
        raise typer.Exit(code=EXIT_FAILURE)


def _make_runner(config: CloudConfig, parallel: Optional[int], failfast: bool) -> FanOutRunner:
    return FanOutRunner(
        parallelism=config.parallelism if parallel is None else parallel,
        fail_fast=failfast or config.fail_fast,
    )


def _list_matching(config: CloudConfig, patterns: str) -> NodeSet:
    """List all nodes and select the matching ones, exiting on error."""
    try:
        all_nodes = list_all(config)
    except InventoryError as exc:
        raise _fail(str(exc))
    try:
        return match_names(all_nodes, patterns)
    except NoMatchError as exc:
        raise _fail(str(exc), EXIT_USAGE)


@app.callback()
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(None, "--project", help="gcloud project."),
    user: Optional[str] = typer.Option(None, "--user", help="Run operations as this user on each node."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to the vcloud config file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log gcloud commands and timings."),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Print gcloud commands instead of running them."),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """vcloud: wrapper over the Google Compute Engine gcloud tool."""
    setup_logging(verbose)

    overrides: dict = {}
    if project is not None:
        overrides["project"] = project
    if user is not None:
        overrides["user"] = user
    if dry_run:
        overrides["dry_run"] = True

    config = load_config(config_path)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config.model_copy(update=overrides)
    logger.debug("Using project %s as user %s", ctx.obj["config"].project, ctx.obj["config"].user)


@app.command("list")
def list_nodes(
    ctx: typer.Context,
    nodes: Optional[str] = typer.Argument(None, help=NODES_HELP + " Lists all nodes if omitted."),
    fields: Optional[str] = typer.Option(
        None, "--fields", help="Only display these comma-separated column headers."
    ),
    noheader: bool = typer.Option(False, "--noheader", help="Don't print the table header."),
) -> None:
    """List GCE node information."""
    config: CloudConfig = ctx.obj["config"]

    if config.dry_run:
        typer.echo(" ".join(build_list_cmd(config)))
        return

    try:
        selected = list_all(config)
    except InventoryError as exc:
        raise _fail(str(exc))

    if nodes is not None:
        try:
            selected = match_names(selected, nodes)
        except NoMatchError as exc:
            raise _fail(str(exc), EXIT_USAGE)

    try:
        table = render_table(selected, fields.split(",") if fields else None, header=not noheader)
    except ValueError as exc:
        raise _fail(str(exc), EXIT_USAGE)

    console.print(table)


@app.command("cp", context_settings=PASSTHROUGH)
def copy_files(
    ctx: typer.Context,
    nodes: str = typer.Argument(..., help=NODES_HELP),
    paths: list[str] = typer.Argument(..., help="<src...> <dst>; ':path' is on the node, 'path' is local."),
    parallel: Optional[int] = typer.Option(None, "-p", help=PARALLEL_HELP),
    failfast: bool = typer.Option(False, "--failfast", "-failfast", help=FAILFAST_HELP),
) -> None:
    """Copy files to/from GCE node(s).

    If <dst> is remote, all <src...> must be local; if <dst> is local, all
    <src...> must be remote. When copying to a local <dst> from more than one
    node, each node's files go into a <dst>/<node> subdirectory.
    """
    config: CloudConfig = ctx.obj["config"]

    if len(paths) < 2:
        raise _fail("need at least three args", EXIT_USAGE)

    srcs = [parse_location(p) for p in paths[:-1]]
    dst = parse_location(paths[-1])
    try:
        check_copy_sides(srcs, dst)
    except LocationError as exc:
        raise _fail(str(exc), EXIT_USAGE)

    selected = _list_matching(config, nodes)
    make_subdir = len(selected) > 1 and isinstance(dst, Local)
    runner = _make_runner(config, parallel, failfast)

    report = runner.run(
        selected,
        lambda node: ssh.copy(node, srcs, dst, config, make_subdir=make_subdir),
        on_result=_print_result,
    )
    _finish(report)


@app.command("sh", context_settings=PASSTHROUGH)
def shell(
    ctx: typer.Context,
    nodes: str = typer.Argument(..., help=NODES_HELP),
    command: Optional[list[str]] = typer.Argument(None, help="Command line to run on each node, without extra quoting."),
    parallel: Optional[int] = typer.Option(None, "-p", help=PARALLEL_HELP),
    failfast: bool = typer.Option(False, "--failfast", "-failfast", help=FAILFAST_HELP),
) -> None:
    """Start a shell or run a command on GCE node(s).

    If <nodes> matches exactly one node and no command is given, starts an
    interactive shell there. Otherwise runs the command on every matching
    node. For anything needing complex quoting, use 'vcloud run'.
    """
    config: CloudConfig = ctx.obj["config"]
    selected = _list_matching(config, nodes)

    if not command:
        if len(selected) == 1:
            raise typer.Exit(code=ssh.start_shell(selected[0], config))
        raise _fail(
            f"must specify command; more than one matching node: {', '.join(selected.names())}",
            EXIT_USAGE,
        )

    runner = _make_runner(config, parallel, failfast)
    report = runner.run(
        selected,
        lambda node: ssh.command(node, config.user, command, config),
        on_result=_print_result,
    )
    _finish(report)


@app.command("run", context_settings=PASSTHROUGH)
def copy_and_run_cmd(
    ctx: typer.Context,
    nodes: str = typer.Argument(..., help=NODES_HELP),
    args: list[str] = typer.Argument(..., help="<files...> [++ command...]"),
    parallel: Optional[int] = typer.Option(None, "-p", help=PARALLEL_HELP),
    failfast: bool = typer.Option(False, "--failfast", "-failfast", help=FAILFAST_HELP),
    outdir: Optional[str] = typer.Option(None, "--outdir", "-outdir", help="Local directory to store results from each node."),
) -> None:
    """Copy file(s) to GCE node(s) and run.

    On each node: create a temporary directory, copy the files into it, cd
    there and run the command (or the first file if no command follows ++),
    optionally copy the directory back to --outdir, then delete it.
    """
    config: CloudConfig = ctx.obj["config"]

    try:
        files, cmdline = split_run_args(args)
    except ValueError as exc:
        raise _fail(str(exc), EXIT_USAGE)

    if outdir is not None and isinstance(parse_location(outdir), Remote):
        raise _fail("--outdir must be local", EXIT_USAGE)

    selected = _list_matching(config, nodes)
    runner = _make_runner(config, parallel, failfast)

    try:
        report = copy_and_run(
            selected, files, cmdline, config, runner, outdir=outdir, on_result=_print_result
        )
    except NotExecutableError as exc:
        raise _fail(str(exc), EXIT_USAGE)
    _finish(report)


# ---------------------------------------------------------------------------
# node subcommand group
# ---------------------------------------------------------------------------

node_app = typer.Typer(name="node", help="Manage GCE nodes.", no_args_is_help=True)
app.add_typer(node_app)


@node_app.command("create")
def node_create(
    ctx: typer.Context,
    names: list[str] = typer.Argument(..., help="Names of the nodes to create."),
    boot_disk_size: str = typer.Option("500GB", "--boot-disk-size", help="Size of the machine boot disk."),
    image: str = typer.Option("ubuntu-14-04", "--image", help="Image to create the machine from."),
    machine_type: str = typer.Option("n1-standard-8", "--machine-type", help="Machine type to create."),
    zone: str = typer.Option("us-central1-f", "--zone", help="Zone to create the machine in."),
    setup_script: Optional[str] = typer.Option(None, "--setup-script", help="Script to set up the machine."),
) -> None:
    """Create GCE nodes, wait for ssh, and run an optional setup script."""
    config: CloudConfig = ctx.obj["config"]
    runner = _make_runner(config, None, False)

    try:
        created = admin.create_nodes(
            names, config, runner,
            boot_disk_size=boot_disk_size,
            image=image,
            machine_type=machine_type,
            zone=zone,
            setup_script=setup_script,
            on_result=_print_result,
        )
    except (NoMatchError, NotExecutableError) as exc:
        raise _fail(str(exc), EXIT_USAGE)
    except (admin.NodeCommandError, InventoryError, FanOutError) as exc:
        raise _fail(str(exc))

    console.print(f"Created {', '.join(created.names())}", markup=False)


@node_app.command("delete")
def node_delete(
    ctx: typer.Context,
    names: list[str] = typer.Argument(..., help="Names of the nodes to delete."),
    zone: str = typer.Option("us-central1-f", "--zone", help="Zone to delete the machine in."),
) -> None:
    """Delete GCE nodes."""
    config: CloudConfig = ctx.obj["config"]
    try:
        admin.delete_nodes(names, config, zone=zone)
    except admin.NodeCommandError as exc:
        raise _fail(str(exc))


@node_app.command("authorize")
def node_authorize(
    ctx: typer.Context,
    args: list[str] = typer.Argument(..., help="<userA>@<hostA> [<userB>@]<hostB>"),
) -> None:
    """Authorize userA on hostA to log into hostB as userB (default userA)."""
    config: CloudConfig = ctx.obj["config"]
    _admin_access(admin.authorize, args, config)


@node_app.command("deauthorize")
def node_deauthorize(
    ctx: typer.Context,
    args: list[str] = typer.Argument(..., help="<userA>@<hostA> [<userB>@]<hostB>"),
) -> None:
    """Revoke userA@hostA's access to hostB as userB (default userA)."""
    config: CloudConfig = ctx.obj["config"]
    _admin_access(admin.deauthorize, args, config)


def _admin_access(fn, args: list[str], config: CloudConfig) -> None:
    runner = _make_runner(config, None, False)
    try:
        fn(args, config, runner, on_result=_print_result)
    except (ValueError, NoMatchError) as exc:
        raise _fail(str(exc), EXIT_USAGE)
    except (InventoryError, FanOutError, OSError) as exc:
        raise _fail(str(exc))
