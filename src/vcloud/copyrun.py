"""Copy files to nodes and run them.

Each matching node runs the same sequence, in parallel across nodes:
    1) Create a temporary directory TMPDIR named from a random number.
    2) Copy the run files into TMPDIR.
    3) cd into TMPDIR and run the command line, or the first run file if no
       command is given.
    4) If an output directory is given, remove the run files from TMPDIR and
       copy TMPDIR from the node back to the output directory.
    5) Delete TMPDIR.
"""

import logging
import os
import random

from vcloud import ssh
from vcloud.config import CloudConfig
from vcloud.fanout import FanOutRunner, ResultCallback, RunReport
from vcloud.location import Local, Remote, parse_location
from vcloud.nodes import Node, NodeSet
from vcloud.ssh import RunResult

logger = logging.getLogger(__name__)


# Separates run files from the command line in 'vcloud run' arguments.
COMMAND_SEPARATOR = "++"


class NotExecutableError(Exception):
    """Raised when the run file lacks execute permission or doesn't exist."""

    pass


def split_run_args(args: list[str]) -> tuple[list[str], list[str]]:
    """Split ``files... [++ command...]`` into run files and a command line.

    Args:
        args: Arguments following the node list.

    Returns:
        tuple[list[str], list[str]]: The run files and the command line,
            which is empty if no ``++`` was given.

    Raises:
        ValueError: If a run file is remote or no run files are given.
    """
    files: list[str] = []
    cmdline: list[str] = []
    for i, arg in enumerate(args):
        if arg == "":
            continue
        if arg == COMMAND_SEPARATOR:
            cmdline = args[i + 1:]
            break
        if isinstance(parse_location(arg), Remote):
            raise ValueError("all run files must be local")
        files.append(arg)

    if not files:
        raise ValueError(f"no run files in {args}")
    return files, cmdline


def check_executable(path: str) -> None:
    """Verify a local file exists and has an execute bit set.

    Raises:
        NotExecutableError: If the file is missing or not executable.
    """
    try:
        mode = os.stat(path).st_mode
    except OSError as exc:
        raise NotExecutableError(f"cannot stat {path}: {exc}") from exc
    if mode & 0o111 == 0:
        raise NotExecutableError(f"file {path} doesn't have executable permissions")


def make_tmpdir_name() -> str:
    """Pick the temporary directory name shared by every node in one run."""
    return f"./tmp_{random.getrandbits(63):X}"


def run_on_node(
    node: Node,
    files: list[str],
    cmdline: list[str],
    tmpdir: str,
    config: CloudConfig,
    outdir: str | None = None,
    make_subdir: bool = False,
) -> RunResult:
    """Run the copy-and-run sequence on a single node.

    Every step is appended to one transcript. A failing step stops the steps
    after it, but removing the temporary directory is always attempted, even
    when creating it failed.

    Args:
        node: Target node.
        files: Local run files.
        cmdline: Command to run in TMPDIR; runs the first file when empty.
        tmpdir: Remote temporary directory, relative to the user's home.
        config: vcloud configuration.
        outdir: Local directory to copy TMPDIR back into, or None.
        make_subdir: Copy back into ``<outdir>/<node>``.

    Returns:
        RunResult: The transcript and first error, if any.
    """
    user = config.user
    result = RunResult(node=node)

    try:
        result.merge(
            ssh.command(node, user, ["mkdir", tmpdir], config),
            f"[run] create tmpdir {tmpdir!r}",
        )
        if result.error is None:
            result.merge(
                ssh.copy(node, [Local(f) for f in files], Remote(tmpdir), config),
                f"[run] copy files to node {files}",
            )
        if result.error is None:
            run_cmd = ["cd", tmpdir, ";"]
            if cmdline:
                run_cmd.extend(cmdline)
            else:
                run_cmd.append("./" + os.path.basename(files[0]))
            result.merge(ssh.command(node, user, run_cmd, config), f"[run] run cmdline {run_cmd}")
        if result.error is None and outdir:
            # Drop the inputs so only what the run produced is fetched.
            rm_cmd = ["cd", tmpdir, "&&", "rm", *(os.path.basename(f) for f in files)]
            result.merge(ssh.command(node, user, rm_cmd, config), f"[run] remove run files {rm_cmd}")
        if result.error is None and outdir:
            result.merge(
                ssh.copy(node, [Remote(tmpdir)], Local(outdir), config, make_subdir=make_subdir),
                "[run] copy tmpdir from node",
            )
    finally:
        result.merge(
            ssh.command(node, user, ["rm", "-rf", tmpdir], config),
            f"[run] delete tmpdir {tmpdir!r}",
        )
    return result


def copy_and_run(
    nodes: NodeSet,
    files: list[str],
    cmdline: list[str],
    config: CloudConfig,
    runner: FanOutRunner,
    outdir: str | None = None,
    on_result: ResultCallback | None = None,
) -> RunReport:
    """Copy run files to every node and run them there.

    Args:
        nodes: Nodes to run on.
        files: Local run files; the first is executed when no command is given.
        cmdline: Command to run on each node, or empty.
        config: vcloud configuration.
        runner: Fan-out runner controlling parallelism and fail-fast.
        outdir: Local directory collecting each node's TMPDIR, or None.
        on_result: Streaming callback passed to the runner.

    Returns:
        RunReport: Per-node outcome.

    Raises:
        NotExecutableError: If no command is given and the first run file
            is not executable. Checked once, before any node work.
    """
    if not cmdline:
        check_executable(files[0])

    tmpdir = make_tmpdir_name()
    make_subdir = len(nodes) > 1
    logger.info("Running on %d node(s) in %s", len(nodes), tmpdir)

    def operation(node: Node) -> RunResult:
        return run_on_node(node, files, cmdline, tmpdir, config, outdir, make_subdir)

    return runner.run(nodes, operation, on_result=on_result)
