"""Remote operations on a single node: copy files and run commands.

Both operations shell out to gcloud and capture combined stdout/stderr.
They never raise for a failed command; the failure is recorded on the
returned RunResult and the caller decides whether it matters.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass

from vcloud.config import CloudConfig
from vcloud.gcloud import add_user, build_copy_cmd, build_ssh_cmd, quote_for_command
from vcloud.location import Location, LocationError, Remote, check_copy_sides
from vcloud.nodes import Node

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of running an operation on one node.

    Attributes:
        node: The node the operation targeted.
        output: Combined stdout/stderr, accumulated across chained steps.
        error: Error description, or None on success.
        skipped: True if the operation was never started (fail-fast).
    """

    node: Node
    output: str = ""
    error: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    def merge(self, other: "RunResult", label: str) -> None:
        """Append a sub-step's result under a label.

        The first error seen stays the result's error. A later step's error
        is recorded in the output instead, so best-effort cleanup failures
        never hide the failure that caused them.

        Args:
            other: Result of the sub-step.
            label: Short description of the sub-step.
        """
        if other.error is not None:
            if self.error is None:
                self.error = other.error
            else:
                self.output += f"{label} FAIL: {other.error}\n"
        self.output += label + "\n"
        self.output += other.output

    def render(self) -> str:
        """Format the result for the console.

        Each output line is prefixed with the node name, followed by a
        DONE, FAIL or SKIP status line.
        """
        name = self.node.name
        lines = [f"{name}: {line}" for line in self.output.splitlines()]
        if self.skipped:
            lines.append(f"{name} SKIP")
        elif self.error is not None:
            lines.append(f"{name} FAIL: {self.error}")
        else:
            lines.append(f"{name} DONE")
        return "\n".join(lines)


def _run_captured(node: Node, cmd: list[str], config: CloudConfig) -> RunResult:
    """Run a local gcloud process for ``node`` and capture its output."""
    if config.dry_run:
        logger.info("[dry-run] %s: %s", node.name, " ".join(cmd))
        return RunResult(node=node)

    logger.debug("  gcloud -> %s: %s", node.name, " ".join(cmd))

    t0 = time.monotonic()
    try:
        proc = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=config.timeout,
        )
    except subprocess.TimeoutExpired as exc:
        elapsed = time.monotonic() - t0
        logger.error("  gcloud <- %s TIMEOUT after %.0fs", node.name, elapsed)
        output = exc.output or ""
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        return RunResult(node=node, output=output, error=f"timed out after {config.timeout:g}s")
    except OSError as exc:
        logger.error("  gcloud <- %s ERROR: %s", node.name, exc)
        return RunResult(node=node, error=f"cannot run {cmd[0]}: {exc}")

    elapsed = time.monotonic() - t0
    if proc.returncode != 0:
        logger.warning("  gcloud <- %s FAILED rc=%d (%.1fs)", node.name, proc.returncode, elapsed)
        return RunResult(
            node=node,
            output=proc.stdout,
            error=f"{' '.join(cmd[:3])} exited with status {proc.returncode}",
        )

    logger.debug("  gcloud <- %s OK (%.1fs)", node.name, elapsed)
    return RunResult(node=node, output=proc.stdout)


def _remote_spec(user: str, node: Node, remote: Remote) -> str:
    return add_user(user, f"{node.name}:{remote.path}")


def copy(
    node: Node,
    srcs: list[Location],
    dst: Location,
    config: CloudConfig,
    make_subdir: bool = False,
) -> RunResult:
    """Copy files between the local machine and one node.

    Either dst is remote and all srcs are local, or dst is local and all
    srcs are remote.

    Args:
        node: Node on the remote side of the copy.
        srcs: Source paths.
        dst: Destination path.
        config: vcloud configuration.
        make_subdir: When dst is local, copy into a new ``<dst>/<node>``
            subdirectory so copies from several nodes don't collide.

    Returns:
        RunResult: Captured output, with error set on failure.
    """
    try:
        check_copy_sides(srcs, dst)
    except LocationError as exc:
        return RunResult(node=node, error=str(exc))

    if isinstance(dst, Remote):
        src_specs = [src.path for src in srcs]
        dst_spec = _remote_spec(config.user, node, dst)
    else:
        src_specs = [_remote_spec(config.user, node, src) for src in srcs]
        dst_spec = dst.path
        if make_subdir:
            dst_spec = os.path.join(dst.path, node.name)
            if not config.dry_run:
                try:
                    os.mkdir(dst_spec)
                except OSError as exc:
                    return RunResult(node=node, error=f"cannot create {dst_spec}: {exc}")

    cmd = build_copy_cmd(config, src_specs, dst_spec, node.zone)
    return _run_captured(node, cmd, config)


def command(node: Node, user: str, argv: list[str], config: CloudConfig) -> RunResult:
    """Run a command line on one node over gcloud ssh.

    Args:
        node: Target node.
        user: Remote user to run as.
        argv: Command and arguments, joined with ``quote_for_command``.
        config: vcloud configuration.

    Returns:
        RunResult: Captured output, with error set on failure.
    """
    cmd = build_ssh_cmd(config, add_user(user, node.name), node.zone, quote_for_command(argv))
    return _run_captured(node, cmd, config)


def start_shell(node: Node, config: CloudConfig) -> int:
    """Start an interactive shell on a node, inheriting the terminal.

    Returns:
        int: Exit status of the ssh session.
    """
    cmd = build_ssh_cmd(config, add_user(config.user, node.name), node.zone)
    if config.dry_run:
        logger.info("[dry-run] %s", " ".join(cmd))
        return 0
    logger.debug("Starting shell: %s", " ".join(cmd))
    return subprocess.run(cmd).returncode
