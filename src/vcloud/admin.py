"""Node lifecycle and access management: create, delete, authorize, deauthorize."""

import logging
import subprocess
import tempfile
import time
from pathlib import Path

from vcloud import ssh
from vcloud.config import CloudConfig
from vcloud.copyrun import copy_and_run
from vcloud.fanout import FanOutRunner, ResultCallback
from vcloud.gcloud import build_create_cmd, build_delete_cmd
from vcloud.location import Local, Remote
from vcloud.nodes import NodeSet, list_all
from vcloud.resolve import match_names

logger = logging.getLogger(__name__)


# SSH readiness polling after 'node create'.
READY_RETRIES = 10
READY_PERIOD = 5.0


class NodeCommandError(Exception):
    """Raised when a gcloud instance management command fails."""

    pass


def parse_user_and_host(args: list[str]) -> tuple[str, str, str, str]:
    """Parse ``<userA>@<hostA> [<userB>@]<hostB>``.

    userB defaults to userA.

    Args:
        args: Exactly two command-line arguments.

    Returns:
        tuple[str, str, str, str]: (userA, hostA, userB, hostB).

    Raises:
        ValueError: If the arguments are malformed.
    """
    if len(args) != 2:
        raise ValueError(f"unexpected number of arguments: got {len(args)}, want 2")

    def split(s: str) -> tuple[str, str]:
        tokens = s.split("@")
        if len(tokens) == 1:
            return "", tokens[0]
        if len(tokens) == 2:
            return tokens[0], tokens[1]
        raise ValueError(f"unexpected length of {tokens}: expected at most 2")

    user_a, host_a = split(args[0])
    if not user_a:
        raise ValueError(f"failed to parse user: {args[0]}")
    user_b, host_b = split(args[1])
    if not user_b:
        user_b = user_a
    return user_a, host_a, user_b, host_b


def authorize(
    args: list[str],
    config: CloudConfig,
    runner: FanOutRunner,
    on_result: ResultCallback | None = None,
) -> None:
    """Let userA on hostA log into hostB as userB.

    Copies userA's public key from hostA and appends it to userB's
    authorized_keys on hostB.

    Raises:
        ValueError: If the arguments are malformed.
        vcloud.nodes.InventoryError: If nodes cannot be listed.
        vcloud.resolve.NoMatchError: If a host matches no node.
        vcloud.fanout.FanOutError: If the copy or append fails on any node.
    """
    user_a, host_a, user_b, host_b = parse_user_and_host(args)
    all_nodes = list_all(config)
    nodes_a = match_names(all_nodes, host_a)
    nodes_b = match_names(all_nodes, host_b)

    with tempfile.TemporaryDirectory() as tmp:
        key_src = Remote(f"/home/{user_a}/.ssh/id_rsa.pub")
        report = runner.run(
            nodes_a,
            lambda node: ssh.copy(node, [key_src], Local(tmp), config),
            on_result=on_result,
        )
        report.raise_for_failure()
        key = (Path(tmp) / "id_rsa.pub").read_text().strip()

    authorized_keys = f"/home/{user_b}/.ssh/authorized_keys"
    echo_cmd = ["echo", key, ">>", authorized_keys]
    report = runner.run(
        nodes_b,
        lambda node: ssh.command(node, user_b, echo_cmd, config),
        on_result=on_result,
    )
    report.raise_for_failure()
    logger.info("Authorized %s@%s on %s as %s", user_a, host_a, ", ".join(nodes_b.names()), user_b)


def deauthorize(
    args: list[str],
    config: CloudConfig,
    runner: FanOutRunner,
    on_result: ResultCallback | None = None,
) -> None:
    """Remove every key for userA@hostA from userB's authorized_keys on hostB.

    Raises:
        ValueError: If the arguments are malformed.
        vcloud.nodes.InventoryError: If nodes cannot be listed.
        vcloud.resolve.NoMatchError: If hostB matches no node.
        vcloud.fanout.FanOutError: If the edit fails on any node.
    """
    user_a, host_a, user_b, host_b = parse_user_and_host(args)
    nodes_b = match_names(list_all(config), host_b)

    authorized_keys = f"/home/{user_b}/.ssh/authorized_keys"
    tmp_keys = authorized_keys + ".tmp"
    grep_cmd = ["grep", "-v", f"{user_a}@{host_a}", authorized_keys, ">", tmp_keys]
    move_cmd = ["mv", tmp_keys, authorized_keys]
    for argv in (grep_cmd, move_cmd):
        report = runner.run(
            nodes_b,
            lambda node: ssh.command(node, user_b, argv, config),
            on_result=on_result,
        )
        report.raise_for_failure()


def _run_gcloud(cmd: list[str], config: CloudConfig, input: str | None = None) -> None:
    if config.dry_run:
        logger.info("[dry-run] %s", " ".join(cmd))
        return
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, input=input, text=True)
    except OSError as exc:
        raise NodeCommandError(f"cannot run {cmd[0]}: {exc}") from exc
    if proc.returncode != 0:
        raise NodeCommandError(f"{' '.join(cmd)} failed with exit code {proc.returncode}")


def wait_until_ready(
    nodes: NodeSet,
    config: CloudConfig,
    runner: FanOutRunner,
    retries: int = READY_RETRIES,
    period: float = READY_PERIOD,
) -> None:
    """Poll nodes with a no-op ssh command until all of them answer.

    Raises:
        NodeCommandError: If the nodes are still unreachable after all retries.
    """
    for attempt in range(1, retries + 1):
        report = runner.run(nodes, lambda node: ssh.command(node, config.user, ["echo"], config))
        if report.ok:
            return
        logger.warning("Attempt #%d to connect failed, will try again later", attempt)
        time.sleep(period)
    raise NodeCommandError("timed out waiting for nodes to start")


def create_nodes(
    names: list[str],
    config: CloudConfig,
    runner: FanOutRunner,
    boot_disk_size: str = "500GB",
    image: str = "ubuntu-14-04",
    machine_type: str = "n1-standard-8",
    zone: str = "us-central1-f",
    setup_script: str | None = None,
    on_result: ResultCallback | None = None,
) -> NodeSet:
    """Create GCE nodes, wait for ssh, and optionally run a setup script.

    Returns:
        NodeSet: The created nodes.

    Raises:
        NodeCommandError: If creation fails or the nodes never become reachable.
        vcloud.nodes.InventoryError: If nodes cannot be listed.
        vcloud.resolve.NoMatchError: If the new nodes are not listed.
        vcloud.copyrun.NotExecutableError: If the setup script isn't executable.
        vcloud.fanout.FanOutError: If the setup script fails on any node.
    """
    _run_gcloud(build_create_cmd(config, names, boot_disk_size, image, machine_type, zone), config)

    nodes = match_names(list_all(config), ",".join(names))
    wait_until_ready(nodes, config, runner)

    if setup_script:
        report = copy_and_run(nodes, [setup_script], [], config, runner, on_result=on_result)
        report.raise_for_failure()
    return nodes


def delete_nodes(names: list[str], config: CloudConfig, zone: str = "us-central1-f") -> None:
    """Delete GCE nodes, answering gcloud's confirmation prompt.

    Raises:
        NodeCommandError: If gcloud fails.
    """
    _run_gcloud(build_delete_cmd(config, names, zone), config, input="Y\n")
