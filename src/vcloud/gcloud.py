"""gcloud command builders."""

from vcloud.config import CloudConfig


def add_user(user: str | None, suffix: str) -> str:
    """Prefix ``suffix`` with ``user@`` when a user is given."""
    if user:
        return f"{user}@{suffix}"
    return suffix


def quote_for_command(argv: list[str]) -> str:
    """Join argv into a single remote command line.

    Arguments containing a space are wrapped in double quotes. This is only
    right for simple cases: the line passes through gcloud, ssh and the remote
    shell, each with its own escaping rules. Use ``vcloud run`` with a script
    for anything more involved.

    Args:
        argv: Command and arguments.

    Returns:
        str: The joined command line.
    """
    parts = []
    for arg in argv:
        if " " in arg:
            arg = f'"{arg}"'
        parts.append(arg)
    return " ".join(parts)


def build_list_cmd(config: CloudConfig) -> list[str]:
    """Build the gcloud command that lists all instances as JSON.

    Args:
        config: vcloud configuration (gcloud binary and project).

    Returns:
        list[str]: Command arguments for gcloud compute instances list.
    """
    return [
        config.gcloud_bin, "-q",
        "compute", "instances", "list",
        "--project", config.project,
        "--format=json",
    ]


def build_copy_cmd(
    config: CloudConfig, srcs: list[str], dst: str, zone: str
) -> list[str]:
    """Build the gcloud copy-files command.

    Args:
        config: vcloud configuration.
        srcs: Source specifiers, already rewritten to ``[user@]node:path``
            where remote.
        dst: Destination specifier.
        zone: Zone of the node on the remote side.

    Returns:
        list[str]: Command arguments for gcloud compute copy-files.
    """
    return [
        config.gcloud_bin, "compute", "copy-files",
        *srcs, dst,
        "--project", config.project,
        "--zone", zone,
    ]


def build_ssh_cmd(
    config: CloudConfig,
    target: str,
    zone: str,
    command_line: str | None = None,
) -> list[str]:
    """Build the gcloud ssh command.

    Without ``command_line`` the result starts an interactive shell.

    Args:
        config: vcloud configuration.
        target: ``[user@]node`` to log into.
        zone: Zone of the node.
        command_line: Remote command line to run, or None for a shell.

    Returns:
        list[str]: Command arguments for gcloud compute ssh.
    """
    cmd = [
        config.gcloud_bin, "compute", "ssh", target,
        "--project", config.project,
        "--zone", zone,
    ]
    if command_line is not None:
        cmd.extend(["--command", command_line])
    return cmd


def build_create_cmd(
    config: CloudConfig,
    names: list[str],
    boot_disk_size: str,
    image: str,
    machine_type: str,
    zone: str,
) -> list[str]:
    """Build the gcloud command that creates instances."""
    return [
        config.gcloud_bin, "compute",
        "--project", config.project,
        "instances", "create",
        *names,
        "--boot-disk-size", boot_disk_size,
        "--image", image,
        "--machine-type", machine_type,
        "--zone", zone,
        "--scopes", "storage-full,logging-write",
    ]


def build_delete_cmd(config: CloudConfig, names: list[str], zone: str) -> list[str]:
    """Build the gcloud command that deletes instances."""
    return [
        config.gcloud_bin, "compute",
        "--project", config.project,
        "instances", "delete",
        *names,
        "--zone", zone,
    ]
