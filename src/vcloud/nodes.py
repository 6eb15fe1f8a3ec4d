"""Node directory: list GCE nodes and render them."""

import logging
import subprocess
from dataclasses import dataclass
from typing import Iterable, Iterator

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from rich.table import Table

from vcloud.config import CloudConfig
from vcloud.gcloud import build_list_cmd

logger = logging.getLogger(__name__)


# Column headers, in display order, as printed by 'gcloud compute instances list'.
COLUMNS = ["NAME", "ZONE", "MACHINE_TYPE", "INTERNAL_IP", "EXTERNAL_IP", "STATUS"]


class InventoryError(Exception):
    """Raised when the instance listing cannot be obtained or parsed."""

    pass


@dataclass(frozen=True)
class Node:
    """A GCE instance as reported by gcloud.

    Attributes:
        name: Instance name; unique within a project.
        zone: Zone the instance lives in.
        machine_type: Machine type, e.g. n1-standard-8.
        internal_ip: IP of the first network interface.
        external_ip: NAT IP of the first access config, "" if none.
        status: Free-form status string, e.g. RUNNING.
    """

    name: str
    zone: str = ""
    machine_type: str = ""
    internal_ip: str = ""
    external_ip: str = ""
    status: str = ""

    def columns(self) -> dict[str, str]:
        """Return the node's fields keyed by column header."""
        return {
            "NAME": self.name,
            "ZONE": self.zone,
            "MACHINE_TYPE": self.machine_type,
            "INTERNAL_IP": self.internal_ip,
            "EXTERNAL_IP": self.external_ip,
            "STATUS": self.status,
        }


class NodeSet:
    """An immutable collection of nodes, always sorted by name."""

    def __init__(self, nodes: Iterable[Node] = ()):
        self._nodes = tuple(sorted(nodes, key=lambda n: n.name))

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, index: int) -> Node:
        return self._nodes[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NodeSet):
            return NotImplemented
        return self._nodes == other._nodes

    def __repr__(self) -> str:
        return f"NodeSet({self.names()!r})"

    def names(self) -> list[str]:
        """Return node names in sorted order."""
        return [n.name for n in self._nodes]


class _AccessConfig(BaseModel):
    nat_ip: str = Field("", alias="natIP")


class _NetworkInterface(BaseModel):
    network_ip: str = Field("", alias="networkIP")
    access_configs: list[_AccessConfig] = Field(default_factory=list, alias="accessConfigs")


class _Instance(BaseModel):
    """The subset of a gcloud instance resource that vcloud reads."""

    name: str
    zone: str = ""
    machine_type: str = Field("", alias="machineType")
    network_interfaces: list[_NetworkInterface] = Field(default_factory=list, alias="networkInterfaces")
    status: str = ""


_INSTANCE_LIST = TypeAdapter(list[_Instance])


def _last_segment(value: str) -> str:
    # gcloud JSON reports zone and machineType as full resource URLs.
    return value.rsplit("/", 1)[-1]


def _to_node(instance: _Instance) -> Node:
    internal_ip = external_ip = ""
    if instance.network_interfaces:
        first = instance.network_interfaces[0]
        internal_ip = first.network_ip
        if first.access_configs:
            external_ip = first.access_configs[0].nat_ip
    return Node(
        name=instance.name,
        zone=_last_segment(instance.zone),
        machine_type=_last_segment(instance.machine_type),
        internal_ip=internal_ip,
        external_ip=external_ip,
        status=instance.status,
    )


def parse_instances(raw: str) -> NodeSet:
    """Parse 'gcloud compute instances list --format=json' output.

    Args:
        raw: JSON text, a list of instance objects.

    Returns:
        NodeSet: Parsed nodes, sorted by name.

    Raises:
        InventoryError: If the text is not a JSON list of instances with
            string names and well-formed network interfaces.
    """
    try:
        instances = _INSTANCE_LIST.validate_json(raw)
    except ValidationError as exc:
        raise InventoryError(f"cannot parse instance list: {exc}") from exc
    return NodeSet(_to_node(i) for i in instances)


def list_all(config: CloudConfig) -> NodeSet:
    """List every node in the configured project.

    Runs gcloud even in dry-run mode; `vcloud list` handles dry-run itself.
    Failures are not retried.

    Args:
        config: vcloud configuration.

    Returns:
        NodeSet: All nodes, sorted by name.

    Raises:
        InventoryError: If gcloud fails or its output cannot be parsed.
    """
    cmd = build_list_cmd(config)
    logger.debug("Listing nodes: %s", " ".join(cmd))

    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, errors="replace", stdin=subprocess.DEVNULL
        )
    except OSError as exc:
        raise InventoryError(f"cannot run {cmd[0]}: {exc}") from exc

    if proc.returncode != 0:
        raise InventoryError(
            f"{' '.join(cmd)} failed with exit code {proc.returncode}: {proc.stderr.strip()}"
        )

    logger.debug("Instance list:\n%s", proc.stdout)
    nodes = parse_instances(proc.stdout)
    logger.info("Found %d node(s) in project %s", len(nodes), config.project)
    return nodes


def render_table(
    nodes: NodeSet, fields: list[str] | None = None, header: bool = True
) -> Table:
    """Build a rich table describing nodes.

    Args:
        nodes: Nodes to render, one row each.
        fields: Column headers to include; all columns when None or empty.
        header: Whether to show the header row.

    Returns:
        Table: The populated table.

    Raises:
        ValueError: If a requested field is not a known column.
    """
    wanted = [f.strip().upper() for f in fields or [] if f.strip()]
    unknown = [f for f in wanted if f not in COLUMNS]
    if unknown:
        raise ValueError(f"unknown field(s) {', '.join(unknown)}; choose from {', '.join(COLUMNS)}")

    columns = [c for c in COLUMNS if not wanted or c in wanted]

    table = Table(show_header=header, box=None)
    for column in columns:
        table.add_column(column)
    for node in nodes:
        values = node.columns()
        table.add_row(*(values[c] for c in columns))
    return table
