"""Local and remote path specifiers.

On the command line a leading ``:`` marks a path as living on the node(s).
That convention is decoded once, here, into ``Local`` or ``Remote``; the rest
of the code dispatches on the type rather than re-inspecting strings.
"""

from dataclasses import dataclass


REMOTE_PREFIX = ":"


class LocationError(Exception):
    """Raised when local and remote paths are mixed in an unsupported way."""

    pass


@dataclass(frozen=True)
class Local:
    """A path on the machine running vcloud."""

    path: str


@dataclass(frozen=True)
class Remote:
    """A path on each target node, relative to the remote user's home."""

    path: str


Location = Local | Remote


def parse_location(arg: str) -> Location:
    """Decode a command-line path argument.

    Args:
        arg: Raw argument, ``:path`` for remote or ``path`` for local.

    Returns:
        Location: ``Remote(path)`` or ``Local(arg)``.
    """
    if arg.startswith(REMOTE_PREFIX):
        return Remote(arg[len(REMOTE_PREFIX):])
    return Local(arg)


def check_copy_sides(srcs: list[Location], dst: Location) -> None:
    """Validate that a copy has exactly one remote side.

    If dst is remote, all srcs must be local. If dst is local, all srcs must
    be remote.

    Raises:
        LocationError: If the sources and destination are mixed up.
    """
    if not srcs:
        raise LocationError("no source files given")
    if isinstance(dst, Remote):
        if any(isinstance(src, Remote) for src in srcs):
            raise LocationError("dst is remote; all srcs must be local")
    elif any(isinstance(src, Local) for src in srcs):
        raise LocationError("dst is local; all srcs must be remote")
