"""Node name matching.

A node list on the command line is a comma-separated list of regular
expressions, each matched against the full node name. The comma-separated
form makes it easy to name a few specific nodes without regexp alternation;
node names are assumed not to contain commas.
"""

import re

from vcloud.nodes import NodeSet


class NoMatchError(Exception):
    """Raised when a pattern list is invalid or selects no nodes."""

    pass


def parse_pattern_list(patterns: str) -> list[re.Pattern]:
    """Compile a comma-separated list of regular expressions.

    Empty entries are ignored. Each pattern is anchored at both ends unless
    it already is, so it must match the whole name.

    Args:
        patterns: Comma-separated regular expressions.

    Returns:
        list[re.Pattern]: Compiled, fully anchored patterns.

    Raises:
        NoMatchError: If a pattern fails to compile.
    """
    compiled: list[re.Pattern] = []
    for expr in patterns.split(","):
        expr = expr.strip()
        if not expr:
            continue
        if not expr.startswith("^"):
            expr = "^" + expr
        if not expr.endswith("$"):
            expr = expr + "$"
        try:
            compiled.append(re.compile(expr))
        except re.error as exc:
            raise NoMatchError(f"invalid node pattern {expr!r}: {exc}") from exc
    return compiled


def match_names(nodes: NodeSet, patterns: str) -> NodeSet:
    """Select the nodes whose name matches any pattern in the list.

    Args:
        nodes: Candidate nodes.
        patterns: Comma-separated regular expressions.

    Returns:
        NodeSet: Matching nodes, in the same sorted order as ``nodes``.

    Raises:
        NoMatchError: If a pattern is invalid, the list has no non-empty
            pattern, or nothing matches.
    """
    compiled = parse_pattern_list(patterns)
    matched = [n for n in nodes if any(p.match(n.name) for p in compiled)]
    if not matched:
        raise NoMatchError(f"'{patterns}' doesn't match any node names")
    return NodeSet(matched)
