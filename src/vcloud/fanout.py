"""Parallel fan-out of a per-node operation across a set of nodes.

A dispatcher thread walks the node set in sorted order and starts one worker
thread per node, blocking whenever ``parallelism`` workers are already in
flight. Workers push their RunResult onto a queue as they finish; the calling
thread drains that queue in completion order, so per-node output can be
streamed while slower nodes are still running.

With fail-fast enabled, the first failing result stops further launches:
every node not yet started is reported as skipped and its operation is never
invoked. Workers already in flight run to completion.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable

from vcloud.nodes import Node, NodeSet
from vcloud.ssh import RunResult

logger = logging.getLogger(__name__)


Operation = Callable[[Node], RunResult]
ResultCallback = Callable[[RunResult], None]


class FanOutError(Exception):
    """Raised when one or more nodes failed during a fan-out."""

    def __init__(self, report: "RunReport"):
        super().__init__(report.summary())
        self.report = report


@dataclass
class RunReport:
    """Aggregate outcome of a fan-out, partitioned into three buckets.

    Attributes:
        total: Number of nodes the fan-out covered.
        done: Nodes whose operation succeeded.
        failed: Nodes whose operation returned an error.
        skipped: Nodes never started because fail-fast triggered.
        results: Every RunResult, in completion order.
    """

    total: int
    done: list[Node] = field(default_factory=list)
    failed: list[Node] = field(default_factory=list)
    skipped: list[Node] = field(default_factory=list)
    results: list[RunResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def add(self, result: RunResult) -> None:
        """File a result into its bucket."""
        self.results.append(result)
        if result.skipped:
            self.skipped.append(result.node)
        elif result.error is not None:
            self.failed.append(result.node)
        else:
            self.done.append(result.node)

    def summary(self) -> str:
        """Render the per-bucket node lists.

        On success this is a single ``DONE n nodes`` line; on failure each
        non-empty bucket gets a ``DONE|SKIP|FAIL n/N nodes`` line.
        """
        if self.ok:
            return f"DONE {len(self.done)} nodes: {_names(self.done)}"

        lines = []
        if self.done:
            lines.append(f"DONE {len(self.done)}/{self.total} nodes: {_names(self.done)}")
        if self.skipped:
            lines.append(f"SKIP {len(self.skipped)}/{self.total} nodes: {_names(self.skipped)}")
        lines.append(f"FAIL {len(self.failed)}/{self.total} nodes: {_names(self.failed)}")
        return "\n".join(lines)

    def raise_for_failure(self) -> None:
        """Raise FanOutError if any node failed."""
        if not self.ok:
            raise FanOutError(self)


def _names(nodes: list[Node]) -> str:
    return "[" + ", ".join(sorted(n.name for n in nodes)) + "]"


class _Slots:
    """Counting semaphore whose waiters also wake on an abort signal."""

    def __init__(self, limit: int):
        self._limit = limit
        self._in_flight = 0
        self._cond = threading.Condition()
        self.aborted = threading.Event()

    def acquire(self) -> bool:
        """Block until a slot is free or the abort signal fires.

        Returns:
            bool: True if a slot was taken, False if aborted.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._in_flight < self._limit or self.aborted.is_set()
            )
            if self.aborted.is_set():
                return False
            self._in_flight += 1
            return True

    def release(self, abort: bool = False) -> None:
        """Free a slot, optionally firing the abort signal first."""
        with self._cond:
            if abort:
                self.aborted.set()
            self._in_flight -= 1
            self._cond.notify_all()


class FanOutRunner:
    """Runs an operation on every node with bounded parallelism.

    Args:
        parallelism: <0 or None runs all nodes at once, 0 or 1 runs them
            one at a time, N>=2 runs at most N at once.
        fail_fast: Skip nodes that haven't started once any node fails.
    """

    def __init__(self, parallelism: int | None = -1, fail_fast: bool = False):
        self.parallelism = -1 if parallelism is None else parallelism
        self.fail_fast = fail_fast

    def _limit(self, count: int) -> int:
        if self.parallelism < 0:
            return count
        return max(self.parallelism, 1)

    def run(
        self,
        nodes: NodeSet,
        operation: Operation,
        on_result: ResultCallback | None = None,
    ) -> RunReport:
        """Apply ``operation`` to every node and collect the results.

        Args:
            nodes: Nodes to run on, launched in their sorted order.
            operation: Per-node operation. Exceptions it raises are recorded
                as that node's failure.
            on_result: Called in the calling thread with each result as soon
                as it arrives, in completion order.

        Returns:
            RunReport: Every node filed as done, failed or skipped.
        """
        report = RunReport(total=len(nodes))
        if not nodes:
            return report

        slots = _Slots(self._limit(len(nodes)))
        results: queue.Queue[RunResult] = queue.Queue()

        def worker(node: Node) -> None:
            result = None
            try:
                result = operation(node)
            except Exception as exc:
                logger.exception("Operation on %s raised", node.name)
                result = RunResult(node=node, error=f"{type(exc).__name__}: {exc}")
            finally:
                if result is None:
                    result = RunResult(node=node, error="operation did not return a result")
                failed = result.error is not None and not result.skipped
                results.put(result)
                slots.release(abort=failed and self.fail_fast)

        def dispatch() -> None:
            ordered = list(nodes)
            for i, node in enumerate(ordered):
                if not slots.acquire():
                    remaining = ordered[i:]
                    logger.info(
                        "Fail-fast: skipping %d unstarted node(s): %s",
                        len(remaining), ", ".join(n.name for n in remaining),
                    )
                    for skipped in remaining:
                        results.put(RunResult(node=skipped, skipped=True))
                    return
                logger.debug("Launching operation on %s", node.name)
                try:
                    threading.Thread(
                        target=worker, args=(node,), name=f"fanout-{node.name}", daemon=True
                    ).start()
                except RuntimeError as exc:
                    results.put(RunResult(node=node, error=f"cannot start worker: {exc}"))
                    slots.release(abort=self.fail_fast)

        threading.Thread(target=dispatch, name="fanout-dispatch", daemon=True).start()

        for _ in range(len(nodes)):
            result = results.get()
            report.add(result)
            if on_result is not None:
                on_result(result)

        logger.debug(
            "Fan-out finished: %d done, %d failed, %d skipped",
            len(report.done), len(report.failed), len(report.skipped),
        )
        return report
