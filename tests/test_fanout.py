"""Tests for the parallel fan-out runner (fanout.py).

Operations are plain Python callables that record concurrency and
invocations, so these tests exercise the real threads, slots and queue.
Timing assertions use generous bounds to stay stable on loaded machines.
"""

import threading
import time

import pytest

from conftest import make_nodes
from vcloud.fanout import FanOutError, FanOutRunner, RunReport
from vcloud.nodes import Node
from vcloud.ssh import RunResult


class Recorder:
    """Operation double that tracks invocations and peak concurrency.

    Attributes:
        invoked: Names of nodes the operation was called for.
        peak: Highest number of simultaneous in-flight calls observed.
    """

    def __init__(self, delay: float = 0.0, fail: set[str] | None = None, delays: dict | None = None):
        self.delay = delay
        self.delays = delays or {}
        self.fail = fail or set()
        self.invoked: list[str] = []
        self.peak = 0
        self._active = 0
        self._lock = threading.Lock()

    def __call__(self, node: Node) -> RunResult:
        with self._lock:
            self.invoked.append(node.name)
            self._active += 1
            self.peak = max(self.peak, self._active)
        time.sleep(self.delays.get(node.name, self.delay))
        with self._lock:
            self._active -= 1
        if node.name in self.fail:
            return RunResult(node=node, output="oops\n", error="exit status 1")
        return RunResult(node=node, output="ok\n")


def _names(nodes):
    return sorted(n.name for n in nodes)


# ---------------------------------------------------------------------------
# Concurrency bounds
# ---------------------------------------------------------------------------


def test_unbounded_runs_all_nodes_at_once():
    """Negative parallelism lets every node be in flight together."""
    nodes = make_nodes("a", "b", "c", "d", "e", "f")
    op = Recorder(delay=0.2)

    report = FanOutRunner(parallelism=-1).run(nodes, op)

    assert op.peak == len(nodes)
    assert report.ok


def test_none_parallelism_is_unbounded():
    """None behaves like a negative parallelism."""
    nodes = make_nodes("a", "b", "c")
    op = Recorder(delay=0.2)

    FanOutRunner(parallelism=None).run(nodes, op)

    assert op.peak == 3


@pytest.mark.parametrize("parallelism", [0, 1])
def test_sequential(parallelism):
    """0 and 1 both run one node at a time, in sorted order."""
    nodes = make_nodes("c", "a", "d", "b")
    op = Recorder(delay=0.02)

    FanOutRunner(parallelism=parallelism).run(nodes, op)

    assert op.peak == 1
    assert op.invoked == ["a", "b", "c", "d"]


@pytest.mark.parametrize("parallelism", [2, 3])
def test_bounded_parallelism(parallelism):
    """At most N operations are ever in flight, and N are actually used."""
    nodes = make_nodes(*"abcdefgh")
    op = Recorder(delay=0.1)

    FanOutRunner(parallelism=parallelism).run(nodes, op)

    assert op.peak == parallelism


def test_two_batches_timing():
    """parallelism=2 over 4 equal nodes takes about two delays, not one or four."""
    delay = 0.3
    nodes = make_nodes("a", "b", "c", "d")

    start = time.monotonic()
    FanOutRunner(parallelism=2).run(nodes, Recorder(delay=delay))
    elapsed = time.monotonic() - start

    assert 1.8 * delay <= elapsed < 3.5 * delay


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("parallelism", [-1, 0, 2])
@pytest.mark.parametrize("fail_fast", [False, True])
@pytest.mark.parametrize("failing", [set(), {"b"}, {"a", "c", "e"}])
def test_buckets_account_for_every_node(parallelism, fail_fast, failing):
    """done + failed + skipped always equals the node count."""
    nodes = make_nodes("a", "b", "c", "d", "e")

    report = FanOutRunner(parallelism, fail_fast).run(nodes, Recorder(fail=failing))

    assert len(report.done) + len(report.failed) + len(report.skipped) == len(nodes)
    assert len(report.results) == len(nodes)
    if not fail_fast:
        assert report.skipped == []
        assert _names(report.failed) == sorted(failing)


def test_empty_node_set():
    """An empty node set yields an empty, successful report."""
    report = FanOutRunner().run(make_nodes(), Recorder())

    assert report.total == 0
    assert report.ok


def test_results_stream_in_completion_order():
    """on_result fires as each node finishes, fastest first."""
    nodes = make_nodes("slow", "fast", "medium")
    op = Recorder(delays={"slow": 0.4, "medium": 0.2, "fast": 0.0})
    seen: list[tuple[str, float]] = []
    start = time.monotonic()

    FanOutRunner().run(nodes, op, on_result=lambda r: seen.append((r.node.name, time.monotonic() - start)))

    assert [name for name, _ in seen] == ["fast", "medium", "slow"]
    # Reason: the fast result must be delivered before the slow node finishes.
    assert seen[0][1] < 0.3


def test_raising_operation_does_not_deadlock():
    """An exception is recorded as that node's failure and its slot is freed."""
    nodes = make_nodes("a", "b", "c")

    def op(node: Node) -> RunResult:
        if node.name == "a":
            raise RuntimeError("kaboom")
        return RunResult(node=node)

    report = FanOutRunner(parallelism=1).run(nodes, op)

    assert _names(report.failed) == ["a"]
    assert _names(report.done) == ["b", "c"]
    failed = next(r for r in report.results if r.node.name == "a")
    assert "kaboom" in failed.error


# ---------------------------------------------------------------------------
# Fail-fast
# ---------------------------------------------------------------------------


def test_fail_fast_sequential_skips_rest():
    """Sequentially, every node after the first failure is skipped and never invoked."""
    nodes = make_nodes("n1", "n2", "n3", "n4")
    op = Recorder(fail={"n2"})

    report = FanOutRunner(parallelism=1, fail_fast=True).run(nodes, op)

    assert op.invoked == ["n1", "n2"]
    assert _names(report.done) == ["n1"]
    assert _names(report.failed) == ["n2"]
    assert _names(report.skipped) == ["n3", "n4"]


def test_fail_fast_lets_in_flight_work_finish():
    """A node already running when another fails still completes normally."""
    nodes = make_nodes("n1", "n2", "n3", "n4")
    op = Recorder(fail={"n2"}, delays={"n1": 0.3, "n2": 0.0, "n3": 0.3, "n4": 0.3})

    report = FanOutRunner(parallelism=2, fail_fast=True).run(nodes, op)

    assert _names(report.done) == ["n1"]
    assert _names(report.failed) == ["n2"]
    assert len(report.skipped) >= 1
    assert set(_names(report.skipped)) <= {"n3", "n4"}
    assert len(report.done) + len(report.failed) + len(report.skipped) == 4
    for node in report.skipped:
        assert node.name not in op.invoked


def test_fail_fast_unbounded_skips_nothing_already_launched():
    """With all nodes launched at once there is nothing left to skip."""
    nodes = make_nodes("a", "b", "c")
    op = Recorder(fail={"a"}, delay=0.05)

    report = FanOutRunner(parallelism=-1, fail_fast=True).run(nodes, op)

    assert report.skipped == []
    assert sorted(op.invoked) == ["a", "b", "c"]


def test_skipped_results_are_marked():
    """Skipped results carry skipped=True and no error."""
    nodes = make_nodes("a", "b")
    seen: list[RunResult] = []

    FanOutRunner(parallelism=1, fail_fast=True).run(nodes, Recorder(fail={"a"}), on_result=seen.append)

    skipped = [r for r in seen if r.skipped]
    assert [r.node.name for r in skipped] == ["b"]
    assert skipped[0].error is None


# ---------------------------------------------------------------------------
# RunReport
# ---------------------------------------------------------------------------


def test_summary_success():
    """A successful report summarises only the done bucket."""
    report = RunReport(total=2)
    for node in make_nodes("a", "b"):
        report.add(RunResult(node=node))

    assert report.summary() == "DONE 2 nodes: [a, b]"
    report.raise_for_failure()


def test_summary_failure_and_error():
    """A failing report lists each non-empty bucket and raises FanOutError."""
    a, b, c = make_nodes("a", "b", "c")
    report = RunReport(total=3)
    report.add(RunResult(node=a))
    report.add(RunResult(node=b, error="x"))
    report.add(RunResult(node=c, skipped=True))

    assert report.summary() == (
        "DONE 1/3 nodes: [a]\n"
        "SKIP 1/3 nodes: [c]\n"
        "FAIL 1/3 nodes: [b]"
    )
    with pytest.raises(FanOutError) as excinfo:
        report.raise_for_failure()
    assert excinfo.value.report is report
    assert "FAIL 1/3" in str(excinfo.value)
