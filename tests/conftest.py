"""Shared test fixtures for the vcloud test suite."""

import subprocess
import threading
from pathlib import Path

import pytest

from vcloud.config import CloudConfig
from vcloud.nodes import Node, NodeSet


def make_nodes(*names: str) -> NodeSet:
    """Build a NodeSet of nodes in zone us-central1-f with the given names."""
    return NodeSet(Node(name=n, zone="us-central1-f", status="RUNNING") for n in names)


class FakeGcloud:
    """Stand-in for subprocess.run that records gcloud invocations.

    Responses are chosen by the first registered substring found in the
    space-joined command line; unmatched commands succeed with no output.

    Attributes:
        calls: Every command passed to run(), in call order.
        kwargs: The keyword arguments of each call.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self._responses: list[tuple[str, int, str]] = []
        self._lock = threading.Lock()

    def register(self, pattern: str, stdout: str = "", returncode: int = 0) -> None:
        self._responses.append((pattern, returncode, stdout))

    def __call__(self, cmd, **kwargs):
        with self._lock:
            self.calls.append(list(cmd))
            self.kwargs.append(kwargs)
        line = " ".join(cmd)
        for pattern, returncode, stdout in self._responses:
            if pattern in line:
                return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def lines(self) -> list[str]:
        """Return recorded commands as space-joined strings."""
        return [" ".join(c) for c in self.calls]


@pytest.fixture
def fake_gcloud(monkeypatch):
    """Patch subprocess.run with a FakeGcloud and return it."""
    fake = FakeGcloud()
    monkeypatch.setattr(subprocess, "run", fake)
    yield fake


@pytest.fixture
def config() -> CloudConfig:
    """Default configuration with an explicit project and user."""
    return CloudConfig(project="test-project", user="veyron")


@pytest.fixture
def gcloud_script(tmp_path):
    """Build an executable stand-in for the gcloud binary.

    The returned factory takes a printf format for the script's stdout and
    returns the script path plus a log file that receives one line of
    arguments per invocation.
    """

    def make(stdout_format: str, returncode: int = 0) -> tuple[str, Path]:
        log = tmp_path / "gcloud.log"
        log.touch()
        script = tmp_path / "gcloud"
        script.write_text(
            "#!/bin/sh\n"
            f"printf '%s\\n' \"$*\" >> '{log}'\n"
            f"printf '{stdout_format}'\n"
            f"exit {returncode}\n"
        )
        script.chmod(0o755)
        return str(script), log

    return make
