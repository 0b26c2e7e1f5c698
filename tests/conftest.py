"""Shared pytest fixtures for the netfault test suite."""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Generator, Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from netfault.config import get_settings
from netfault.core import FaultController, FaultRevokeError, WorkloadExecutionError
from netfault.models import (
    FaultKind,
    FaultSpec,
    Impairment,
    NodeRole,
    Scenario,
    TargetNode,
    WorkloadSpec,
)
from netfault.observer import CampaignObserver
from netfault.recorder import RunRecorder
from netfault.runner import ExperimentRunner

# ---------------------------------------------------------------------------
# Fake backends
# ---------------------------------------------------------------------------


class FakeFaultBackend:
    """In-memory control plane that behaves like ``tc`` on a set of nodes.

    ``fail_apply``: node names whose apply raises.
    ``fail_remove``: node name -> number of remove calls that raise.
    ``ignore_apply``: node names whose apply "succeeds" without installing.
    ``hang_apply``: node names whose apply blocks for ``hang_seconds``.
    """

    def __init__(self) -> None:
        self.state: dict[str, Impairment] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_apply: set[str] = set()
        self.fail_remove: dict[str, int] = {}
        self.ignore_apply: set[str] = set()
        self.hang_apply: set[str] = set()
        self.hang_seconds = 1.0
        self._lock = threading.Lock()

    def apply(self, node: TargetNode, kind: FaultKind, magnitude: str) -> None:
        with self._lock:
            self.calls.append(("apply", node.name))
        if node.name in self.hang_apply:
            time.sleep(self.hang_seconds)
            return
        if node.name in self.fail_apply:
            raise RuntimeError("RTNETLINK answers: Operation not permitted")
        if node.name in self.ignore_apply:
            return
        with self._lock:
            if node.name in self.state:
                raise RuntimeError("RTNETLINK answers: File exists")
            self.state[node.name] = Impairment(kind=kind, magnitude=magnitude)

    def remove(self, node: TargetNode) -> None:
        with self._lock:
            self.calls.append(("remove", node.name))
            remaining = self.fail_remove.get(node.name, 0)
            if remaining > 0:
                self.fail_remove[node.name] = remaining - 1
                raise FaultRevokeError(f"{node.name}: tc qdisc del failed")
            self.state.pop(node.name, None)

    def read(self, node: TargetNode) -> Impairment | None:
        with self._lock:
            self.calls.append(("read", node.name))
            return self.state.get(node.name)

    def count(self, op: str, node: str | None = None) -> int:
        return sum(1 for o, n in self.calls if o == op and (node is None or n == node))


class FakeWorkloadBackend:
    """Workload backend that runs a short Python script as the load generator."""

    def __init__(self, script: str = "print('op rate: 1000')") -> None:
        self.script = script
        self.prepare_calls = 0
        self.teardown_calls = 0
        self.fail_prepare = False
        self.commands: list[tuple[list[str], WorkloadSpec, int]] = []

    def prepare(self) -> None:
        self.prepare_calls += 1
        if self.fail_prepare:
            raise WorkloadExecutionError("java not found")

    def command(
        self, nodes: Sequence[TargetNode], workload: WorkloadSpec, duration: int
    ) -> list[str]:
        self.commands.append(([n.name for n in nodes], workload, duration))
        return [sys.executable, "-c", self.script]

    def teardown(self) -> None:
        self.teardown_calls += 1


class FakeRunner:
    """Stand-in for :class:`ExperimentRunner` used by sequencer tests.

    Raises on the call numbers listed in ``fail_on`` (1-based) and records
    the fault backend's state seen during each run.
    """

    def __init__(self, fault_backend: FakeFaultBackend, fail_on: Sequence[int] = ()) -> None:
        self.fault_backend = fault_backend
        self.fail_on = set(fail_on)
        self.calls = 0
        self.seen_state: list[dict[str, Impairment]] = []
        self.error: Exception = RuntimeError("stress tool crashed")

    def run(
        self,
        nodes: Sequence[TargetNode],
        workload: WorkloadSpec,
        duration: int,
        cancel: threading.Event | None = None,
    ) -> bytes:
        self.calls += 1
        self.seen_state.append(dict(self.fault_backend.state))
        if self.calls in self.fail_on:
            raise self.error
        return b"".join(f"interval {i}, 1000 op/s\n".encode() for i in range(20))


# ---------------------------------------------------------------------------
# Node and spec fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def node_a() -> TargetNode:
    return TargetNode(name="cassandra_a", role=NodeRole.seed)


@pytest.fixture()
def node_b() -> TargetNode:
    return TargetNode(name="cassandra_b")


@pytest.fixture()
def node_c() -> TargetNode:
    return TargetNode(name="cassandra_c")


@pytest.fixture()
def cluster(node_a: TargetNode, node_b: TargetNode, node_c: TargetNode) -> list[TargetNode]:
    return [node_a, node_b, node_c]


@pytest.fixture()
def loss_spec(node_b: TargetNode, node_c: TargetNode) -> FaultSpec:
    """10% packet loss on the two peers."""
    return FaultSpec(kind=FaultKind.loss, targets=frozenset({node_b, node_c}), magnitude="10%")


@pytest.fixture()
def baseline() -> Scenario:
    return Scenario(label="baseline", duration_seconds=1)


# ---------------------------------------------------------------------------
# Core object fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fault_backend() -> FakeFaultBackend:
    return FakeFaultBackend()


@pytest.fixture()
def workload_backend() -> FakeWorkloadBackend:
    return FakeWorkloadBackend()


@pytest.fixture()
def controller(fault_backend: FakeFaultBackend) -> FaultController:
    return FaultController(fault_backend, operation_timeout=2.0)


@pytest.fixture()
def observer() -> CampaignObserver:
    return CampaignObserver()


@pytest.fixture()
def runner(workload_backend: FakeWorkloadBackend) -> ExperimentRunner:
    return ExperimentRunner(workload_backend, grace_seconds=2.0, kill_after=1.0, poll_interval=0.05)


@pytest.fixture()
def fixed_clock() -> datetime:
    return datetime(2026, 10, 19, 14, 25, 1, tzinfo=UTC)


@pytest.fixture()
def recorder(tmp_path: Path, fixed_clock: datetime) -> RunRecorder:
    """A recorder under tmp_path whose clock never advances."""
    return RunRecorder(tmp_path / "outputs", clock=lambda: fixed_clock)


@pytest.fixture()
def clean_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Settings from a clean environment with no settle pause."""
    for key in list(os.environ):
        if key.startswith("NETFAULT_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("NETFAULT_SETTLE_SECONDS", "0")
    monkeypatch.setenv("NETFAULT_GRACE_SECONDS", "5")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
