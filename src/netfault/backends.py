"""Capability interfaces for the cluster control plane and the load generator.

The fault controller and the experiment runner only talk to these
protocols.  The Docker implementations below shell into the containers of a
Docker-Compose Cassandra cluster: ``tc``/``netem`` for impairments and
``cassandra-stress`` for load.
"""

from __future__ import annotations

import re
import shlex
import subprocess
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from netfault.core import (
    FaultApplyError,
    FaultError,
    FaultOperationTimeout,
    FaultRevokeError,
    WorkloadExecutionError,
)
from netfault.logging import get_logger
from netfault.models import FaultKind, Impairment, TargetNode, WorkloadSpec

logger = get_logger(__name__)

# tc reports these when there is nothing to delete
_ABSENT_QDISC_MARKERS = (
    "No such file or directory",
    "Cannot delete qdisc with handle of zero",
    "Cannot find specified qdisc",
)
_NETEM_PARAM_RE = re.compile(r"\b(loss|delay)\s+(\d+(?:\.\d+)?(?:%|us|ms|s))")


@runtime_checkable
class FaultBackend(Protocol):
    """Per-node impairment control plane."""

    def apply(self, node: TargetNode, kind: FaultKind, magnitude: str) -> None: ...

    def remove(self, node: TargetNode) -> None: ...

    def read(self, node: TargetNode) -> Impairment | None: ...


@runtime_checkable
class WorkloadBackend(Protocol):
    """Load generator launched as a blocking local process."""

    def prepare(self) -> None: ...

    def command(
        self, nodes: Sequence[TargetNode], workload: WorkloadSpec, duration: int
    ) -> list[str]: ...

    def teardown(self) -> None: ...


def parse_netem(output: str) -> Impairment | None:
    """Extract the netem impairment from ``tc qdisc show`` output.

    Returns None when the root qdisc is not netem (e.g. ``noqueue``).
    """
    for line in output.splitlines():
        if not line.startswith("qdisc netem"):
            continue
        match = _NETEM_PARAM_RE.search(line)
        if match:
            return Impairment(kind=FaultKind(match.group(1)), magnitude=match.group(2))
    return None


class DockerTcBackend:
    """Shape container traffic with ``docker exec <node> tc ... netem``."""

    def __init__(
        self,
        docker: str = "docker",
        interface: str = "eth0",
        timeout: float = 10.0,
    ) -> None:
        self.docker = docker
        self.interface = interface
        self.timeout = timeout

    def apply(self, node: TargetNode, kind: FaultKind, magnitude: str) -> None:
        result = self._tc(
            node, "qdisc", "add", "dev", self.interface, "root", "netem", kind.value, magnitude
        )
        if result.returncode != 0:
            raise FaultApplyError(
                f"{node.name}: tc netem {kind.value} {magnitude} failed: {result.stderr.strip()}"
            )

    def remove(self, node: TargetNode) -> None:
        result = self._tc(node, "qdisc", "del", "dev", self.interface, "root")
        if result.returncode == 0:
            return
        if any(marker in result.stderr for marker in _ABSENT_QDISC_MARKERS):
            logger.debug("%s: no qdisc to remove", node.name)
            return
        raise FaultRevokeError(f"{node.name}: tc qdisc del failed: {result.stderr.strip()}")

    def read(self, node: TargetNode) -> Impairment | None:
        result = self._tc(node, "qdisc", "show", "dev", self.interface)
        if result.returncode != 0:
            raise FaultError(f"{node.name}: tc qdisc show failed: {result.stderr.strip()}")
        return parse_netem(result.stdout)

    def _tc(self, node: TargetNode, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker, "exec", node.name, "tc", *args]
        logger.debug("Running %s", shlex.join(cmd))
        try:
            return subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise FaultOperationTimeout(
                f"{node.name}: '{shlex.join(cmd)}' exceeded {self.timeout}s"
            ) from exc
        except OSError as exc:
            raise FaultError(f"{node.name}: cannot run {self.docker}: {exc}") from exc


class CassandraStressBackend:
    """Run ``cassandra-stress`` inside one of the cluster's containers."""

    JAVA_PACKAGE = "openjdk-8-jre-headless"

    def __init__(
        self,
        container: str = "cassandra_a",
        stress_path: str = "/opt/cassandra/tools/bin/cassandra-stress",
        port: int = 9042,
        docker: str = "docker",
        timeout: float = 600.0,
    ) -> None:
        self.container = container
        self.stress_path = stress_path
        self.port = port
        self.docker = docker
        self.timeout = timeout

    def prepare(self) -> None:
        """Install a Java runtime in the stress container if it has none."""
        script = (
            "command -v java >/dev/null 2>&1 || "
            f"{{ apt-get update -qq && apt-get install -y -qq {self.JAVA_PACKAGE}; }}"
        )
        logger.info("Ensuring a Java runtime exists in %s", self.container)
        try:
            result = subprocess.run(
                self._exec(script),
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise WorkloadExecutionError(f"environment preparation failed: {exc}") from exc
        if result.returncode != 0:
            raise WorkloadExecutionError(
                f"environment preparation failed in {self.container}",
                output=result.stdout + result.stderr,
                returncode=result.returncode,
            )

    def command(
        self, nodes: Sequence[TargetNode], workload: WorkloadSpec, duration: int
    ) -> list[str]:
        args = [self.stress_path, workload.mode.value, f"duration={duration}s"]
        if workload.consistency_level is not None:
            args.append(f"cl={workload.consistency_level.value}")
        args += [
            "-node",
            ",".join(f"{node.host}:{self.port}" for node in nodes),
            "-schema",
            f"replication(factor={workload.replication_factor})",
            "-mode",
            "native",
            "cql3",
            "-rate",
            f"threads={workload.concurrency}",
        ]
        return self._exec(f"exec {shlex.join(args)} 2>&1")

    def teardown(self) -> None:
        """Stop a stress process that outlived the local ``docker exec``."""
        try:
            subprocess.run(
                [self.docker, "exec", self.container, "pkill", "-f", "cassandra-stress"],
                capture_output=True,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not stop cassandra-stress in %s: %s", self.container, exc)

    def _exec(self, script: str) -> list[str]:
        return [self.docker, "exec", self.container, "bash", "-lc", script]


__all__ = [
    "CassandraStressBackend",
    "DockerTcBackend",
    "FaultBackend",
    "WorkloadBackend",
    "parse_netem",
]
