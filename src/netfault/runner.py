"""Bounded execution of one load-generation run."""

from __future__ import annotations

import shlex
import subprocess
import tempfile
import threading
import time
from collections.abc import Sequence

from netfault.backends import WorkloadBackend
from netfault.core import (
    WorkloadCancelled,
    WorkloadExecutionError,
    WorkloadTimeout,
)
from netfault.logging import get_logger
from netfault.models import TargetNode, WorkloadSpec

logger = get_logger(__name__)


class ExperimentRunner:
    """Run a workload for a bounded wall-clock time and capture its output.

    The workload process's stdout and stderr are merged into an anonymous
    temporary file rather than a pipe, so everything it printed is still
    available after it has been terminated.  The load generator's own
    retries and backoff are not inspected; only total time is bounded.

    Environment preparation (``backend.prepare``) runs lazily before the
    first workload and is remembered for the life of the runner.
    """

    def __init__(
        self,
        backend: WorkloadBackend,
        grace_seconds: float = 30.0,
        kill_after: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._backend = backend
        self.grace_seconds = grace_seconds
        self.kill_after = kill_after
        self.poll_interval = poll_interval
        self._prepared = False
        self._prepare_lock = threading.Lock()

    @property
    def prepared(self) -> bool:
        return self._prepared

    def run(
        self,
        nodes: Sequence[TargetNode],
        workload: WorkloadSpec,
        duration: int,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Execute *workload* against *nodes* for *duration* seconds.

        Blocks for at most ``duration + grace_seconds`` (plus the teardown
        ``kill_after`` window).

        Returns:
            The captured output of the load generator.

        Raises:
            WorkloadTimeout: the workload outlived its ceiling.
            WorkloadCancelled: *cancel* was set while the workload ran.
            WorkloadExecutionError: the workload could not start or exited
                non-zero.
        """
        if duration <= 0:
            raise ValueError(f"duration must be positive, got {duration}")
        self._ensure_prepared()

        argv = self._backend.command(nodes, workload, duration)
        ceiling = duration + self.grace_seconds
        logger.info("Running %s %s for %ss", workload.tool, workload.mode.value, duration)
        logger.debug("Workload command: %s", shlex.join(argv))

        with tempfile.TemporaryFile() as sink:
            try:
                process = subprocess.Popen(argv, stdout=sink, stderr=subprocess.STDOUT)
            except OSError as exc:
                raise WorkloadExecutionError(f"cannot start {argv[0]}: {exc}") from exc

            try:
                outcome = self._wait(process, time.monotonic() + ceiling, cancel)
            except BaseException:
                self._teardown(process)
                raise
            if outcome != "exited":
                self._teardown(process)

            sink.seek(0)
            output = sink.read()

        if outcome == "timeout":
            raise WorkloadTimeout(
                f"{workload.tool} exceeded {ceiling:g}s ({duration}s + {self.grace_seconds:g}s grace)",
                output=output,
            )
        if outcome == "cancelled":
            raise WorkloadCancelled(f"{workload.tool} cancelled", output=output)
        if process.returncode != 0:
            raise WorkloadExecutionError(
                f"{workload.tool} exited with status {process.returncode}",
                output=output,
                returncode=process.returncode,
            )
        logger.info("%s finished, captured %d bytes", workload.tool, len(output))
        return output

    def _ensure_prepared(self) -> None:
        with self._prepare_lock:
            if self._prepared:
                return
            self._backend.prepare()
            self._prepared = True

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        deadline: float,
        cancel: threading.Event | None,
    ) -> str:
        while True:
            if process.poll() is not None:
                return "exited"
            if cancel is not None and cancel.is_set():
                return "cancelled"
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return "timeout"
            try:
                process.wait(timeout=min(self.poll_interval, remaining))
            except subprocess.TimeoutExpired:
                continue

    def _teardown(self, process: subprocess.Popen[bytes]) -> None:
        if process.poll() is None:
            logger.warning("Stopping workload process %d", process.pid)
            process.terminate()
            try:
                process.wait(timeout=self.kill_after)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        self._backend.teardown()


__all__ = ["ExperimentRunner"]
