"""Error taxonomy and the fault controller for netfault."""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

from netfault.logging import get_logger
from netfault.models import FaultSpec, Impairment, TargetNode

if TYPE_CHECKING:
    from netfault.backends import FaultBackend
    from netfault.models import CampaignResult
    from netfault.observer import CampaignObserver

logger = get_logger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class NetfaultError(Exception):
    """Base class for every error raised by netfault."""


class FaultError(NetfaultError):
    """A fault apply/revoke/read operation failed."""


class FaultApplyError(FaultError):
    """An impairment could not be installed (or verified) on a target."""


class FaultRevokeError(FaultError):
    """An impairment could not be removed from a target."""


class FaultOperationTimeout(FaultError, TimeoutError):
    """A control-plane call exceeded its ceiling."""


class WorkloadError(NetfaultError):
    """The load generator did not finish cleanly.

    ``output`` holds whatever was captured before the failure.
    """

    def __init__(self, message: str, output: bytes = b"") -> None:
        super().__init__(message)
        self.output = output


class WorkloadTimeout(WorkloadError, TimeoutError):
    """The workload outlived ``duration + grace`` and was torn down."""


class WorkloadCancelled(WorkloadError):
    """The workload was stopped by an external abort signal."""


class WorkloadExecutionError(WorkloadError):
    """The workload could not be started or exited non-zero."""

    def __init__(self, message: str, output: bytes = b"", returncode: int | None = None) -> None:
        super().__init__(message, output)
        self.returncode = returncode


class RecorderWriteError(NetfaultError):
    """A run record could not be persisted."""


class CampaignAborted(NetfaultError):
    """Raised when ``abort_on_error`` stops a campaign at its first ABORTED scenario."""

    def __init__(self, result: CampaignResult) -> None:
        aborted = ", ".join(o.scenario.label for o in result.aborted)
        super().__init__(f"campaign '{result.name}' aborted after: {aborted}")
        self.result = result


# ---------------------------------------------------------------------------
# FaultController
# ---------------------------------------------------------------------------


class FaultController:
    """Apply and revoke network impairments on a set of target nodes.

    At most one :class:`~netfault.models.FaultSpec` is active at a time and it
    is tracked explicitly in :attr:`active`.  Per-target backend calls are
    issued concurrently; every call waits for all targets before returning.

    Both :meth:`apply` and :meth:`revoke` are idempotent.  Use :meth:`scoped`
    to guarantee that an applied fault is revoked on every exit path.
    """

    def __init__(
        self,
        backend: FaultBackend,
        operation_timeout: float = 10.0,
        verify: bool = True,
        observer: CampaignObserver | None = None,
    ) -> None:
        self._backend = backend
        self._timeout = operation_timeout
        self._verify = verify
        self._active: FaultSpec | None = None
        self.observer = observer

    @property
    def active(self) -> FaultSpec | None:
        """The fault currently installed by this controller, if any."""
        return self._active

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(self, spec: FaultSpec) -> None:
        """Install *spec* on every one of its targets.

        Stale impairments on the same targets are cleared first.  If any
        target fails, every target is rolled back before the original error
        is re-raised.  Apply is never retried.

        Raises:
            FaultApplyError: installation or read-back verification failed,
                or a different fault is still active.
            FaultOperationTimeout: a target did not answer in time.
        """
        if spec.is_noop:
            return
        if self._active is not None and self._active != spec:
            raise FaultApplyError(
                f"cannot apply {spec.kind.value}={spec.magnitude}: "
                f"{self._active.kind.value}={self._active.magnitude} is still active "
                f"on {', '.join(self._active.target_names)}"
            )

        targets = sorted(spec.targets, key=lambda n: n.name)
        self.revoke(targets)

        logger.info(
            "Applying %s=%s to %s",
            spec.kind.value,
            spec.magnitude,
            ", ".join(spec.target_names),
            extra={"targets": spec.target_names},
        )
        try:
            self._fan_out(
                targets,
                lambda node: self._backend.apply(node, spec.kind, spec.magnitude),
                FaultApplyError,
            )
            if self._verify:
                self._verify_installed(spec, targets)
        except BaseException:
            logger.warning("Apply failed, rolling back %s", ", ".join(spec.target_names))
            # held as active until a revoke succeeds
            self._active = spec
            try:
                self.revoke(targets)
            except FaultError:
                logger.exception(
                    "Rollback after failed apply also failed; %s may still be impaired",
                    ", ".join(spec.target_names),
                )
            raise

        self._active = spec
        self._observe("fault_applied", spec)

    def revoke(self, targets: Iterable[TargetNode] | None = None) -> None:
        """Remove any impairment from *targets* (default: the active fault's).

        Revoking a target with no impairment is a no-op.  Failed targets are
        retried once before :class:`FaultRevokeError` is raised.
        """
        if targets is None:
            if self._active is None:
                return
            targets = self._active.targets
        nodes = sorted(set(targets), key=lambda n: n.name)
        if not nodes:
            return

        try:
            self._fan_out(nodes, self._backend.remove, FaultRevokeError)
        except FaultRevokeError as exc:
            logger.warning("Revoke failed (%s), retrying once", exc)
            self._fan_out(nodes, self._backend.remove, FaultRevokeError)

        if self._active is not None and self._active.targets <= set(nodes):
            self._observe("fault_revoked", self._active)
            self._active = None
        logger.debug("Revoked impairments on %s", ", ".join(n.name for n in nodes))

    def read(self, node: TargetNode) -> Impairment | None:
        """Return the impairment currently active on *node*."""
        results = self._fan_out([node], self._backend.read, FaultError)
        return results[node]

    def read_all(self, nodes: Iterable[TargetNode]) -> dict[TargetNode, Impairment | None]:
        """Read back every node in *nodes* concurrently."""
        return self._fan_out(sorted(set(nodes), key=lambda n: n.name), self._backend.read, FaultError)

    @contextmanager
    def scoped(self, spec: FaultSpec) -> Generator[FaultSpec, None, None]:
        """Hold *spec* for the duration of the ``with`` block.

        A failed apply has already rolled itself back.  Once applied, the
        revoke in ``finally`` runs on every exit, ``KeyboardInterrupt``
        included.

        Example::

            with controller.scoped(spec):
                runner.run(nodes, workload, duration)
        """
        self.apply(spec)
        try:
            yield spec
        finally:
            if not spec.is_noop:
                self.revoke(spec.targets)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fan_out(
        self,
        nodes: list[TargetNode],
        call: Callable[[TargetNode], T],
        error_type: type[FaultError],
    ) -> dict[TargetNode, T]:
        """Run *call* on every node concurrently and wait for all of them.

        The first backend error is re-raised after every node has finished,
        wrapped in *error_type* unless it already is a :class:`FaultError`.
        """
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(len(nodes), 1), thread_name_prefix="netfault-fault"
        )
        try:
            futures = {executor.submit(call, node): node for node in nodes}
            done, pending = concurrent.futures.wait(futures, timeout=self._timeout)
            if pending:
                late = sorted(futures[f].name for f in pending)
                raise FaultOperationTimeout(
                    f"fault operation exceeded {self._timeout}s on {', '.join(late)}"
                )

            results: dict[TargetNode, T] = {}
            first_error: BaseException | None = None
            failed: list[str] = []
            for future in futures:
                node = futures[future]
                exc = future.exception()
                if exc is None:
                    results[node] = future.result()
                    continue
                failed.append(node.name)
                if first_error is None:
                    first_error = exc
            if first_error is not None:
                if isinstance(first_error, FaultError):
                    raise first_error
                raise error_type(
                    f"{', '.join(failed)}: {type(first_error).__name__}: {first_error}"
                ) from first_error
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _verify_installed(self, spec: FaultSpec, targets: list[TargetNode]) -> None:
        expected = Impairment(kind=spec.kind, magnitude=spec.magnitude)
        observed = self._fan_out(targets, self._backend.read, FaultApplyError)
        mismatched = {
            node.name: str(observed[node]) if observed[node] else "none"
            for node in targets
            if observed[node] is None or not expected.matches(observed[node])
        }
        if mismatched:
            raise FaultApplyError(
                f"verification failed, expected {expected}: "
                + ", ".join(f"{name} reports {found}" for name, found in sorted(mismatched.items()))
            )

    def _observe(self, event: str, spec: FaultSpec) -> None:
        if self.observer is None:
            return
        self.observer.observe(
            "fault_controller",
            event,
            {"kind": spec.kind.value, "magnitude": spec.magnitude, "targets": spec.target_names},
        )


__all__ = [
    "CampaignAborted",
    "FaultApplyError",
    "FaultController",
    "FaultError",
    "FaultOperationTimeout",
    "FaultRevokeError",
    "NetfaultError",
    "RecorderWriteError",
    "WorkloadCancelled",
    "WorkloadError",
    "WorkloadExecutionError",
    "WorkloadTimeout",
]
