"""Tests for netfault.core: FaultController and the error taxonomy."""

from __future__ import annotations

import time

import pytest

from conftest import FakeFaultBackend
from netfault.core import (
    CampaignAborted,
    FaultApplyError,
    FaultController,
    FaultError,
    FaultOperationTimeout,
    FaultRevokeError,
    NetfaultError,
    RecorderWriteError,
    WorkloadCancelled,
    WorkloadError,
    WorkloadExecutionError,
    WorkloadTimeout,
)
from netfault.models import (
    CampaignResult,
    FaultKind,
    FaultSpec,
    Impairment,
    TargetNode,
)
from netfault.observer import CampaignObserver

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class TestExceptionHierarchy:
    @pytest.mark.parametrize(
        "exc_type",
        [
            FaultApplyError,
            FaultRevokeError,
            FaultOperationTimeout,
            WorkloadTimeout,
            WorkloadExecutionError,
            WorkloadCancelled,
            RecorderWriteError,
        ],
    )
    def test_all_errors_are_netfault_errors(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, NetfaultError)

    def test_fault_errors_share_base(self) -> None:
        for exc_type in (FaultApplyError, FaultRevokeError, FaultOperationTimeout):
            assert issubclass(exc_type, FaultError)

    def test_timeouts_are_timeout_errors(self) -> None:
        assert issubclass(FaultOperationTimeout, TimeoutError)
        assert issubclass(WorkloadTimeout, TimeoutError)

    def test_workload_error_carries_output(self) -> None:
        exc = WorkloadTimeout("too slow", output=b"partial")
        assert isinstance(exc, WorkloadError)
        assert exc.output == b"partial"

    def test_execution_error_carries_returncode(self) -> None:
        exc = WorkloadExecutionError("failed", output=b"x", returncode=3)
        assert exc.returncode == 3

    def test_campaign_aborted_names_scenarios(self) -> None:
        exc = CampaignAborted(CampaignResult(name="sweep"))
        assert "sweep" in str(exc)
        assert exc.result.name == "sweep"


# ---------------------------------------------------------------------------
# FaultController.apply / read / revoke
# ---------------------------------------------------------------------------


class TestApply:
    def test_apply_then_read_reports_loss_on_every_target(
        self,
        controller: FaultController,
        loss_spec: FaultSpec,
        node_b: TargetNode,
        node_c: TargetNode,
    ) -> None:
        controller.apply(loss_spec)
        assert str(controller.read(node_b)) == "loss=10%"
        assert str(controller.read(node_c)) == "loss=10%"

    def test_read_all_maps_each_node_to_its_impairment(
        self,
        controller: FaultController,
        loss_spec: FaultSpec,
        node_a: TargetNode,
        node_b: TargetNode,
        node_c: TargetNode,
    ) -> None:
        controller.apply(loss_spec)
        observed = controller.read_all([node_c, node_a, node_b, node_c])
        assert list(observed) == [node_a, node_b, node_c]
        assert observed[node_a] is None
        assert observed[node_b] == Impairment(kind=FaultKind.loss, magnitude="10%")
        assert str(observed[node_c]) == "loss=10%"

    def test_revoke_clears_every_target(
        self,
        controller: FaultController,
        loss_spec: FaultSpec,
        node_b: TargetNode,
        node_c: TargetNode,
    ) -> None:
        controller.apply(loss_spec)
        controller.revoke(loss_spec.targets)
        assert controller.read(node_b) is None
        assert controller.read(node_c) is None
        assert controller.active is None

    def test_apply_tracks_active_spec(
        self, controller: FaultController, loss_spec: FaultSpec
    ) -> None:
        controller.apply(loss_spec)
        assert controller.active == loss_spec

    def test_apply_pre_cleans_stale_impairment(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
        node_b: TargetNode,
    ) -> None:
        # left behind by an earlier crashed run
        fault_backend.state["cassandra_b"] = Impairment(kind=FaultKind.delay, magnitude="50ms")
        controller.apply(loss_spec)
        assert str(controller.read(node_b)) == "loss=10%"

    def test_apply_noop_touches_nothing(
        self, controller: FaultController, fault_backend: FakeFaultBackend
    ) -> None:
        controller.apply(FaultSpec.none())
        assert fault_backend.calls == []
        assert controller.active is None

    def test_apply_same_spec_twice_is_idempotent(
        self, controller: FaultController, loss_spec: FaultSpec, node_b: TargetNode
    ) -> None:
        controller.apply(loss_spec)
        controller.apply(loss_spec)
        assert str(controller.read(node_b)) == "loss=10%"

    def test_apply_different_spec_while_active_raises(
        self, controller: FaultController, loss_spec: FaultSpec, node_b: TargetNode
    ) -> None:
        controller.apply(loss_spec)
        other = FaultSpec(kind=FaultKind.delay, targets=frozenset({node_b}), magnitude="10ms")
        with pytest.raises(FaultApplyError, match="still active"):
            controller.apply(other)
        assert controller.active == loss_spec

    def test_partial_failure_rolls_back_all_targets(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        fault_backend.fail_apply.add("cassandra_c")
        with pytest.raises(FaultApplyError, match="Operation not permitted"):
            controller.apply(loss_spec)
        assert fault_backend.state == {}
        # pre-clean plus rollback on each target
        assert fault_backend.count("remove", "cassandra_b") == 2
        assert fault_backend.count("remove", "cassandra_c") == 2
        assert controller.active is None

    def test_apply_is_not_retried(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        fault_backend.fail_apply.add("cassandra_c")
        with pytest.raises(FaultApplyError):
            controller.apply(loss_spec)
        assert fault_backend.count("apply", "cassandra_c") == 1

    def test_verification_failure_rolls_back(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        fault_backend.ignore_apply.add("cassandra_c")
        with pytest.raises(FaultApplyError, match="verification failed"):
            controller.apply(loss_spec)
        assert fault_backend.state == {}

    def test_verification_can_be_disabled(
        self, fault_backend: FakeFaultBackend, loss_spec: FaultSpec
    ) -> None:
        fault_backend.ignore_apply.add("cassandra_c")
        controller = FaultController(fault_backend, verify=False)
        controller.apply(loss_spec)
        assert fault_backend.count("read") == 0
        assert controller.active == loss_spec

    def test_slow_target_raises_operation_timeout(
        self,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        fault_backend.hang_apply.add("cassandra_c")
        fault_backend.hang_seconds = 1.0
        controller = FaultController(fault_backend, operation_timeout=0.2)
        start = time.monotonic()
        with pytest.raises(FaultOperationTimeout, match="cassandra_c"):
            controller.apply(loss_spec)
        assert time.monotonic() - start < 1.0

    def test_targets_are_applied_concurrently(
        self, fault_backend: FakeFaultBackend, node_b: TargetNode, node_c: TargetNode
    ) -> None:
        fault_backend.hang_apply.update({"cassandra_b", "cassandra_c"})
        fault_backend.hang_seconds = 0.4
        controller = FaultController(fault_backend, operation_timeout=2.0, verify=False)
        spec = FaultSpec(kind=FaultKind.loss, targets=frozenset({node_b, node_c}), magnitude="5%")
        start = time.monotonic()
        controller.apply(spec)
        assert time.monotonic() - start < 0.75


class TestRevoke:
    def test_revoke_without_fault_is_noop(
        self, controller: FaultController, node_b: TargetNode
    ) -> None:
        controller.revoke([node_b])
        assert controller.read(node_b) is None

    def test_revoke_without_targets_and_nothing_active(
        self, controller: FaultController, fault_backend: FakeFaultBackend
    ) -> None:
        controller.revoke()
        assert fault_backend.calls == []

    def test_revoke_defaults_to_active_targets(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        controller.apply(loss_spec)
        controller.revoke()
        assert fault_backend.state == {}
        assert controller.active is None

    def test_revoke_retried_once(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        controller.apply(loss_spec)
        fault_backend.fail_remove["cassandra_b"] = 1
        controller.revoke()
        assert fault_backend.state == {}

    def test_revoke_gives_up_after_retry(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        controller.apply(loss_spec)
        fault_backend.fail_remove["cassandra_b"] = 2
        with pytest.raises(FaultRevokeError):
            controller.revoke()
        assert controller.active == loss_spec

    def test_failed_rollback_keeps_fault_tracked(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        fault_backend.fail_apply.add("cassandra_c")
        # pre-clean succeeds, both rollback attempts fail on cassandra_b
        original_remove = fault_backend.remove
        calls = {"n": 0}

        def remove(node: TargetNode) -> None:
            calls["n"] += 1
            if calls["n"] > 2 and node.name == "cassandra_b":
                raise FaultRevokeError("busy")
            original_remove(node)

        fault_backend.remove = remove  # type: ignore[method-assign]
        with pytest.raises(FaultApplyError):
            controller.apply(loss_spec)
        assert controller.active == loss_spec


# ---------------------------------------------------------------------------
# FaultController.scoped
# ---------------------------------------------------------------------------


class TestScoped:
    def test_fault_active_inside_and_revoked_after(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        with controller.scoped(loss_spec):
            assert set(fault_backend.state) == {"cassandra_b", "cassandra_c"}
        assert fault_backend.state == {}

    def test_revoked_when_body_raises(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        with pytest.raises(RuntimeError):
            with controller.scoped(loss_spec):
                raise RuntimeError("workload crashed")
        assert fault_backend.state == {}
        assert controller.active is None

    def test_revoked_on_keyboard_interrupt(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        with pytest.raises(KeyboardInterrupt):
            with controller.scoped(loss_spec):
                raise KeyboardInterrupt
        assert fault_backend.state == {}

    def test_noop_scope_makes_no_calls(
        self, controller: FaultController, fault_backend: FakeFaultBackend
    ) -> None:
        with controller.scoped(FaultSpec.none()):
            pass
        assert fault_backend.calls == []

    def test_every_apply_matched_by_revoke(
        self,
        controller: FaultController,
        fault_backend: FakeFaultBackend,
        loss_spec: FaultSpec,
    ) -> None:
        for attempt in range(5):
            try:
                with controller.scoped(loss_spec):
                    if attempt % 2:
                        raise ValueError("boom")
            except ValueError:
                pass
            assert fault_backend.state == {}
        for node in ("cassandra_b", "cassandra_c"):
            assert fault_backend.count("remove", node) >= fault_backend.count("apply", node)


class TestObserverIntegration:
    def test_apply_and_revoke_are_observed(
        self, fault_backend: FakeFaultBackend, loss_spec: FaultSpec
    ) -> None:
        observer = CampaignObserver()
        controller = FaultController(fault_backend, observer=observer)
        with controller.scoped(loss_spec):
            pass
        assert observer.events("fault_controller") == ["fault_applied", "fault_revoked"]
        applied = observer.get_observations()[0]
        assert applied.details["targets"] == ["cassandra_b", "cassandra_c"]
        assert applied.details["magnitude"] == "10%"
