"""Campaign sequencing: one scenario at a time, fault always revoked."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from netfault.core import (
    CampaignAborted,
    FaultController,
    FaultError,
    FaultRevokeError,
    RecorderWriteError,
    WorkloadError,
)
from netfault.logging import clear_run_id, get_logger, set_run_id
from netfault.models import (
    Campaign,
    CampaignResult,
    FaultKind,
    FaultSpec,
    RunRecord,
    Scenario,
    ScenarioOutcome,
    ScenarioState,
    TargetNode,
    WorkloadSpec,
)
from netfault.observer import CampaignObserver
from netfault.recorder import RunRecorder
from netfault.runner import ExperimentRunner

logger = get_logger(__name__)


class CampaignSequencer:
    """Drive the scenarios of a campaign strictly one after another.

    Each scenario walks ``pending -> fault_applied -> running -> recording
    -> done``, or ends in ``aborted`` from any of those.  The fault is held
    through :meth:`FaultController.scoped`, so it is revoked before the next
    scenario begins whatever the outcome.  A scenario that aborts is logged
    and the campaign moves on, unless ``abort_on_error`` is set.

    :meth:`abort` is thread-safe: it cancels the running workload and stops
    the campaign before the next scenario.
    """

    def __init__(
        self,
        controller: FaultController,
        runner: ExperimentRunner,
        recorder: RunRecorder,
        nodes: Sequence[TargetNode],
        settle_seconds: float = 0.0,
        abort_on_error: bool = False,
        on_outcome: Callable[[ScenarioOutcome], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._controller = controller
        self._runner = runner
        self._recorder = recorder
        self._nodes = list(nodes)
        self.settle_seconds = settle_seconds
        self.abort_on_error = abort_on_error
        self._on_outcome = on_outcome
        self._sleep = sleep
        self._abort_flag = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, campaign: Campaign) -> CampaignResult:
        """Execute every scenario of *campaign* in order.

        Returns:
            A :class:`CampaignResult` with one outcome per scenario.

        Raises:
            CampaignAborted: ``abort_on_error`` is set and a scenario aborted.
        """
        self._abort_flag.clear()
        result = CampaignResult(name=campaign.name)
        logger.info(
            "Starting campaign '%s' with %d scenario(s)", campaign.name, len(campaign.scenarios)
        )

        for index, scenario in enumerate(campaign.scenarios):
            if self._abort_flag.is_set():
                result.halted = True
                for skipped in campaign.scenarios[index:]:
                    outcome = self._skipped(skipped, "campaign aborted")
                    result.outcomes.append(outcome)
                    self._report(outcome)
                break

            outcome = self.run_scenario(scenario)
            result.outcomes.append(outcome)
            self._report(outcome)

            if outcome.state == ScenarioState.aborted and self.abort_on_error:
                result.halted = True
                logger.error("Stopping campaign '%s' after '%s'", campaign.name, scenario.label)
                raise CampaignAborted(result)

        logger.info(
            "Campaign '%s' finished: %d done, %d aborted",
            campaign.name,
            len(result.done),
            len(result.aborted),
        )
        return result

    def run_scenario(self, scenario: Scenario) -> ScenarioOutcome:
        """Run one scenario to a terminal state.

        Errors never escape: they end the scenario in ``aborted``.
        """
        observer = CampaignObserver()
        self._controller.observer = observer
        outcome = ScenarioOutcome(
            scenario=scenario,
            state=ScenarioState.pending,
            started_at=datetime.now(tz=UTC),
        )

        def transition(state: ScenarioState) -> None:
            outcome.state = state
            observer.observe(scenario.label, state.value)
            logger.debug("%s -> %s", scenario.label, state.value, extra={"state": state.value})

        nodes = ",".join(node.name for node in self._nodes)
        record: RunRecord | None = None
        transition(ScenarioState.pending)
        try:
            self._ensure_clean()
            record = self._recorder.begin(scenario)
            outcome.run_id = record.run_id
            set_run_id(record.run_id)

            with self._controller.scoped(scenario.fault):
                transition(ScenarioState.fault_applied)
                if not scenario.fault.is_noop and self.settle_seconds > 0:
                    logger.info("Settling %gs", self.settle_seconds)
                    self._sleep(self.settle_seconds)

                transition(ScenarioState.running)
                with observer.scope(scenario.label, "workload"):
                    output = self._runner.run(
                        self._nodes,
                        scenario.workload,
                        scenario.duration_seconds,
                        cancel=self._abort_flag,
                    )

                transition(ScenarioState.recording)
                self._recorder.seal(
                    record,
                    output,
                    {"nodes": nodes, "status": ScenarioState.done.value},
                )
            transition(ScenarioState.done)
        except Exception as exc:  # noqa: BLE001
            outcome.error = str(exc)
            outcome.error_type = type(exc).__name__
            logger.error(
                "Scenario '%s' aborted in state %s: %s: %s",
                scenario.label,
                outcome.state.value,
                type(exc).__name__,
                exc,
                extra={"scenario": scenario.label, "error_type": type(exc).__name__},
            )
            if isinstance(exc, FaultRevokeError):
                self._retry_revoke()
            if isinstance(exc, WorkloadError) and record is not None:
                self._keep_partial_output(record, exc, nodes)
            transition(ScenarioState.aborted)
        finally:
            outcome.ended_at = datetime.now(tz=UTC)
            timeline = " -> ".join(observer.events(scenario.label))
            logger.debug("Timeline for %s: %s", scenario.label, timeline)
            outcome.observations = observer.get_observations()
            self._controller.observer = None
            clear_run_id()

        return outcome

    def abort(self) -> None:
        """Cancel the running workload and skip the remaining scenarios."""
        self._abort_flag.set()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _keep_partial_output(self, record: RunRecord, exc: WorkloadError, nodes: str) -> None:
        """Seal *record* with whatever the workload printed before it failed."""
        try:
            self._recorder.seal(
                record,
                exc.output,
                {
                    "nodes": nodes,
                    "status": ScenarioState.aborted.value,
                    "error_type": type(exc).__name__,
                },
            )
        except RecorderWriteError:
            logger.exception("Could not keep the partial output of %s", record.run_id)

    def _ensure_clean(self) -> None:
        """Revoke a fault left behind by an earlier scenario.

        Raises:
            FaultRevokeError: the leaked fault could not be removed.
        """
        leaked = self._controller.active
        if leaked is None:
            return
        logger.warning(
            "LEAKED FAULT: %s=%s still active on %s, revoking before next scenario",
            leaked.kind.value,
            leaked.magnitude,
            ", ".join(leaked.target_names),
        )
        self._controller.revoke()

    def _retry_revoke(self) -> None:
        active = self._controller.active
        if active is None:
            return
        logger.warning(
            "FAULT NOT REVOKED on %s; every later baseline is at risk, retrying",
            ", ".join(active.target_names),
        )
        try:
            self._controller.revoke()
        except FaultError:
            logger.exception("Retry of revoke failed; next scenario will try again")

    def _skipped(self, scenario: Scenario, reason: str) -> ScenarioOutcome:
        now = datetime.now(tz=UTC)
        return ScenarioOutcome(
            scenario=scenario,
            state=ScenarioState.aborted,
            started_at=now,
            ended_at=now,
            error=reason,
        )

    def _report(self, outcome: ScenarioOutcome) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)


# ---------------------------------------------------------------------------
# Campaign construction
# ---------------------------------------------------------------------------


def loss_label(percent: int | float) -> str:
    """``10`` -> ``loss10p``; ``0.5`` -> ``loss0-5p``."""
    text = f"{percent:g}".replace(".", "-")
    return f"loss{text}p"


def builtin_sweep(
    targets: Sequence[TargetNode],
    duration: int,
    losses: Sequence[int | float],
    workload: WorkloadSpec | None = None,
) -> Campaign:
    """A baseline run followed by one packet-loss scenario per level in *losses*."""
    workload = workload or WorkloadSpec()
    scenarios = [Scenario(label="baseline", duration_seconds=duration, workload=workload)]
    for percent in losses:
        scenarios.append(
            Scenario(
                label=loss_label(percent),
                fault=FaultSpec(
                    kind=FaultKind.loss, targets=frozenset(targets), magnitude=f"{percent:g}%"
                ),
                duration_seconds=duration,
                workload=workload,
            )
        )
    return Campaign(name="loss-sweep", scenarios=scenarios)


def _read_campaign_file(path: Path) -> dict[str, Any]:
    raw = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(raw)
    else:
        data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data


def load_campaign(
    path: Path | str,
    nodes: Sequence[TargetNode],
    duration: int | None = None,
    workload: WorkloadSpec | None = None,
) -> Campaign:
    """Load a campaign from a YAML or JSON file.

    Example::

        name: delay-steps
        duration: 60
        scenarios:
          - label: baseline
          - label: delay50ms
            kind: delay
            targets: [cassandra_b]
            magnitude: 50ms

    Scenario targets are node names resolved against *nodes*; a scenario
    without ``duration`` uses the file's, then *duration*.

    Raises:
        ValueError: the file is malformed or names an unknown node.
    """
    file_path = Path(path)
    data = _read_campaign_file(file_path)
    by_name = {node.name: node for node in nodes}
    default_duration = data.get("duration", duration)
    base_workload = (workload or WorkloadSpec()).model_dump()
    base_workload.update(data.get("workload") or {})

    scenarios = []
    for entry in data.get("scenarios") or []:
        names = entry.get("targets") or []
        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise ValueError(f"{file_path}: unknown node(s) {', '.join(unknown)}")
        kind = FaultKind(entry.get("kind", FaultKind.none.value))
        scenario_workload = {**base_workload, **(entry.get("workload") or {})}
        scenarios.append(
            Scenario(
                label=entry.get("label", ""),
                fault=FaultSpec(
                    kind=kind,
                    targets=frozenset(by_name[name] for name in names),
                    magnitude=str(entry.get("magnitude", "")),
                ),
                duration_seconds=entry.get("duration", default_duration),
                workload=WorkloadSpec(**scenario_workload),
            )
        )
    return Campaign(name=data.get("name", file_path.stem), scenarios=scenarios)


__all__ = ["CampaignSequencer", "builtin_sweep", "load_campaign", "loss_label"]
