"""Pydantic models for netfault."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_PERCENT_RE = re.compile(r"^\d+(\.\d+)?%$")
_DURATION_RE = re.compile(r"^\d+(\.\d+)?(us|ms|s)$")
LABEL_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


class NodeRole(str, Enum):
    """Role of a cluster member."""

    seed = "seed"
    peer = "peer"


class TargetNode(BaseModel):
    """A cluster member addressable for fault injection and load traffic."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    role: NodeRole = NodeRole.peer
    address: str | None = None

    @property
    def host(self) -> str:
        return self.address or self.name


class FaultKind(str, Enum):
    """Categories of network impairment."""

    loss = "loss"
    delay = "delay"
    none = "none"


class FaultSpec(BaseModel):
    """A network impairment applied to a set of target nodes."""

    model_config = ConfigDict(frozen=True)

    kind: FaultKind
    targets: frozenset[TargetNode] = Field(default_factory=frozenset)
    magnitude: str = ""

    @model_validator(mode="after")
    def _check_magnitude(self) -> FaultSpec:
        if self.kind == FaultKind.none:
            if self.targets or self.magnitude:
                raise ValueError("kind='none' takes no targets and no magnitude")
            return self
        if not self.targets:
            raise ValueError(f"kind='{self.kind.value}' requires at least one target")
        if self.kind == FaultKind.loss:
            if not _PERCENT_RE.match(self.magnitude):
                raise ValueError(
                    f"loss magnitude must be a percentage like '10%', got {self.magnitude!r}"
                )
            if not 0 < float(self.magnitude[:-1]) <= 100:
                raise ValueError(f"loss magnitude out of range: {self.magnitude}")
        elif not _DURATION_RE.match(self.magnitude):
            raise ValueError(
                f"delay magnitude must be a duration like '10ms', got {self.magnitude!r}"
            )
        return self

    @classmethod
    def none(cls) -> FaultSpec:
        """The baseline spec: no impairment anywhere."""
        return cls(kind=FaultKind.none)

    @property
    def is_noop(self) -> bool:
        return self.kind == FaultKind.none

    @property
    def target_names(self) -> list[str]:
        return sorted(node.name for node in self.targets)


class Impairment(BaseModel):
    """The impairment a node reports as currently active."""

    model_config = ConfigDict(frozen=True)

    kind: FaultKind
    magnitude: str

    def __str__(self) -> str:
        return f"{self.kind.value}={self.magnitude}"

    def matches(self, other: Impairment) -> bool:
        """Compare by value, so ``1.0%`` matches ``1%`` and ``1000us`` matches ``1ms``."""
        if self.kind != other.kind:
            return False
        try:
            return magnitude_value(self.magnitude) == magnitude_value(other.magnitude)
        except ValueError:
            return self.magnitude == other.magnitude


_UNIT_MICROSECONDS = {"us": 1.0, "ms": 1_000.0, "s": 1_000_000.0}


def magnitude_value(magnitude: str) -> float:
    """Return a percentage as a float, or a duration in microseconds."""
    if magnitude.endswith("%"):
        return float(magnitude[:-1])
    match = re.match(r"^(\d+(?:\.\d+)?)(us|ms|s)$", magnitude)
    if match is None:
        raise ValueError(f"unrecognized magnitude: {magnitude!r}")
    return float(match.group(1)) * _UNIT_MICROSECONDS[match.group(2)]


class WorkloadMode(str, Enum):
    """Load-generator operation mode."""

    write = "write"
    read = "read"
    mixed = "mixed"
    counter_write = "counter_write"


class ConsistencyLevel(str, Enum):
    """Consistency levels understood by the load generator."""

    ANY = "ANY"
    ONE = "ONE"
    TWO = "TWO"
    THREE = "THREE"
    QUORUM = "QUORUM"
    ALL = "ALL"
    LOCAL_ONE = "LOCAL_ONE"
    LOCAL_QUORUM = "LOCAL_QUORUM"
    EACH_QUORUM = "EACH_QUORUM"


class WorkloadSpec(BaseModel):
    """The recognized knobs of a load-generation run."""

    model_config = ConfigDict(frozen=True)

    tool: str = Field(default="cassandra-stress", pattern=LABEL_PATTERN)
    mode: WorkloadMode = WorkloadMode.write
    concurrency: int = Field(default=50, gt=0)
    replication_factor: int = Field(default=3, gt=0)
    consistency_level: ConsistencyLevel | None = None


class Scenario(BaseModel):
    """One experiment: a fault held for the duration of one workload run."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(pattern=LABEL_PATTERN)
    fault: FaultSpec = Field(default_factory=FaultSpec.none)
    duration_seconds: int = Field(gt=0)
    workload: WorkloadSpec = Field(default_factory=WorkloadSpec)


class Campaign(BaseModel):
    """An ordered sequence of scenarios."""

    name: str = "campaign"
    scenarios: list[Scenario] = Field(min_length=1)

    @field_validator("scenarios")
    @classmethod
    def _unique_labels(cls, scenarios: list[Scenario]) -> list[Scenario]:
        seen: set[str] = set()
        for scenario in scenarios:
            if scenario.label in seen:
                raise ValueError(f"duplicate scenario label: {scenario.label}")
            seen.add(scenario.label)
        return scenarios


class RunRecord(BaseModel):
    """Storage location and metadata of one scenario run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    label: str
    started_at: datetime
    path: Path
    scenario: Scenario | None = None
    log_path: Path | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    sealed: bool = False


class ScenarioState(str, Enum):
    """Lifecycle state of a scenario inside a campaign."""

    pending = "pending"
    fault_applied = "fault_applied"
    running = "running"
    recording = "recording"
    done = "done"
    aborted = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (ScenarioState.done, ScenarioState.aborted)


class ObservationPoint(BaseModel):
    """A single timestamped observation captured during a campaign."""

    timestamp: datetime
    component: str
    event: str
    details: dict[str, object] = Field(default_factory=dict)


class ScenarioOutcome(BaseModel):
    """Terminal state and timing of one scenario."""

    scenario: Scenario
    state: ScenarioState
    started_at: datetime
    ended_at: datetime | None = None
    run_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    observations: list[ObservationPoint] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()


class CampaignResult(BaseModel):
    """Outcomes of every scenario of a campaign, in execution order."""

    name: str
    outcomes: list[ScenarioOutcome] = Field(default_factory=list)
    halted: bool = False

    @property
    def done(self) -> list[ScenarioOutcome]:
        return [o for o in self.outcomes if o.state == ScenarioState.done]

    @property
    def aborted(self) -> list[ScenarioOutcome]:
        return [o for o in self.outcomes if o.state == ScenarioState.aborted]

    @property
    def exit_code(self) -> int:
        return min(len(self.aborted), 255)


class RunStatus(str, Enum):
    """Whether a recorded run was sealed with its captured output.

    ``aborted`` runs were sealed with whatever the workload printed before
    it failed or timed out.
    """

    complete = "complete"
    incomplete = "incomplete"
    aborted = "aborted"


class SummaryEntry(BaseModel):
    """Digest of one recorded run."""

    run_id: str
    label: str
    status: RunStatus
    tail: bytes = b""
    log_path: Path | None = None
    sealed: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def lines(self) -> list[str]:
        return self.tail.decode("utf-8", errors="replace").splitlines()


__all__ = [
    "Campaign",
    "CampaignResult",
    "ConsistencyLevel",
    "FaultKind",
    "FaultSpec",
    "Impairment",
    "LABEL_PATTERN",
    "NodeRole",
    "ObservationPoint",
    "RunRecord",
    "RunStatus",
    "Scenario",
    "ScenarioOutcome",
    "ScenarioState",
    "SummaryEntry",
    "TargetNode",
    "WorkloadMode",
    "WorkloadSpec",
    "magnitude_value",
]
