"""netfault: Network-fault injection and experiment campaigns for Cassandra clusters."""

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
    Campaign,
    CampaignResult,
    FaultKind,
    FaultSpec,
    Impairment,
    NodeRole,
    RunRecord,
    RunStatus,
    Scenario,
    ScenarioOutcome,
    ScenarioState,
    SummaryEntry,
    TargetNode,
    WorkloadSpec,
)
from netfault.observer import CampaignObserver
from netfault.recorder import RunRecorder
from netfault.reporter import SummaryReporter
from netfault.runner import ExperimentRunner
from netfault.sequencer import CampaignSequencer, builtin_sweep, load_campaign

__version__ = "0.1.0"

__all__ = [
    "Campaign",
    "CampaignAborted",
    "CampaignObserver",
    "CampaignResult",
    "CampaignSequencer",
    "ExperimentRunner",
    "FaultApplyError",
    "FaultController",
    "FaultError",
    "FaultKind",
    "FaultOperationTimeout",
    "FaultRevokeError",
    "FaultSpec",
    "Impairment",
    "NetfaultError",
    "NodeRole",
    "RecorderWriteError",
    "RunRecord",
    "RunRecorder",
    "RunStatus",
    "Scenario",
    "ScenarioOutcome",
    "ScenarioState",
    "SummaryEntry",
    "SummaryReporter",
    "TargetNode",
    "WorkloadCancelled",
    "WorkloadError",
    "WorkloadExecutionError",
    "WorkloadSpec",
    "WorkloadTimeout",
    "builtin_sweep",
    "load_campaign",
]
