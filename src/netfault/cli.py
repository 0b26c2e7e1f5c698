"""CLI entry point for netfault."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from netfault import __version__
from netfault.backends import CassandraStressBackend, DockerTcBackend, FaultBackend, WorkloadBackend
from netfault.config import Settings, get_settings
from netfault.core import CampaignAborted, FaultController, NetfaultError
from netfault.logging import setup_logging
from netfault.models import (
    Campaign,
    CampaignResult,
    FaultKind,
    FaultSpec,
    Scenario,
    ScenarioOutcome,
)
from netfault.recorder import RunRecorder
from netfault.reporter import SummaryReporter
from netfault.runner import ExperimentRunner
from netfault.sequencer import CampaignSequencer, builtin_sweep, load_campaign

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_backends(settings: Settings) -> tuple[FaultBackend, WorkloadBackend]:
    """Create the Docker-backed fault and workload backends."""
    fault_backend = DockerTcBackend(
        docker=settings.docker_bin,
        interface=settings.interface,
        timeout=settings.fault_timeout_seconds,
    )
    workload_backend = CassandraStressBackend(
        container=settings.stress_container,
        stress_path=settings.stress_path,
        port=settings.cql_port,
        docker=settings.docker_bin,
    )
    return fault_backend, workload_backend


def _controller(settings: Settings, fault_backend: FaultBackend) -> FaultController:
    return FaultController(
        fault_backend,
        operation_timeout=settings.fault_timeout_seconds,
        verify=settings.verify_faults,
    )


def _fault_spec(settings: Settings, kind: str, targets: tuple[str, ...], magnitude: str) -> FaultSpec:
    fault_kind = FaultKind(kind)
    if fault_kind == FaultKind.none:
        return FaultSpec.none()
    nodes = settings.resolve_nodes(list(targets)) if targets else settings.peers
    return FaultSpec(kind=fault_kind, targets=frozenset(nodes), magnitude=magnitude)


def _echo_outcome(outcome: ScenarioOutcome) -> None:
    line = f"{outcome.scenario.label:<16} {outcome.state.value.upper():<8} {outcome.duration_seconds:8.1f}s"
    if outcome.error:
        line += f"  {outcome.error_type or 'error'}: {outcome.error}"
    click.echo(line)


def _echo_summary(result: CampaignResult) -> None:
    click.echo(f"\nCampaign  : {result.name}")
    click.echo(f"DONE      : {len(result.done)}")
    for outcome in result.done:
        click.echo(f"  {outcome.scenario.label} ({outcome.run_id})")
    click.echo(f"ABORTED   : {len(result.aborted)}")
    for outcome in result.aborted:
        click.echo(f"  {outcome.scenario.label}: {outcome.error}")


def _run_campaign(settings: Settings, campaign: Campaign, json_output: bool = False) -> None:
    fault_backend, workload_backend = _build_backends(settings)
    sequencer = CampaignSequencer(
        controller=_controller(settings, fault_backend),
        runner=ExperimentRunner(
            workload_backend,
            grace_seconds=settings.grace_seconds,
            kill_after=settings.kill_after_seconds,
        ),
        recorder=RunRecorder(settings.output_dir),
        nodes=settings.nodes,
        settle_seconds=settings.settle_seconds,
        abort_on_error=settings.abort_on_error,
        on_outcome=None if json_output else _echo_outcome,
    )

    try:
        result = sequencer.run(campaign)
    except CampaignAborted as exc:
        click.echo(f"Campaign stopped: {exc}", err=True)
        result = exc.result
    except KeyboardInterrupt:
        click.echo("Interrupted.", err=True)
        sys.exit(130)

    if json_output:
        click.echo(result.model_dump_json(indent=2))
    else:
        _echo_summary(result)
    sys.exit(result.exit_code)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="netfault")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Root of run directories [default: NETFAULT_OUTPUT_DIR or ./outputs].",
)
@click.option("--log-level", default=None, help="Logging level.")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
@click.pass_context
def main(ctx: click.Context, output_dir: Path | None, log_level: str | None, json_logs: bool) -> None:
    """netfault: network-fault campaigns against a Cassandra cluster."""
    overrides: dict[str, object] = {}
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if log_level is not None:
        overrides["log_level"] = log_level.upper()
    if json_logs:
        overrides["json_logs"] = True
    settings = get_settings().model_copy(update=overrides)
    setup_logging(settings.log_level, json_output=settings.json_logs)
    ctx.obj = settings


_target_option = click.option(
    "--target",
    "targets",
    multiple=True,
    metavar="NODE",
    help="Target node (repeatable) [default: all peer nodes].",
)


@main.command("apply-fault")
@click.option("--kind", required=True, type=click.Choice(["loss", "delay"], case_sensitive=False))
@_target_option
@click.option("--magnitude", required=True, help="Percentage (10%) for loss, duration (50ms) for delay.")
@click.pass_obj
def apply_fault_command(settings: Settings, kind: str, targets: tuple[str, ...], magnitude: str) -> None:
    """Install an impairment and leave it in place."""
    try:
        spec = _fault_spec(settings, kind.lower(), targets, magnitude)
        _controller(settings, _build_backends(settings)[0]).apply(spec)
    except (ValueError, NetfaultError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Applied {spec.kind.value}={spec.magnitude} to {', '.join(spec.target_names)}")


@main.command("revoke-fault")
@click.option("--target", "targets", multiple=True, metavar="NODE", help="Target node [default: all nodes].")
@click.pass_obj
def revoke_fault_command(settings: Settings, targets: tuple[str, ...]) -> None:
    """Remove any impairment from the target nodes."""
    try:
        nodes = settings.resolve_nodes(list(targets)) if targets else settings.nodes
        _controller(settings, _build_backends(settings)[0]).revoke(nodes)
    except (ValueError, NetfaultError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Revoked impairments on {', '.join(n.name for n in nodes)}")


@main.command("show-fault")
@click.option("--target", "targets", multiple=True, metavar="NODE", help="Node to read [default: all nodes].")
@click.pass_obj
def show_fault_command(settings: Settings, targets: tuple[str, ...]) -> None:
    """Print the impairment active on each node."""
    try:
        nodes = settings.resolve_nodes(list(targets)) if targets else settings.nodes
        readings = _controller(settings, _build_backends(settings)[0]).read_all(nodes)
    except (ValueError, NetfaultError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    for node in nodes:
        impairment = readings[node]
        click.echo(f"{node.name:<16} {impairment if impairment else 'none'}")


@main.command("run-scenario")
@click.option("--label", required=True, help="Scenario label, used in the run directory name.")
@click.option(
    "--kind",
    default="none",
    show_default=True,
    type=click.Choice([k.value for k in FaultKind], case_sensitive=False),
)
@_target_option
@click.option("--magnitude", default="", help="Percentage (10%) for loss, duration (50ms) for delay.")
@click.option("--duration", type=click.IntRange(min=1), required=True, help="Workload duration (s).")
@click.option("--json-output", is_flag=True, help="Emit the result as JSON.")
@click.pass_obj
def run_scenario_command(
    settings: Settings,
    label: str,
    kind: str,
    targets: tuple[str, ...],
    magnitude: str,
    duration: int,
    json_output: bool,
) -> None:
    """Run one scenario: apply fault, run the workload, record, revoke."""
    try:
        scenario = Scenario(
            label=label,
            fault=_fault_spec(settings, kind.lower(), targets, magnitude),
            duration_seconds=duration,
            workload=settings.workload(),
        )
        campaign = Campaign(name=label, scenarios=[scenario])
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    _run_campaign(settings, campaign, json_output)


@main.command("run-campaign")
@click.option(
    "--file",
    "campaign_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Campaign definition (YAML or JSON).",
)
@click.option("--builtin-sweep", "use_sweep", is_flag=True, help="Baseline plus the configured packet-loss sweep.")
@click.option(
    "--duration",
    type=click.IntRange(min=1),
    default=60,
    show_default=True,
    help="Duration (s) for scenarios that do not set one.",
)
@click.option("--abort-on-error", is_flag=True, help="Stop at the first aborted scenario.")
@click.option("--json-output", is_flag=True, help="Emit the result as JSON.")
@click.pass_obj
def run_campaign_command(
    settings: Settings,
    campaign_path: Path | None,
    use_sweep: bool,
    duration: int,
    abort_on_error: bool,
    json_output: bool,
) -> None:
    """Run a list of scenarios in order, continuing past failures.

    Exits 0 when every scenario is DONE, otherwise with the number of
    ABORTED scenarios.
    """
    if (campaign_path is None) == (not use_sweep):
        click.echo("Error: give exactly one of --file or --builtin-sweep.", err=True)
        sys.exit(2)

    try:
        if use_sweep:
            campaign = builtin_sweep(settings.peers, duration, settings.sweep_losses, settings.workload())
        else:
            campaign = load_campaign(campaign_path, settings.nodes, duration, settings.workload())
    except (OSError, ValueError) as exc:
        click.echo(f"Error loading campaign: {exc}", err=True)
        sys.exit(1)

    if abort_on_error:
        settings = settings.model_copy(update={"abort_on_error": True})
    _run_campaign(settings, campaign, json_output)


@main.command("summarize")
@click.option("--lines", type=click.IntRange(min=0), default=None, help="Lines of output per run [default: 15].")
@click.pass_obj
def summarize_command(settings: Settings, lines: int | None) -> None:
    """Print the tail of every recorded run's captured output."""
    reporter = SummaryReporter(settings.output_dir, lines=settings.tail_lines if lines is None else lines)
    blocks = list(SummaryReporter.render(reporter.summarize()))
    if not blocks:
        click.echo(f"No runs found under {settings.output_dir}")
        return
    for block in blocks:
        click.echo("")
        click.echo(block)


if __name__ == "__main__":
    main()
