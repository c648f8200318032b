"""
runway.cli - Command Line Interface
=====================================

    runway validate PIPELINE [--json]
    runway run PIPELINE [--branch main] [--event push] [--changed-path PATH ...]
                        [--sha SHA] [--executor local|scripted]
                        [--max-parallel N] [--config runway.yaml] [--json]

Exit status of ``runway run`` is the run's exit code (0 succeeded,
1 failed, 2 cancelled). An invalid pipeline exits 3 and an invalid
configuration exits 4.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Optional

import click

from runway import __version__
from runway.core.config import RunwayConfig, configure_logging, load_config
from runway.core.enums import RunEventType, TriggerEventType
from runway.core.exceptions import ConfigurationError, DefinitionError
from runway.core.models import TriggerEvent
from runway.core.state import RunEvent, RunSnapshot
from runway.facade import Runway
from runway.orchestration.parser import PipelineParser
from runway.orchestration.run_ledger import failure_reason_label


EXIT_DEFINITION_ERROR = 3
EXIT_CONFIGURATION_ERROR = 4


def _load_settings(
    config_path: Optional[str],
    executor: Optional[str] = None,
    max_parallel: Optional[int] = None,
    workspace: Optional[str] = None,
) -> RunwayConfig:
    config = load_config(config_path)
    scheduler_update: dict[str, Any] = {}
    executor_update: dict[str, Any] = {}
    if max_parallel is not None:
        scheduler_update["max_parallel_jobs"] = max_parallel
    if executor is not None:
        executor_update["backend"] = executor
    if workspace is not None:
        executor_update["workspace_dir"] = workspace
    return config.model_copy(update={
        "scheduler": config.scheduler.model_copy(update=scheduler_update),
        "executor": config.executor.model_copy(update=executor_update),
    })


def _definition_error(error: DefinitionError, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(error.to_dict(), default=str))
    else:
        where = ", ".join(
            f"{key}={value}" for key, value in (("job", error.job), ("field", error.field)) if value
        )
        suffix = f" ({where})" if where else ""
        click.echo(f"invalid pipeline: {error.message}{suffix}", err=True)
    sys.exit(EXIT_DEFINITION_ERROR)


def _configuration_error(error: ConfigurationError) -> None:
    click.echo(f"invalid configuration: {error.message}", err=True)
    sys.exit(EXIT_CONFIGURATION_ERROR)


def format_event(event: RunEvent) -> str:
    """One human-readable line per ledger event."""
    prefix = f"[{event.offset:>4}]"
    kind = event.event_type
    if kind == RunEventType.JOB_STATE_CHANGED:
        line = f"{prefix} {event.job}: {event.state.value if event.state else '?'}"
        if event.attempt and event.attempt > 1:
            line += f" (attempt {event.attempt})"
        if event.reason is not None:
            line += f" [{failure_reason_label(event.reason)}]"
        if event.message:
            line += f" {event.message}"
        return line
    if kind == RunEventType.STEP_STARTED:
        return f"{prefix} {event.job}/{event.step}: started"
    if kind == RunEventType.STEP_COMPLETED:
        return f"{prefix} {event.job}/{event.step}: exit {event.exit_code}"
    if kind == RunEventType.LOG:
        return f"{prefix} {event.job}/{event.step} | {event.message}"
    if kind == RunEventType.GATE_EVALUATED:
        return f"{prefix} {event.job}: gate {event.data.get('gate')} -> {event.data.get('outcome')}"
    if kind == RunEventType.ARTIFACT_STORED:
        return f"{prefix} {event.job}: stored artifact {event.data.get('name')}"
    if kind == RunEventType.RUN_COMPLETED:
        return f"{prefix} run {event.data.get('status')} (exit {event.data.get('exit_code')})"
    return f"{prefix} {kind.value}" + (f": {event.message}" if event.message else "")


def _print_summary(snapshot: RunSnapshot) -> None:
    click.echo("")
    click.echo(f"Run {snapshot.run_id} ({snapshot.pipeline}): {snapshot.status.value}")
    for name, job in snapshot.jobs.items():
        marker = " (allowed to fail)" if job.allow_failure and job.reason else ""
        click.echo(
            f"  {name:<24} {job.state.value:<10} {failure_reason_label(job.reason)}{marker}"
        )


async def _execute(
    settings: RunwayConfig,
    pipeline: str,
    trigger: TriggerEvent,
    as_json: bool,
) -> RunSnapshot:
    async with Runway(settings) as runway:
        graph = runway.load_pipeline(pipeline)
        handle = await runway.start_run(graph, trigger)
        async for event in handle.stream():
            if as_json:
                click.echo(event.model_dump_json())
            else:
                click.echo(format_event(event))
        return await handle.wait()


@click.group()
@click.version_option(__version__, prog_name="runway")
def main() -> None:
    """Runway - declarative CI/CD pipeline engine."""


@main.command()
@click.argument("pipeline", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the summary as JSON")
def validate(pipeline: str, as_json: bool) -> None:
    """Parse and validate a pipeline definition without running it."""
    try:
        graph = PipelineParser().parse_file(pipeline)
    except DefinitionError as e:
        _definition_error(e, as_json)
        return

    summary = graph.to_summary()
    if as_json:
        click.echo(json.dumps(summary))
        return
    click.echo(f"{summary['name']}: {summary['jobs']} job(s) OK")
    click.echo("order: " + " -> ".join(summary["order"]))
    for group, limit in summary["concurrency"].items():
        click.echo(f"concurrency {group}: {limit}")


@main.command()
@click.argument("pipeline", type=click.Path(exists=True, dir_okay=False))
@click.option("--branch", default="main", show_default=True, help="Branch of the trigger event")
@click.option(
    "--event",
    "event_type",
    type=click.Choice([e.value for e in TriggerEventType]),
    default=TriggerEventType.PUSH.value,
    show_default=True,
    help="Trigger event type",
)
@click.option("--changed-path", "changed_paths", multiple=True, help="Changed path (repeatable)")
@click.option("--sha", default=None, help="Commit identifier exposed as RUNWAY_SHA")
@click.option(
    "--executor",
    type=click.Choice(["local", "scripted"]),
    default=None,
    help="Executor backend (overrides configuration)",
)
@click.option("--workspace", default=None, help="Working directory for the local executor")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None, help="Maximum running jobs")
@click.option(
    "--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
    help="Path to runway.yaml",
)
@click.option("--log-level", default=None, help="Log level (defaults to configuration)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print events as JSON lines")
def run(
    pipeline: str,
    branch: str,
    event_type: str,
    changed_paths: tuple[str, ...],
    sha: Optional[str],
    executor: Optional[str],
    workspace: Optional[str],
    max_parallel: Optional[int],
    config_path: Optional[str],
    log_level: Optional[str],
    as_json: bool,
) -> None:
    """Run a pipeline against a trigger event."""
    try:
        settings = _load_settings(config_path, executor, max_parallel, workspace)
        configure_logging(log_level or settings.log_level)
    except ConfigurationError as e:
        _configuration_error(e)
        return

    trigger = TriggerEvent(
        event_type=TriggerEventType(event_type),
        branch=branch,
        changed_paths=list(changed_paths),
        sha=sha,
    )

    try:
        snapshot = asyncio.run(_execute(settings, pipeline, trigger, as_json))
    except DefinitionError as e:
        _definition_error(e, as_json)
        return
    except ConfigurationError as e:
        _configuration_error(e)
        return
    except KeyboardInterrupt:
        click.echo("interrupted", err=True)
        sys.exit(130)

    if as_json:
        click.echo(snapshot.model_dump_json())
    else:
        _print_summary(snapshot)
    sys.exit(snapshot.exit_code)


if __name__ == "__main__":
    main()
