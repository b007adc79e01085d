from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from mailflow import __version__
from mailflow.config import (
    DEFAULT_CONFIG_FILE,
    MailflowConfig,
    load_config,
    save_config,
)
from mailflow.coordinator import HandoffCoordinator
from mailflow.errors import MailflowError
from mailflow.logging_setup import setup_logging
from mailflow.models import WorkflowReport, new_workflow_id
from mailflow.quality_gate import QualityGate
from mailflow.services import CampaignServices
from mailflow.stages.pipeline import build_campaign_pipeline, build_services
from mailflow.store import RunStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: MailflowConfig
    store: RunStore


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except MailflowError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(config.effective_log_level(), config.logging.log_dir or None)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=RunStore(root / config.output.runs_directory),
    )


def _log_event(event: dict[str, Any]) -> None:
    name = event.get("event", "event")
    details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    logger.debug("%s %s", name, details)


def _build_coordinator(services: CampaignServices, config: MailflowConfig) -> HandoffCoordinator:
    return HandoffCoordinator(
        build_campaign_pipeline(services, config),
        quality_gate=QualityGate(
            threshold=config.quality.threshold,
            max_quality_iterations=config.quality.max_quality_iterations,
            hard_floor=config.quality.hard_floor,
        ),
        max_backoff_ms=config.retry.max_backoff_ms,
        cache_ttl_seconds=config.pricing.cache_ttl_seconds,
        event_hook=_log_event,
    )


async def _run_workflow(
    coordinator: HandoffCoordinator,
    services: CampaignServices,
    brief: dict[str, Any],
    workflow_id: str,
) -> WorkflowReport:
    try:
        return await coordinator.run(brief, workflow_id=workflow_id)
    finally:
        close = getattr(services.pricing, "close", None)
        if close is not None:
            await close()


def _echo_report(report: WorkflowReport, *, verbose: bool = False) -> None:
    summary = report.summary
    click.echo(f"Workflow: {report.workflow_id}")
    click.echo(f"Status: {report.status.value}")
    if summary.get("handoff_chain"):
        click.echo(f"Stages: {summary['handoff_chain']}")
    if summary.get("quality_score") is not None:
        click.echo(f"Quality: {summary['quality_score']:g} ({summary.get('quality_rating')})")
    click.echo(
        f"Attempts: {summary.get('total_attempts', 0)} "
        f"(retries: {summary.get('retries', 0)}, "
        f"issues resolved: {summary.get('issues_resolved', 0)})"
    )
    delivery = report.artifacts.get("delivery")
    if isinstance(delivery, dict) and delivery.get("url"):
        click.echo(f"Published: {delivery['url']}")
    if report.error:
        click.echo(f"Error: {report.error}")
    if verbose:
        for entry in report.trace:
            outcome = "ok" if entry.success else f"failed ({entry.error_kind})"
            score = f" score={entry.quality_score:g}" if entry.quality_score is not None else ""
            click.echo(
                f"  {entry.stage:<9} iter={entry.quality_iteration} attempt={entry.attempt} "
                f"{entry.duration_ms}ms {outcome}{score}"
            )


@click.group()
@click.version_option(__version__, prog_name="mailflow")
def cli() -> None:
    """Mailflow campaign generator CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    try:
        config = load_config(config_path)
    except MailflowError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    (root / config.output.runs_directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized mailflow in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.llm.model}")


@cli.command("run")
@click.option("--topic", required=True)
@click.option("--destination", default=None, help="IATA airport or city code")
@click.option("--origin", default=None, help="IATA airport or city code")
@click.option("--audience", default=None)
@click.option("--tone", default=None)
@click.option("--language", default=None)
@click.option("--date-range", "date_range", default=None, help="YYYY-MM-DD,YYYY-MM-DD")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def run_command(
    ctx: click.Context,
    topic: str,
    destination: str | None,
    origin: str | None,
    audience: str | None,
    tone: str | None,
    language: str | None,
    date_range: str | None,
    config_value: str,
    as_json: bool,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    brief = {
        key: value
        for key, value in {
            "topic": topic,
            "destination": destination,
            "origin": origin,
            "audience": audience,
            "tone": tone,
            "language": language,
            "date_range": date_range,
        }.items()
        if value is not None
    }

    services = build_services(runtime.config, root=root)
    coordinator = _build_coordinator(services, runtime.config)
    workflow_id = new_workflow_id()
    try:
        report = asyncio.run(_run_workflow(coordinator, services, brief, workflow_id))
    except KeyboardInterrupt:
        partial = coordinator.reports.get(workflow_id)
        if partial is not None:
            runtime.store.save(partial)
        raise click.Abort() from None

    runtime.store.save(report)
    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _echo_report(report)
    if not report.succeeded:
        ctx.exit(1)


@cli.command("status")
@click.argument("workflow_id")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(workflow_id: str, verbose: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    try:
        report = runtime.store.load(workflow_id)
    except MailflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report, verbose=verbose)


@cli.command("runs")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def runs_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    try:
        runs = runtime.store.list_runs()
    except MailflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if not runs:
        click.echo("No saved runs.")
        return
    for run in runs:
        score = run["quality_score"]
        rendered = f"{score:g}" if isinstance(score, (int, float)) else "-"
        click.echo(f"{run['workflow_id']} {run['status']:<9} {rendered:>5} {run['topic'] or ''}")
