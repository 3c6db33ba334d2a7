from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from buildchain.config import BuildchainConfig, load_config, save_config
from buildchain.intake import (
    BuildConfirmationGate,
    ConfirmationStatus,
    IntakeOutcome,
    IntakeSession,
    IntakeStatus,
)
from buildchain.invokers import CapabilityInvoker, ClaudeCodeInvoker, RetryingInvoker, RetryPolicy
from buildchain.orchestrator import WORKSPACE_DIR, Orchestrator, PipelineError, RunSummary
from buildchain.state import JsonFactStore, SessionStore, StateError
from buildchain.topology import (
    DEFAULT_TOPOLOGY,
    TopologyError,
    deploy_bundled_topology,
    dumps_topology,
    load_topology,
)

EVENTS_FILE = "events.jsonl"
FACTS_FILE = "facts.json"
MAX_RECORDED_EVENTS = 500

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: BuildchainConfig
    data_dir: Path
    sessions: SessionStore
    event_hook: EventHook
    invoker: CapabilityInvoker


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _record_event(events_path: Path, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    lines: list[str] = []
    if events_path.exists():
        lines = events_path.read_text(encoding="utf-8").splitlines()
    lines.append(json.dumps(payload, ensure_ascii=False, default=str))
    events_path.parent.mkdir(parents=True, exist_ok=True)
    events_path.write_text("\n".join(lines[-MAX_RECORDED_EVENTS:]) + "\n", encoding="utf-8")


def _echo_progress(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "phase_started":
        click.echo(f"[{event['index']}/{event['total']}] {event['phase']}...")
    elif name == "verification_failed":
        click.echo(
            f"  {event['phase']} check failed "
            f"({event['attempt']}/{event['max_attempts']}): {event['reason']}"
        )
    elif name == "phase_warning":
        click.echo(f"  warning: {event['reason']}")
    elif name == "invoke_retry":
        click.echo(f"  retrying {event['role']} (attempt {event['attempt']})")


def _make_event_hook(data_dir: Path) -> EventHook:
    events_path = data_dir / EVENTS_FILE

    def hook(event: dict[str, Any]) -> None:
        _record_event(events_path, event)
        _echo_progress(event)

    return hook


def _build_invoker(
    config: BuildchainConfig, data_dir: Path, event_hook: EventHook
) -> CapabilityInvoker:
    claude = ClaudeCodeInvoker(
        binary=config.invoker.binary,
        working_directory=data_dir / WORKSPACE_DIR,
        default_max_turns=config.invoker.default_max_turns,
        event_hook=event_hook,
    )
    policy = RetryPolicy(
        max_attempts=max(1, int(config.invoker.max_attempts)),
        delay_seconds=max(0.0, float(config.invoker.retry_delay_seconds)),
        timeout_seconds=max(5.0, float(config.invoker.timeout_seconds)),
    )
    return RetryingInvoker(claude, policy, event_hook=event_hook)


def _load_runtime(config_value: str) -> Runtime:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    data_dir = config.paths.resolved_data_dir()
    (data_dir / WORKSPACE_DIR).mkdir(parents=True, exist_ok=True)
    event_hook = _make_event_hook(data_dir)
    return Runtime(
        config_path=config_path,
        config=config,
        data_dir=data_dir,
        sessions=SessionStore(JsonFactStore(data_dir / FACTS_FILE), data_dir),
        event_hook=event_hook,
        invoker=_build_invoker(config, data_dir, event_hook),
    )


def _build_intake(runtime: Runtime) -> IntakeSession:
    config = runtime.config
    loaded = load_topology(
        runtime.data_dir, config.pipeline.topology, event_hook=runtime.event_hook
    )
    return IntakeSession(
        runtime.invoker,
        runtime.sessions,
        runtime.data_dir / WORKSPACE_DIR,
        role=config.session.intake_role,
        role_content=loaded.role_content(config.session.intake_role),
        model=config.models.complex,
        max_turns=config.session.intake_max_turns,
        ttl_seconds=config.session.ttl_seconds,
        max_rounds=config.session.max_rounds,
        event_hook=runtime.event_hook,
    )


def _build_orchestrator(runtime: Runtime) -> Orchestrator:
    return Orchestrator(
        runtime.invoker,
        runtime.data_dir,
        fast_model=runtime.config.models.fast,
        complex_model=runtime.config.models.complex,
        event_hook=runtime.event_hook,
        validation_max_depth=runtime.config.pipeline.validation_max_depth,
    )


def _echo_summary(summary: RunSummary) -> None:
    name = summary.project_name or "(unnamed)"
    if summary.partial:
        click.echo(f"Build complete but delivery had issues: {name}")
    else:
        click.echo(f"Build complete: {name}")
    click.echo(f"Topology: {summary.topology_name}")
    click.echo(f"Phases: {', '.join(summary.completed_phases)}")
    if summary.project_dir:
        click.echo(f"Location: {summary.project_dir}")
    for warning in summary.warnings:
        click.echo(f"Warning: {warning}")
    if summary.build_summary:
        if summary.build_summary.summary:
            click.echo(f"Summary: {summary.build_summary.summary}")
        if summary.build_summary.usage:
            click.echo(f"Usage: {summary.build_summary.usage}")


def _run_pipeline(runtime: Runtime, brief: str, topology_name: str) -> None:
    orchestrator = _build_orchestrator(runtime)
    try:
        summary = asyncio.run(orchestrator.run_named(topology_name, brief))
    except PipelineError as exc:
        chain_path = orchestrator.recorder.target_path(exc.chain_state.project_dir)
        raise click.ClickException(f"{exc} (chain state: {chain_path})") from exc
    except TopologyError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


def _echo_intake(outcome: IntakeOutcome) -> None:
    match outcome.status:
        case IntakeStatus.QUESTIONS:
            click.echo(f"Round {outcome.round} questions:")
            click.echo(outcome.message)
        case IntakeStatus.PROPOSED:
            click.echo("Proposed build:")
            click.echo(outcome.message)
            click.echo("Reply 'yes' to start the build, 'no' to cancel, or describe changes.")
        case IntakeStatus.CANCELLED | IntakeStatus.EXPIRED | IntakeStatus.NO_SESSION:
            click.echo(outcome.message or "No active discovery session.")
        case IntakeStatus.CONFLICT | IntakeStatus.FAILED:
            raise click.ClickException(outcome.message)


@click.group()
def cli() -> None:
    """buildchain: run topology-driven build pipelines."""


@cli.command("init")
@click.option("--data-dir", default=None, help="Where topologies, sessions and builds live.")
@click.option("--config", "config_value", default="buildchain.toml", show_default=True)
def init_command(data_dir: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if data_dir:
        config.paths.data_dir = data_dir
    save_config(config_path, config)

    resolved = config.paths.resolved_data_dir()
    (resolved / WORKSPACE_DIR).mkdir(parents=True, exist_ok=True)
    try:
        deploy_bundled_topology(resolved, event_hook=_make_event_hook(resolved))
    except TopologyError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized buildchain in {resolved}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Default topology: {DEFAULT_TOPOLOGY}")


@cli.group("topology")
def topology_group() -> None:
    """Inspect topologies."""


@topology_group.command("show")
@click.argument("name", default=DEFAULT_TOPOLOGY)
@click.option("--toml", "as_toml", is_flag=True, default=False, help="Print normalized TOML.")
@click.option("--config", "config_value", default="buildchain.toml", show_default=True)
def topology_show_command(name: str, as_toml: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        loaded = load_topology(runtime.data_dir, name, event_hook=runtime.event_hook)
    except TopologyError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_toml:
        click.echo(dumps_topology(loaded.topology), nl=False)
        return
    meta = loaded.topology.meta
    click.echo(f"{meta.name} (v{meta.version}): {meta.description}")
    for index, phase in enumerate(loaded.phases, start=1):
        line = (
            f"{index}. {phase.name:<12} {phase.role:<18} "
            f"{phase.model_tier.value:<8} {phase.kind.value}"
        )
        if phase.retry:
            line += f" (max {phase.retry.max}, fix: {phase.retry.fix_agent})"
        click.echo(line)
    click.echo(f"Roles: {', '.join(sorted(loaded.roles))}")


@cli.command("intake")
@click.argument("identity")
@click.argument("request")
@click.option("--config", "config_value", default="buildchain.toml", show_default=True)
def intake_command(identity: str, request: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        intake = _build_intake(runtime)
        outcome = asyncio.run(intake.start(identity, request))
    except (TopologyError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_intake(outcome)


@cli.command("reply")
@click.argument("identity")
@click.argument("text")
@click.option("--topology", "topology_name", default=None)
@click.option("--config", "config_value", default="buildchain.toml", show_default=True)
def reply_command(identity: str, text: str, topology_name: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        intake = _build_intake(runtime)
        if intake.has_session(identity):
            _echo_intake(asyncio.run(intake.handle_message(identity, text)))
            return

        gate = BuildConfirmationGate(
            runtime.sessions, ttl_seconds=runtime.config.session.ttl_seconds
        )
        outcome = gate.handle(identity, text)
    except (TopologyError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    if outcome is None:
        click.echo(f"No active session for {identity}.")
        return
    match outcome.status:
        case ConfirmationStatus.EXECUTING:
            click.echo("Starting build...")
            name = topology_name or runtime.config.pipeline.topology
            _run_pipeline(runtime, outcome.brief or "", name)
        case ConfirmationStatus.CANCELLED:
            click.echo("Build cancelled.")
        case ConfirmationStatus.EXPIRED:
            click.echo("The proposed build expired. Start a new request.")
        case ConfirmationStatus.AWAITING:
            if not text.strip():
                click.echo("Reply 'yes' to start the build, 'no' to cancel, or describe changes.")
                return
            _echo_intake(asyncio.run(intake.revise(identity, text)))


@cli.command("run")
@click.argument("brief")
@click.option("--topology", "topology_name", default=None)
@click.option("--config", "config_value", default="buildchain.toml", show_default=True)
def run_command(brief: str, topology_name: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _run_pipeline(runtime, brief, topology_name or runtime.config.pipeline.topology)
