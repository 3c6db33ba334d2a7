from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from buildchain.chain_state import ChainState, ChainStateRecorder
from buildchain.corrective import CorrectiveLoopExhausted, run_corrective_loop
from buildchain.invokers.base import CapabilityInvoker, InvocationError
from buildchain.parsing import BuildSummary, ProjectBrief, parse_build_summary, parse_project_brief
from buildchain.topology import LoadedTopology, Phase, PhaseKind, TopologyError, load_topology
from buildchain.validation import DEFAULT_MAX_DEPTH, check_validation
from buildchain.workspace import GuardRegistry, WorkspaceError, materialize

WORKSPACE_DIR = "workspace"
BUILDS_DIR = "builds"

PHASE_PROMPT = """\
Phase: {phase}
Your working directory is: {project_dir}

Project brief:
{brief}
"""

FIX_PROMPT = """\
You are fixing a project that failed the {phase} phase.
Your working directory is: {project_dir}

The previous check reported:
{reason}

Fix the issue, then make sure the project builds and its tests pass.
"""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class PipelineError(RuntimeError):
    def __init__(self, message: str, *, chain_state: ChainState) -> None:
        super().__init__(message)
        self.chain_state = chain_state


class PhaseFailure(RuntimeError):
    """A phase finished but its output or artifacts were unusable."""


@dataclass(slots=True)
class OrchestratorState:
    brief_text: str
    brief: ProjectBrief | None = None
    project_dir: Path | None = None
    completed_phases: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    build_summary: BuildSummary | None = None
    partial: bool = False


@dataclass(slots=True)
class RunSummary:
    topology_name: str
    project_name: str | None
    project_dir: Path | None
    completed_phases: list[str]
    warnings: list[str]
    build_summary: BuildSummary | None
    started_at: str
    ended_at: str
    partial: bool = False


class Orchestrator:
    def __init__(
        self,
        invoker: CapabilityInvoker,
        data_dir: Path,
        *,
        fast_model: str,
        complex_model: str,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        registry: GuardRegistry | None = None,
        validation_max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.invoker = invoker
        self.data_dir = data_dir
        self.fast_model = fast_model
        self.complex_model = complex_model
        self.event_hook = event_hook
        self.registry = registry
        self.validation_max_depth = validation_max_depth
        self.recorder = ChainStateRecorder(self.workspace_dir, event_hook=event_hook)

    @property
    def workspace_dir(self) -> Path:
        return self.data_dir / WORKSPACE_DIR

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(payload)

    def _phase_prompt(self, phase: Phase, state: OrchestratorState) -> str:
        return PHASE_PROMPT.format(
            phase=phase.name,
            project_dir=state.project_dir or self.workspace_dir,
            brief=state.brief_text,
        )

    def _check(self, phase: Phase, state: OrchestratorState, *, pre: bool) -> None:
        config = phase.pre_validation if pre else phase.post_validation
        if config is None or state.project_dir is None:
            return
        failure = check_validation(config, state.project_dir, max_depth=self.validation_max_depth)
        if failure is None:
            return
        if pre:
            raise PhaseFailure(f"{phase.name} phase cannot start: {failure}")
        raise PhaseFailure(f"{phase.name} phase completed but {failure}. Build stopped.")

    async def _run_parse_brief(self, phase: Phase, model: str, state: OrchestratorState) -> None:
        output = await self.invoker.invoke(
            phase.role, state.brief_text, model=model, max_turns=phase.max_turns
        )
        brief = parse_project_brief(output)
        if brief is None:
            raise PhaseFailure(f"{phase.name} phase returned no usable project brief")
        project_dir = self.workspace_dir / BUILDS_DIR / brief.name
        try:
            project_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PhaseFailure(f"failed to create project dir {project_dir}: {exc}") from exc
        state.brief = brief
        state.brief_text = output.strip()
        state.project_dir = project_dir

    async def _run_corrective(self, phase: Phase, model: str, state: OrchestratorState) -> None:
        retry = phase.retry
        if retry is None:
            raise TopologyError(f"corrective-loop phase '{phase.name}' has no retry config")

        def fix_prompt(reason: str) -> str:
            return FIX_PROMPT.format(
                phase=phase.name,
                project_dir=state.project_dir or self.workspace_dir,
                reason=reason,
            )

        try:
            result = await run_corrective_loop(
                self.invoker,
                phase,
                retry,
                model,
                self._phase_prompt(phase, state),
                fix_prompt,
                event_hook=self.event_hook,
            )
        except CorrectiveLoopExhausted as exc:
            if retry.fatal:
                raise
            state.warnings.append(str(exc))
            self._emit({"event": "phase_warning", "phase": phase.name, "reason": str(exc)})
            return
        self._emit(
            {
                "event": "verification_passed",
                "phase": phase.name,
                "attempts": result.attempts,
                "fixes": result.fixes,
            }
        )

    async def _run_parse_summary(self, phase: Phase, model: str, state: OrchestratorState) -> None:
        name = state.brief.name if state.brief else "project"
        try:
            output = await self.invoker.invoke(
                phase.role, self._phase_prompt(phase, state), model=model, max_turns=phase.max_turns
            )
        except InvocationError as exc:
            # Every artifact is already built and checked; delivery trouble is partial success.
            reason = f"delivery had issues: {exc}"
            state.partial = True
            state.warnings.append(reason)
            state.build_summary = BuildSummary(
                project=name, location=str(state.project_dir or ""), summary=reason
            )
            self._emit({"event": "phase_warning", "phase": phase.name, "reason": reason})
            return
        summary = parse_build_summary(output)
        if summary is None:
            summary = BuildSummary(
                project=name,
                location=str(state.project_dir or ""),
                summary=f"Build of {name} finished; the delivery phase returned no summary.",
            )
        state.build_summary = summary

    async def _run_phase(self, phase: Phase, state: OrchestratorState) -> None:
        model = LoadedTopology.resolve_model(
            phase, fast=self.fast_model, complex=self.complex_model
        )
        self._check(phase, state, pre=True)
        match phase.kind:
            case PhaseKind.STANDARD:
                await self.invoker.invoke(
                    phase.role,
                    self._phase_prompt(phase, state),
                    model=model,
                    max_turns=phase.max_turns,
                )
            case PhaseKind.PARSE_BRIEF:
                await self._run_parse_brief(phase, model, state)
            case PhaseKind.CORRECTIVE_LOOP:
                await self._run_corrective(phase, model, state)
            case PhaseKind.PARSE_SUMMARY:
                await self._run_parse_summary(phase, model, state)
        if state.partial:
            return
        self._check(phase, state, pre=False)

    def _fail(
        self,
        loaded: LoadedTopology,
        state: OrchestratorState,
        phase: Phase | None,
        exc: Exception,
    ) -> PipelineError:
        chain_state = ChainState(
            topology_name=loaded.name,
            completed_phases=list(state.completed_phases),
            failed_phase=phase.name if phase else None,
            failure_reason=str(exc),
            project_name=state.brief.name if state.brief else None,
            project_dir=state.project_dir,
        )
        self.recorder.record(chain_state, state.project_dir)
        self._emit(
            {
                "event": "pipeline_failed",
                "topology": loaded.name,
                "phase": chain_state.failed_phase,
                "reason": chain_state.failure_reason,
            }
        )
        where = f"phase '{phase.name}'" if phase else "setup"
        return PipelineError(f"pipeline failed in {where}: {exc}", chain_state=chain_state)

    async def run(self, loaded: LoadedTopology, brief: str) -> RunSummary:
        started_at = _utcnow_iso()
        state = OrchestratorState(brief_text=brief)
        self._emit(
            {"event": "pipeline_started", "topology": loaded.name, "phases": len(loaded.phases)}
        )
        try:
            guard = materialize(self.workspace_dir, loaded, registry=self.registry)
        except WorkspaceError as exc:
            raise self._fail(loaded, state, None, exc) from exc

        with guard:
            for index, phase in enumerate(loaded.phases, start=1):
                self._emit(
                    {
                        "event": "phase_started",
                        "phase": phase.name,
                        "index": index,
                        "total": len(loaded.phases),
                    }
                )
                try:
                    await self._run_phase(phase, state)
                except (
                    InvocationError,
                    CorrectiveLoopExhausted,
                    PhaseFailure,
                    TopologyError,
                ) as exc:
                    raise self._fail(loaded, state, phase, exc) from exc
                if state.partial:
                    break
                state.completed_phases.append(phase.name)
                self._emit({"event": "phase_completed", "phase": phase.name, "index": index})

        summary = RunSummary(
            topology_name=loaded.name,
            project_name=state.brief.name if state.brief else None,
            project_dir=state.project_dir,
            completed_phases=list(state.completed_phases),
            warnings=list(state.warnings),
            build_summary=state.build_summary,
            started_at=started_at,
            ended_at=_utcnow_iso(),
            partial=state.partial,
        )
        self._emit(
            {
                "event": "pipeline_completed",
                "topology": loaded.name,
                "project": summary.project_name,
                "warnings": len(summary.warnings),
                "partial": summary.partial,
            }
        )
        return summary

    async def run_named(self, name: str, brief: str) -> RunSummary:
        loaded = load_topology(self.data_dir, name, event_hook=self.event_hook)
        return await self.run(loaded, brief)
