from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

STATE_DIR = ".buildchain"
STATE_FILE = "chain-state.md"


@dataclass(slots=True)
class ChainState:
    topology_name: str
    completed_phases: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    failure_reason: str | None = None
    project_name: str | None = None
    project_dir: Path | None = None

    def to_markdown(self) -> str:
        completed = "\n".join(f"- {name}" for name in self.completed_phases) or "- (none)"
        lines = [
            "# Build Chain State",
            "",
            f"- Recorded: {datetime.now(UTC).replace(microsecond=0).isoformat()}",
            f"- Topology: {self.topology_name}",
            f"- Project: {self.project_name or '(unknown)'}",
            f"- Directory: {self.project_dir or '(not created)'}",
            "",
            "## Completed Phases",
            "",
            completed,
            "",
            "## Failure",
            "",
            f"- Phase: {self.failed_phase or '(none)'}",
            f"- Reason: {self.failure_reason or '(none)'}",
        ]
        return "\n".join(lines) + "\n"


class ChainStateRecorder:
    """Best-effort snapshot writer for failed runs.

    A write failure is reported through the event hook and never replaces the
    pipeline failure that triggered the snapshot.
    """

    def __init__(
        self,
        fallback_dir: Path,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.fallback_dir = fallback_dir
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(payload)

    def target_path(self, project_dir: Path | None) -> Path:
        base = project_dir if project_dir is not None else self.fallback_dir
        return base / STATE_DIR / STATE_FILE

    def record(self, chain_state: ChainState, project_dir: Path | None = None) -> Path | None:
        target = self.target_path(project_dir)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(chain_state.to_markdown(), encoding="utf-8")
        except OSError as exc:
            self._emit(
                {
                    "event": "chain_state_write_failed",
                    "path": str(target),
                    "error": str(exc),
                }
            )
            return None
        self._emit({"event": "chain_state_recorded", "path": str(target)})
        return target
