from __future__ import annotations

import shutil
import threading
from pathlib import Path

from buildchain.topology import LoadedTopology

CLAUDE_DIR = ".claude"
AGENTS_SUBDIR = "agents"


class WorkspaceError(RuntimeError):
    """Raised when role files cannot be written into a workspace."""


class GuardRegistry:
    """Process-wide reference counts keyed by agents directory.

    Several runs may share one workspace; the agents directory is removed only
    when the last holder releases it.
    """

    def __init__(self) -> None:
        self._counts: dict[Path, int] = {}
        self._lock = threading.Lock()

    def acquire(self, path: Path) -> None:
        with self._lock:
            self._counts[path] = self._counts.get(path, 0) + 1

    def release(self, path: Path) -> bool:
        """Drop one reference. Returns True when this was the last holder."""
        with self._lock:
            current = self._counts.get(path, 0)
            if current <= 1:
                self._counts.pop(path, None)
                return current == 1
            self._counts[path] = current - 1
            return False

    def count(self, path: Path) -> int:
        with self._lock:
            return self._counts.get(path, 0)


GUARDS = GuardRegistry()


class AgentFileGuard:
    def __init__(self, agents_dir: Path, registry: GuardRegistry) -> None:
        self.agents_dir = agents_dir
        self.registry = registry
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if not self.registry.release(self.agents_dir):
            return
        shutil.rmtree(self.agents_dir, ignore_errors=True)
        claude_dir = self.agents_dir.parent
        try:
            claude_dir.rmdir()
        except OSError:
            # Still holds settings or other user files.
            pass

    def __enter__(self) -> AgentFileGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def agents_dir_for(directory: Path) -> Path:
    return directory.resolve() / CLAUDE_DIR / AGENTS_SUBDIR


def _validate_role(role: str) -> None:
    if not role or "/" in role or "\\" in role or ".." in role:
        raise WorkspaceError(f"invalid role name '{role}'")


def _write_role(agents_dir: Path, role: str, content: str) -> None:
    target = agents_dir / f"{role}.md"
    try:
        target.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise WorkspaceError(f"failed to write role file {target}: {exc}") from exc


def _prepare(agents_dir: Path) -> None:
    try:
        agents_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise WorkspaceError(f"failed to create agents dir {agents_dir}: {exc}") from exc


def _acquire(agents_dir: Path, registry: GuardRegistry) -> AgentFileGuard:
    # Counted before mkdir so a concurrent last release cannot wipe the new files.
    registry.acquire(agents_dir)
    return AgentFileGuard(agents_dir, registry)


def materialize(
    directory: Path,
    loaded: LoadedTopology,
    *,
    registry: GuardRegistry | None = None,
) -> AgentFileGuard:
    """Write every role of ``loaded`` to ``<directory>/.claude/agents/``."""
    registry = registry or GUARDS
    for role in loaded.roles:
        _validate_role(role)
    agents_dir = agents_dir_for(directory)
    guard = _acquire(agents_dir, registry)
    try:
        _prepare(agents_dir)
        for role, content in sorted(loaded.roles.items()):
            _write_role(agents_dir, role, content)
    except WorkspaceError:
        guard.release()
        raise
    return guard


def materialize_single(
    directory: Path,
    role: str,
    content: str,
    *,
    registry: GuardRegistry | None = None,
) -> AgentFileGuard:
    registry = registry or GUARDS
    _validate_role(role)
    agents_dir = agents_dir_for(directory)
    guard = _acquire(agents_dir, registry)
    try:
        _prepare(agents_dir)
        _write_role(agents_dir, role, content)
    except WorkspaceError:
        guard.release()
        raise
    return guard
