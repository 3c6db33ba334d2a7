from pathlib import Path
from types import MappingProxyType

import pytest

from buildchain.topology import LoadedTopology, Phase, Topology, TopologyMeta
from buildchain.workspace import (
    GuardRegistry,
    WorkspaceError,
    agents_dir_for,
    materialize,
    materialize_single,
)


def _loaded(roles: dict[str, str]) -> LoadedTopology:
    topology = Topology(
        meta=TopologyMeta(name="t"),
        phases=tuple(Phase(name=role, role=role) for role in roles),
    )
    return LoadedTopology(topology=topology, roles=MappingProxyType(roles))


def test_materialize_writes_every_role(tmp_path: Path) -> None:
    registry = GuardRegistry()
    guard = materialize(tmp_path, _loaded({"alpha": "A", "beta": "B"}), registry=registry)

    agents_dir = tmp_path.resolve() / ".claude" / "agents"
    assert (agents_dir / "alpha.md").read_text(encoding="utf-8") == "A"
    assert (agents_dir / "beta.md").read_text(encoding="utf-8") == "B"
    assert registry.count(agents_dir) == 1

    guard.release()

    assert not agents_dir.exists()
    assert not (tmp_path / ".claude").exists()


@pytest.mark.parametrize("release_first_guard_first", [True, False])
def test_files_survive_until_last_release(tmp_path: Path, release_first_guard_first: bool) -> None:
    registry = GuardRegistry()
    first = materialize_single(tmp_path, "alpha", "A", registry=registry)
    second = materialize_single(tmp_path, "beta", "B", registry=registry)
    agents_dir = agents_dir_for(tmp_path)
    assert registry.count(agents_dir) == 2

    early, late = (first, second) if release_first_guard_first else (second, first)
    early.release()

    assert (agents_dir / "alpha.md").exists()
    assert (agents_dir / "beta.md").exists()
    assert registry.count(agents_dir) == 1

    late.release()

    assert not agents_dir.exists()
    assert registry.count(agents_dir) == 0


def test_release_is_idempotent(tmp_path: Path) -> None:
    registry = GuardRegistry()
    first = materialize_single(tmp_path, "alpha", "A", registry=registry)
    second = materialize_single(tmp_path, "alpha", "A", registry=registry)

    first.release()
    first.release()

    assert first.released is True
    assert (agents_dir_for(tmp_path) / "alpha.md").exists()
    second.release()
    assert not agents_dir_for(tmp_path).exists()


def test_context_manager_releases_on_error(tmp_path: Path) -> None:
    registry = GuardRegistry()

    with pytest.raises(RuntimeError, match="boom"):
        with materialize_single(tmp_path, "alpha", "A", registry=registry):
            raise RuntimeError("boom")

    assert not agents_dir_for(tmp_path).exists()
    assert registry.count(agents_dir_for(tmp_path)) == 0


def test_claude_dir_kept_when_it_holds_other_files(tmp_path: Path) -> None:
    (tmp_path / ".claude").mkdir()
    settings = tmp_path / ".claude" / "settings.json"
    settings.write_text("{}", encoding="utf-8")

    with materialize_single(tmp_path, "alpha", "A", registry=GuardRegistry()):
        pass

    assert settings.exists()
    assert not agents_dir_for(tmp_path).exists()


def test_registry_release_without_acquire_is_not_last(tmp_path: Path) -> None:
    registry = GuardRegistry()

    assert registry.release(tmp_path) is False


@pytest.mark.parametrize("role", ["", "../escape", "a/b"])
def test_unsafe_role_names_rejected(tmp_path: Path, role: str) -> None:
    with pytest.raises(WorkspaceError, match="invalid role name"):
        materialize_single(tmp_path, role, "x", registry=GuardRegistry())


class InterleavingRegistry(GuardRegistry):
    """Runs ``on_acquire`` just before the count is taken."""

    def __init__(self) -> None:
        super().__init__()
        self.on_acquire = None

    def acquire(self, path: Path) -> None:
        callback, self.on_acquire = self.on_acquire, None
        if callback is not None:
            callback()
        super().acquire(path)


def test_concurrent_last_release_does_not_wipe_new_files(tmp_path: Path) -> None:
    registry = InterleavingRegistry()
    first = materialize_single(tmp_path, "alpha", "A", registry=registry)
    registry.on_acquire = first.release

    second = materialize_single(tmp_path, "beta", "B", registry=registry)

    agents_dir = agents_dir_for(tmp_path)
    assert first.released is True
    assert registry.count(agents_dir) == 1
    assert (agents_dir / "beta.md").read_text(encoding="utf-8") == "B"
    second.release()
    assert not agents_dir.exists()


def test_failed_write_releases_the_count(tmp_path: Path) -> None:
    registry = GuardRegistry()
    agents_dir = agents_dir_for(tmp_path)
    (agents_dir / "alpha.md").mkdir(parents=True)

    with pytest.raises(WorkspaceError, match="failed to write role file"):
        materialize_single(tmp_path, "alpha", "A", registry=registry)

    assert registry.count(agents_dir) == 0
