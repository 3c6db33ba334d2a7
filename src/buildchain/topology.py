"""Topology definitions, TOML parsing, and the on-disk loader.

A topology lives in ``<data_dir>/topologies/<name>/``::

    TOPOLOGY.toml        # [topology] header + [[phases]] list
    agents/<role>.md     # one instruction file per referenced role

The ``development`` topology ships as package data and is deployed on first
use. Loading is all-or-nothing: a malformed document or a missing role file
raises :class:`TopologyError` before any phase can run.
"""

from __future__ import annotations

import enum
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any

from buildchain.config import toml_value

DEFAULT_TOPOLOGY = "development"
TOPOLOGY_FILE = "TOPOLOGY.toml"
AGENTS_DIR = "agents"
MAX_NAME_LENGTH = 64


class TopologyError(RuntimeError):
    """Raised when a topology cannot be loaded or is structurally invalid."""


class ModelTier(enum.Enum):
    FAST = "fast"
    COMPLEX = "complex"


class PhaseKind(enum.Enum):
    STANDARD = "standard"
    PARSE_BRIEF = "parse-brief"
    CORRECTIVE_LOOP = "corrective-loop"
    PARSE_SUMMARY = "parse-summary"


class ValidationType(enum.Enum):
    FILE_EXISTS = "file_exists"
    FILE_PATTERNS = "file_patterns"


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max: int
    fix_agent: str
    fatal: bool = True
    verdict_key: str = "VERIFICATION"


@dataclass(frozen=True, slots=True)
class ValidationConfig:
    type: ValidationType
    paths: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    role: str
    model_tier: ModelTier = ModelTier.COMPLEX
    max_turns: int | None = None
    kind: PhaseKind = PhaseKind.STANDARD
    retry: RetryConfig | None = None
    pre_validation: ValidationConfig | None = None
    post_validation: ValidationConfig | None = None


@dataclass(frozen=True, slots=True)
class TopologyMeta:
    name: str
    description: str = ""
    version: int = 1


@dataclass(frozen=True, slots=True)
class Topology:
    meta: TopologyMeta
    phases: tuple[Phase, ...]

    def referenced_roles(self) -> list[str]:
        """Distinct roles named by phases and their fix agents, sorted."""
        roles = {phase.role for phase in self.phases}
        roles.update(phase.retry.fix_agent for phase in self.phases if phase.retry)
        return sorted(roles)


@dataclass(frozen=True, slots=True)
class LoadedTopology:
    topology: Topology
    roles: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def name(self) -> str:
        return self.topology.meta.name

    @property
    def phases(self) -> tuple[Phase, ...]:
        return self.topology.phases

    def role_content(self, name: str) -> str:
        try:
            return self.roles[name]
        except KeyError:
            raise TopologyError(
                f"role '{name}' referenced in topology but instructions were not loaded"
            ) from None

    @staticmethod
    def resolve_model(phase: Phase, *, fast: str, complex: str) -> str:
        match phase.model_tier:
            case ModelTier.FAST:
                return fast
            case ModelTier.COMPLEX:
                return complex


def validate_topology_name(name: str) -> None:
    if not name:
        raise TopologyError("topology name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise TopologyError(
            f"topology name too long ({len(name)} chars, max {MAX_NAME_LENGTH})"
        )
    if ".." in name or "/" in name or "\\" in name:
        raise TopologyError(f"topology name '{name}' contains path traversal characters")
    if not all(char.isalnum() or char in "-_" for char in name):
        raise TopologyError(
            f"topology name '{name}' contains invalid characters "
            "(only alphanumeric, hyphens, underscores allowed)"
        )


def _require(table: Mapping[str, Any], key: str, kind: type, where: str) -> Any:
    if key not in table:
        raise TopologyError(f"{where}: missing required key '{key}'")
    return _typed(table[key], kind, f"{where}.{key}")


def _typed(value: Any, kind: type, where: str) -> Any:
    # bool is a subclass of int; reject it where an integer is expected.
    if kind is int and isinstance(value, bool):
        raise TopologyError(f"{where}: expected integer, got boolean")
    if not isinstance(value, kind):
        raise TopologyError(
            f"{where}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _enum_value(enum_type: type[enum.Enum], raw: Any, where: str) -> Any:
    _typed(raw, str, where)
    try:
        return enum_type(raw)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        raise TopologyError(
            f"{where}: unknown value '{raw}' (expected one of: {allowed})"
        ) from None


def _string_list(raw: Any, where: str) -> tuple[str, ...]:
    _typed(raw, list, where)
    for index, item in enumerate(raw):
        _typed(item, str, f"{where}[{index}]")
    return tuple(raw)


def _parse_validation(raw: Any, where: str) -> ValidationConfig:
    if isinstance(raw, list):
        # Legacy shorthand: a bare list of paths that must exist.
        return ValidationConfig(type=ValidationType.FILE_EXISTS, paths=_string_list(raw, where))
    _typed(raw, dict, where)
    raw_type = _require(raw, "type", str, where)
    validation_type = _enum_value(ValidationType, raw_type, f"{where}.type")
    paths = _string_list(raw.get("paths", []), f"{where}.paths")
    patterns = _string_list(raw.get("patterns", []), f"{where}.patterns")
    if validation_type is ValidationType.FILE_EXISTS and not paths:
        raise TopologyError(f"{where}: file_exists validation requires non-empty 'paths'")
    if validation_type is ValidationType.FILE_PATTERNS and not patterns:
        raise TopologyError(f"{where}: file_patterns validation requires non-empty 'patterns'")
    return ValidationConfig(type=validation_type, paths=paths, patterns=patterns)


def _check_role_name(role: str, where: str) -> None:
    # Role names become file names under agents/.
    if ".." in role or "/" in role or "\\" in role:
        raise TopologyError(f"{where}: role '{role}' contains path traversal characters")


def _parse_retry(raw: Any, where: str) -> RetryConfig:
    _typed(raw, dict, where)
    maximum = _require(raw, "max", int, where)
    if maximum < 1:
        raise TopologyError(f"{where}.max: must be at least 1, got {maximum}")
    fix_agent = _require(raw, "fix_agent", str, where).strip()
    if not fix_agent:
        raise TopologyError(f"{where}.fix_agent: cannot be empty")
    _check_role_name(fix_agent, f"{where}.fix_agent")
    fatal = _typed(raw.get("fatal", True), bool, f"{where}.fatal")
    verdict_key = _typed(raw.get("verdict_key", "VERIFICATION"), str, f"{where}.verdict_key")
    return RetryConfig(max=maximum, fix_agent=fix_agent, fatal=fatal, verdict_key=verdict_key)


def _parse_phase(raw: Any, index: int) -> Phase:
    where = f"phases[{index}]"
    _typed(raw, dict, where)
    name = _require(raw, "name", str, where).strip()
    if not name:
        raise TopologyError(f"{where}.name: cannot be empty")
    where = f"phases[{index}] ('{name}')"
    role = _require(raw, "agent", str, where).strip()
    if not role:
        raise TopologyError(f"{where}.agent: cannot be empty")
    _check_role_name(role, f"{where}.agent")

    model_tier = _enum_value(ModelTier, raw.get("model_tier", "complex"), f"{where}.model_tier")
    kind = _enum_value(PhaseKind, raw.get("phase_type", "standard"), f"{where}.phase_type")
    max_turns = None
    if "max_turns" in raw:
        max_turns = _typed(raw["max_turns"], int, f"{where}.max_turns")
        if max_turns < 1:
            raise TopologyError(f"{where}.max_turns: must be at least 1, got {max_turns}")

    retry = _parse_retry(raw["retry"], f"{where}.retry") if "retry" in raw else None
    if kind is PhaseKind.CORRECTIVE_LOOP and retry is None:
        raise TopologyError(f"{where}: corrective-loop phase requires a [phases.retry] table")
    if kind is not PhaseKind.CORRECTIVE_LOOP and retry is not None:
        raise TopologyError(
            f"{where}: [phases.retry] is only valid on corrective-loop phases "
            f"(phase_type is '{kind.value}')"
        )

    pre_validation = None
    if "pre_validation" in raw:
        pre_validation = _parse_validation(raw["pre_validation"], f"{where}.pre_validation")
    post_validation = None
    if "post_validation" in raw:
        post_validation = _parse_validation(raw["post_validation"], f"{where}.post_validation")

    return Phase(
        name=name,
        role=role,
        model_tier=model_tier,
        max_turns=max_turns,
        kind=kind,
        retry=retry,
        pre_validation=pre_validation,
        post_validation=post_validation,
    )


def topology_from_dict(data: Mapping[str, Any]) -> Topology:
    header = _require(data, "topology", dict, "document")
    meta = TopologyMeta(
        name=_require(header, "name", str, "[topology]"),
        description=_typed(header.get("description", ""), str, "[topology].description"),
        version=_typed(header.get("version", 1), int, "[topology].version"),
    )
    raw_phases = _require(data, "phases", list, "document")
    if not raw_phases:
        raise TopologyError("document: topology must define at least one phase")
    phases = tuple(_parse_phase(raw, index) for index, raw in enumerate(raw_phases))
    seen: set[str] = set()
    for phase in phases:
        if phase.name in seen:
            raise TopologyError(f"duplicate phase name '{phase.name}'")
        seen.add(phase.name)
    return Topology(meta=meta, phases=phases)


def parse_topology(text: str) -> Topology:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise TopologyError(f"failed to parse {TOPOLOGY_FILE}: {exc}") from exc
    return topology_from_dict(data)


def _validation_lines(section: str, validation: ValidationConfig) -> list[str]:
    lines = ["", f"[phases.{section}]", f"type = {toml_value(validation.type.value)}"]
    if validation.paths:
        lines.append(f"paths = {toml_value(validation.paths)}")
    if validation.patterns:
        lines.append(f"patterns = {toml_value(validation.patterns)}")
    return lines


def dumps_topology(topology: Topology) -> str:
    lines = [
        "[topology]",
        f"name = {toml_value(topology.meta.name)}",
        f"description = {toml_value(topology.meta.description)}",
        f"version = {toml_value(topology.meta.version)}",
    ]
    for phase in topology.phases:
        lines.extend(
            [
                "",
                "[[phases]]",
                f"name = {toml_value(phase.name)}",
                f"agent = {toml_value(phase.role)}",
                f"model_tier = {toml_value(phase.model_tier.value)}",
                f"phase_type = {toml_value(phase.kind.value)}",
            ]
        )
        if phase.max_turns is not None:
            lines.append(f"max_turns = {toml_value(phase.max_turns)}")
        if phase.retry is not None:
            lines.extend(
                [
                    "",
                    "[phases.retry]",
                    f"max = {toml_value(phase.retry.max)}",
                    f"fix_agent = {toml_value(phase.retry.fix_agent)}",
                    f"fatal = {toml_value(phase.retry.fatal)}",
                    f"verdict_key = {toml_value(phase.retry.verdict_key)}",
                ]
            )
        if phase.pre_validation is not None:
            lines.extend(_validation_lines("pre_validation", phase.pre_validation))
        if phase.post_validation is not None:
            lines.extend(_validation_lines("post_validation", phase.post_validation))
    return "\n".join(lines) + "\n"


def topology_dir(data_dir: Path, name: str) -> Path:
    return data_dir / "topologies" / name


def deploy_bundled_topology(
    data_dir: Path,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> None:
    """Copy the bundled development topology into ``data_dir``.

    Existing files are left untouched so user customizations survive.
    """
    base = topology_dir(data_dir, DEFAULT_TOPOLOGY)
    agents_dir = base / AGENTS_DIR
    try:
        agents_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise TopologyError(f"failed to create topology dir {agents_dir}: {exc}") from exc

    bundled = resources.files("buildchain.topologies").joinpath(DEFAULT_TOPOLOGY)
    targets = [(bundled.joinpath(TOPOLOGY_FILE), base / TOPOLOGY_FILE)]
    for entry in bundled.joinpath(AGENTS_DIR).iterdir():
        if entry.name.endswith(".md"):
            targets.append((entry, agents_dir / entry.name))

    for source, target in targets:
        if target.exists():
            continue
        try:
            target.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
        except OSError as exc:
            raise TopologyError(f"failed to write {target}: {exc}") from exc
        if event_hook:
            event_hook({"event": "topology_file_deployed", "path": str(target)})


def load_topology(
    data_dir: Path,
    name: str,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> LoadedTopology:
    validate_topology_name(name)
    base = topology_dir(data_dir, name)
    if not base.exists():
        if name != DEFAULT_TOPOLOGY:
            raise TopologyError(f"topology '{name}' not found at {base}")
        deploy_bundled_topology(data_dir, event_hook=event_hook)

    toml_path = base / TOPOLOGY_FILE
    try:
        text = toml_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TopologyError(f"failed to read {toml_path}: {exc}") from exc
    topology = parse_topology(text)

    agents_dir = base / AGENTS_DIR
    roles: dict[str, str] = {}
    for role in topology.referenced_roles():
        role_path = agents_dir / f"{role}.md"
        try:
            roles[role] = role_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TopologyError(
                f"role '{role}' referenced but file not found: {role_path} ({exc.strerror})"
            ) from exc

    # Unreferenced role files (e.g. the intake role) ride along with the topology.
    if agents_dir.is_dir():
        for extra in sorted(agents_dir.glob("*.md")):
            if extra.stem in roles:
                continue
            try:
                roles[extra.stem] = extra.read_text(encoding="utf-8")
            except OSError as exc:
                raise TopologyError(f"failed to read role file {extra}: {exc}") from exc

    return LoadedTopology(topology=topology, roles=MappingProxyType(roles))
