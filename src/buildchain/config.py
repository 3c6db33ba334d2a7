from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class PathsConfig:
    data_dir: str = "~/.buildchain"

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser().resolve()


@dataclass(slots=True)
class ModelsConfig:
    fast: str = "claude-haiku-4-5"
    complex: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class InvokerConfig:
    binary: str = "claude"
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0
    timeout_seconds: float = 600.0
    default_max_turns: int = 100


@dataclass(slots=True)
class SessionConfig:
    ttl_seconds: int = 1800
    max_rounds: int = 3
    intake_role: str = "build-discovery"
    intake_max_turns: int = 15


@dataclass(slots=True)
class PipelineConfig:
    topology: str = "development"
    validation_max_depth: int = 5


@dataclass(slots=True)
class BuildchainConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    invoker: InvokerConfig = field(default_factory=InvokerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def default(cls) -> BuildchainConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> BuildchainConfig:
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            models=ModelsConfig(**data.get("models", {})),
            invoker=InvokerConfig(**data.get("invoker", {})),
            session=SessionConfig(**data.get("session", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "data_dir": self.paths.data_dir,
            },
            "models": {
                "fast": self.models.fast,
                "complex": self.models.complex,
            },
            "invoker": {
                "binary": self.invoker.binary,
                "max_attempts": self.invoker.max_attempts,
                "retry_delay_seconds": self.invoker.retry_delay_seconds,
                "timeout_seconds": self.invoker.timeout_seconds,
                "default_max_turns": self.invoker.default_max_turns,
            },
            "session": {
                "ttl_seconds": self.session.ttl_seconds,
                "max_rounds": self.session.max_rounds,
                "intake_role": self.session.intake_role,
                "intake_max_turns": self.session.intake_max_turns,
            },
            "pipeline": {
                "topology": self.pipeline.topology,
                "validation_max_depth": self.pipeline.validation_max_depth,
            },
        }


def toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BuildchainConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "models", "invoker", "session", "pipeline"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BuildchainConfig:
    if not path.exists():
        return BuildchainConfig.default()
    return BuildchainConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: BuildchainConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
