from __future__ import annotations

from pathlib import Path

from buildchain.topology import ValidationConfig, ValidationType

DEFAULT_MAX_DEPTH = 5
SKIPPED_DIRS = {".git", "node_modules", "target", "__pycache__", ".venv"}


def _unsafe_path(path: str) -> bool:
    return ".." in path or path.startswith("/") or "\\" in path


def _scan_for_patterns(root: Path, patterns: tuple[str, ...], max_depth: int) -> bool:
    pending = [(root, 0)]
    while pending:
        directory, depth = pending.pop()
        try:
            entries = list(directory.iterdir())
        except OSError:
            continue
        for entry in entries:
            name = entry.name
            if entry.is_dir():
                if name.startswith(".") or name in SKIPPED_DIRS:
                    continue
                if depth + 1 < max_depth:
                    pending.append((entry, depth + 1))
                continue
            if any(pattern in name for pattern in patterns):
                return True
    return False


def check_validation(
    config: ValidationConfig,
    project_dir: Path,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> str | None:
    """Return None when ``config`` holds for ``project_dir``, else a failure message."""
    match config.type:
        case ValidationType.FILE_EXISTS:
            for path in config.paths:
                if _unsafe_path(path):
                    return f"validation path '{path}' is not allowed (must be relative, no '..')"
                if not (project_dir / path).exists():
                    return f"required file {path} was not generated"
            return None
        case ValidationType.FILE_PATTERNS:
            if _scan_for_patterns(project_dir, config.patterns, max_depth):
                return None
            return f"no files matching patterns {list(config.patterns)} found in {project_dir}"
