"""Parsers for the line-oriented text the build roles emit.

Every parser here is pure: it takes the raw role output and returns a value
object or ``None``. None of them raise on malformed input.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

QUESTIONS_MARKER = "DISCOVERY_QUESTIONS"
COMPLETE_MARKER = "DISCOVERY_COMPLETE"
SUMMARY_MARKER = "BUILD_COMPLETE"
ROUND_HEADER = "ROUND:"


@dataclass(slots=True)
class ProjectBrief:
    name: str
    language: str = "Rust"
    database: str = "SQLite"
    frontend: bool = False
    scope: str = "A software project."
    components: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    passed: bool
    reason: str = ""


@dataclass(slots=True)
class BuildSummary:
    project: str
    location: str = ""
    language: str = ""
    summary: str = ""
    usage: str = ""
    skill: str | None = None


class IntakeKind(enum.Enum):
    QUESTIONS = "questions"
    BRIEF = "brief"


@dataclass(frozen=True, slots=True)
class IntakeOutput:
    kind: IntakeKind
    text: str


def _field(text: str, key: str) -> str | None:
    prefix = f"{key}:"
    for line in text.splitlines():
        if line.startswith(prefix):
            return line[len(prefix) :].strip()
    return None


def is_safe_project_name(name: str) -> bool:
    return bool(name) and not (
        "/" in name or "\\" in name or ".." in name or name.startswith(".")
    )


def parse_project_brief(text: str) -> ProjectBrief | None:
    name = _field(text, "PROJECT_NAME")
    if name is None or not is_safe_project_name(name):
        return None

    components: list[str] = []
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if line.startswith("COMPONENTS:"):
            for item in lines[index + 1 :]:
                if not item.startswith("- "):
                    break
                components.append(item[2:].strip())
            break

    frontend = _field(text, "FRONTEND")
    return ProjectBrief(
        name=name,
        language=_field(text, "LANGUAGE") or "Rust",
        database=_field(text, "DATABASE") or "SQLite",
        frontend=bool(frontend) and frontend.lower().startswith("y"),
        scope=_field(text, "SCOPE") or "A software project.",
        components=components,
    )


def parse_verification_result(text: str, verdict_key: str = "VERIFICATION") -> VerificationResult:
    if f"{verdict_key}: PASS" in text:
        return VerificationResult(passed=True)
    reason = _field(text, "REASON")
    if reason is not None:
        return VerificationResult(passed=False, reason=reason)
    if f"{verdict_key}: FAIL" in text:
        return VerificationResult(
            passed=False,
            reason=f"{verdict_key.title()} failed (no reason provided)",
        )
    return VerificationResult(
        passed=False,
        reason=f"No {verdict_key.lower()} marker found in response",
    )


def parse_build_summary(text: str) -> BuildSummary | None:
    if SUMMARY_MARKER not in text:
        return None
    return BuildSummary(
        project=_field(text, "PROJECT") or "",
        location=_field(text, "LOCATION") or "",
        language=_field(text, "LANGUAGE") or "",
        summary=_field(text, "SUMMARY") or "",
        usage=_field(text, "USAGE") or "",
        skill=_field(text, "SKILL") or None,
    )


def parse_intake_output(text: str) -> IntakeOutput:
    """Classify intake role output.

    Questions win over completion when both markers appear; output with no
    marker at all is taken as the finished brief.
    """
    if QUESTIONS_MARKER in text:
        questions = text.split(QUESTIONS_MARKER, 1)[1].strip()
        return IntakeOutput(kind=IntakeKind.QUESTIONS, text=questions)
    if COMPLETE_MARKER in text:
        return IntakeOutput(kind=IntakeKind.BRIEF, text=text.split(COMPLETE_MARKER, 1)[1].strip())
    return IntakeOutput(kind=IntakeKind.BRIEF, text=text.strip())


def parse_round(transcript: str) -> int:
    """Round number from the first ``ROUND:`` header, or 0 when absent."""
    for line in transcript.splitlines():
        if line.startswith(ROUND_HEADER):
            try:
                return int(line[len(ROUND_HEADER) :].strip())
            except ValueError:
                return 0
    return 0
