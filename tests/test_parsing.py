import pytest

from buildchain.parsing import (
    IntakeKind,
    parse_build_summary,
    parse_intake_output,
    parse_project_brief,
    parse_round,
    parse_verification_result,
)


def test_parse_project_brief_full() -> None:
    text = (
        "Here is the brief.\n"
        "PROJECT_NAME: price-tracker\n"
        "LANGUAGE: Python\n"
        "DATABASE: PostgreSQL\n"
        "FRONTEND: Yes\n"
        "SCOPE: Tracks prices.\n"
        "COMPONENTS:\n"
        "- scraper\n"
        "- alerts \n"
        "Trailing note"
    )

    brief = parse_project_brief(text)

    assert brief is not None
    assert brief.name == "price-tracker"
    assert brief.language == "Python"
    assert brief.database == "PostgreSQL"
    assert brief.frontend is True
    assert brief.scope == "Tracks prices."
    assert brief.components == ["scraper", "alerts"]


def test_parse_project_brief_defaults() -> None:
    brief = parse_project_brief("PROJECT_NAME: tool\nFRONTEND: no")

    assert brief is not None
    assert brief.language == "Rust"
    assert brief.database == "SQLite"
    assert brief.frontend is False
    assert brief.scope == "A software project."
    assert brief.components == []


@pytest.mark.parametrize(
    "name",
    ["", "../escape", "a/b", "a\\b", ".hidden"],
)
def test_parse_project_brief_rejects_unsafe_names(name: str) -> None:
    assert parse_project_brief(f"PROJECT_NAME: {name}\nLANGUAGE: Go") is None


def test_parse_project_brief_requires_name() -> None:
    assert parse_project_brief("LANGUAGE: Go") is None


def test_verification_pass() -> None:
    result = parse_verification_result("All good.\nVERIFICATION: PASS")

    assert result.passed is True


def test_verification_fail_with_reason() -> None:
    result = parse_verification_result("VERIFICATION: FAIL\nREASON: tests do not compile")

    assert result.passed is False
    assert result.reason == "tests do not compile"


def test_verification_fail_without_reason() -> None:
    result = parse_verification_result("VERIFICATION: FAIL")

    assert result.reason == "Verification failed (no reason provided)"


def test_verification_missing_marker() -> None:
    result = parse_verification_result("I ran the tests.")

    assert result.passed is False
    assert result.reason == "No verification marker found in response"


def test_verification_custom_verdict_key() -> None:
    assert parse_verification_result("REVIEW: PASS", "REVIEW").passed is True
    assert parse_verification_result("VERIFICATION: PASS", "REVIEW").passed is False
    assert parse_verification_result("REVIEW: FAIL", "REVIEW").reason == (
        "Review failed (no reason provided)"
    )


def test_parse_build_summary() -> None:
    text = (
        "BUILD_COMPLETE\n"
        "PROJECT: price-tracker\n"
        "LOCATION: /tmp/builds/price-tracker\n"
        "LANGUAGE: Python\n"
        "SUMMARY: Tracks prices.\n"
        "USAGE: price-tracker watch\n"
        "SKILL: \n"
    )

    summary = parse_build_summary(text)

    assert summary is not None
    assert summary.project == "price-tracker"
    assert summary.location == "/tmp/builds/price-tracker"
    assert summary.usage == "price-tracker watch"
    assert summary.skill is None


def test_parse_build_summary_requires_marker() -> None:
    assert parse_build_summary("PROJECT: x\nSUMMARY: y") is None


def test_parse_intake_output_questions() -> None:
    output = parse_intake_output("Thinking...\nDISCOVERY_QUESTIONS\n1. Which language?\n")

    assert output.kind is IntakeKind.QUESTIONS
    assert output.text == "1. Which language?"


def test_parse_intake_output_complete() -> None:
    output = parse_intake_output("DISCOVERY_COMPLETE\nA Python CLI that tracks prices.")

    assert output.kind is IntakeKind.BRIEF
    assert output.text == "A Python CLI that tracks prices."


def test_parse_intake_output_without_marker_is_brief() -> None:
    output = parse_intake_output("  Build a todo app.  ")

    assert output.kind is IntakeKind.BRIEF
    assert output.text == "Build a todo app."


@pytest.mark.parametrize(
    ("transcript", "expected"),
    [
        ("ROUND: 2\nDESCRIPTION: x", 2),
        ("DESCRIPTION: x\nROUND: 3\n", 3),
        ("ROUND: two", 0),
        ("DESCRIPTION: x", 0),
        ("", 0),
    ],
)
def test_parse_round(transcript: str, expected: int) -> None:
    assert parse_round(transcript) == expected
