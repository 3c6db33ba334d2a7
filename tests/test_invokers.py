import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from buildchain.invokers import (
    CapabilityInvoker,
    ClaudeCodeInvoker,
    InvocationError,
    InvocationProcessError,
    RetryingInvoker,
    RetryPolicy,
)


class FlakyInvoker(CapabilityInvoker):
    def __init__(self, failures: int, *, retriable: bool = True) -> None:
        self.failures = failures
        self.retriable = retriable
        self.calls = 0

    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> str:
        _ = prompt, model, max_turns
        self.calls += 1
        if self.calls <= self.failures:
            raise InvocationError("boom", role=role, retriable=self.retriable)
        return "ok"


class SlowInvoker(CapabilityInvoker):
    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> str:
        _ = role, prompt, model, max_turns
        await asyncio.sleep(5)
        return "late"


class FakeProcess:
    def __init__(self, stdout: bytes, stderr: bytes = b"", returncode: int = 0) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        return self._stdout, self._stderr


def _policy(max_attempts: int = 3, timeout: float = 5.0) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, delay_seconds=0.0, timeout_seconds=timeout)


def test_claude_build_command_shape() -> None:
    invoker = ClaudeCodeInvoker(binary="claude", working_directory=Path("."))

    command = invoker.build_command("build-qa", "verify", model="claude-sonnet-4-5", max_turns=7)

    assert command[:5] == ["claude", "--agent", "build-qa", "-p", "verify"]
    assert command[command.index("--output-format") + 1] == "json"
    assert command[command.index("--max-turns") + 1] == "7"
    assert command[command.index("--model") + 1] == "claude-sonnet-4-5"
    assert command[-1] == "--dangerously-skip-permissions"


def test_claude_build_command_defaults() -> None:
    invoker = ClaudeCodeInvoker(default_max_turns=100)

    command = invoker.build_command("build-qa", "verify", model="  ")

    assert command[command.index("--max-turns") + 1] == "100"
    assert "--model" not in command


def test_claude_invoke_returns_result_field(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}
    events: list[dict[str, Any]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess(json.dumps({"result": "VERIFICATION: PASS"}).encode("utf-8"))

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    invoker = ClaudeCodeInvoker(working_directory=Path("/tmp/ws"), event_hook=events.append)

    output = asyncio.run(invoker.invoke("build-qa", "verify", model="m"))

    assert output == "VERIFICATION: PASS"
    assert captured["cwd"] == "/tmp/ws"
    assert captured["args"][1:3] == ("--agent", "build-qa")
    assert [event["event"] for event in events] == ["claude_cli_start", "claude_cli_exit"]


def test_claude_invoke_returns_raw_text_when_not_json(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(b"plain output\n")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    output = asyncio.run(ClaudeCodeInvoker().invoke("r", "p", model="m"))

    assert output == "plain output"


def test_claude_invoke_error_result_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(json.dumps({"is_error": True, "result": "max turns"}).encode("utf-8"))

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(InvocationError, match="max turns") as excinfo:
        asyncio.run(ClaudeCodeInvoker().invoke("build-qa", "p", model="m"))
    assert excinfo.value.role == "build-qa"


def test_claude_invoke_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(b"", b"rate limited", returncode=2)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(InvocationError, match="exit code 2") as excinfo:
        asyncio.run(ClaudeCodeInvoker().invoke("r", "p", model="m"))
    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True


def test_claude_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(InvocationProcessError) as excinfo:
        asyncio.run(ClaudeCodeInvoker(binary="missing-claude").invoke("r", "p", model="m"))
    assert excinfo.value.retriable is False


class HangingProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        await asyncio.sleep(5)
        return b"", b""

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return -9


def test_timeout_kills_the_agent_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = HangingProcess()
    events: list[dict[str, Any]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> HangingProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    invoker = RetryingInvoker(
        ClaudeCodeInvoker(event_hook=events.append), _policy(max_attempts=1, timeout=0.05)
    )

    with pytest.raises(InvocationError, match="timed out"):
        asyncio.run(invoker.invoke("build-qa", "p", model="m"))

    assert process.killed is True
    assert "claude_cli_killed" in [event["event"] for event in events]


def test_timed_out_binary_leaves_no_late_writes(tmp_path: Path) -> None:
    script = tmp_path / "slow-claude"
    script.write_text('#!/bin/sh\nsleep 1\ntouch "$PWD/late-write"\n', encoding="utf-8")
    script.chmod(0o755)
    workdir = tmp_path / "work"
    workdir.mkdir()
    invoker = RetryingInvoker(
        ClaudeCodeInvoker(binary=str(script), working_directory=workdir),
        _policy(max_attempts=1, timeout=0.2),
    )

    async def scenario() -> None:
        with pytest.raises(InvocationError, match="timed out"):
            await invoker.invoke("r", "p", model="m")
        await asyncio.sleep(1.5)

    asyncio.run(scenario())

    assert not (workdir / "late-write").exists()


def test_retrying_invoker_recovers_and_emits_events() -> None:
    events: list[dict[str, Any]] = []
    inner = FlakyInvoker(failures=2)
    invoker = RetryingInvoker(inner, _policy(), event_hook=events.append)

    assert asyncio.run(invoker.invoke("r", "p", model="m")) == "ok"
    assert inner.calls == 3
    names = [event["event"] for event in events]
    assert names.count("invoke_attempt_failed") == 2
    assert names.count("invoke_retry") == 2


def test_retrying_invoker_gives_up_after_max_attempts() -> None:
    inner = FlakyInvoker(failures=10)
    invoker = RetryingInvoker(inner, _policy(max_attempts=3))

    with pytest.raises(InvocationError, match="failed after 3 attempt") as excinfo:
        asyncio.run(invoker.invoke("build-qa", "p", model="m"))
    assert inner.calls == 3
    assert excinfo.value.retriable is False


def test_retrying_invoker_stops_on_non_retriable_error() -> None:
    inner = FlakyInvoker(failures=10, retriable=False)
    invoker = RetryingInvoker(inner, _policy(max_attempts=3))

    with pytest.raises(InvocationError, match="failed after 1 attempt"):
        asyncio.run(invoker.invoke("r", "p", model="m"))
    assert inner.calls == 1


def test_retrying_invoker_times_out_each_attempt() -> None:
    events: list[dict[str, Any]] = []
    invoker = RetryingInvoker(SlowInvoker(), _policy(max_attempts=2, timeout=0.01), events.append)

    with pytest.raises(InvocationError, match="timed out"):
        asyncio.run(invoker.invoke("r", "p", model="m"))
    failures = [event for event in events if event["event"] == "invoke_attempt_failed"]
    assert len(failures) == 2
