from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from buildchain.invokers.base import CapabilityInvoker, InvocationError, InvocationProcessError


class ClaudeCodeInvoker(CapabilityInvoker):
    """Runs a role through the Claude Code CLI in non-interactive mode.

    Role instructions are not passed on the command line; the CLI picks them
    up from ``<working_directory>/.claude/agents/<role>.md``, which the
    workspace manager materializes before any invocation.
    """

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        default_max_turns: int = 100,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.default_max_turns = default_max_turns
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> list[str]:
        turns = max_turns if max_turns is not None else self.default_max_turns
        command = [
            self.binary,
            "--agent",
            role,
            "-p",
            prompt,
            "--output-format",
            "json",
            "--max-turns",
            str(turns),
        ]
        if model.strip():
            command.extend(["--model", model.strip()])
        command.append("--dangerously-skip-permissions")
        return command

    @staticmethod
    def _extract_result(raw: str) -> str:
        text = raw.strip()
        if not text:
            return ""
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            if payload.get("is_error") is True:
                raise InvocationError(
                    f"Claude reported an error result: {str(payload.get('result', ''))[:400]}",
                    retriable=True,
                )
            result = payload.get("result")
            if isinstance(result, str):
                return result
            content = payload.get("content")
            if isinstance(content, str):
                return content
        return text

    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> str:
        command = self.build_command(role, prompt, model=model, max_turns=max_turns)
        self._emit(
            {
                "event": "claude_cli_start",
                "role": role,
                "model": model,
                "max_turns": command[command.index("--max-turns") + 1],
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise InvocationProcessError(
                f"Claude binary not found: {self.binary}",
                role=role,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # A timed-out agent must not keep writing into the project.
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            self._emit({"event": "claude_cli_killed", "role": role})
            raise
        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        return_code = process.returncode
        self._emit({"event": "claude_cli_exit", "role": role, "exit_code": return_code})
        if return_code != 0:
            raise InvocationError(
                f"Claude CLI failed for role '{role}' with exit code {return_code}: "
                f"{stderr_text[:400]}",
                role=role,
                exit_code=return_code,
                retriable=True,
            )
        try:
            return self._extract_result(stdout_text)
        except InvocationError as exc:
            exc.role = role
            raise
