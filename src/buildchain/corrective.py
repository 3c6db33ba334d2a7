from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from buildchain.invokers.base import CapabilityInvoker
from buildchain.parsing import parse_verification_result
from buildchain.topology import Phase, RetryConfig

FixPromptBuilder = Callable[[str], str]


class CorrectiveLoopExhausted(RuntimeError):
    def __init__(self, message: str, *, phase: str, attempts: int, last_reason: str) -> None:
        super().__init__(message)
        self.phase = phase
        self.attempts = attempts
        self.last_reason = last_reason


@dataclass(slots=True)
class CorrectiveResult:
    attempts: int
    fixes: int
    output: str


async def run_corrective_loop(
    invoker: CapabilityInvoker,
    phase: Phase,
    retry: RetryConfig,
    model: str,
    verify_prompt: str,
    fix_prompt: FixPromptBuilder,
    *,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> CorrectiveResult:
    """Verify, fix, and re-verify until the verdict passes or ``retry.max`` is spent.

    The phase role is invoked at most ``retry.max`` times and the fix role at
    most ``retry.max - 1`` times, both with the phase's turn budget.
    ``fix_prompt`` receives the failure reason of the attempt that preceded
    it. Invoker errors propagate unchanged.
    """
    fixes = 0
    reason = ""
    for attempt in range(1, retry.max + 1):
        output = await invoker.invoke(
            phase.role, verify_prompt, model=model, max_turns=phase.max_turns
        )
        verdict = parse_verification_result(output, retry.verdict_key)
        if verdict.passed:
            return CorrectiveResult(attempts=attempt, fixes=fixes, output=output)

        reason = verdict.reason
        if event_hook:
            event_hook(
                {
                    "event": "verification_failed",
                    "phase": phase.name,
                    "attempt": attempt,
                    "max_attempts": retry.max,
                    "reason": reason,
                }
            )
        if attempt == retry.max:
            break

        await invoker.invoke(
            retry.fix_agent, fix_prompt(reason), model=model, max_turns=phase.max_turns
        )
        fixes += 1

    raise CorrectiveLoopExhausted(
        f"{phase.name} failed after {retry.max} attempt(s): {reason}",
        phase=phase.name,
        attempts=retry.max,
        last_reason=reason,
    )
