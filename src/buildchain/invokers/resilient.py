from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from buildchain.invokers.base import CapabilityInvoker, InvocationError, InvocationTimeoutError

InvokerEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 2.0
    timeout_seconds: float = 600.0


class RetryingInvoker(CapabilityInvoker):
    """Wraps an invoker with a per-attempt timeout and fixed-delay retries."""

    def __init__(
        self,
        inner: CapabilityInvoker,
        retry_policy: RetryPolicy,
        event_hook: InvokerEventHook | None = None,
    ) -> None:
        self.inner = inner
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> str:
        attempts = max(1, self.retry_policy.max_attempts)
        errors: list[str] = []
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._emit(
                    {
                        "event": "invoke_retry",
                        "role": role,
                        "attempt": attempt,
                        "delay_seconds": self.retry_policy.delay_seconds,
                    }
                )
                await asyncio.sleep(self.retry_policy.delay_seconds)
            try:
                return await asyncio.wait_for(
                    self.inner.invoke(role, prompt, model=model, max_turns=max_turns),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                error = InvocationTimeoutError(
                    f"Invocation timed out after {self.retry_policy.timeout_seconds:.1f}s",
                    role=role,
                )
                errors.append(f"[{attempt}/{attempts}] {error}")
                self._emit(
                    {
                        "event": "invoke_attempt_failed",
                        "role": role,
                        "attempt": attempt,
                        "error": str(error),
                        "retriable": True,
                    }
                )
            except InvocationError as exc:
                errors.append(f"[{attempt}/{attempts}] {exc}")
                self._emit(
                    {
                        "event": "invoke_attempt_failed",
                        "role": role,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    break

        summary = "; ".join(errors[-3:])
        raise InvocationError(
            f"role '{role}' failed after {len(errors)} attempt(s). {summary}",
            role=role,
            retriable=False,
        )
