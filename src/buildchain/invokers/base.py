from __future__ import annotations

from abc import ABC, abstractmethod


class InvocationError(RuntimeError):
    """Raised when the text-generation capability fails to produce output."""

    def __init__(
        self,
        message: str,
        *,
        role: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.exit_code = exit_code
        self.retriable = retriable


class InvocationTimeoutError(InvocationError):
    """Raised when an invocation exceeds the configured timeout."""


class InvocationProcessError(InvocationError):
    """Raised when the invoker process cannot be started or read."""


class CapabilityInvoker(ABC):
    @abstractmethod
    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        model: str,
        max_turns: int | None = None,
    ) -> str:
        """Run ``role`` with ``prompt`` and return the full text output."""
