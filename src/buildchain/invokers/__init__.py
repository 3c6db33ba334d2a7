from buildchain.invokers.base import (
    CapabilityInvoker,
    InvocationError,
    InvocationProcessError,
    InvocationTimeoutError,
)
from buildchain.invokers.claude import ClaudeCodeInvoker
from buildchain.invokers.resilient import RetryingInvoker, RetryPolicy

__all__ = [
    "CapabilityInvoker",
    "ClaudeCodeInvoker",
    "InvocationError",
    "InvocationProcessError",
    "InvocationTimeoutError",
    "RetryPolicy",
    "RetryingInvoker",
]
