"""
llmstash Utils Package

Utility functions and helpers shared by the store components.
"""

from .retry import (
    ExponentialBackoff,
    FibonacciBackoff,
    FixedInterval,
    RetryOutcome,
    RetryPolicy,
    retry_call,
)

__all__ = [
    "ExponentialBackoff",
    "FibonacciBackoff",
    "FixedInterval",
    "RetryOutcome",
    "RetryPolicy",
    "retry_call",
]
