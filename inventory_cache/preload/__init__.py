"""
Background cache warming guarded by a failure-triggered circuit breaker.
"""
from .breaker import BreakerState, PreloadState
from .scheduler import PreloadScheduler, PreloadSummary

__all__ = [
    "BreakerState",
    "PreloadState",
    "PreloadScheduler",
    "PreloadSummary",
]
