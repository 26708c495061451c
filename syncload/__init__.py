"""Concurrent WebSocket load generator for real-time sync services."""

from .config import LoadConfig, RunConfig, SessionConfig, TargetConfig
from .metrics import Counter, Distribution, MetricsRegistry, Rate, Threshold
from .payload import PayloadGenerator, PayloadMode
from .scheduler import RunSummary, Scheduler, run_load
from .session import Session, SessionState, VirtualUser

__all__ = [
    "Counter",
    "Distribution",
    "LoadConfig",
    "MetricsRegistry",
    "PayloadGenerator",
    "PayloadMode",
    "Rate",
    "RunConfig",
    "RunSummary",
    "Scheduler",
    "Session",
    "SessionConfig",
    "SessionState",
    "TargetConfig",
    "Threshold",
    "VirtualUser",
    "run_load",
]

__version__ = "0.1.0"
