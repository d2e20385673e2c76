"""Outbox queue, task kinds and the polling drainer."""

from .drainer import (
    DrainStats,
    HandlerRegistry,
    HandlerResult,
    OutboxDrainer,
    TaskContext,
    default_registry,
    register_handler,
)
from .queue import OutboxQueue
from .tasks import TaskKind, parse_payload

__all__ = [
    "DrainStats",
    "HandlerRegistry",
    "HandlerResult",
    "OutboxDrainer",
    "OutboxQueue",
    "TaskContext",
    "TaskKind",
    "default_registry",
    "parse_payload",
    "register_handler",
]
