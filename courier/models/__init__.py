"""SQLAlchemy declarative base and messaging models.

This package hosts the SQLAlchemy models used across the pipeline. It exposes a
single declarative ``Base`` class that migrations and tests import when
creating tables. Individual models live in dedicated modules within this
package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can import them via
# ``from courier.models import OutboxTask`` instead of touching private modules.
from .messaging import (  # noqa: E402
    CURRENT_THREAD_STATUSES,
    Channel,
    Contact,
    ConversationMessage,
    ConversationParticipant,
    ConversationThread,
    DeliveryStatus,
    Direction,
    Lead,
    MessageDeliveryEvent,
    OutboxTask,
    ParticipantType,
    ProviderHealthRecord,
    ThreadStatus,
)


__all__ = [
    "Base",
    "CURRENT_THREAD_STATUSES",
    "Channel",
    "Contact",
    "ConversationMessage",
    "ConversationParticipant",
    "ConversationThread",
    "DeliveryStatus",
    "Direction",
    "Lead",
    "MessageDeliveryEvent",
    "OutboxTask",
    "ParticipantType",
    "ProviderHealthRecord",
    "ThreadStatus",
]
