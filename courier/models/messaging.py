"""Messaging models: contacts, threads, messages, outbox and provider health.

The models mirror the DDL maintained in the migrations (see
``courier/migrations/001_create_messaging_tables.py``) so ORM usage and the
migrated schema stay consistent.
"""

from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Any, List

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class UTCDateTime(TypeDecorator[dt.datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on storage; normalising on both sides keeps comparisons
    against ``_utcnow()`` valid across dialects.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return _as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return _as_utc(value)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Channel(str, enum.Enum):
    SMS = "sms"
    EMAIL = "email"
    DM = "dm"
    CALL = "call"
    WEB = "web"

    @property
    def is_phone(self) -> bool:
        return self in (Channel.SMS, Channel.CALL)


class ThreadStatus(str, enum.Enum):
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"
    ARCHIVED = "archived"


#: Statuses eligible to be the "current" thread for a (contact, channel) pair.
CURRENT_THREAD_STATUSES = (
    ThreadStatus.OPEN.value,
    ThreadStatus.PENDING.value,
    ThreadStatus.CLOSED.value,
)


class ParticipantType(str, enum.Enum):
    CONTACT = "contact"
    SYSTEM = "system"
    TEAM = "team"


class Direction(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class Contact(Base):
    """Minimal contact identity used to anchor conversation threads."""

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_email", "email"),
        Index("ix_contacts_phone_e164", "phone_e164"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    first_name: Mapped[str] = mapped_column(String(length=120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(length=120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(length=320))
    phone: Mapped[str | None] = mapped_column(String(length=64))
    phone_e164: Mapped[str | None] = mapped_column(String(length=32))
    source: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="inbound", server_default=text("'inbound'")
    )
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()


class Lead(Base):
    """Lead row kept only for thread linkage."""

    __tablename__ = "leads"
    __table_args__ = (Index("ix_leads_contact_id", "contact_id"),)

    id: Mapped[uuid.UUID] = _uuid_pk()
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ConversationThread(Base):
    """Conversation context grouping messages for a (contact, channel) pair.

    Attributes:
        status: One of :class:`ThreadStatus`. Only one thread per pair may be in
            a :data:`CURRENT_THREAD_STATUSES` state; the partial unique index
            turns a concurrent first-create into an ``IntegrityError``.
        last_message_preview: First 140 characters of the latest message.
    """

    __tablename__ = "conversation_threads"
    __table_args__ = (
        Index(
            "uq_conversation_threads_current",
            "contact_id",
            "channel",
            unique=True,
            postgresql_where=text("status IN ('open', 'pending', 'closed')"),
            sqlite_where=text("status IN ('open', 'pending', 'closed')"),
        ),
        Index("ix_conversation_threads_last_message_at", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL")
    )
    channel: Mapped[str] = mapped_column(String(length=16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="open", server_default=text("'open'")
    )
    subject: Mapped[str | None] = mapped_column(String(length=255))
    last_message_preview: Mapped[str | None] = mapped_column(String(length=140))
    last_message_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    participants: Mapped[List["ConversationParticipant"]] = relationship(
        back_populates="thread",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ConversationParticipant(Base):
    """A party to a thread: the contact, the system sender or a team member."""

    __tablename__ = "conversation_participants"
    __table_args__ = (
        Index("ix_conversation_participants_thread_type", "thread_id", "participant_type"),
        Index("ix_conversation_participants_address", "external_address"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversation_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    participant_type: Mapped[str] = mapped_column(String(length=16), nullable=False)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="SET NULL")
    )
    display_name: Mapped[str | None] = mapped_column(String(length=255))
    external_address: Mapped[str | None] = mapped_column(String(length=320))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    thread: Mapped[ConversationThread] = relationship(back_populates="participants")


class ConversationMessage(Base):
    """A single inbound or outbound message on a thread.

    ``delivery_status`` only carries lifecycle meaning for outbound rows;
    inbound rows are recorded as delivered on arrival.
    """

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_messages_thread_id", "thread_id"),
        Index(
            "ix_conversation_messages_provider_message",
            "provider",
            "provider_message_id",
        ),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversation_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    participant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversation_participants.id", ondelete="SET NULL")
    )
    direction: Mapped[str] = mapped_column(String(length=16), nullable=False)
    channel: Mapped[str] = mapped_column(String(length=16), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(length=255))
    body: Mapped[str] = mapped_column(Text(), nullable=False)
    media_urls: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    to_address: Mapped[str | None] = mapped_column(String(length=320))
    from_address: Mapped[str | None] = mapped_column(String(length=320))
    provider: Mapped[str | None] = mapped_column(String(length=64))
    provider_message_id: Mapped[str | None] = mapped_column(String(length=255))
    delivery_status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="queued", server_default=text("'queued'")
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    sent_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    received_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())

    @property
    def display_at(self) -> dt.datetime:
        """Ordering key shared by inbound and outbound rows."""

        return self.sent_at or self.received_at or self.created_at


class MessageDeliveryEvent(Base):
    """Append-only audit row for each accepted delivery-status transition."""

    __tablename__ = "message_delivery_events"
    __table_args__ = (Index("ix_message_delivery_events_message_id", "message_id"),)

    id: Mapped[uuid.UUID] = _uuid_pk()
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversation_messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text())
    provider: Mapped[str | None] = mapped_column(String(length=64))
    occurred_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)


class OutboxTask(Base):
    """Durable side-effect task consumed at least once by the drainer.

    A task is pending while ``processed_at`` is null and ``next_attempt_at`` is
    null or in the past.
    """

    __tablename__ = "outbox_tasks"
    __table_args__ = (
        Index("ix_outbox_tasks_pending", "processed_at", "next_attempt_at"),
        Index("ix_outbox_tasks_type", "type"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    next_attempt_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    processed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())

    def is_pending(self, now: dt.datetime | None = None) -> bool:
        if self.processed_at is not None:
            return False
        if self.next_attempt_at is None:
            return True
        return self.next_attempt_at <= (now or _utcnow())


class ProviderHealthRecord(Base):
    """Last known success and failure timestamps for a channel provider."""

    __tablename__ = "provider_health"

    provider: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    last_success_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_failure_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_failure_detail: Mapped[str | None] = mapped_column(Text())
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )


__all__ = [
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
    "UTCDateTime",
]
