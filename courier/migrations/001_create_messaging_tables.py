"""Create contacts, conversation, outbox and provider health tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_create_messaging_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_CURRENT_THREAD = sa.text("status IN ('open', 'pending', 'closed')")


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        _UUID,
        nullable=False,
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "contacts",
        _id_column(),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("phone_e164", sa.String(length=32), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'inbound'")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_contacts_email", "contacts", ["email"])
    op.create_index("ix_contacts_phone_e164", "contacts", ["phone_e164"])

    op.create_table(
        "leads",
        _id_column(),
        sa.Column(
            "contact_id",
            _UUID,
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_leads_contact_id", "leads", ["contact_id"])

    op.create_table(
        "conversation_threads",
        _id_column(),
        sa.Column(
            "contact_id",
            _UUID,
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("lead_id", _UUID, sa.ForeignKey("leads.id", ondelete="SET NULL"), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'open'")),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("last_message_preview", sa.String(length=140), nullable=True),
        _timestamp("last_message_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "uq_conversation_threads_current",
        "conversation_threads",
        ["contact_id", "channel"],
        unique=True,
        postgresql_where=_CURRENT_THREAD,
        sqlite_where=_CURRENT_THREAD,
    )
    op.create_index(
        "ix_conversation_threads_last_message_at",
        "conversation_threads",
        ["last_message_at"],
    )

    op.create_table(
        "conversation_participants",
        _id_column(),
        sa.Column(
            "thread_id",
            _UUID,
            sa.ForeignKey("conversation_threads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("participant_type", sa.String(length=16), nullable=False),
        sa.Column("contact_id", _UUID, sa.ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("external_address", sa.String(length=320), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_conversation_participants_thread_type",
        "conversation_participants",
        ["thread_id", "participant_type"],
    )
    op.create_index(
        "ix_conversation_participants_address",
        "conversation_participants",
        ["external_address"],
    )

    op.create_table(
        "conversation_messages",
        _id_column(),
        sa.Column(
            "thread_id",
            _UUID,
            sa.ForeignKey("conversation_threads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "participant_id",
            _UUID,
            sa.ForeignKey("conversation_participants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("media_urls", _JSON, nullable=False),
        sa.Column("to_address", sa.String(length=320), nullable=True),
        sa.Column("from_address", sa.String(length=320), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column(
            "delivery_status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("metadata", _JSON, nullable=False),
        _timestamp("created_at"),
        _timestamp("sent_at", nullable=True),
        _timestamp("received_at", nullable=True),
    )
    op.create_index("ix_conversation_messages_thread_id", "conversation_messages", ["thread_id"])
    op.create_index(
        "ix_conversation_messages_provider_message",
        "conversation_messages",
        ["provider", "provider_message_id"],
    )

    op.create_table(
        "message_delivery_events",
        _id_column(),
        sa.Column(
            "message_id",
            _UUID,
            sa.ForeignKey("conversation_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=True),
        _timestamp("occurred_at"),
    )
    op.create_index(
        "ix_message_delivery_events_message_id",
        "message_delivery_events",
        ["message_id"],
    )

    op.create_table(
        "outbox_tasks",
        _id_column(),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("next_attempt_at", nullable=True),
        _timestamp("processed_at", nullable=True),
    )
    op.create_index("ix_outbox_tasks_pending", "outbox_tasks", ["processed_at", "next_attempt_at"])
    op.create_index("ix_outbox_tasks_type", "outbox_tasks", ["type"])

    op.create_table(
        "provider_health",
        sa.Column("provider", sa.String(length=64), primary_key=True),
        _timestamp("last_success_at", nullable=True),
        _timestamp("last_failure_at", nullable=True),
        sa.Column("last_failure_detail", sa.Text(), nullable=True),
        _timestamp("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("provider_health")
    op.drop_index("ix_outbox_tasks_type", table_name="outbox_tasks")
    op.drop_index("ix_outbox_tasks_pending", table_name="outbox_tasks")
    op.drop_table("outbox_tasks")
    op.drop_index("ix_message_delivery_events_message_id", table_name="message_delivery_events")
    op.drop_table("message_delivery_events")
    op.drop_index("ix_conversation_messages_provider_message", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_thread_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversation_participants_address", table_name="conversation_participants")
    op.drop_index("ix_conversation_participants_thread_type", table_name="conversation_participants")
    op.drop_table("conversation_participants")
    op.drop_index("ix_conversation_threads_last_message_at", table_name="conversation_threads")
    op.drop_index("uq_conversation_threads_current", table_name="conversation_threads")
    op.drop_table("conversation_threads")
    op.drop_index("ix_leads_contact_id", table_name="leads")
    op.drop_table("leads")
    op.drop_index("ix_contacts_phone_e164", table_name="contacts")
    op.drop_index("ix_contacts_email", table_name="contacts")
    op.drop_table("contacts")
