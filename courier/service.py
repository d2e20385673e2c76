"""Facade bundling the messaging operations over a single session.

The facade never commits. Callers own the transaction, typically through
:func:`courier.models.session.session_scope` or the router's service context.
"""

from __future__ import annotations

import datetime as dt
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .conversations.inbound import InboundMessage, InboundResult, InboundService
from .conversations.outbound import OutboundService, SendResult
from .delivery.health import HealthState, ProviderHealthService
from .delivery.reconciler import DeliveryReconciler, ReconcileOutcome
from .errors import NotFoundError
from .models import ConversationMessage, ConversationThread, ProviderHealthRecord
from .outbox.queue import OutboxQueue
from .outbox.tasks import TaskKind, TaskPayload


class MessagingService:
    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.queue = OutboxQueue(session)
        self.outbound = OutboundService(session, settings=self.settings)
        self.inbound = InboundService(session, settings=self.settings)
        self.reconciler = DeliveryReconciler(session)
        self.health = ProviderHealthService(session)

    # Outbox -------------------------------------------------------------------
    def enqueue(
        self,
        kind: TaskKind | str,
        payload: TaskPayload | Mapping[str, Any] | None,
        next_attempt_at: dt.datetime | None = None,
    ) -> uuid.UUID:
        return self.queue.enqueue(kind, payload, next_attempt_at)

    def schedule(
        self,
        kind: TaskKind | str,
        payload: TaskPayload | Mapping[str, Any],
        next_attempt_at: dt.datetime | None,
    ) -> uuid.UUID:
        return self.queue.schedule(kind, payload, next_attempt_at)

    # Messages -----------------------------------------------------------------
    def queue_outbound_message(
        self,
        contact_id: uuid.UUID,
        channel: str,
        body: str,
        *,
        to_address: str | None = None,
        subject: str | None = None,
        media_urls: Sequence[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
        dedupe_key: str | None = None,
        next_attempt_at: dt.datetime | None = None,
    ) -> uuid.UUID | None:
        return self.outbound.queue_outbound_message(
            contact_id,
            channel,
            body,
            to_address=to_address,
            subject=subject,
            media_urls=media_urls,
            metadata=metadata,
            dedupe_key=dedupe_key,
            next_attempt_at=next_attempt_at,
        )

    def retry_outbound_message(self, message_id: uuid.UUID) -> ConversationMessage:
        return self.outbound.retry_outbound_message(message_id)

    def record_send_result(self, message_id: uuid.UUID, result: SendResult) -> ReconcileOutcome:
        return self.outbound.record_send_result(message_id, result)

    def record_inbound_message(self, inbound: InboundMessage) -> InboundResult:
        return self.inbound.record_inbound_message(inbound)

    def list_thread_messages(self, thread_id: uuid.UUID, *, limit: int = 200) -> list[ConversationMessage]:
        """Messages of a thread in display order (sent, received, else created)."""

        if self.session.get(ConversationThread, thread_id) is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        display_at = func.coalesce(
            ConversationMessage.sent_at, ConversationMessage.received_at, ConversationMessage.created_at
        )
        stmt = (
            select(ConversationMessage)
            .where(ConversationMessage.thread_id == thread_id)
            .order_by(display_at.asc(), ConversationMessage.created_at.asc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    # Delivery -----------------------------------------------------------------
    def ingest_delivery_status(
        self,
        provider: str,
        provider_message_id: str,
        raw_status: str,
        *,
        detail: str | None = None,
        occurred_at: dt.datetime | None = None,
    ) -> ReconcileOutcome:
        return self.reconciler.ingest_delivery_status(
            provider, provider_message_id, raw_status, detail=detail, occurred_at=occurred_at
        )

    def get_provider_health(self, provider: str) -> HealthState:
        return self.health.get_provider_health(provider)

    def list_provider_health(self) -> list[tuple[ProviderHealthRecord, HealthState]]:
        return self.health.list_provider_health()


__all__ = ["MessagingService"]
