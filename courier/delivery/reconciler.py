"""Apply asynchronous provider status callbacks to outbound messages.

Callbacks may arrive late, twice or out of order. Every transition goes through
:func:`courier.delivery.status.can_transition`, so the stored status only ever
moves forward along the lifecycle and a rejected callback leaves no trace
beyond a log line.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ConversationMessage, DeliveryStatus, MessageDeliveryEvent
from .health import ProviderHealthService
from .status import can_transition, normalize_raw_status

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ReconcileOutcome:
    applied: bool
    reason: str
    status: str | None = None
    message_id: uuid.UUID | None = None


class DeliveryReconciler:
    """Rank-guarded delivery status updates with an append-only audit trail."""

    def __init__(self, session: Session, *, health: ProviderHealthService | None = None) -> None:
        self._session = session
        self._health = health or ProviderHealthService(session)

    def ingest_delivery_status(
        self,
        provider: str,
        provider_message_id: str,
        raw_status: str,
        *,
        detail: str | None = None,
        occurred_at: dt.datetime | None = None,
    ) -> ReconcileOutcome:
        """Match a callback to its message and apply the mapped status.

        Unknown raw statuses and unmatched provider ids are no-ops so webhook
        callers can acknowledge them unconditionally.
        """

        status = normalize_raw_status(raw_status)
        if status is None:
            logger.info("delivery.ignored_status provider=%s status=%r", provider, raw_status)
            return ReconcileOutcome(applied=False, reason="unknown_status")

        message = self._session.scalars(
            select(ConversationMessage)
            .where(
                ConversationMessage.provider == provider,
                ConversationMessage.provider_message_id == provider_message_id,
            )
            .order_by(ConversationMessage.created_at.asc())
            .limit(1)
            .with_for_update()
        ).first()
        if message is None:
            logger.debug("delivery.no_match provider=%s provider_message_id=%s", provider, provider_message_id)
            return ReconcileOutcome(applied=False, reason="no_match", status=status)

        return self.apply(
            message,
            status,
            provider=provider,
            detail=f"{raw_status}: {detail}" if detail else raw_status,
            occurred_at=occurred_at,
        )

    def apply(
        self,
        message: ConversationMessage,
        status: str,
        *,
        provider: str | None,
        detail: str | None = None,
        occurred_at: dt.datetime | None = None,
    ) -> ReconcileOutcome:
        current = message.delivery_status
        if not can_transition(current, status):
            logger.info(
                "delivery.rejected message=%s current=%s proposed=%s", message.id, current, status
            )
            return ReconcileOutcome(
                applied=False, reason="rejected_transition", status=current, message_id=message.id
            )

        moment = occurred_at or dt.datetime.now(dt.timezone.utc)
        message.delivery_status = status
        if status == DeliveryStatus.SENT.value and message.sent_at is None:
            message.sent_at = moment
        self._session.add(
            MessageDeliveryEvent(
                message_id=message.id,
                status=status,
                detail=detail,
                provider=provider,
                occurred_at=moment,
            )
        )
        if provider:
            if status == DeliveryStatus.DELIVERED.value:
                self._health.record_success(provider, at=moment)
            elif status == DeliveryStatus.FAILED.value:
                self._health.record_failure(provider, detail, at=moment)
        self._session.flush()
        logger.info("delivery.applied message=%s %s->%s", message.id, current, status)
        return ReconcileOutcome(applied=True, reason="applied", status=status, message_id=message.id)


__all__ = ["DeliveryReconciler", "ReconcileOutcome"]
