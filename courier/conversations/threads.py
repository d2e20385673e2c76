"""Find-or-create conversation threads and their participants."""

from __future__ import annotations

import datetime as dt
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..errors import NotFoundError
from ..models import (
    CURRENT_THREAD_STATUSES,
    Channel,
    Contact,
    ConversationParticipant,
    ConversationThread,
    ParticipantType,
    ThreadStatus,
)
from .contacts import ContactDirectory

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def initial_address(contact: Contact, channel: str) -> str | None:
    """Address a brand-new thread's contact participant starts with."""

    if channel == Channel.EMAIL.value:
        return contact.email
    if channel == Channel.DM.value:
        return None
    return contact.phone_e164 or contact.phone


class ThreadResolver:
    """Resolve the current thread for a (contact, channel) pair.

    The current thread is the most recently active one whose status is in
    :data:`~courier.models.CURRENT_THREAD_STATUSES`. Creation runs inside a
    savepoint so losing a concurrent first-create race falls back to the
    winner instead of failing the caller's transaction.
    """

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._contacts = ContactDirectory(session)

    def current_thread(self, contact_id: uuid.UUID, channel: str) -> ConversationThread | None:
        stmt = (
            select(ConversationThread)
            .where(
                ConversationThread.contact_id == contact_id,
                ConversationThread.channel == channel,
                ConversationThread.status.in_(CURRENT_THREAD_STATUSES),
            )
            .order_by(
                ConversationThread.last_message_at.desc().nulls_last(),
                ConversationThread.updated_at.desc(),
            )
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def ensure_thread(
        self,
        contact_id: uuid.UUID,
        channel: str,
        *,
        subject: str | None = None,
        contact_address: str | None = None,
        now: dt.datetime | None = None,
    ) -> ConversationThread:
        """Return the current thread, creating it with a contact participant.

        The participant starts with ``contact_address`` when the caller knows
        the address the contact wrote from, else with :func:`initial_address`.

        Raises:
            NotFoundError: If no thread exists and the contact is unknown.
        """

        existing = self.current_thread(contact_id, channel)
        if existing is not None:
            return existing

        contact = self._contacts.get(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")

        moment = now or _utcnow()
        lead = self._contacts.latest_lead(contact.id)
        try:
            with self._session.begin_nested():
                thread = ConversationThread(
                    contact_id=contact.id,
                    lead_id=lead.id if lead else None,
                    channel=channel,
                    status=ThreadStatus.OPEN.value,
                    subject=subject,
                    last_message_at=moment,
                    created_at=moment,
                    updated_at=moment,
                )
                self._session.add(thread)
                self._session.flush()
                self._session.add(
                    ConversationParticipant(
                        thread_id=thread.id,
                        participant_type=ParticipantType.CONTACT.value,
                        contact_id=contact.id,
                        display_name=contact.display_name or "Contact",
                        external_address=contact_address or initial_address(contact, channel),
                        created_at=moment,
                    )
                )
                self._session.flush()
        except IntegrityError:
            winner = self.current_thread(contact_id, channel)
            if winner is None:
                raise
            logger.info("thread.create_conflict contact=%s channel=%s winner=%s", contact_id, channel, winner.id)
            return winner

        logger.info("thread.created id=%s contact=%s channel=%s", thread.id, contact.id, channel)
        return thread

    def ensure_system_participant(
        self, thread_id: uuid.UUID, *, now: dt.datetime | None = None
    ) -> ConversationParticipant:
        stmt = (
            select(ConversationParticipant)
            .where(
                ConversationParticipant.thread_id == thread_id,
                ConversationParticipant.participant_type == ParticipantType.SYSTEM.value,
            )
            .order_by(ConversationParticipant.created_at.asc())
            .limit(1)
        )
        participant = self._session.scalars(stmt).first()
        if participant is not None:
            return participant
        participant = ConversationParticipant(
            thread_id=thread_id,
            participant_type=ParticipantType.SYSTEM.value,
            display_name=self._settings.system_participant_name,
            created_at=now or _utcnow(),
        )
        self._session.add(participant)
        self._session.flush()
        return participant

    def ensure_contact_participant(
        self,
        thread: ConversationThread,
        contact: Contact,
        address: str | None,
        *,
        now: dt.datetime | None = None,
    ) -> ConversationParticipant:
        """Reuse the thread's contact participant, filling a missing address."""

        stmt = (
            select(ConversationParticipant)
            .where(
                ConversationParticipant.thread_id == thread.id,
                ConversationParticipant.participant_type == ParticipantType.CONTACT.value,
                ConversationParticipant.contact_id == contact.id,
            )
            .limit(1)
        )
        participant = self._session.scalars(stmt).first()
        if participant is None:
            participant = ConversationParticipant(
                thread_id=thread.id,
                participant_type=ParticipantType.CONTACT.value,
                contact_id=contact.id,
                display_name=contact.display_name or "Contact",
                external_address=address,
                created_at=now or _utcnow(),
            )
            self._session.add(participant)
            self._session.flush()
        elif not participant.external_address and address:
            participant.external_address = address
        return participant


def touch_thread(thread: ConversationThread, body: str, at: dt.datetime, *, preview_length: int = 140) -> None:
    """Move the thread preview and activity marker to the latest message."""

    thread.last_message_preview = body[:preview_length]
    thread.last_message_at = at
    thread.updated_at = at


__all__ = ["ThreadResolver", "initial_address", "touch_thread"]
