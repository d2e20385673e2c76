"""Record provider-neutral inbound messages against contacts and threads."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..errors import InvalidAddressError, MissingFromError, ValidationError
from ..models import (
    Channel,
    Contact,
    ConversationMessage,
    ConversationThread,
    DeliveryStatus,
    Direction,
    MessageDeliveryEvent,
    ThreadStatus,
)
from ..outbox.queue import OutboxQueue
from ..outbox.tasks import MessageReceivedPayload, TaskKind
from . import addresses
from .addresses import PhoneNumber
from .contacts import ContactDirectory, has_placeholder_name
from .threads import ThreadResolver, touch_thread

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    """Uniform representation of a message received from any provider."""

    channel: str
    body: str
    from_address: str
    to_address: str | None = None
    subject: str | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    media_urls: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    received_at: dt.datetime | None = None
    sender_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


@dataclass
class InboundResult:
    duplicate: bool
    message_id: uuid.UUID
    thread_id: uuid.UUID
    contact_id: uuid.UUID | None
    lead_id: uuid.UUID | None = None


def _message_body(body: str, media_urls: list[str]) -> str:
    trimmed = (body or "").strip()
    if trimmed:
        return trimmed
    return "Media message" if media_urls else "Message received"


class InboundService:
    """Normalise the sender, resolve contact and thread, store the message.

    Everything happens in the caller's transaction. A redelivered webhook
    (same provider message id) returns the stored message with
    ``duplicate=True`` and writes nothing.
    """

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._contacts = ContactDirectory(session)
        self._threads = ThreadResolver(session, settings=self._settings)
        self._queue = OutboxQueue(session)

    def record_inbound_message(self, inbound: InboundMessage) -> InboundResult:
        try:
            channel = Channel(inbound.channel).value
        except ValueError as exc:
            raise ValidationError(f"Unknown channel '{inbound.channel}'", code="unknown_channel") from exc

        if inbound.provider_message_id:
            duplicate = self._find_duplicate(inbound.provider, inbound.provider_message_id)
            if duplicate is not None:
                return duplicate

        sender = (inbound.from_address or "").strip()
        if not sender:
            raise MissingFromError("Inbound message has no sender address")

        now = inbound.received_at or dt.datetime.now(dt.timezone.utc)
        media_urls = [url.strip() for url in inbound.media_urls if isinstance(url, str) and url.strip()]
        body = _message_body(inbound.body, media_urls)

        if Channel(channel).is_phone:
            contact, from_address = self._resolve_phone_sender(channel, sender, inbound.sender_name)
        elif channel == Channel.EMAIL.value:
            contact, from_address = self._resolve_email_sender(sender, inbound.sender_name)
        else:
            contact, from_address = self._resolve_external_sender(channel, sender, body, inbound)

        thread = self._threads.current_thread(contact.id, channel)
        if thread is None:
            thread = self._threads.ensure_thread(
                contact.id, channel, subject=inbound.subject, contact_address=from_address, now=now
            )
        elif thread.status != ThreadStatus.OPEN.value:
            logger.info("thread.reopened id=%s previous=%s", thread.id, thread.status)
            thread.status = ThreadStatus.OPEN.value
            thread.updated_at = now
        participant = self._threads.ensure_contact_participant(thread, contact, from_address, now=now)

        message = ConversationMessage(
            thread_id=thread.id,
            participant_id=participant.id,
            direction=Direction.INBOUND.value,
            channel=channel,
            subject=inbound.subject,
            body=body,
            media_urls=media_urls,
            to_address=inbound.to_address,
            from_address=from_address,
            provider=inbound.provider,
            provider_message_id=inbound.provider_message_id,
            delivery_status=DeliveryStatus.DELIVERED.value,
            metadata_=dict(inbound.metadata or {}),
            created_at=now,
            received_at=now,
        )
        self._session.add(message)
        self._session.flush()

        touch_thread(thread, body, now, preview_length=self._settings.preview_length)
        self._session.add(
            MessageDeliveryEvent(
                message_id=message.id,
                status=DeliveryStatus.DELIVERED.value,
                detail="inbound",
                provider=inbound.provider,
                occurred_at=now,
            )
        )
        if thread.lead_id is not None:
            # A reply stops the automated follow-up sequence for the lead.
            self._queue.cancel(TaskKind.FOLLOWUP_SEND, key="leadId", value=thread.lead_id, now=now)
        self._queue.enqueue(
            TaskKind.MESSAGE_RECEIVED,
            MessageReceivedPayload(message_id=message.id, thread_id=thread.id, channel=channel),
            now=now,
        )
        logger.info(
            "inbound.recorded message=%s thread=%s contact=%s channel=%s",
            message.id,
            thread.id,
            contact.id,
            channel,
        )
        return InboundResult(
            duplicate=False,
            message_id=message.id,
            thread_id=thread.id,
            contact_id=contact.id,
            lead_id=thread.lead_id,
        )

    # ------------------------------------------------------------------
    def _find_duplicate(self, provider: str | None, provider_message_id: str) -> InboundResult | None:
        stmt = select(ConversationMessage, ConversationThread).join(
            ConversationThread, ConversationThread.id == ConversationMessage.thread_id
        )
        stmt = stmt.where(ConversationMessage.provider_message_id == provider_message_id)
        if provider:
            stmt = stmt.where(ConversationMessage.provider == provider)
        row = self._session.execute(stmt.limit(1)).first()
        if row is None:
            return None
        message, thread = row
        logger.info("inbound.duplicate provider=%s provider_message_id=%s", provider, provider_message_id)
        return InboundResult(
            duplicate=True,
            message_id=message.id,
            thread_id=thread.id,
            contact_id=thread.contact_id,
            lead_id=thread.lead_id,
        )

    def _resolve_phone_sender(self, channel: str, sender: str, sender_name: str | None) -> tuple[Contact, str]:
        phone = addresses.normalize_phone(sender, self._settings.default_phone_region)
        contact = self._contacts.find_by_phone(phone)
        if contact is None:
            contact = self._contacts.create(name=sender_name, phone=phone, source=channel)
        else:
            self._contacts.fill_phone(contact, phone)
        return contact, phone.e164

    def _resolve_email_sender(self, sender: str, sender_name: str | None) -> tuple[Contact, str]:
        parsed = addresses.parse_email_address(sender)
        if not parsed.email:
            raise MissingFromError("Inbound email has no sender address")
        contact = self._contacts.find_by_email(parsed.email)
        if contact is None:
            contact = self._contacts.create(name=sender_name or parsed.name, email=parsed.email, source="email")
        else:
            self._contacts.fill_email(contact, parsed.email)
        return contact, parsed.email

    def _resolve_external_sender(
        self, channel: str, sender: str, body: str, inbound: InboundMessage
    ) -> tuple[Contact, str]:
        region = self._settings.default_phone_region
        hint_email = (inbound.contact_email or "").strip().lower() or None
        hint_phone: PhoneNumber | None = None
        if (inbound.contact_phone or "").strip():
            try:
                hint_phone = addresses.normalize_phone(inbound.contact_phone or "", region)
            except InvalidAddressError:
                logger.debug("inbound.ignored_phone_hint value=%r", inbound.contact_phone)

        contact: Contact | None = None
        if channel == Channel.DM.value:
            contact = self._contacts.find_by_dm_address(sender)
        if contact is None and hint_email:
            contact = self._contacts.find_by_email(hint_email)
        if contact is None and hint_phone is not None:
            contact = self._contacts.find_by_phone(hint_phone)

        extracted_name = addresses.extract_name(body)
        extracted_email = addresses.extract_email(body)
        extracted_phone = addresses.extract_phone(body, region)
        sender_name = inbound.sender_name or extracted_name

        if contact is None:
            contact = self._contacts.create(
                name=sender_name,
                email=hint_email or extracted_email,
                phone=hint_phone or extracted_phone,
                source="inbound",
            )
            return contact, sender

        if hint_email:
            self._contacts.fill_email(contact, hint_email)
        if hint_phone is not None:
            self._contacts.fill_phone(contact, hint_phone)
        name_candidate = extracted_name or sender_name
        if addresses.is_meaningful_name(name_candidate) and has_placeholder_name(contact):
            self._contacts.rename(contact, name_candidate or "")
        if extracted_email:
            self._contacts.fill_email(contact, extracted_email)
        if extracted_phone is not None:
            self._contacts.fill_phone(contact, extracted_phone)
        return contact, sender


__all__ = ["InboundMessage", "InboundResult", "InboundService"]
