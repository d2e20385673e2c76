"""Identity lookups used to anchor threads to contacts."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..models import Channel, Contact, ConversationParticipant, ConversationThread, Lead, ParticipantType
from .addresses import PhoneNumber, split_name

logger = logging.getLogger(__name__)


class ContactDirectory:
    """Find, create and enrich contacts within the caller's transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, contact_id: uuid.UUID) -> Contact | None:
        return self._session.get(Contact, contact_id)

    def find_by_phone(self, phone: PhoneNumber) -> Contact | None:
        stmt = (
            select(Contact)
            .where(or_(Contact.phone_e164 == phone.e164, Contact.phone == phone.raw))
            .order_by(Contact.created_at.asc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def find_by_email(self, email: str) -> Contact | None:
        stmt = select(Contact).where(Contact.email == email).order_by(Contact.created_at.asc()).limit(1)
        return self._session.scalars(stmt).first()

    def find_by_dm_address(self, address: str) -> Contact | None:
        """Contact previously seen behind ``address`` on a direct-message thread."""

        if not address.strip():
            return None
        stmt = (
            select(Contact)
            .join(ConversationParticipant, ConversationParticipant.contact_id == Contact.id)
            .join(ConversationThread, ConversationThread.id == ConversationParticipant.thread_id)
            .where(
                ConversationParticipant.participant_type == ParticipantType.CONTACT.value,
                ConversationParticipant.external_address == address,
                ConversationThread.channel == Channel.DM.value,
            )
            .order_by(ConversationThread.updated_at.desc(), ConversationThread.created_at.desc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def create(
        self,
        *,
        name: str | None,
        email: str | None = None,
        phone: PhoneNumber | None = None,
        source: str = "inbound",
    ) -> Contact:
        first_name, last_name = split_name(name)
        contact = Contact(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone.raw if phone else None,
            phone_e164=phone.e164 if phone else None,
            source=source,
        )
        self._session.add(contact)
        self._session.flush()
        logger.info("contact.created id=%s source=%s", contact.id, source)
        return contact

    def fill_email(self, contact: Contact, email: str) -> bool:
        """Store ``email`` only when the contact has none yet."""

        if contact.email:
            return False
        contact.email = email
        return True

    def fill_phone(self, contact: Contact, phone: PhoneNumber) -> bool:
        """Store ``phone`` only when the contact has no phone at all."""

        if contact.phone_e164 or contact.phone:
            return False
        contact.phone = phone.raw
        contact.phone_e164 = phone.e164
        return True

    def rename(self, contact: Contact, name: str) -> None:
        """Replace the name and propagate it to the contact's participants."""

        contact.first_name, contact.last_name = split_name(name)
        display_name = contact.display_name or None
        participants = self._session.scalars(
            select(ConversationParticipant).where(
                ConversationParticipant.participant_type == ParticipantType.CONTACT.value,
                ConversationParticipant.contact_id == contact.id,
            )
        )
        for participant in participants:
            participant.display_name = display_name

    def latest_lead(self, contact_id: uuid.UUID) -> Lead | None:
        stmt = (
            select(Lead)
            .where(Lead.contact_id == contact_id)
            .order_by(Lead.updated_at.desc(), Lead.created_at.desc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()


def has_placeholder_name(contact: Contact) -> bool:
    """``True`` for "Unknown Contact" and "Messenger <digits>" contacts."""

    if contact.first_name == "Unknown" and contact.last_name == "Contact":
        return True
    return contact.first_name == "Messenger" and contact.last_name.strip().isdigit()


__all__ = ["ContactDirectory", "has_placeholder_name"]
