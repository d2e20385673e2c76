import uuid

import pytest
from sqlalchemy import func, select

from courier.conversations.threads import ThreadResolver, initial_address
from courier.errors import NotFoundError
from courier.models import Contact, ConversationParticipant, ConversationThread, Lead
from courier.models.session import session_scope


def _count(session, model, *criteria) -> int:
    return session.scalar(select(func.count()).select_from(model).where(*criteria))


def test_first_contact_creates_one_thread_and_participant(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)

    thread = resolver.ensure_thread(contact_id, "sms")
    again = resolver.ensure_thread(contact_id, "sms")

    assert again.id == thread.id
    assert thread.status == "open"
    assert _count(session, ConversationThread, ConversationThread.contact_id == contact_id) == 1
    participants = list(
        session.scalars(select(ConversationParticipant).where(ConversationParticipant.thread_id == thread.id))
    )
    assert len(participants) == 1
    assert participants[0].participant_type == "contact"
    assert participants[0].external_address == "+14045550111"
    assert participants[0].display_name == "Dana Reyes"


def test_known_contact_address_overrides_derived_one(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)

    web = resolver.ensure_thread(contact_id, "web", contact_address="visitor-77")
    sms = resolver.ensure_thread(contact_id, "sms")

    addresses = dict(
        session.execute(
            select(ConversationParticipant.thread_id, ConversationParticipant.external_address)
        ).all()
    )
    assert addresses == {web.id: "visitor-77", sms.id: "+14045550111"}


def test_channels_get_separate_threads(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)

    sms = resolver.ensure_thread(contact_id, "sms")
    email = resolver.ensure_thread(contact_id, "email")

    assert sms.id != email.id
    participant = session.scalars(
        select(ConversationParticipant).where(ConversationParticipant.thread_id == email.id)
    ).one()
    assert participant.external_address == "dana@example.com"


def test_missing_contact_raises_not_found(session, settings):
    with pytest.raises(NotFoundError):
        ThreadResolver(session, settings=settings).ensure_thread(uuid.uuid4(), "sms")


def test_new_thread_links_latest_lead(session, settings, make_contact):
    contact_id = make_contact(with_lead=True)
    lead_id = session.scalars(select(Lead.id).where(Lead.contact_id == contact_id)).one()

    thread = ThreadResolver(session, settings=settings).ensure_thread(contact_id, "email")

    assert thread.lead_id == lead_id


def test_archived_thread_is_not_current(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)
    archived = resolver.ensure_thread(contact_id, "sms")
    archived.status = "archived"
    session.flush()

    fresh = resolver.ensure_thread(contact_id, "sms")

    assert fresh.id != archived.id
    assert resolver.current_thread(contact_id, "sms").id == fresh.id


def test_closed_thread_stays_current(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)
    thread = resolver.ensure_thread(contact_id, "dm")
    thread.status = "closed"
    session.flush()

    assert resolver.ensure_thread(contact_id, "dm").id == thread.id


def test_concurrent_create_falls_back_to_winner(session_factory, settings, make_contact, monkeypatch):
    contact_id = make_contact()
    with session_scope(session_factory) as other:
        winner_id = ThreadResolver(other, settings=settings).ensure_thread(contact_id, "sms").id

    with session_scope(session_factory) as session:
        resolver = ThreadResolver(session, settings=settings)
        real_lookup = resolver.current_thread
        calls = []

        def stale_lookup(cid, channel):
            calls.append(channel)
            # The first lookup misses the row committed by the other writer.
            return None if len(calls) == 1 else real_lookup(cid, channel)

        monkeypatch.setattr(resolver, "current_thread", stale_lookup)
        resolved = resolver.ensure_thread(contact_id, "sms")

        assert resolved.id == winner_id
        assert _count(session, ConversationThread, ConversationThread.contact_id == contact_id) == 1
        assert _count(session, ConversationParticipant) == 1


def test_system_participant_is_idempotent(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)
    thread = resolver.ensure_thread(contact_id, "email")

    first = resolver.ensure_system_participant(thread.id)
    second = resolver.ensure_system_participant(thread.id)

    assert first.id == second.id
    assert first.display_name == "Courier Assistant"
    assert (
        _count(
            session,
            ConversationParticipant,
            ConversationParticipant.thread_id == thread.id,
            ConversationParticipant.participant_type == "system",
        )
        == 1
    )


def test_contact_participant_fills_missing_address(session, settings, make_contact):
    contact_id = make_contact()
    resolver = ThreadResolver(session, settings=settings)
    thread = resolver.ensure_thread(contact_id, "dm")
    contact = session.get(Contact, contact_id)

    participant = resolver.ensure_contact_participant(thread, contact, "psid-991")
    again = resolver.ensure_contact_participant(thread, contact, "psid-other")

    assert participant.id == again.id
    assert again.external_address == "psid-991"


def test_initial_address_per_channel():
    contact = Contact(first_name="A", last_name="B", email="a@b.co", phone="404 555 0100", phone_e164=None)

    assert initial_address(contact, "email") == "a@b.co"
    assert initial_address(contact, "dm") is None
    assert initial_address(contact, "sms") == "404 555 0100"
    contact.phone_e164 = "+14045550100"
    assert initial_address(contact, "call") == "+14045550100"
