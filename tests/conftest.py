import datetime as dt
import pathlib
import sys
import uuid

import pytest
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from courier.config import Settings, reset_settings_cache
from courier.models import Contact, Lead
from courier.models.session import create_schema, get_engine, get_sessionmaker, session_scope


@pytest.fixture
def database_url(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> str:
    db_url = f"sqlite+pysqlite:///{tmp_path / 'courier.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    reset_settings_cache()
    yield db_url
    reset_settings_cache()


@pytest.fixture
def engine(database_url: str):
    engine = get_engine(database_url)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return get_sessionmaker(engine=engine)


@pytest.fixture
def session(session_factory: sessionmaker[Session]):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        outbox_max_attempts=3,
        outbox_retry_base_seconds=10,
        system_participant_name="Courier Assistant",
    )


@pytest.fixture
def make_contact(session_factory: sessionmaker[Session]):
    """Persist a contact (optionally with a lead) and return its id."""

    def _make(
        *,
        first_name: str = "Dana",
        last_name: str = "Reyes",
        email: str | None = "dana@example.com",
        phone: str | None = "(404) 555-0111",
        phone_e164: str | None = "+14045550111",
        with_lead: bool = False,
    ) -> uuid.UUID:
        with session_scope(session_factory) as session:
            contact = Contact(
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone,
                phone_e164=phone_e164,
                source="manual",
            )
            session.add(contact)
            session.flush()
            if with_lead:
                session.add(Lead(contact_id=contact.id))
            return contact.id

    return _make


@pytest.fixture
def now() -> dt.datetime:
    return dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)
