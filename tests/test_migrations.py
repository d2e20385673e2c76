import importlib.util
import pathlib

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courier.models import Base, Contact, ConversationThread
from courier.models.session import get_engine

MIGRATION_PATH = (
    pathlib.Path(__file__).resolve().parents[1]
    / "courier"
    / "migrations"
    / "001_create_messaging_tables.py"
)


def _load_migration():
    spec = importlib.util.spec_from_file_location("messaging_migration", MIGRATION_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


def _run(engine, step: str) -> None:
    migration = _load_migration()
    with engine.begin() as connection:
        context = MigrationContext.configure(connection)
        with Operations.context(context):
            getattr(migration, step)()


@pytest.fixture
def migrated_engine(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}")
    _run(engine, "upgrade")
    yield engine
    engine.dispose()


def test_upgrade_creates_every_model_table(migrated_engine):
    inspector = sa.inspect(migrated_engine)

    assert set(Base.metadata.tables) <= set(inspector.get_table_names())
    for name, table in Base.metadata.tables.items():
        migrated_columns = {column["name"] for column in inspector.get_columns(name)}
        assert {column.name for column in table.columns} == migrated_columns, name


def test_upgrade_creates_partial_unique_thread_index(migrated_engine):
    indexes = {
        index["name"]: index for index in sa.inspect(migrated_engine).get_indexes("conversation_threads")
    }

    current = indexes["uq_conversation_threads_current"]
    assert current["unique"]
    assert current["column_names"] == ["contact_id", "channel"]


def test_migrated_schema_allows_one_current_thread_per_channel(migrated_engine):
    with Session(migrated_engine) as session:
        contact = Contact(first_name="Dana", last_name="Reyes")
        session.add(contact)
        session.flush()
        session.add(ConversationThread(contact_id=contact.id, channel="sms", status="archived"))
        session.add(ConversationThread(contact_id=contact.id, channel="sms", status="open"))
        session.add(ConversationThread(contact_id=contact.id, channel="email", status="open"))
        session.flush()

        session.add(ConversationThread(contact_id=contact.id, channel="sms", status="closed"))
        with pytest.raises(IntegrityError):
            session.flush()
        session.rollback()


def test_downgrade_drops_tables(migrated_engine):
    _run(migrated_engine, "downgrade")

    remaining = set(sa.inspect(migrated_engine).get_table_names())
    assert remaining.isdisjoint(Base.metadata.tables)
