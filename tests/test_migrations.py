import importlib.util
from datetime import datetime, timezone
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import inspect

from supportline.models import Base
from supportline.models.session import get_engine

MIGRATION = (
    Path(__file__).resolve().parents[1]
    / "supportline"
    / "migrations"
    / "001_create_support_tables.py"
)


def _load_migration():
    spec = importlib.util.spec_from_file_location("create_support_tables", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def bare_engine(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}")
    yield engine
    engine.dispose()


def _run(engine, step):
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            step()


def test_upgrade_matches_models_and_downgrade_drops_everything(bare_engine):
    migration = _load_migration()

    _run(bare_engine, migration.upgrade)

    inspector = inspect(bare_engine)
    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        migrated = {column["name"] for column in inspector.get_columns(name)}
        assert migrated == {column.name for column in table.columns}, name
    unique = {
        tuple(c["column_names"]) for c in inspector.get_unique_constraints("customer_identifiers")
    }
    assert ("identifier_type", "value") in unique

    _run(bare_engine, migration.downgrade)

    assert inspect(bare_engine).get_table_names() == []


def test_migrated_schema_serves_the_repository(bare_engine):
    from sqlalchemy.orm import sessionmaker

    from supportline.conversations.repository import SqlAlchemySupportRepository

    _run(bare_engine, _load_migration().upgrade)
    repo = SqlAlchemySupportRepository(
        sessionmaker(bind=bare_engine, expire_on_commit=False, future=True)
    )

    customer = repo.create_customer(
        identifier_type="email",
        value="a@x.com",
        verified=False,
        email="a@x.com",
        phone=None,
        display_name=None,
        seen_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
    )

    assert customer is not None
    assert repo.find_identifiers([("email", "a@x.com")])[0].customer_id == customer.id
