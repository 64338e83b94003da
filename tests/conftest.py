"""
Test configuration and fixtures.

The ``db`` fixture runs each test against every backend: in-process, SQLite
through aiosqlite, and the document store on an isolated fake Redis server.
"""

from datetime import date

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from feedbackflow.backends.document import DocumentDatabase
from feedbackflow.backends.memory import InMemoryDatabase
from feedbackflow.backends.sql import SqlDatabase
from feedbackflow.database import Database
from feedbackflow.entities import Purchase, Tester

BACKENDS = ["memory", "sql", "document"]

JOHN_ID = "auth0|john"
JANE_ID = "auth0|jane"


def make_database(backend: str, tmp_path):
    if backend == "memory":
        return InMemoryDatabase()
    if backend == "sql":
        return SqlDatabase(Database(f"sqlite+aiosqlite:///{tmp_path / 'feedbackflow-test.db'}"))
    return DocumentDatabase(FakeRedis(server=FakeServer(), decode_responses=True), prefix="test")


@pytest_asyncio.fixture(params=BACKENDS)
async def db(request, tmp_path):
    """Initialized database, one per backend."""
    database = make_database(request.param, tmp_path)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backup_db(request, tmp_path):
    """Initialized database, one per backend supporting backup and restore."""
    database = make_database(request.param, tmp_path)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def sql_db(tmp_path):
    """Initialized relational database on a temporary SQLite file."""
    database = make_database("sql", tmp_path)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def john(db):
    """Tester John Doe, authenticated as ``JOHN_ID``."""
    await db.testers.put(Tester(uuid="john-uuid", name="John Doe", ids=[JOHN_ID]))
    return await db.testers.get_tester_with_uuid("john-uuid")


@pytest_asyncio.fixture
async def jane(db):
    """Tester Jane Roe, authenticated as ``JANE_ID``."""
    await db.testers.put(Tester(uuid="jane-uuid", name="Jane Roe", ids=[JANE_ID]))
    return await db.testers.get_tester_with_uuid("jane-uuid")


def make_purchase(**overrides) -> Purchase:
    """Purchase with sensible defaults."""
    values = dict(
        date=date(2025, 1, 15),
        order="ORDER-001",
        description="Mechanical keyboard",
        amount=10.99,
        screenshot="data:image/png;base64,AAAA",
    )
    values.update(overrides)
    return Purchase(**values)


@pytest.fixture
def purchase_factory():
    return make_purchase
