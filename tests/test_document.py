"""Tests specific to the Redis document backend."""

from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from feedbackflow.backends.document import DocumentDatabase
from feedbackflow.entities import DatabaseSchema, IdMapping, Link, Purchase, Tester


@pytest_asyncio.fixture
async def document_db():
    database = DocumentDatabase(FakeRedis(server=FakeServer(), decode_responses=True), prefix="doc")
    await database.initialize()
    yield database
    await database.close()


def _data(links=()):
    return DatabaseSchema(
        ids=[IdMapping(id="auth0|bob", tester_uuid="t-bob")],
        testers=[Tester(uuid="t-bob", name="Bob", ids=["auth0|bob"])],
        purchases=[
            Purchase(
                id="p-bob",
                tester_uuid="t-bob",
                date=date(2025, 4, 2),
                order="ORDER-9",
                description="Phone case",
                amount=12.0,
                screenshot="img",
            )
        ],
        links=list(links),
    )


class TestDocumentDatabase:
    """Test key layout and raw access."""

    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, document_db):
        version = await document_db.store.redis.hget("doc:schema_version", "version")

        assert version == "1"

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, document_db):
        await document_db.store.redis.hset("doc:schema_version", "description", "kept")

        await document_db.initialize()

        assert await document_db.store.redis.hget("doc:schema_version", "description") == "kept"

    @pytest.mark.asyncio
    async def test_reset_round_trip(self, document_db):
        link = Link(
            code="Abc1234",
            purchase="p-bob",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

        await document_db.reset(_data([link]))

        assert await document_db.get_raw_data() == _data([link])
        assert await document_db.testers.get_tester_with_id("auth0|bob") == _data().testers[0]

    @pytest.mark.asyncio
    async def test_reset_skips_expired_links(self, document_db):
        expired = Link(
            code="Old1234",
            purchase="p-bob",
            expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
        )

        await document_db.reset(_data([expired]))

        assert await document_db.links.get_all() == []

    @pytest.mark.asyncio
    async def test_reset_keeps_schema_version(self, document_db):
        await document_db.reset()

        assert await document_db.store.redis.exists("doc:schema_version") == 1
        assert await document_db.purchases.get_all() == []

    @pytest.mark.asyncio
    async def test_link_expires_through_ttl(self, document_db):
        await document_db.reset(_data())

        code = await document_db.links.generate("p-bob", 3600)
        ttl = await document_db.store.redis.ttl(f"doc:link:{code}")

        assert 0 < ttl <= 3600
