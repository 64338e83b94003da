"""Document-store backend on Redis.

Every entity is a JSON document under its own key. Relations are index
sets, and the id mappings live in one hash so that ``HSETNX`` gives atomic
first-write-wins insertion. Multi-key writes go through ``MULTI/EXEC``
pipelines. Entity indexes are sorted sets scored by ``sequence`` so that
listing follows creation order.

Key layout, under ``{prefix}:``::

    ids                          hash   external id -> tester uuid
    testers                      zset   tester uuids
    tester:{uuid}                json   tester (uuid, name)
    tester:{uuid}:ids            set    the tester's external ids
    tester:{uuid}:purchases      zset   the tester's purchase ids
    purchases                    zset   all purchase ids
    purchase:{id}                json   purchase
    {kind}s / {kind}:{purchase}  zset / json for feedback, publication, refund
    links                        set    link codes
    link:{code}                  json   link, expiring with the link
    purchase:{id}:links          set    codes issued for the purchase
    sequence                     int    creation counter for index scores
    schema_version               hash   version, description
"""
import itertools
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar
from uuid import uuid4

from redis import asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..aggregation import (
    PurchaseGraph,
    build_purchase_status,
    build_ready_for_refund,
    check_tester_uuid,
    compute_statistics,
    paginate_purchases,
    sum_amounts,
)
from ..backup import check_graph
from ..entities import (
    DatabaseSchema,
    Entity,
    Feedback,
    IdMapping,
    Link,
    PaginatedResult,
    Publication,
    Purchase,
    PurchasesStatistics,
    PurchaseStatusResponse,
    PurchaseUpdate,
    PurchaseWithFeedback,
    Refund,
    Tester,
)
from ..errors import BackendFailure, NotFoundError, ValidationError, translate_errors
from ..pagination import Pagination
from ..query import Query
from ..repositories import (
    FeedbackFlowDatabase,
    FeedbacksRepository,
    IdMappingsRepository,
    LinksRepository,
    PublicationsRepository,
    PurchasesRepository,
    RefundsRepository,
    TestersRepository,
)
from ..search import search_purchases
from ..short_links import (
    MAX_GENERATION_ATTEMPTS,
    check_duration,
    expiry_from_now,
    generate_short_code,
)

logger = logging.getLogger(__name__)

BACKEND = "document"
SCHEMA_VERSION = 1
SCHEMA_DESCRIPTION = "Document layout with id hash and relation index sets"

E = TypeVar("E", bound=Entity)


def backend_call(operation: str):
    return translate_errors(operation, BACKEND, RedisError)


def _dump(entity: Entity) -> str:
    return json.dumps(entity.to_public())


def _load(raw: Optional[str], model: Type[E]) -> Optional[E]:
    return model.model_validate(json.loads(raw)) if raw else None


def _first_per_purchase(records: Iterable[E]) -> List[E]:
    """One document per purchase: the first record wins."""
    first: Dict[str, E] = {}
    for record in records:
        first.setdefault(record.purchase, record)
    return list(first.values())


def _seconds_left(link: Link, now: datetime) -> int:
    expires_at = link.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - now).total_seconds()))


class Keys:
    """Key builder for one prefix."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def __call__(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    @property
    def ids(self) -> str:
        return self("ids")

    @property
    def testers(self) -> str:
        return self("testers")

    def tester(self, uuid: str) -> str:
        return self("tester", uuid)

    def tester_ids(self, uuid: str) -> str:
        return self("tester", uuid, "ids")

    def tester_purchases(self, uuid: str) -> str:
        return self("tester", uuid, "purchases")

    @property
    def purchases(self) -> str:
        return self("purchases")

    def purchase(self, id: str) -> str:
        return self("purchase", id)

    def purchase_links(self, id: str) -> str:
        return self("purchase", id, "links")

    def collection(self, kind: str) -> str:
        return self(f"{kind}s")

    def record(self, kind: str, purchase_id: str) -> str:
        return self(kind, purchase_id)

    @property
    def links(self) -> str:
        return self("links")

    def link(self, code: str) -> str:
        return self("link", code)

    @property
    def sequence(self) -> str:
        return self("sequence")

    @property
    def schema_version(self) -> str:
        return self("schema_version")


class DocumentStore:
    """Shared client, keys and bulk loaders for the document repositories."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str):
        self.redis = redis_client
        self.keys = Keys(prefix)

    async def load_many(self, keys: Iterable[str], model: Type[E]) -> List[E]:
        keys = list(keys)
        if not keys:
            return []
        return [_load(raw, model) for raw in await self.redis.mget(keys) if raw]

    async def ordered(self, key: str) -> List[str]:
        """Members of a creation-ordered index."""
        return await self.redis.zrange(key, 0, -1)

    async def next_score(self) -> int:
        return await self.redis.incr(self.keys.sequence)

    async def tester(self, uuid: str) -> Optional[Tester]:
        raw = await self.redis.get(self.keys.tester(uuid))
        if raw is None:
            return None
        tester = _load(raw, Tester)
        tester.ids = sorted(await self.redis.smembers(self.keys.tester_ids(uuid)))
        return tester

    async def all_testers(self) -> List[Tester]:
        uuids = await self.ordered(self.keys.testers)
        testers = [await self.tester(uuid) for uuid in uuids]
        return [tester for tester in testers if tester]

    async def purchase(self, id: str) -> Optional[Purchase]:
        return _load(await self.redis.get(self.keys.purchase(id)), Purchase)

    async def purchases_of(self, tester_uuid: str) -> List[Purchase]:
        ids = await self.ordered(self.keys.tester_purchases(tester_uuid))
        return await self.load_many((self.keys.purchase(id) for id in ids), Purchase)

    async def records(self, kind: str, model: Type[E], purchase_ids: Iterable[str]) -> List[E]:
        return await self.load_many((self.keys.record(kind, id) for id in purchase_ids), model)

    async def graph(self, tester_uuid: str) -> PurchaseGraph:
        purchases = await self.purchases_of(tester_uuid)
        ids = [p.id for p in purchases]
        return PurchaseGraph(
            purchases,
            await self.records("feedback", Feedback, ids),
            await self.records("publication", Publication, ids),
            await self.records("refund", Refund, ids),
        )

    async def owned_purchase(self, tester_id: str, purchase_id: str) -> Purchase:
        """The purchase, provided the tester behind ``tester_id`` owns it."""
        tester_uuid = await self.redis.hget(self.keys.ids, tester_id)
        purchase = await self.purchase(purchase_id)
        if purchase is None or tester_uuid is None or purchase.tester_uuid != tester_uuid:
            raise NotFoundError("Purchase", purchase_id)
        return purchase


def _select(items: List[E], query: Query, model: Type[E]) -> List[E]:
    query.validate_fields(model)
    return [item for item in items if query.matches(item)]


class DocumentIdMappings(IdMappingsRepository):

    def __init__(self, store: DocumentStore):
        self.store = store

    @backend_call("id_mappings.exists")
    async def exists(self, id: str) -> bool:
        return bool(await self.store.redis.hexists(self.store.keys.ids, id))

    @backend_call("id_mappings.exists_multiple")
    async def exists_multiple(self, ids: List[str]) -> List[str]:
        if not ids:
            return []
        owners = await self.store.redis.hmget(self.store.keys.ids, ids)
        return [id for id, owner in zip(ids, owners) if owner is not None]

    @backend_call("id_mappings.get_tester_uuid")
    async def get_tester_uuid(self, id: str) -> Optional[str]:
        return await self.store.redis.hget(self.store.keys.ids, id)

    @backend_call("id_mappings.put")
    async def put(self, id: str, tester_uuid: str) -> bool:
        keys = self.store.keys
        if not await self.store.redis.exists(keys.tester(tester_uuid)):
            raise NotFoundError("Tester", tester_uuid)
        if not await self.store.redis.hsetnx(keys.ids, id, tester_uuid):
            return False
        await self.store.redis.sadd(keys.tester_ids(tester_uuid), id)
        return True

    async def put_multiple(self, ids: List[str], tester_uuid: str) -> List[str]:
        return [id for id in dict.fromkeys(ids) if await self.put(id, tester_uuid)]

    @backend_call("id_mappings.delete")
    async def delete(self, id: str) -> bool:
        keys = self.store.keys
        tester_uuid = await self.store.redis.hget(keys.ids, id)
        if tester_uuid is None:
            return False
        async with self.store.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(keys.ids, id)
            pipe.srem(keys.tester_ids(tester_uuid), id)
            removed, _ = await pipe.execute()
        return bool(removed)

    @backend_call("id_mappings.get_all")
    async def get_all(self) -> List[IdMapping]:
        mappings = await self.store.redis.hgetall(self.store.keys.ids)
        return [IdMapping(id=id, tester_uuid=uuid) for id, uuid in sorted(mappings.items())]


class DocumentTesters(TestersRepository):

    def __init__(self, store: DocumentStore):
        self.store = store

    @backend_call("testers.filter")
    async def filter(self, query: Query) -> List[Tester]:
        return _select(await self.store.all_testers(), query, Tester)

    async def find(self, query: Query) -> Optional[Tester]:
        testers = await self.filter(query)
        return testers[0] if testers else None

    @backend_call("testers.put")
    async def put(self, tester: Tester) -> List[str]:
        redis, keys = self.store.redis, self.store.keys
        uuid = tester.uuid or str(uuid4())
        wanted = list(dict.fromkeys(tester.ids))
        previous = await redis.smembers(keys.tester_ids(uuid))

        # The tester document goes first so that new mappings never dangle
        await redis.set(keys.tester(uuid), _dump(Tester(uuid=uuid, name=tester.name)))

        kept = [id for id in wanted if id in previous]
        for id in wanted:
            if id in previous:
                continue
            if await redis.hsetnx(keys.ids, id, uuid):
                kept.append(id)
            elif await redis.hget(keys.ids, id) == uuid:
                kept.append(id)
            else:
                logger.warning(f"ID {id} already belongs to another tester, skipped")

        removed = [id for id in previous if id not in wanted]
        score = await self.store.next_score()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zadd(keys.testers, {uuid: score}, nx=True)
            if kept:
                pipe.sadd(keys.tester_ids(uuid), *kept)
            if removed:
                pipe.hdel(keys.ids, *removed)
                pipe.srem(keys.tester_ids(uuid), *removed)
            await pipe.execute()
        return kept

    async def get_all(self) -> List[Tester]:
        return await self.filter(Query.all())

    @backend_call("testers.get_tester_with_id")
    async def get_tester_with_id(self, id: str) -> Optional[Tester]:
        uuid = await self.store.redis.hget(self.store.keys.ids, id)
        return await self.store.tester(uuid) if uuid else None

    @backend_call("testers.get_tester_with_uuid")
    async def get_tester_with_uuid(self, uuid: str) -> Optional[Tester]:
        return await self.store.tester(uuid)

    @backend_call("testers.add_ids")
    async def add_ids(self, uuid: str, ids: List[str]) -> Optional[List[str]]:
        redis, keys = self.store.redis, self.store.keys
        if not await redis.exists(keys.tester(uuid)):
            return None
        for id in dict.fromkeys(ids):
            if await redis.hsetnx(keys.ids, id, uuid):
                await redis.sadd(keys.tester_ids(uuid), id)
        return sorted(await redis.smembers(keys.tester_ids(uuid)))


class DocumentPurchases(PurchasesRepository):

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _all(self) -> List[Purchase]:
        ids = await self.store.ordered(self.store.keys.purchases)
        return await self.store.load_many((self.store.keys.purchase(id) for id in ids), Purchase)

    @backend_call("purchases.filter")
    async def filter(self, query: Query) -> List[Purchase]:
        return _select(await self._all(), query, Purchase)

    async def find(self, query: Query) -> Optional[Purchase]:
        purchases = await self.filter(query)
        return purchases[0] if purchases else None

    @backend_call("purchases.put")
    async def put(self, tester_uuid: str, purchase: Purchase) -> str:
        check_tester_uuid(tester_uuid)
        redis, keys = self.store.redis, self.store.keys
        if not await redis.exists(keys.tester(tester_uuid)):
            raise NotFoundError("Tester", tester_uuid)
        id = purchase.id or str(uuid4())
        stored = purchase.model_copy(update={"id": id, "tester_uuid": tester_uuid})
        if not await redis.set(keys.purchase(id), _dump(stored), nx=True):
            raise ValidationError(f"Purchase {id} already exists", fields=["id"])
        score = await self.store.next_score()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zadd(keys.purchases, {id: score})
            pipe.zadd(keys.tester_purchases(tester_uuid), {id: score})
            await pipe.execute()
        return id

    @backend_call("purchases.update")
    async def update(self, id: str, updates: PurchaseUpdate) -> bool:
        changes = updates.changes()
        if not changes:
            return False
        key = self.store.keys.purchase(id)
        async with self.store.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            purchase = _load(await pipe.get(key), Purchase)
            if purchase is None:
                return False
            pipe.multi()
            pipe.set(key, _dump(purchase.model_copy(update=changes)))
            try:
                await pipe.execute()
            except WatchError as e:
                raise BackendFailure("purchases.update", BACKEND, "concurrent modification") from e
        return True

    @backend_call("purchases.delete")
    async def delete(self, id: str) -> bool:
        redis, keys = self.store.redis, self.store.keys
        purchase = await self.store.purchase(id)
        if purchase is None:
            return False
        codes = await redis.smembers(keys.purchase_links(id))
        async with redis.pipeline(transaction=True) as pipe:
            pipe.delete(keys.purchase(id), keys.purchase_links(id))
            pipe.zrem(keys.purchases, id)
            pipe.zrem(keys.tester_purchases(purchase.tester_uuid), id)
            for kind in ("feedback", "publication", "refund"):
                pipe.delete(keys.record(kind, id))
                pipe.zrem(keys.collection(kind), id)
            for code in codes:
                pipe.delete(keys.link(code))
                pipe.srem(keys.links, code)
            await pipe.execute()
        return True

    async def get_all(self) -> List[Purchase]:
        return await self.filter(Query.all())

    async def _owned(self, tester_uuid: str, refunded: bool) -> List[Purchase]:
        return [p for p in await self.store.purchases_of(tester_uuid) if p.refunded == refunded]

    @backend_call("purchases.refunded")
    async def refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return paginate_purchases(await self._owned(tester_uuid, True), pagination)

    @backend_call("purchases.not_refunded")
    async def not_refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return paginate_purchases(await self._owned(tester_uuid, False), pagination)

    @backend_call("purchases.ready_for_refund")
    async def ready_for_refund(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[PurchaseWithFeedback]:
        return build_ready_for_refund(await self.store.graph(tester_uuid), pagination)

    @backend_call("purchases.refunded_amount")
    async def refunded_amount(self, tester_uuid: str) -> float:
        return sum_amounts(await self._owned(tester_uuid, True))

    @backend_call("purchases.not_refunded_amount")
    async def not_refunded_amount(self, tester_uuid: str) -> float:
        return sum_amounts(await self._owned(tester_uuid, False))

    @backend_call("purchases.get_purchase_status")
    async def get_purchase_status(
        self,
        tester_uuid: str,
        limit_to_not_refunded: bool = False,
        page: int = 1,
        limit: int = 10,
        sort: str = "date",
        order: str = "desc",
    ) -> PurchaseStatusResponse:
        check_tester_uuid(tester_uuid)
        return build_purchase_status(
            await self.store.graph(tester_uuid), tester_uuid, limit_to_not_refunded,
            page, limit, sort, order,
        )

    @backend_call("purchases.get_purchase_statistics")
    async def get_purchase_statistics(self, tester_uuid: str) -> PurchasesStatistics:
        return compute_statistics(await self.store.graph(tester_uuid))

    @backend_call("purchases.search_purchases")
    async def search_purchases(self, tester_uuid: str, query: str) -> List[str]:
        return search_purchases(await self.store.purchases_of(tester_uuid), query)


class _DocumentLifecycleRepository:
    """Feedback, publication and refund documents: one per purchase, upserted."""

    kind = ""
    model: Type[Entity] = Entity

    def __init__(self, store: DocumentStore):
        self.store = store

    async def filter(self, query: Query) -> List[Any]:
        try:
            ids = await self.store.ordered(self.store.keys.collection(self.kind))
            entities = await self.store.records(self.kind, self.model, ids)
        except RedisError as e:
            logger.error(f"document backend failed during {self.kind}s.filter: {e}", exc_info=True)
            raise BackendFailure(f"{self.kind}s.filter", BACKEND, str(e)) from e
        return _select(entities, query, self.model)

    async def find(self, query: Query) -> Optional[Any]:
        entities = await self.filter(query)
        return entities[0] if entities else None

    async def get_all(self) -> List[Any]:
        return await self.filter(Query.all())

    async def put(self, tester_id: str, entity: Entity) -> str:
        try:
            await self.store.owned_purchase(tester_id, entity.purchase)
            keys = self.store.keys
            score = await self.store.next_score()
            async with self.store.redis.pipeline(transaction=True) as pipe:
                pipe.set(keys.record(self.kind, entity.purchase), _dump(entity))
                pipe.zadd(keys.collection(self.kind), {entity.purchase: score}, nx=True)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"document backend failed during {self.kind}s.put: {e}", exc_info=True)
            raise BackendFailure(f"{self.kind}s.put", BACKEND, str(e)) from e
        return entity.purchase


class DocumentFeedbacks(_DocumentLifecycleRepository, FeedbacksRepository):
    kind = "feedback"
    model = Feedback


class DocumentPublications(_DocumentLifecycleRepository, PublicationsRepository):
    kind = "publication"
    model = Publication


class DocumentRefunds(_DocumentLifecycleRepository, RefundsRepository):
    kind = "refund"
    model = Refund

    @backend_call("refunds.put")
    async def put(self, tester_id: str, refund: Refund) -> str:
        """Upsert the refund and flip the purchase to refunded in one transaction."""
        await self.store.owned_purchase(tester_id, refund.purchase)
        keys = self.store.keys
        score = await self.store.next_score()
        purchase_key = keys.purchase(refund.purchase)
        async with self.store.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(purchase_key)
            purchase = _load(await pipe.get(purchase_key), Purchase)
            if purchase is None:
                raise NotFoundError("Purchase", refund.purchase)
            purchase.refunded = True
            pipe.multi()
            pipe.set(keys.record(self.kind, refund.purchase), _dump(refund))
            pipe.zadd(keys.collection(self.kind), {refund.purchase: score}, nx=True)
            pipe.set(purchase_key, _dump(purchase))
            try:
                await pipe.execute()
            except WatchError as e:
                raise BackendFailure("refunds.put", BACKEND, "concurrent modification") from e
        return refund.purchase


class DocumentLinks(LinksRepository):

    def __init__(self, store: DocumentStore):
        self.store = store

    @backend_call("links.generate")
    async def generate(self, purchase_id: str, duration_seconds: int) -> str:
        check_duration(duration_seconds)
        redis, keys = self.store.redis, self.store.keys
        if not await redis.exists(keys.purchase(purchase_id)):
            raise NotFoundError("Purchase", purchase_id)
        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = generate_short_code()
            link = Link(code=code, purchase=purchase_id, expires_at=expiry_from_now(duration_seconds))
            # NX with the link lifetime: expired codes have already vanished
            if await redis.set(keys.link(code), _dump(link), ex=duration_seconds, nx=True):
                break
        else:
            raise ValidationError("Failed to generate a unique short code")
        async with redis.pipeline(transaction=True) as pipe:
            pipe.sadd(keys.links, code)
            pipe.sadd(keys.purchase_links(purchase_id), code)
            await pipe.execute()
        return code

    @backend_call("links.get_purchase_by_code")
    async def get_purchase_by_code(self, code: str) -> Optional[str]:
        link = _load(await self.store.redis.get(self.store.keys.link(code)), Link)
        if link is None or link.is_expired():
            return None
        return link.purchase

    @backend_call("links.delete")
    async def delete(self, code: str) -> bool:
        redis, keys = self.store.redis, self.store.keys
        link = _load(await redis.get(keys.link(code)), Link)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.delete(keys.link(code))
            pipe.srem(keys.links, code)
            if link:
                pipe.srem(keys.purchase_links(link.purchase), code)
            results = await pipe.execute()
        return bool(results[0])

    async def _live(self, codes: Iterable[str]) -> List[Link]:
        links = await self.store.load_many((self.store.keys.link(c) for c in sorted(codes)), Link)
        return [link for link in links if not link.is_expired()]

    @backend_call("links.get_by_purchase_id")
    async def get_by_purchase_id(self, purchase_id: str) -> List[Link]:
        return await self._live(await self.store.redis.smembers(self.store.keys.purchase_links(purchase_id)))

    @backend_call("links.cleanup_expired")
    async def cleanup_expired(self) -> int:
        """Drop index entries (and any lingering documents) of expired links."""
        redis, keys = self.store.redis, self.store.keys
        codes = sorted(await redis.smembers(keys.links))
        removed = 0
        for code in codes:
            link = _load(await redis.get(keys.link(code)), Link)
            if link is not None and not link.is_expired():
                continue
            async with redis.pipeline(transaction=True) as pipe:
                pipe.delete(keys.link(code))
                pipe.srem(keys.links, code)
                if link:
                    pipe.srem(keys.purchase_links(link.purchase), code)
                await pipe.execute()
            removed += 1
        logger.info(f"Removed {removed} expired links")
        return removed

    @backend_call("links.get_all")
    async def get_all(self) -> List[Link]:
        return await self._live(await self.store.redis.smembers(self.store.keys.links))


class DocumentDatabase(FeedbackFlowDatabase):
    """Document-store backend, one Redis database per deployment."""

    backend_name = BACKEND

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "feedbackflow"):
        """
        Initialize the document store.

        Args:
            redis_client: Async Redis client created with ``decode_responses=True``
            prefix: Namespace for every key this backend writes
        """
        self.store = DocumentStore(redis_client, prefix)
        self.id_mappings = DocumentIdMappings(self.store)
        self.testers = DocumentTesters(self.store)
        self.purchases = DocumentPurchases(self.store)
        self.feedbacks = DocumentFeedbacks(self.store)
        self.publications = DocumentPublications(self.store)
        self.refunds = DocumentRefunds(self.store)
        self.links = DocumentLinks(self.store)

    @backend_call("initialize")
    async def initialize(self) -> None:
        key = self.store.keys.schema_version
        if await self.store.redis.hsetnx(key, "version", SCHEMA_VERSION):
            await self.store.redis.hset(key, "description", SCHEMA_DESCRIPTION)
            logger.info(f"Document store initialized at schema version {SCHEMA_VERSION}")

    async def close(self) -> None:
        await self.store.redis.close()

    @backend_call("reset")
    async def reset(self, data: Optional[DatabaseSchema] = None) -> None:
        """Replace every key under the prefix with ``data`` in one transaction."""
        redis, keys = self.store.redis, self.store.keys
        data = check_graph(data or DatabaseSchema())
        existing = [key async for key in redis.scan_iter(match=keys("*"))]
        existing = [key for key in existing if key != keys.schema_version]
        now = datetime.now(timezone.utc)

        async with redis.pipeline(transaction=True) as pipe:
            if existing:
                pipe.delete(*existing)
            scores = itertools.count(1)
            for tester in data.testers:
                pipe.set(keys.tester(tester.uuid), _dump(Tester(uuid=tester.uuid, name=tester.name)))
                pipe.zadd(keys.testers, {tester.uuid: next(scores)})
            for mapping in data.ids:
                pipe.hset(keys.ids, mapping.id, mapping.tester_uuid)
                pipe.sadd(keys.tester_ids(mapping.tester_uuid), mapping.id)
            for purchase in data.purchases:
                score = next(scores)
                pipe.set(keys.purchase(purchase.id), _dump(purchase))
                pipe.zadd(keys.purchases, {purchase.id: score})
                pipe.zadd(keys.tester_purchases(purchase.tester_uuid), {purchase.id: score})
            for kind, records in (
                ("feedback", data.feedbacks),
                ("publication", data.publications),
                ("refund", data.refunds),
            ):
                for record in _first_per_purchase(records):
                    pipe.set(keys.record(kind, record.purchase), _dump(record))
                    pipe.zadd(keys.collection(kind), {record.purchase: next(scores)})
            for link in data.links:
                if link.is_expired(now):
                    continue
                pipe.set(keys.link(link.code), _dump(link), ex=_seconds_left(link, now))
                pipe.sadd(keys.links, link.code)
                pipe.sadd(keys.purchase_links(link.purchase), link.code)
            pipe.set(keys.sequence, next(scores))
            await pipe.execute()
        logger.info("Document store reset")

    async def get_raw_data(self) -> DatabaseSchema:
        return DatabaseSchema(
            ids=await self.id_mappings.get_all(),
            testers=await self.testers.get_all(),
            purchases=await self.purchases.get_all(),
            feedbacks=await self.feedbacks.get_all(),
            publications=await self.publications.get_all(),
            refunds=await self.refunds.get_all(),
            links=await self.links.get_all(),
        )
