"""In-process backend: the whole entity graph in one guarded object."""
import asyncio
import logging
from typing import List, Optional, Type, TypeVar
from uuid import uuid4

from ..aggregation import (
    PurchaseGraph,
    build_purchase_status,
    build_ready_for_refund,
    check_tester_uuid,
    compute_statistics,
    owned_by,
    paginate_purchases,
    sum_amounts,
)
from ..backup import (
    RestoreResult,
    check_graph,
    parse_backup,
    restore_failed,
    restore_succeeded,
    serialize_backup,
)
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
from ..errors import NotFoundError, ValidationError
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

E = TypeVar("E", bound=Entity)


class MemoryStore:
    """Shared state for the in-process repositories."""

    def __init__(self, initial: Optional[DatabaseSchema] = None):
        self.data = check_graph(initial) if initial else DatabaseSchema()
        self.lock = asyncio.Lock()

    def tester(self, uuid: str) -> Optional[Tester]:
        return next((t for t in self.data.testers if t.uuid == uuid), None)

    def purchase(self, id: str) -> Optional[Purchase]:
        return next((p for p in self.data.purchases if p.id == id), None)

    def mapping(self, id: str) -> Optional[IdMapping]:
        return next((m for m in self.data.ids if m.id == id), None)

    def require_tester(self, uuid: str) -> Tester:
        tester = self.tester(uuid)
        if tester is None:
            raise NotFoundError("Tester", uuid)
        return tester

    def add_mapping(self, id: str, tester: Tester) -> None:
        """Map ``id`` to the tester, keeping ``tester.ids`` in step."""
        self.data.ids.append(IdMapping(id=id, tester_uuid=tester.uuid))
        tester.ids.append(id)

    def owned_purchase(self, tester_id: str, purchase_id: str) -> Purchase:
        """The purchase, provided the tester behind ``tester_id`` owns it."""
        mapping = self.mapping(tester_id)
        purchase = self.purchase(purchase_id)
        if purchase is None or mapping is None or purchase.tester_uuid != mapping.tester_uuid:
            raise NotFoundError("Purchase", purchase_id)
        return purchase

    def graph(self, tester_uuid: str) -> PurchaseGraph:
        purchases = owned_by(self.data.purchases, tester_uuid)
        ids = {p.id for p in purchases}
        return PurchaseGraph(
            [p.model_copy() for p in purchases],
            [f for f in self.data.feedbacks if f.purchase in ids],
            [p for p in self.data.publications if p.purchase in ids],
            [r for r in self.data.refunds if r.purchase in ids],
        )


def _copies(items: List[E]) -> List[E]:
    return [item.model_copy(deep=True) for item in items]


def _select(items: List[E], query: Query, model: Type[E]) -> List[E]:
    query.validate_fields(model)
    return [item.model_copy(deep=True) for item in items if query.matches(item)]


class MemoryIdMappings(IdMappingsRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def exists(self, id: str) -> bool:
        return self.store.mapping(id) is not None

    async def exists_multiple(self, ids: List[str]) -> List[str]:
        known = {m.id for m in self.store.data.ids}
        return [id for id in ids if id in known]

    async def get_tester_uuid(self, id: str) -> Optional[str]:
        mapping = self.store.mapping(id)
        return mapping.tester_uuid if mapping else None

    async def put(self, id: str, tester_uuid: str) -> bool:
        async with self.store.lock:
            if self.store.mapping(id):
                return False
            self.store.add_mapping(id, self.store.require_tester(tester_uuid))
            return True

    async def put_multiple(self, ids: List[str], tester_uuid: str) -> List[str]:
        async with self.store.lock:
            tester = self.store.require_tester(tester_uuid)
            added = []
            for id in dict.fromkeys(ids):
                if self.store.mapping(id) is None:
                    self.store.add_mapping(id, tester)
                    added.append(id)
            return added

    async def delete(self, id: str) -> bool:
        async with self.store.lock:
            mapping = self.store.mapping(id)
            if mapping is None:
                return False
            self.store.data.ids.remove(mapping)
            tester = self.store.tester(mapping.tester_uuid)
            if tester and id in tester.ids:
                tester.ids.remove(id)
            return True

    async def get_all(self) -> List[IdMapping]:
        return _copies(self.store.data.ids)


class MemoryTesters(TestersRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def find(self, query: Query) -> Optional[Tester]:
        matches = _select(self.store.data.testers, query, Tester)
        return matches[0] if matches else None

    async def filter(self, query: Query) -> List[Tester]:
        return _select(self.store.data.testers, query, Tester)

    async def put(self, tester: Tester) -> List[str]:
        async with self.store.lock:
            uuid = tester.uuid or str(uuid4())
            existing = self.store.tester(uuid)
            previous = list(existing.ids) if existing else []
            wanted = list(dict.fromkeys(tester.ids))

            kept = [id for id in previous if id in wanted]
            for id in wanted:
                if id in previous:
                    continue
                mapping = self.store.mapping(id)
                if mapping is None:
                    self.store.data.ids.append(IdMapping(id=id, tester_uuid=uuid))
                    kept.append(id)
                elif mapping.tester_uuid == uuid:
                    kept.append(id)
                else:
                    logger.warning(f"ID {id} already belongs to tester {mapping.tester_uuid}, skipped")

            removed = set(previous) - set(wanted)
            self.store.data.ids = [
                m for m in self.store.data.ids
                if not (m.id in removed and m.tester_uuid == uuid)
            ]

            updated = Tester(uuid=uuid, name=tester.name, ids=kept)
            if existing:
                index = self.store.data.testers.index(existing)
                self.store.data.testers[index] = updated
            else:
                self.store.data.testers.append(updated)
            return list(kept)

    async def get_all(self) -> List[Tester]:
        return _copies(self.store.data.testers)

    async def get_tester_with_id(self, id: str) -> Optional[Tester]:
        mapping = self.store.mapping(id)
        if mapping is None:
            return None
        return await self.get_tester_with_uuid(mapping.tester_uuid)

    async def get_tester_with_uuid(self, uuid: str) -> Optional[Tester]:
        tester = self.store.tester(uuid)
        return tester.model_copy(deep=True) if tester else None

    async def add_ids(self, uuid: str, ids: List[str]) -> Optional[List[str]]:
        async with self.store.lock:
            tester = self.store.tester(uuid)
            if tester is None:
                return None
            known = {m.id for m in self.store.data.ids}
            for id in dict.fromkeys(ids):
                if id not in known:
                    self.store.add_mapping(id, tester)
            return list(tester.ids)


class MemoryPurchases(PurchasesRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def find(self, query: Query) -> Optional[Purchase]:
        matches = _select(self.store.data.purchases, query, Purchase)
        return matches[0] if matches else None

    async def filter(self, query: Query) -> List[Purchase]:
        return _select(self.store.data.purchases, query, Purchase)

    async def put(self, tester_uuid: str, purchase: Purchase) -> str:
        check_tester_uuid(tester_uuid)
        async with self.store.lock:
            id = purchase.id or str(uuid4())
            self.store.require_tester(tester_uuid)
            if self.store.purchase(id):
                raise ValidationError(f"Purchase {id} already exists", fields=["id"])
            self.store.data.purchases.append(
                purchase.model_copy(update={"id": id, "tester_uuid": tester_uuid})
            )
            return id

    async def update(self, id: str, updates: PurchaseUpdate) -> bool:
        changes = updates.changes()
        if not changes:
            return False
        async with self.store.lock:
            purchase = self.store.purchase(id)
            if purchase is None:
                return False
            index = self.store.data.purchases.index(purchase)
            self.store.data.purchases[index] = purchase.model_copy(update=changes)
            return True

    async def delete(self, id: str) -> bool:
        async with self.store.lock:
            data = self.store.data
            if self.store.purchase(id) is None:
                return False
            data.purchases = [p for p in data.purchases if p.id != id]
            data.feedbacks = [f for f in data.feedbacks if f.purchase != id]
            data.publications = [p for p in data.publications if p.purchase != id]
            data.refunds = [r for r in data.refunds if r.purchase != id]
            data.links = [link for link in data.links if link.purchase != id]
            return True

    async def get_all(self) -> List[Purchase]:
        return _copies(self.store.data.purchases)

    def _owned(self, tester_uuid: str, refunded: bool) -> List[Purchase]:
        return [
            p.model_copy()
            for p in owned_by(self.store.data.purchases, tester_uuid)
            if p.refunded == refunded
        ]

    async def refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return paginate_purchases(self._owned(tester_uuid, True), pagination)

    async def not_refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return paginate_purchases(self._owned(tester_uuid, False), pagination)

    async def ready_for_refund(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[PurchaseWithFeedback]:
        return build_ready_for_refund(self.store.graph(tester_uuid), pagination)

    async def refunded_amount(self, tester_uuid: str) -> float:
        return sum_amounts(self._owned(tester_uuid, True))

    async def not_refunded_amount(self, tester_uuid: str) -> float:
        return sum_amounts(self._owned(tester_uuid, False))

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
            self.store.graph(tester_uuid), tester_uuid, limit_to_not_refunded,
            page, limit, sort, order,
        )

    async def get_purchase_statistics(self, tester_uuid: str) -> PurchasesStatistics:
        return compute_statistics(self.store.graph(tester_uuid))

    async def search_purchases(self, tester_uuid: str, query: str) -> List[str]:
        return search_purchases(owned_by(self.store.data.purchases, tester_uuid), query)


class MemoryFeedbacks(FeedbacksRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def find(self, query: Query) -> Optional[Feedback]:
        matches = _select(self.store.data.feedbacks, query, Feedback)
        return matches[0] if matches else None

    async def filter(self, query: Query) -> List[Feedback]:
        return _select(self.store.data.feedbacks, query, Feedback)

    async def put(self, tester_id: str, feedback: Feedback) -> str:
        async with self.store.lock:
            self.store.owned_purchase(tester_id, feedback.purchase)
            self.store.data.feedbacks.append(feedback.model_copy())
            return feedback.purchase

    async def get_all(self) -> List[Feedback]:
        return _copies(self.store.data.feedbacks)


class MemoryPublications(PublicationsRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def find(self, query: Query) -> Optional[Publication]:
        matches = _select(self.store.data.publications, query, Publication)
        return matches[0] if matches else None

    async def filter(self, query: Query) -> List[Publication]:
        return _select(self.store.data.publications, query, Publication)

    async def put(self, tester_id: str, publication: Publication) -> str:
        async with self.store.lock:
            self.store.owned_purchase(tester_id, publication.purchase)
            self.store.data.publications.append(publication.model_copy())
            return publication.purchase

    async def get_all(self) -> List[Publication]:
        return _copies(self.store.data.publications)


class MemoryRefunds(RefundsRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    async def find(self, query: Query) -> Optional[Refund]:
        matches = _select(self.store.data.refunds, query, Refund)
        return matches[0] if matches else None

    async def filter(self, query: Query) -> List[Refund]:
        return _select(self.store.data.refunds, query, Refund)

    async def put(self, tester_id: str, refund: Refund) -> str:
        async with self.store.lock:
            purchase = self.store.owned_purchase(tester_id, refund.purchase)
            self.store.data.refunds.append(refund.model_copy())
            purchase.refunded = True
            return refund.purchase

    async def get_all(self) -> List[Refund]:
        return _copies(self.store.data.refunds)


class MemoryLinks(LinksRepository):

    def __init__(self, store: MemoryStore):
        self.store = store

    def _active(self, code: str) -> Optional[Link]:
        return next(
            (link for link in self.store.data.links if link.code == code and not link.is_expired()),
            None,
        )

    async def generate(self, purchase_id: str, duration_seconds: int) -> str:
        check_duration(duration_seconds)
        async with self.store.lock:
            if self.store.purchase(purchase_id) is None:
                raise NotFoundError("Purchase", purchase_id)
            for _ in range(MAX_GENERATION_ATTEMPTS):
                code = generate_short_code()
                if self._active(code) is None:
                    break
            else:
                raise ValidationError("Failed to generate a unique short code")
            # An expired link may still hold the code
            self.store.data.links = [link for link in self.store.data.links if link.code != code]
            self.store.data.links.append(
                Link(code=code, purchase=purchase_id, expires_at=expiry_from_now(duration_seconds))
            )
            return code

    async def get_purchase_by_code(self, code: str) -> Optional[str]:
        link = self._active(code)
        return link.purchase if link else None

    async def delete(self, code: str) -> bool:
        async with self.store.lock:
            before = len(self.store.data.links)
            self.store.data.links = [link for link in self.store.data.links if link.code != code]
            return len(self.store.data.links) < before

    async def get_by_purchase_id(self, purchase_id: str) -> List[Link]:
        return _copies([link for link in self.store.data.links if link.purchase == purchase_id])

    async def cleanup_expired(self) -> int:
        async with self.store.lock:
            before = len(self.store.data.links)
            self.store.data.links = [link for link in self.store.data.links if not link.is_expired()]
            return before - len(self.store.data.links)

    async def get_all(self) -> List[Link]:
        return _copies(self.store.data.links)


class InMemoryDatabase(FeedbackFlowDatabase):
    """In-process backend, for tests and local development."""

    backend_name = "memory"

    def __init__(self, initial: Optional[DatabaseSchema] = None):
        self.store = MemoryStore(initial)
        self.id_mappings = MemoryIdMappings(self.store)
        self.testers = MemoryTesters(self.store)
        self.purchases = MemoryPurchases(self.store)
        self.feedbacks = MemoryFeedbacks(self.store)
        self.publications = MemoryPublications(self.store)
        self.refunds = MemoryRefunds(self.store)
        self.links = MemoryLinks(self.store)

    async def reset(self, data: Optional[DatabaseSchema] = None) -> None:
        async with self.store.lock:
            self.store.data = check_graph(data) if data else DatabaseSchema()
        logger.info("In-memory database reset")

    async def get_raw_data(self) -> DatabaseSchema:
        async with self.store.lock:
            return self.store.data.model_copy(deep=True)

    async def backup_to_json(self) -> str:
        return serialize_backup(await self.get_raw_data())

    async def restore_from_json_string(self, backup: str) -> RestoreResult:
        try:
            data = parse_backup(backup)
        except ValidationError as e:
            return restore_failed(e)
        await self.reset(data)
        return restore_succeeded(data)
