"""Relational backend over async SQLAlchemy.

Every multi-statement write runs inside one transaction. Queries are pushed
down as ``WHERE`` clauses when their field maps to a column; the rest is
evaluated on the loaded rows.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type
from uuid import uuid4

from sqlalchemy import case, delete, false, func, inspect, or_, select, true
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..aggregation import check_tester_uuid
from ..backup import RestoreResult, parse_backup, restore_failed, restore_succeeded, serialize_backup
from ..database import Database
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
    PurchaseStatus,
    PurchaseStatusResponse,
    PurchaseUpdate,
    PurchaseWithFeedback,
    Refund,
    Tester,
)
from ..errors import (
    BackendFailure,
    NotFoundError,
    UnsupportedOperationError,
    ValidationError,
    translate_errors,
)
from ..pagination import Pagination, build_page_info
from ..query import Condition, Operator, Query, coerce_value
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
from ..short_links import MAX_GENERATION_ATTEMPTS, check_duration, expiry_from_now, generate_short_code
from .migrations import (
    SchemaVersion,
    apply_migration,
    ensure_version_row,
    pending_migrations,
    read_version,
    up_to_date_message,
)
from .sql_models import (
    FeedbackRow,
    IdMappingRow,
    LinkRow,
    PublicationRow,
    PurchaseRow,
    RefundRow,
    TesterRow,
)

logger = logging.getLogger(__name__)

BACKEND = "sql"


def backend_call(operation: str):
    return translate_errors(operation, BACKEND, SQLAlchemyError)


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _column_attrs(row_cls) -> List[str]:
    return list(inspect(row_cls).column_attrs.keys())


def _to_entity(row: Any, model: Type[Entity]) -> Entity:
    attrs = _column_attrs(type(row))
    return model.model_validate(
        {name: getattr(row, name) for name in model.model_fields if name in attrs}
    )


def _row_values(entity: Entity, row_cls) -> Dict[str, Any]:
    attrs = _column_attrs(row_cls)
    return {name: value for name, value in entity.model_dump().items() if name in attrs}


def _python_type(column) -> Optional[type]:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def _clause(column, condition: Condition):
    value = condition.value
    python_type = _python_type(column)
    if python_type in (date, datetime):
        value = coerce_value(value, python_type)

    op = condition.op
    if op == Operator.EQ:
        return column.is_(None) if value is None else column == value
    if op == Operator.NE:
        return column.is_not(None) if value is None else or_(column != value, column.is_(None))
    if op == Operator.LT:
        return column < value
    if op == Operator.LE:
        return column <= value
    if op == Operator.GT:
        return column > value
    if op == Operator.GE:
        return column >= value
    if op == Operator.IN:
        return column.in_(list(value))
    return column.contains(str(value), autoescape=True)


def split_query(query: Query, model: Type[Entity], row_cls) -> Tuple[list, Query]:
    """WHERE clauses for column fields, and the residual query for the rest."""
    query.validate_fields(model)
    attrs = _column_attrs(row_cls)
    clauses, residual = [], []
    for condition in query.conditions:
        if condition.field in attrs:
            clauses.append(_clause(getattr(row_cls, condition.field), condition))
        else:
            residual.append(condition)
    return clauses, Query(conditions=residual)


def _ordering(pagination: Pagination) -> list:
    column = PurchaseRow.order if pagination.sort == "order" else PurchaseRow.date
    primary = column.desc() if pagination.descending else column.asc()
    return [primary, PurchaseRow.created_at.asc(), PurchaseRow.id.asc()]


async def _owned_purchase(session: AsyncSession, tester_id: str, purchase_id: str) -> PurchaseRow:
    """The purchase, provided the tester behind ``tester_id`` owns it."""
    row = await session.scalar(
        select(PurchaseRow)
        .join(IdMappingRow, IdMappingRow.tester_uuid == PurchaseRow.tester_uuid)
        .where(PurchaseRow.id == purchase_id, IdMappingRow.id == tester_id)
    )
    if row is None:
        raise NotFoundError("Purchase", purchase_id)
    return row


class SqlIdMappings(IdMappingsRepository):

    def __init__(self, database: Database):
        self.database = database

    @backend_call("id_mappings.exists")
    async def exists(self, id: str) -> bool:
        async with self.database.session() as session:
            return await session.get(IdMappingRow, id) is not None

    @backend_call("id_mappings.exists_multiple")
    async def exists_multiple(self, ids: List[str]) -> List[str]:
        if not ids:
            return []
        async with self.database.session() as session:
            known = set(await session.scalars(select(IdMappingRow.id).where(IdMappingRow.id.in_(ids))))
        return [id for id in ids if id in known]

    @backend_call("id_mappings.get_tester_uuid")
    async def get_tester_uuid(self, id: str) -> Optional[str]:
        async with self.database.session() as session:
            return await session.scalar(select(IdMappingRow.tester_uuid).where(IdMappingRow.id == id))

    @backend_call("id_mappings.put")
    async def put(self, id: str, tester_uuid: str) -> bool:
        try:
            async with self.database.transaction() as session:
                if await session.get(IdMappingRow, id) is not None:
                    return False
                if await session.get(TesterRow, tester_uuid) is None:
                    raise NotFoundError("Tester", tester_uuid)
                session.add(IdMappingRow(id=id, tester_uuid=tester_uuid))
        except IntegrityError:
            # Lost the race to a concurrent insert of the same id
            logger.info(f"ID {id} inserted concurrently, keeping the first mapping")
            return False
        return True

    async def put_multiple(self, ids: List[str], tester_uuid: str) -> List[str]:
        return [id for id in dict.fromkeys(ids) if await self.put(id, tester_uuid)]

    @backend_call("id_mappings.delete")
    async def delete(self, id: str) -> bool:
        async with self.database.transaction() as session:
            result = await session.execute(delete(IdMappingRow).where(IdMappingRow.id == id))
            return result.rowcount > 0

    @backend_call("id_mappings.get_all")
    async def get_all(self) -> List[IdMapping]:
        async with self.database.session() as session:
            rows = await session.scalars(select(IdMappingRow).order_by(IdMappingRow.created_at))
            return [_to_entity(row, IdMapping) for row in rows]


class SqlTesters(TestersRepository):

    def __init__(self, database: Database):
        self.database = database

    async def _with_ids(self, session: AsyncSession, rows: List[TesterRow]) -> List[Tester]:
        uuids = [row.uuid for row in rows]
        ids: Dict[str, List[str]] = {uuid: [] for uuid in uuids}
        if uuids:
            mappings = await session.scalars(
                select(IdMappingRow)
                .where(IdMappingRow.tester_uuid.in_(uuids))
                .order_by(IdMappingRow.created_at)
            )
            for mapping in mappings:
                ids[mapping.tester_uuid].append(mapping.id)
        return [Tester(uuid=row.uuid, name=row.name, ids=ids[row.uuid]) for row in rows]

    @backend_call("testers.filter")
    async def filter(self, query: Query) -> List[Tester]:
        clauses, residual = split_query(query, Tester, TesterRow)
        async with self.database.session() as session:
            rows = list(await session.scalars(select(TesterRow).where(*clauses).order_by(TesterRow.created_at)))
            testers = await self._with_ids(session, rows)
        return [tester for tester in testers if residual.matches(tester)]

    async def find(self, query: Query) -> Optional[Tester]:
        testers = await self.filter(query)
        return testers[0] if testers else None

    @backend_call("testers.put")
    async def put(self, tester: Tester) -> List[str]:
        uuid = tester.uuid or str(uuid4())
        wanted = list(dict.fromkeys(tester.ids))
        async with self.database.transaction() as session:
            row = await session.get(TesterRow, uuid)
            if row is None:
                session.add(TesterRow(uuid=uuid, name=tester.name))
                await session.flush()
            else:
                row.name = tester.name

            previous = list(await session.scalars(
                select(IdMappingRow.id)
                .where(IdMappingRow.tester_uuid == uuid)
                .order_by(IdMappingRow.created_at)
            ))
            kept = [id for id in previous if id in wanted]

            # Insert new mappings before removing old ones
            for id in wanted:
                if id in previous:
                    continue
                mapping = await session.get(IdMappingRow, id)
                if mapping is None:
                    session.add(IdMappingRow(id=id, tester_uuid=uuid))
                    kept.append(id)
                elif mapping.tester_uuid == uuid:
                    kept.append(id)
                else:
                    logger.warning(f"ID {id} already belongs to tester {mapping.tester_uuid}, skipped")
            await session.flush()

            removed = [id for id in previous if id not in wanted]
            if removed:
                await session.execute(
                    delete(IdMappingRow).where(
                        IdMappingRow.id.in_(removed), IdMappingRow.tester_uuid == uuid
                    )
                )
        return kept

    async def get_all(self) -> List[Tester]:
        return await self.filter(Query.all())

    @backend_call("testers.get_tester_with_id")
    async def get_tester_with_id(self, id: str) -> Optional[Tester]:
        async with self.database.session() as session:
            row = await session.scalar(
                select(TesterRow)
                .join(IdMappingRow, IdMappingRow.tester_uuid == TesterRow.uuid)
                .where(IdMappingRow.id == id)
            )
            if row is None:
                return None
            return (await self._with_ids(session, [row]))[0]

    @backend_call("testers.get_tester_with_uuid")
    async def get_tester_with_uuid(self, uuid: str) -> Optional[Tester]:
        async with self.database.session() as session:
            row = await session.get(TesterRow, uuid)
            if row is None:
                return None
            return (await self._with_ids(session, [row]))[0]

    @backend_call("testers.add_ids")
    async def add_ids(self, uuid: str, ids: List[str]) -> Optional[List[str]]:
        async with self.database.transaction() as session:
            row = await session.get(TesterRow, uuid)
            if row is None:
                return None
            wanted = list(dict.fromkeys(ids))
            known = set(await session.scalars(select(IdMappingRow.id).where(IdMappingRow.id.in_(wanted))))
            for id in wanted:
                if id not in known:
                    session.add(IdMappingRow(id=id, tester_uuid=uuid))
            await session.flush()
            return (await self._with_ids(session, [row]))[0].ids


class SqlPurchases(PurchasesRepository):

    def __init__(self, database: Database):
        self.database = database

    @backend_call("purchases.filter")
    async def filter(self, query: Query) -> List[Purchase]:
        clauses, residual = split_query(query, Purchase, PurchaseRow)
        async with self.database.session() as session:
            rows = await session.scalars(select(PurchaseRow).where(*clauses).order_by(PurchaseRow.created_at))
            purchases = [_to_entity(row, Purchase) for row in rows]
        return [purchase for purchase in purchases if residual.matches(purchase)]

    async def find(self, query: Query) -> Optional[Purchase]:
        purchases = await self.filter(query)
        return purchases[0] if purchases else None

    @backend_call("purchases.put")
    async def put(self, tester_uuid: str, purchase: Purchase) -> str:
        check_tester_uuid(tester_uuid)
        id = purchase.id or str(uuid4())
        async with self.database.transaction() as session:
            if await session.get(TesterRow, tester_uuid) is None:
                raise NotFoundError("Tester", tester_uuid)
            if await session.get(PurchaseRow, id) is not None:
                raise ValidationError(f"Purchase {id} already exists", fields=["id"])
            values = _row_values(purchase, PurchaseRow)
            values.update(id=id, tester_uuid=tester_uuid)
            session.add(PurchaseRow(**values))
        return id

    @backend_call("purchases.update")
    async def update(self, id: str, updates: PurchaseUpdate) -> bool:
        changes = updates.changes()
        if not changes:
            return False
        async with self.database.transaction() as session:
            row = await session.get(PurchaseRow, id)
            if row is None:
                return False
            for name, value in changes.items():
                setattr(row, name, value)
        return True

    @backend_call("purchases.delete")
    async def delete(self, id: str) -> bool:
        async with self.database.transaction() as session:
            row = await session.get(PurchaseRow, id)
            if row is None:
                return False
            for dependent in (LinkRow, RefundRow, PublicationRow, FeedbackRow):
                await session.execute(delete(dependent).where(dependent.purchase == id))
            await session.delete(row)
        return True

    async def get_all(self) -> List[Purchase]:
        return await self.filter(Query.all())

    @backend_call("purchases.page")
    async def _page(
        self, tester_uuid: str, refunded: bool, pagination: Optional[Pagination]
    ) -> PaginatedResult[Purchase]:
        pagination = pagination or Pagination()
        conditions = [PurchaseRow.tester_uuid == tester_uuid, PurchaseRow.refunded == refunded]
        async with self.database.session() as session:
            total = await session.scalar(select(func.count()).select_from(PurchaseRow).where(*conditions))
            rows = await session.scalars(
                select(PurchaseRow)
                .where(*conditions)
                .order_by(*_ordering(pagination))
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            return PaginatedResult[Purchase](
                results=[_to_entity(row, Purchase) for row in rows], total_count=total
            )

    async def refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return await self._page(tester_uuid, True, pagination)

    async def not_refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        return await self._page(tester_uuid, False, pagination)

    @backend_call("purchases.ready_for_refund")
    async def ready_for_refund(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[PurchaseWithFeedback]:
        pagination = pagination or Pagination()
        conditions = [PurchaseRow.tester_uuid == tester_uuid, PurchaseRow.refunded == false()]
        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count())
                .select_from(PurchaseRow)
                .join(FeedbackRow, FeedbackRow.purchase == PurchaseRow.id)
                .join(PublicationRow, PublicationRow.purchase == PurchaseRow.id)
                .where(*conditions)
            )
            rows = await session.execute(
                select(PurchaseRow, FeedbackRow, PublicationRow)
                .join(FeedbackRow, FeedbackRow.purchase == PurchaseRow.id)
                .join(PublicationRow, PublicationRow.purchase == PurchaseRow.id)
                .where(*conditions)
                .order_by(*_ordering(pagination))
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            results = [
                PurchaseWithFeedback(
                    **_to_entity(purchase, Purchase).model_dump(),
                    feedback=feedback.feedback,
                    feedback_date=feedback.date,
                    publication_screenshot=publication.screenshot,
                    publication_date=publication.date,
                )
                for purchase, feedback, publication in rows
            ]
        return PaginatedResult[PurchaseWithFeedback](results=results, total_count=total)

    @backend_call("purchases.amount")
    async def _amount(self, tester_uuid: str, refunded: bool) -> float:
        async with self.database.session() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(PurchaseRow.amount), 0.0)).where(
                    PurchaseRow.tester_uuid == tester_uuid, PurchaseRow.refunded == refunded
                )
            )
        return round(float(total), 2)

    async def refunded_amount(self, tester_uuid: str) -> float:
        return await self._amount(tester_uuid, True)

    async def not_refunded_amount(self, tester_uuid: str) -> float:
        return await self._amount(tester_uuid, False)

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
        pagination = Pagination.normalized(page, limit, sort, order)
        conditions = [PurchaseRow.tester_uuid == tester_uuid]
        if limit_to_not_refunded:
            conditions.append(PurchaseRow.refunded == false())

        async with self.database.session() as session:
            total = await session.scalar(select(func.count()).select_from(PurchaseRow).where(*conditions))
            rows = await session.execute(
                select(
                    PurchaseRow,
                    FeedbackRow.id,
                    PublicationRow.id,
                    PublicationRow.screenshot,
                    RefundRow.id,
                    RefundRow.transaction_id,
                )
                .outerjoin(FeedbackRow, FeedbackRow.purchase == PurchaseRow.id)
                .outerjoin(PublicationRow, PublicationRow.purchase == PurchaseRow.id)
                .outerjoin(RefundRow, RefundRow.purchase == PurchaseRow.id)
                .where(*conditions)
                .order_by(*_ordering(pagination))
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            results = [
                PurchaseStatus(
                    purchase=purchase.id,
                    tester_uuid=purchase.tester_uuid,
                    date=purchase.date,
                    order=purchase.order,
                    description=purchase.description,
                    amount=purchase.amount,
                    refunded=purchase.refunded,
                    has_feedback=feedback_id is not None,
                    has_publication=publication_id is not None,
                    has_refund=refund_id is not None,
                    purchase_screenshot=purchase.screenshot,
                    publication_screenshot=publication_screenshot,
                    screenshot_summary=purchase.screenshot_summary,
                    transaction_id=transaction_id,
                )
                for purchase, feedback_id, publication_id, publication_screenshot, refund_id, transaction_id in rows
            ]
        return PurchaseStatusResponse(
            results=results,
            page_info=build_page_info(total, pagination.page, pagination.limit),
        )

    @backend_call("purchases.get_purchase_statistics")
    async def get_purchase_statistics(self, tester_uuid: str) -> PurchasesStatistics:
        refunded = PurchaseRow.refunded == true()
        async with self.database.session() as session:
            totals = (await session.execute(
                select(
                    func.count(PurchaseRow.id),
                    func.coalesce(func.sum(case((refunded, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((refunded, PurchaseRow.amount), else_=0.0)), 0.0),
                    func.coalesce(func.sum(case((refunded, 0.0), else_=PurchaseRow.amount)), 0.0),
                    func.coalesce(func.sum(PurchaseRow.amount), 0.0),
                ).where(PurchaseRow.tester_uuid == tester_uuid)
            )).one()
            ready = await session.scalar(
                select(func.count())
                .select_from(PurchaseRow)
                .join(FeedbackRow, FeedbackRow.purchase == PurchaseRow.id)
                .join(PublicationRow, PublicationRow.purchase == PurchaseRow.id)
                .where(PurchaseRow.tester_uuid == tester_uuid, PurchaseRow.refunded == false())
            )
        nb_total, nb_refunded, refunded_amount, not_refunded_amount, total_amount = totals
        return PurchasesStatistics(
            nb_refunded=nb_refunded,
            nb_not_refunded=nb_total - nb_refunded,
            nb_ready_for_refund=ready,
            nb_total=nb_total,
            total_refunded_amount=round(float(refunded_amount), 2),
            total_not_refunded_amount=round(float(not_refunded_amount), 2),
            total_purchase_amount=round(float(total_amount), 2),
        )

    async def search_purchases(self, tester_uuid: str, query: str) -> List[str]:
        purchases = await self.filter(Query.where(tester_uuid=tester_uuid))
        return search_purchases(purchases, query)


class _SqlLifecycleRepository:
    """Feedback, publication and refund rows: one per purchase, upserted."""

    row_cls: Any = None
    model: Type[Entity] = Entity
    name = ""

    def __init__(self, database: Database):
        self.database = database

    async def filter(self, query: Query) -> List[Any]:
        clauses, residual = split_query(query, self.model, self.row_cls)
        try:
            async with self.database.session() as session:
                rows = await session.scalars(
                    select(self.row_cls).where(*clauses).order_by(self.row_cls.id)
                )
                entities = [_to_entity(row, self.model) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"SQL backend failed during {self.name}.filter: {e}", exc_info=True)
            raise BackendFailure(f"{self.name}.filter", BACKEND, str(e)) from e
        return [entity for entity in entities if residual.matches(entity)]

    async def find(self, query: Query) -> Optional[Any]:
        entities = await self.filter(query)
        return entities[0] if entities else None

    async def get_all(self) -> List[Any]:
        return await self.filter(Query.all())

    def on_upsert(self, purchase: PurchaseRow) -> None:
        """Hook run on the owning purchase inside the upsert transaction."""

    async def put(self, tester_id: str, entity: Entity) -> str:
        values = _row_values(entity, self.row_cls)
        try:
            async with self.database.transaction() as session:
                purchase = await _owned_purchase(session, tester_id, values["purchase"])
                row = await session.scalar(
                    select(self.row_cls).where(self.row_cls.purchase == values["purchase"])
                )
                if row is None:
                    session.add(self.row_cls(**values))
                else:
                    for name, value in values.items():
                        setattr(row, name, value)
                self.on_upsert(purchase)
        except SQLAlchemyError as e:
            logger.error(f"SQL backend failed during {self.name}.put: {e}", exc_info=True)
            raise BackendFailure(f"{self.name}.put", BACKEND, str(e)) from e
        return values["purchase"]


class SqlFeedbacks(_SqlLifecycleRepository, FeedbacksRepository):
    row_cls = FeedbackRow
    model = Feedback
    name = "feedbacks"


class SqlPublications(_SqlLifecycleRepository, PublicationsRepository):
    row_cls = PublicationRow
    model = Publication
    name = "publications"


class SqlRefunds(_SqlLifecycleRepository, RefundsRepository):
    row_cls = RefundRow
    model = Refund
    name = "refunds"

    def on_upsert(self, purchase: PurchaseRow) -> None:
        purchase.refunded = True


def _to_link(row: LinkRow) -> Link:
    return Link(
        code=row.code,
        purchase=row.purchase,
        expires_at=row.expires_at.replace(tzinfo=timezone.utc),
        created_at=row.created_at.replace(tzinfo=timezone.utc),
    )


class SqlLinks(LinksRepository):

    def __init__(self, database: Database):
        self.database = database

    @backend_call("links.generate")
    async def generate(self, purchase_id: str, duration_seconds: int) -> str:
        check_duration(duration_seconds)
        async with self.database.transaction() as session:
            if await session.get(PurchaseRow, purchase_id) is None:
                raise NotFoundError("Purchase", purchase_id)
            for _ in range(MAX_GENERATION_ATTEMPTS):
                code = generate_short_code()
                existing = await session.scalar(select(LinkRow).where(LinkRow.code == code))
                if existing is None:
                    break
                if existing.expires_at <= _now():
                    await session.delete(existing)
                    await session.flush()
                    break
            else:
                raise ValidationError("Failed to generate a unique short code")
            session.add(
                LinkRow(
                    code=code,
                    purchase=purchase_id,
                    expires_at=_utc_naive(expiry_from_now(duration_seconds)),
                    created_at=_now(),
                )
            )
        return code

    @backend_call("links.get_purchase_by_code")
    async def get_purchase_by_code(self, code: str) -> Optional[str]:
        async with self.database.session() as session:
            return await session.scalar(
                select(LinkRow.purchase).where(LinkRow.code == code, LinkRow.expires_at > _now())
            )

    @backend_call("links.delete")
    async def delete(self, code: str) -> bool:
        async with self.database.transaction() as session:
            result = await session.execute(delete(LinkRow).where(LinkRow.code == code))
            return result.rowcount > 0

    @backend_call("links.get_by_purchase_id")
    async def get_by_purchase_id(self, purchase_id: str) -> List[Link]:
        async with self.database.session() as session:
            rows = await session.scalars(
                select(LinkRow).where(LinkRow.purchase == purchase_id).order_by(LinkRow.created_at)
            )
            return [_to_link(row) for row in rows]

    @backend_call("links.cleanup_expired")
    async def cleanup_expired(self) -> int:
        async with self.database.transaction() as session:
            result = await session.execute(delete(LinkRow).where(LinkRow.expires_at <= _now()))
            removed = result.rowcount
        logger.info(f"Removed {removed} expired links")
        return removed

    @backend_call("links.get_all")
    async def get_all(self) -> List[Link]:
        async with self.database.session() as session:
            rows = await session.scalars(select(LinkRow).order_by(LinkRow.created_at))
            return [_to_link(row) for row in rows]


class SqlDatabase(FeedbackFlowDatabase):
    """Relational backend (SQLite through aiosqlite, PostgreSQL through asyncpg)."""

    backend_name = BACKEND

    def __init__(self, database: Database):
        self.database = database
        self.id_mappings = SqlIdMappings(database)
        self.testers = SqlTesters(database)
        self.purchases = SqlPurchases(database)
        self.feedbacks = SqlFeedbacks(database)
        self.publications = SqlPublications(database)
        self.refunds = SqlRefunds(database)
        self.links = SqlLinks(database)

    @backend_call("initialize")
    async def initialize(self) -> None:
        await self.database.create_tables()
        async with self.database.engine.begin() as conn:
            await conn.run_sync(ensure_version_row)
        for line in await self.run_migrations():
            logger.info(line)

    async def close(self) -> None:
        await self.database.close()

    async def reset(self, data: Optional[DatabaseSchema] = None) -> None:
        raise UnsupportedOperationError("reset", BACKEND, "Use restore_from_json_string instead")

    async def get_raw_data(self) -> DatabaseSchema:
        raise UnsupportedOperationError("get_raw_data", BACKEND, "Use backup_to_json instead")

    @backend_call("list_tables")
    async def list_tables(self) -> List[str]:
        async with self.database.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return sorted(tables)

    @backend_call("get_schema_version")
    async def get_schema_version(self) -> SchemaVersion:
        async with self.database.engine.connect() as conn:
            return await conn.run_sync(read_version)

    @backend_call("run_migrations")
    async def run_migrations(self) -> List[str]:
        async with self.database.engine.begin() as conn:
            await conn.run_sync(ensure_version_row)
            current = (await conn.run_sync(read_version)).version
            pending = pending_migrations(current)
            if not pending:
                return [up_to_date_message(current)]
            results = []
            for migration in pending:
                results.append(await conn.run_sync(apply_migration, migration))
        results.append(f"Database schema migrated to version {pending[-1].version}")
        return results

    async def _snapshot(self) -> DatabaseSchema:
        return DatabaseSchema(
            ids=await self.id_mappings.get_all(),
            testers=await self.testers.get_all(),
            purchases=await self.purchases.get_all(),
            feedbacks=await self.feedbacks.get_all(),
            publications=await self.publications.get_all(),
            refunds=await self.refunds.get_all(),
            links=await self.links.get_all(),
        )

    async def backup_to_json(self) -> str:
        return serialize_backup(await self._snapshot())

    async def restore_from_json_string(self, backup: str) -> RestoreResult:
        """
        Replace the whole database with a backup, all or nothing.

        Args:
            backup: JSON document produced by ``backup_to_json``

        Returns:
            RestoreResult; on failure the previous content is untouched
        """
        try:
            data = parse_backup(backup)
        except ValidationError as e:
            return restore_failed(e)

        try:
            async with self.database.transaction() as session:
                for row_cls in (LinkRow, RefundRow, PublicationRow, FeedbackRow, PurchaseRow, IdMappingRow, TesterRow):
                    await session.execute(delete(row_cls))

                session.add_all(TesterRow(uuid=t.uuid, name=t.name) for t in data.testers)
                await session.flush()

                mapped = {m.id for m in data.ids}
                session.add_all(IdMappingRow(id=m.id, tester_uuid=m.tester_uuid) for m in data.ids)
                session.add_all(
                    IdMappingRow(id=id, tester_uuid=t.uuid)
                    for t in data.testers for id in t.ids if id not in mapped
                )
                session.add_all(PurchaseRow(**_row_values(p, PurchaseRow)) for p in data.purchases)
                await session.flush()

                for row_cls, entities in (
                    (FeedbackRow, data.feedbacks),
                    (PublicationRow, data.publications),
                    (RefundRow, data.refunds),
                ):
                    session.add_all(row_cls(**_row_values(e, row_cls)) for e in entities)
                session.add_all(
                    LinkRow(
                        code=link.code,
                        purchase=link.purchase,
                        expires_at=_utc_naive(link.expires_at),
                        created_at=_utc_naive(link.created_at),
                    )
                    for link in data.links
                )
        except SQLAlchemyError as e:
            return restore_failed(e)
        return restore_succeeded(data)
