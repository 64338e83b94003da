"""Repository contracts shared by every storage backend.

All operations are coroutines and return copies, never live references.
Listings follow creation order, so ``find`` returns the earliest match.
"Not found" is reported as ``None`` or an empty result; anything else
abnormal raises a ``FeedbackFlowError`` subclass.
"""
import abc
from typing import TYPE_CHECKING, List, Optional, Protocol, runtime_checkable

from .entities import (
    DatabaseSchema,
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
from .errors import ConflictError
from .pagination import Pagination
from .query import Query

if TYPE_CHECKING:
    from .backends.migrations import SchemaVersion
    from .backup import RestoreResult


class IdMappingsRepository(abc.ABC):
    """External OAuth id to tester uuid mappings."""

    @abc.abstractmethod
    async def exists(self, id: str) -> bool:
        """Check if an ID exists in the database."""

    @abc.abstractmethod
    async def exists_multiple(self, ids: List[str]) -> List[str]:
        """Return the subset of ``ids`` that already exist."""

    @abc.abstractmethod
    async def get_tester_uuid(self, id: str) -> Optional[str]:
        """Get the tester UUID associated with an ID."""

    @abc.abstractmethod
    async def put(self, id: str, tester_uuid: str) -> bool:
        """Add a mapping. Returns ``False`` if the ID already exists."""

    async def put_strict(self, id: str, tester_uuid: str) -> None:
        """Add a mapping, raising ``ConflictError`` if the ID already exists."""
        if not await self.put(id, tester_uuid):
            raise ConflictError(id, await self.get_tester_uuid(id))

    @abc.abstractmethod
    async def put_multiple(self, ids: List[str], tester_uuid: str) -> List[str]:
        """Add several mappings. Returns the IDs actually inserted."""

    @abc.abstractmethod
    async def delete(self, id: str) -> bool:
        """Delete a mapping. Returns ``False`` if it did not exist."""

    @abc.abstractmethod
    async def get_all(self) -> List[IdMapping]:
        """Get all ID mappings."""


class TestersRepository(abc.ABC):
    """Testers and the reconciliation of their IDs."""

    # Not a test class despite the name
    __test__ = False

    @abc.abstractmethod
    async def find(self, query: Query) -> Optional[Tester]:
        pass

    @abc.abstractmethod
    async def filter(self, query: Query) -> List[Tester]:
        pass

    @abc.abstractmethod
    async def put(self, tester: Tester) -> List[str]:
        """Add or update a tester.

        New IDs are mapped before removed IDs are unmapped, so an interrupted
        update never loses a mapping. IDs owned by another tester are skipped.

        Returns:
            The tester's IDs after reconciliation
        """

    @abc.abstractmethod
    async def get_all(self) -> List[Tester]:
        pass

    @abc.abstractmethod
    async def get_tester_with_id(self, id: str) -> Optional[Tester]:
        """Find a tester by one of their authentication IDs."""

    @abc.abstractmethod
    async def get_tester_with_uuid(self, uuid: str) -> Optional[Tester]:
        pass

    @abc.abstractmethod
    async def add_ids(self, uuid: str, ids: List[str]) -> Optional[List[str]]:
        """Add IDs to an existing tester.

        Returns:
            All of the tester's IDs, or ``None`` if the tester is unknown
        """


class PurchasesRepository(abc.ABC):
    """Purchases and the derived-status queries built on them."""

    @abc.abstractmethod
    async def find(self, query: Query) -> Optional[Purchase]:
        pass

    @abc.abstractmethod
    async def filter(self, query: Query) -> List[Purchase]:
        pass

    @abc.abstractmethod
    async def put(self, tester_uuid: str, purchase: Purchase) -> str:
        """Add a purchase for a tester. Returns its ID."""

    @abc.abstractmethod
    async def update(self, id: str, updates: PurchaseUpdate) -> bool:
        """Apply a partial update. ``False`` if nothing changed or unknown ID."""

    @abc.abstractmethod
    async def delete(self, id: str) -> bool:
        """Delete a purchase and its feedback, publication, refund and links."""

    @abc.abstractmethod
    async def get_all(self) -> List[Purchase]:
        pass

    @abc.abstractmethod
    async def refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        pass

    @abc.abstractmethod
    async def not_refunded(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[Purchase]:
        pass

    @abc.abstractmethod
    async def ready_for_refund(
        self, tester_uuid: str, pagination: Optional[Pagination] = None
    ) -> PaginatedResult[PurchaseWithFeedback]:
        """Unrefunded purchases with both a feedback and a publication."""

    @abc.abstractmethod
    async def refunded_amount(self, tester_uuid: str) -> float:
        pass

    @abc.abstractmethod
    async def not_refunded_amount(self, tester_uuid: str) -> float:
        pass

    @abc.abstractmethod
    async def get_purchase_status(
        self,
        tester_uuid: str,
        limit_to_not_refunded: bool = False,
        page: int = 1,
        limit: int = 10,
        sort: str = "date",
        order: str = "desc",
    ) -> PurchaseStatusResponse:
        """One status row per purchase of the tester, paginated.

        Raises:
            ValidationError: if ``tester_uuid`` is empty
        """

    @abc.abstractmethod
    async def get_purchase_statistics(self, tester_uuid: str) -> PurchasesStatistics:
        pass

    @abc.abstractmethod
    async def search_purchases(self, tester_uuid: str, query: str) -> List[str]:
        """Fuzzy search over the tester's purchases. Returns IDs, newest first."""


class FeedbacksRepository(abc.ABC):

    @abc.abstractmethod
    async def find(self, query: Query) -> Optional[Feedback]:
        pass

    @abc.abstractmethod
    async def filter(self, query: Query) -> List[Feedback]:
        pass

    @abc.abstractmethod
    async def put(self, tester_id: str, feedback: Feedback) -> str:
        """Add feedback. Returns the purchase ID."""

    @abc.abstractmethod
    async def get_all(self) -> List[Feedback]:
        pass


class PublicationsRepository(abc.ABC):

    @abc.abstractmethod
    async def find(self, query: Query) -> Optional[Publication]:
        pass

    @abc.abstractmethod
    async def filter(self, query: Query) -> List[Publication]:
        pass

    @abc.abstractmethod
    async def put(self, tester_id: str, publication: Publication) -> str:
        """Add a publication. Returns the purchase ID."""

    @abc.abstractmethod
    async def get_all(self) -> List[Publication]:
        pass


class RefundsRepository(abc.ABC):

    @abc.abstractmethod
    async def find(self, query: Query) -> Optional[Refund]:
        pass

    @abc.abstractmethod
    async def filter(self, query: Query) -> List[Refund]:
        pass

    @abc.abstractmethod
    async def put(self, tester_id: str, refund: Refund) -> str:
        """Record a refund and mark its purchase as refunded, atomically."""

    @abc.abstractmethod
    async def get_all(self) -> List[Refund]:
        pass


class LinksRepository(abc.ABC):
    """Short public links for dispute resolution."""

    @abc.abstractmethod
    async def generate(self, purchase_id: str, duration_seconds: int) -> str:
        """Create a link valid for ``duration_seconds``. Returns the code."""

    @abc.abstractmethod
    async def get_purchase_by_code(self, code: str) -> Optional[str]:
        """Purchase ID for an unexpired code, ``None`` otherwise."""

    @abc.abstractmethod
    async def delete(self, code: str) -> bool:
        pass

    @abc.abstractmethod
    async def get_by_purchase_id(self, purchase_id: str) -> List[Link]:
        pass

    @abc.abstractmethod
    async def cleanup_expired(self) -> int:
        """Delete expired links. Returns how many were removed."""

    @abc.abstractmethod
    async def get_all(self) -> List[Link]:
        pass


class FeedbackFlowDatabase(abc.ABC):
    """A storage backend exposing the full repository contract."""

    backend_name: str = "abstract"

    id_mappings: IdMappingsRepository
    testers: TestersRepository
    purchases: PurchasesRepository
    feedbacks: FeedbacksRepository
    publications: PublicationsRepository
    refunds: RefundsRepository
    links: LinksRepository

    async def initialize(self) -> None:
        """Prepare the storage (schema, version records). Idempotent."""

    async def close(self) -> None:
        """Release connections held by the backend."""

    @abc.abstractmethod
    async def reset(self, data: Optional[DatabaseSchema] = None) -> None:
        """Replace everything with ``data`` (or empty).

        Raises ``ValidationError`` when ``data`` references missing rows.
        """

    @abc.abstractmethod
    async def get_raw_data(self) -> DatabaseSchema:
        """Copy of the whole entity graph."""


@runtime_checkable
class SupportsBackup(Protocol):
    """Backends able to snapshot and restore the whole database as JSON."""

    async def backup_to_json(self) -> str:
        ...

    async def restore_from_json_string(self, backup: str) -> "RestoreResult":
        ...


@runtime_checkable
class SupportsSchemaIntrospection(Protocol):
    """Backends with a versioned schema that can be inspected."""

    async def list_tables(self) -> List[str]:
        ...

    async def get_schema_version(self) -> "SchemaVersion":
        ...

    async def run_migrations(self) -> List[str]:
        ...

