"""Entity and projection models for the purchase-refund lifecycle."""
from datetime import date, datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

# "date" is also a field name, which shadows the type inside class bodies
_Date = date


class Entity(BaseModel):
    """Base model: snake_case attributes, camelCase public JSON."""

    class Config:
        populate_by_name = True

    def to_public(self) -> Dict[str, Any]:
        """Public JSON shape (camelCase keys, ISO dates)."""
        return self.model_dump(mode="json", by_alias=True)


class Tester(Entity):
    """A participant who makes tracked purchases."""
    uuid: str = ""
    name: str
    ids: List[str] = Field(default_factory=list)


class IdMapping(Entity):
    """External OAuth subject id owned by a tester."""
    id: str
    tester_uuid: str = Field(alias="testerUuid")


class Purchase(Entity):
    """A tracked purchase eligible for feedback, publication and refund."""
    id: str = ""
    tester_uuid: str = Field(default="", alias="testerUuid")
    date: date
    order: str
    description: str
    amount: float
    screenshot: str
    screenshot_summary: Optional[str] = Field(default=None, alias="screenshotSummary")
    refunded: bool = False


class PurchaseUpdate(Entity):
    """Partial purchase update. Only explicitly set fields are applied."""
    date: Optional[_Date] = None
    order: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    screenshot: Optional[str] = None
    screenshot_summary: Optional[str] = Field(default=None, alias="screenshotSummary")
    refunded: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        """Fields to write, keyed by attribute name."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key == "screenshot_summary"
        }


class Feedback(Entity):
    """Feedback text submitted for a purchase."""
    purchase: str
    date: date
    feedback: str


class Publication(Entity):
    """Proof that the feedback was published."""
    purchase: str
    date: date
    screenshot: str


class Refund(Entity):
    """Refund received for a purchase."""
    purchase: str
    date: date
    refund_date: date = Field(alias="refundDate")
    amount: float
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class Link(Entity):
    """Short, time-limited public code resolving to a purchase."""
    code: str
    purchase: str
    expires_at: datetime = Field(alias="expiresAt")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class PurchaseStatus(Entity):
    """Purchase joined with existence flags for its lifecycle records."""
    purchase: str
    tester_uuid: str = Field(alias="testerUuid")
    date: date
    order: str
    description: str
    amount: float
    refunded: bool
    has_feedback: bool = Field(alias="hasFeedback")
    has_publication: bool = Field(alias="hasPublication")
    has_refund: bool = Field(alias="hasRefund")
    purchase_screenshot: Optional[str] = Field(default=None, alias="purchaseScreenshot")
    publication_screenshot: Optional[str] = Field(default=None, alias="publicationScreenshot")
    screenshot_summary: Optional[str] = Field(default=None, alias="screenshotSummary")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class PurchaseWithFeedback(Purchase):
    """Purchase ready for refund, with its feedback and publication inlined."""
    feedback: str
    feedback_date: date = Field(alias="feedbackDate")
    publication_screenshot: Optional[str] = Field(default=None, alias="publicationScreenshot")
    publication_date: Optional[date] = Field(default=None, alias="publicationDate")


class PageInfo(Entity):
    """Pagination metadata computed over the full filtered set."""
    total_count: int = Field(alias="totalCount")
    total_pages: int = Field(alias="totalPages")
    current_page: int = Field(alias="currentPage")
    has_next_page: bool = Field(alias="hasNextPage")
    has_previous_page: bool = Field(alias="hasPreviousPage")
    next_page: Optional[int] = Field(default=None, alias="nextPage")
    previous_page: Optional[int] = Field(default=None, alias="previousPage")


class PurchaseStatusResponse(Entity):
    results: List[PurchaseStatus]
    page_info: PageInfo = Field(alias="pageInfo")


T = TypeVar("T")


class PaginatedResult(Entity, Generic[T]):
    results: List[T]
    total_count: int = Field(alias="totalCount")


class PurchasesStatistics(Entity):
    """Aggregate counts and amounts for one tester."""
    nb_refunded: int = Field(alias="nbRefunded")
    nb_not_refunded: int = Field(alias="nbNotRefunded")
    nb_ready_for_refund: int = Field(alias="nbReadyForRefund")
    nb_total: int = Field(alias="nbTotal")
    total_refunded_amount: float = Field(alias="totalRefundedAmount")
    total_not_refunded_amount: float = Field(alias="totalNotRefundedAmount")
    total_purchase_amount: float = Field(alias="totalPurchaseAmount")


class DatabaseSchema(Entity):
    """Whole entity graph, as dumped by ``get_raw_data`` and backups."""
    ids: List[IdMapping] = Field(default_factory=list)
    testers: List[Tester] = Field(default_factory=list)
    purchases: List[Purchase] = Field(default_factory=list)
    feedbacks: List[Feedback] = Field(default_factory=list)
    publications: List[Publication] = Field(default_factory=list)
    refunds: List[Refund] = Field(default_factory=list)
    links: List[Link] = Field(default_factory=list)
