"""Derived-status aggregation over materialized purchases.

The in-process and document backends load a tester's purchases together with
their feedback, publication and refund records and hand them to these
functions. The relational backend answers the same questions with SQL joins
and must produce identical rows.
"""
from typing import Dict, Iterable, List, Optional

from .entities import (
    Feedback,
    PaginatedResult,
    Publication,
    Purchase,
    PurchasesStatistics,
    PurchaseStatus,
    PurchaseStatusResponse,
    PurchaseWithFeedback,
    Refund,
)
from .errors import ValidationError
from .pagination import Pagination, build_page_info, sort_and_slice

PURCHASE_SORT_KEYS = {
    "date": lambda p: p.date,
    "order": lambda p: p.order,
}


class PurchaseGraph:
    """A tester's purchases with their lifecycle records indexed by purchase id."""

    def __init__(
        self,
        purchases: Iterable[Purchase],
        feedbacks: Iterable[Feedback] = (),
        publications: Iterable[Publication] = (),
        refunds: Iterable[Refund] = (),
    ):
        self.purchases = list(purchases)
        # First record wins when a backend allows several per purchase
        self.feedbacks: Dict[str, Feedback] = {}
        self.publications: Dict[str, Publication] = {}
        self.refunds: Dict[str, Refund] = {}
        for feedback in feedbacks:
            self.feedbacks.setdefault(feedback.purchase, feedback)
        for publication in publications:
            self.publications.setdefault(publication.purchase, publication)
        for refund in refunds:
            self.refunds.setdefault(refund.purchase, refund)

    def is_ready_for_refund(self, purchase: Purchase) -> bool:
        return (
            not purchase.refunded
            and purchase.id in self.feedbacks
            and purchase.id in self.publications
        )

    def status_of(self, purchase: Purchase) -> PurchaseStatus:
        publication = self.publications.get(purchase.id)
        refund = self.refunds.get(purchase.id)
        return PurchaseStatus(
            purchase=purchase.id,
            tester_uuid=purchase.tester_uuid,
            date=purchase.date,
            order=purchase.order,
            description=purchase.description,
            amount=purchase.amount,
            refunded=purchase.refunded,
            has_feedback=purchase.id in self.feedbacks,
            has_publication=publication is not None,
            has_refund=refund is not None,
            purchase_screenshot=purchase.screenshot,
            publication_screenshot=publication.screenshot if publication else None,
            screenshot_summary=purchase.screenshot_summary,
            transaction_id=refund.transaction_id if refund else None,
        )

    def with_feedback(self, purchase: Purchase) -> PurchaseWithFeedback:
        feedback = self.feedbacks[purchase.id]
        publication = self.publications[purchase.id]
        return PurchaseWithFeedback(
            **purchase.model_dump(),
            feedback=feedback.feedback,
            feedback_date=feedback.date,
            publication_screenshot=publication.screenshot,
            publication_date=publication.date,
        )


def owned_by(purchases: Iterable[Purchase], tester_uuid: str) -> List[Purchase]:
    return [purchase for purchase in purchases if purchase.tester_uuid == tester_uuid]


def paginate_purchases(
    purchases: List[Purchase], pagination: Optional[Pagination]
) -> PaginatedResult[Purchase]:
    pagination = pagination or Pagination()
    page, total = sort_and_slice(purchases, pagination, PURCHASE_SORT_KEYS)
    return PaginatedResult[Purchase](results=page, total_count=total)


def build_ready_for_refund(
    graph: PurchaseGraph, pagination: Optional[Pagination]
) -> PaginatedResult[PurchaseWithFeedback]:
    pagination = pagination or Pagination()
    ready = [p for p in graph.purchases if graph.is_ready_for_refund(p)]
    page, total = sort_and_slice(ready, pagination, PURCHASE_SORT_KEYS)
    return PaginatedResult[PurchaseWithFeedback](
        results=[graph.with_feedback(p) for p in page], total_count=total
    )


def build_purchase_status(
    graph: PurchaseGraph,
    tester_uuid: str,
    limit_to_not_refunded: bool,
    page: int,
    limit: int,
    sort: str,
    order: str,
) -> PurchaseStatusResponse:
    """Status rows for the graph's purchases, sorted and sliced to one page."""
    check_tester_uuid(tester_uuid)
    pagination = Pagination.normalized(page, limit, sort, order)
    candidates = [
        p for p in graph.purchases if not (limit_to_not_refunded and p.refunded)
    ]
    page_items, total = sort_and_slice(candidates, pagination, PURCHASE_SORT_KEYS)
    return PurchaseStatusResponse(
        results=[graph.status_of(p) for p in page_items],
        page_info=build_page_info(total, pagination.page, pagination.limit),
    )


def compute_statistics(graph: PurchaseGraph) -> PurchasesStatistics:
    refunded = [p for p in graph.purchases if p.refunded]
    not_refunded = [p for p in graph.purchases if not p.refunded]
    return PurchasesStatistics(
        nb_refunded=len(refunded),
        nb_not_refunded=len(not_refunded),
        nb_ready_for_refund=sum(1 for p in graph.purchases if graph.is_ready_for_refund(p)),
        nb_total=len(graph.purchases),
        total_refunded_amount=sum_amounts(refunded),
        total_not_refunded_amount=sum_amounts(not_refunded),
        total_purchase_amount=sum_amounts(graph.purchases),
    )


def sum_amounts(purchases: Iterable[Purchase]) -> float:
    # Rounded to cents so float accumulation does not leak into results
    return round(sum(purchase.amount for purchase in purchases), 2)


def check_tester_uuid(tester_uuid: str) -> None:
    if not tester_uuid:
        raise ValidationError("Tester UUID is required", fields=["tester_uuid"])
