"""Tests for pagination, sorting and status aggregation."""

from datetime import date

import pytest

from feedbackflow.aggregation import (
    PurchaseGraph,
    build_purchase_status,
    compute_statistics,
)
from feedbackflow.entities import Feedback, Publication, Purchase, Refund
from feedbackflow.errors import ValidationError
from feedbackflow.pagination import Pagination, build_page_info, sort_and_slice


def _purchase(id, day, order="ORDER", amount=10.0, refunded=False):
    return Purchase(
        id=id,
        tester_uuid="t-1",
        date=date(2025, 1, day),
        order=order,
        description="Item",
        amount=amount,
        screenshot="img",
        refunded=refunded,
    )


class TestPagination:
    """Test pagination normalization and validation."""

    def test_defaults(self):
        pagination = Pagination()

        assert (pagination.page, pagination.limit, pagination.sort, pagination.order) == (
            1, 10, "date", "desc"
        )

    def test_unknown_values_fall_back(self):
        pagination = Pagination.normalized(page=None, limit=0, sort="amount", order="up")

        assert (pagination.page, pagination.limit, pagination.sort, pagination.order) == (
            1, 10, "date", "desc"
        )

    def test_validated_rejects_non_positive(self):
        with pytest.raises(ValidationError) as exc_info:
            Pagination(page=0, limit=-1).validated()

        assert exc_info.value.fields == ["page", "limit"]

    def test_offset(self):
        assert Pagination(page=3, limit=20).offset == 40


class TestPageInfo:
    """Test page envelope computation."""

    def test_middle_page(self):
        info = build_page_info(total_count=25, page=2, limit=10)

        assert info.total_pages == 3
        assert (info.has_next_page, info.next_page) == (True, 3)
        assert (info.has_previous_page, info.previous_page) == (True, 1)

    def test_empty_result(self):
        info = build_page_info(total_count=0, page=1, limit=10)

        assert info.total_pages == 0
        assert info.has_next_page is False
        assert info.previous_page is None

    def test_public_shape(self):
        public = build_page_info(total_count=5, page=1, limit=2).to_public()

        assert public == {
            "totalCount": 5,
            "totalPages": 3,
            "currentPage": 1,
            "hasNextPage": True,
            "hasPreviousPage": False,
            "nextPage": 2,
            "previousPage": None,
        }


class TestSortAndSlice:
    """Test sorting stability and slicing."""

    def test_stable_for_equal_keys(self):
        items = [_purchase("a", 5), _purchase("b", 5), _purchase("c", 6)]

        page, total = sort_and_slice(items, Pagination(), {"date": lambda p: p.date})

        assert [p.id for p in page] == ["c", "a", "b"]
        assert total == 3

    def test_total_counts_before_slicing(self):
        items = [_purchase(str(day), day) for day in range(1, 8)]

        page, total = sort_and_slice(
            items, Pagination(page=2, limit=3, order="asc"), {"date": lambda p: p.date}
        )

        assert [p.id for p in page] == ["4", "5", "6"]
        assert total == 7


class TestAggregation:
    """Test derived status rows and statistics."""

    @pytest.fixture
    def graph(self):
        purchases = [
            _purchase("ready", 1, amount=10.0),
            _purchase("refunded", 2, amount=20.25, refunded=True),
            _purchase("new", 3, amount=5.5),
        ]
        feedbacks = [
            Feedback(purchase="ready", date=date(2025, 1, 4), feedback="ok"),
            Feedback(purchase="refunded", date=date(2025, 1, 4), feedback="ok"),
        ]
        publications = [
            Publication(purchase="ready", date=date(2025, 1, 5), screenshot="pub-ready"),
            Publication(purchase="refunded", date=date(2025, 1, 5), screenshot="pub-refunded"),
        ]
        refunds = [
            Refund(
                purchase="refunded",
                date=date(2025, 1, 6),
                refund_date=date(2025, 1, 6),
                amount=20.25,
                transaction_id="TX-9",
            )
        ]
        return PurchaseGraph(purchases, feedbacks, publications, refunds)

    def test_status_rows(self, graph):
        response = build_purchase_status(graph, "t-1", False, 1, 10, "date", "asc")
        rows = {row.purchase: row for row in response.results}

        assert [row.purchase for row in response.results] == ["ready", "refunded", "new"]
        assert rows["ready"].has_publication and not rows["ready"].has_refund
        assert rows["refunded"].transaction_id == "TX-9"
        assert rows["new"].publication_screenshot is None

    def test_status_requires_tester(self, graph):
        with pytest.raises(ValidationError):
            build_purchase_status(graph, "", False, 1, 10, "date", "desc")

    def test_statistics(self, graph):
        stats = compute_statistics(graph)

        assert stats.nb_total == 3
        assert stats.nb_refunded == 1
        assert stats.nb_not_refunded == 2
        assert stats.nb_ready_for_refund == 1
        assert stats.total_refunded_amount == 20.25
        assert stats.total_not_refunded_amount == 15.5
        assert stats.total_purchase_amount == 35.75
