"""
Repository behavior shared by every backend.

Covers:
- ID mappings and tester reconciliation
- Purchase CRUD and query specifications
- Feedback, publication and refund lifecycle
- Status, pagination and statistics
- Fuzzy search and short links
"""

from datetime import date

import pytest

from feedbackflow.entities import Feedback, Publication, PurchaseUpdate, Refund, Tester
from feedbackflow.errors import ConflictError, NotFoundError, ValidationError
from feedbackflow.pagination import Pagination
from feedbackflow.query import Operator, Query
from feedbackflow.short_links import validate_short_code


async def _complete(db, tester, purchase_id):
    """Add feedback and publication so the purchase becomes ready for refund."""
    tester_id = tester.ids[0]
    await db.feedbacks.put(
        tester_id, Feedback(purchase=purchase_id, date=date(2025, 1, 20), feedback="Great product")
    )
    await db.publications.put(
        tester_id, Publication(purchase=purchase_id, date=date(2025, 1, 21), screenshot="published.png")
    )


async def _refund(db, tester, purchase_id, amount=10.99, transaction_id="TX-1"):
    await db.refunds.put(
        tester.ids[0],
        Refund(
            purchase=purchase_id,
            date=date(2025, 1, 25),
            refund_date=date(2025, 1, 24),
            amount=amount,
            transaction_id=transaction_id,
        ),
    )


class TestIdMappings:
    """Test external id mappings."""

    @pytest.mark.asyncio
    async def test_duplicate_id_keeps_first_mapping(self, db, john, jane):
        """A second put of the same id fails and does not overwrite."""
        assert await db.id_mappings.put("auth0|shared", john.uuid) is True
        assert await db.id_mappings.put("auth0|shared", jane.uuid) is False

        assert await db.id_mappings.get_tester_uuid("auth0|shared") == john.uuid

    @pytest.mark.asyncio
    async def test_put_strict_raises_conflict(self, db, john, jane):
        with pytest.raises(ConflictError) as exc_info:
            await db.id_mappings.put_strict(john.ids[0], jane.uuid)

        assert exc_info.value.tester_uuid == john.uuid

    @pytest.mark.asyncio
    async def test_put_multiple_returns_only_inserted(self, db, john, jane):
        added = await db.id_mappings.put_multiple(["auth0|a", "auth0|b", john.ids[0]], jane.uuid)

        assert added == ["auth0|a", "auth0|b"]
        assert sorted((await db.testers.get_tester_with_uuid(jane.uuid)).ids) == sorted(
            [*jane.ids, "auth0|a", "auth0|b"]
        )

    @pytest.mark.asyncio
    async def test_exists_multiple_returns_known_subset(self, db, john):
        known = await db.id_mappings.exists_multiple(["auth0|nobody", john.ids[0]])

        assert known == [john.ids[0]]

    @pytest.mark.asyncio
    async def test_delete_unmaps_id(self, db, john):
        assert await db.id_mappings.delete(john.ids[0]) is True
        assert await db.id_mappings.delete(john.ids[0]) is False

        assert await db.id_mappings.exists(john.ids[0]) is False
        assert (await db.testers.get_tester_with_uuid(john.uuid)).ids == []

    @pytest.mark.asyncio
    async def test_put_for_unknown_tester(self, db):
        with pytest.raises(NotFoundError):
            await db.id_mappings.put("auth0|orphan", "no-such-uuid")


class TestTesters:
    """Test tester storage and id reconciliation."""

    @pytest.mark.asyncio
    async def test_put_generates_uuid(self, db):
        ids = await db.testers.put(Tester(name="New Tester", ids=["auth0|new"]))

        tester = await db.testers.get_tester_with_id("auth0|new")
        assert ids == ["auth0|new"]
        assert tester.uuid
        assert tester.name == "New Tester"

    @pytest.mark.asyncio
    async def test_put_reconciles_ids(self, db, john):
        """New ids are mapped and dropped ids unmapped."""
        ids = await db.testers.put(Tester(uuid=john.uuid, name="John Doe", ids=["auth0|john-2"]))

        assert ids == ["auth0|john-2"]
        assert await db.id_mappings.exists(john.ids[0]) is False
        assert (await db.testers.get_tester_with_id("auth0|john-2")).uuid == john.uuid

    @pytest.mark.asyncio
    async def test_put_does_not_take_ids_from_other_tester(self, db, john, jane):
        ids = await db.testers.put(
            Tester(uuid=jane.uuid, name="Jane Roe", ids=[jane.ids[0], john.ids[0]])
        )

        assert ids == [jane.ids[0]]
        assert await db.id_mappings.get_tester_uuid(john.ids[0]) == john.uuid

    @pytest.mark.asyncio
    async def test_put_updates_name(self, db, john):
        await db.testers.put(Tester(uuid=john.uuid, name="Johnny", ids=john.ids))

        tester = await db.testers.get_tester_with_uuid(john.uuid)
        assert tester.name == "Johnny"
        assert tester.ids == john.ids

    @pytest.mark.asyncio
    async def test_add_ids(self, db, john, jane):
        assert await db.testers.add_ids("no-such-uuid", ["auth0|x"]) is None

        ids = await db.testers.add_ids(john.uuid, ["auth0|extra", jane.ids[0]])

        assert sorted(ids) == sorted([john.ids[0], "auth0|extra"])
        assert await db.id_mappings.get_tester_uuid(jane.ids[0]) == jane.uuid

    @pytest.mark.asyncio
    async def test_lookups_for_unknown_tester(self, db):
        assert await db.testers.get_tester_with_id("auth0|ghost") is None
        assert await db.testers.get_tester_with_uuid("ghost") is None

    @pytest.mark.asyncio
    async def test_find_and_filter(self, db, john, jane):
        found = await db.testers.find(Query.where(name="John Doe"))
        owners = await db.testers.filter(Query().and_where("ids", Operator.CONTAINS, jane.ids[0]))

        assert found.uuid == john.uuid
        assert [tester.uuid for tester in owners] == [jane.uuid]
        assert len(await db.testers.get_all()) == 2

    @pytest.mark.asyncio
    async def test_put_with_several_ids(self, db):
        ids = ["auth0|multi", "google|multi", "github|multi"]

        assert sorted(await db.testers.put(Tester(uuid="multi-uuid", name="Multi", ids=ids))) == sorted(ids)

        tester = await db.testers.get_tester_with_uuid("multi-uuid")
        assert sorted(tester.ids) == sorted(ids)
        for id in ids:
            assert await db.id_mappings.get_tester_uuid(id) == "multi-uuid"
            assert (await db.testers.get_tester_with_id(id)).uuid == "multi-uuid"

    @pytest.mark.asyncio
    async def test_listing_follows_creation_order(self, db):
        for uuid in ("zeta-uuid", "alpha-uuid", "mid-uuid"):
            await db.testers.put(Tester(uuid=uuid, name="Same Name", ids=[f"auth0|{uuid}"]))

        testers = await db.testers.filter(Query.where(name="Same Name"))

        assert [tester.uuid for tester in testers] == ["zeta-uuid", "alpha-uuid", "mid-uuid"]
        assert (await db.testers.find(Query.where(name="Same Name"))).uuid == "zeta-uuid"

    @pytest.mark.asyncio
    async def test_unknown_query_field(self, db, john):
        with pytest.raises(ValidationError):
            await db.testers.filter(Query.where(nickname="JD"))


class TestPurchases:
    """Test purchase storage."""

    @pytest.mark.asyncio
    async def test_put_and_find(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        purchase = await db.purchases.find(Query.where(id=purchase_id))

        assert purchase.tester_uuid == john.uuid
        assert purchase.amount == 10.99
        assert purchase.date == date(2025, 1, 15)
        assert purchase.refunded is False

    @pytest.mark.asyncio
    async def test_put_requires_tester(self, db, purchase_factory):
        with pytest.raises(ValidationError):
            await db.purchases.put("", purchase_factory())
        with pytest.raises(NotFoundError):
            await db.purchases.put("no-such-uuid", purchase_factory())

    @pytest.mark.asyncio
    async def test_returned_entities_are_copies(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        purchase = await db.purchases.find(Query.where(id=purchase_id))
        purchase.amount = 999.0

        assert (await db.purchases.find(Query.where(id=purchase_id))).amount == 10.99

    @pytest.mark.asyncio
    async def test_update(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        assert await db.purchases.update(purchase_id, PurchaseUpdate()) is False
        assert await db.purchases.update("missing", PurchaseUpdate(amount=1.0)) is False
        assert await db.purchases.update(
            purchase_id, PurchaseUpdate(amount=20.5, screenshot_summary="Keyboard receipt")
        ) is True

        purchase = await db.purchases.find(Query.where(id=purchase_id))
        assert purchase.amount == 20.5
        assert purchase.screenshot_summary == "Keyboard receipt"
        assert purchase.order == "ORDER-001"

    @pytest.mark.asyncio
    async def test_find_returns_earliest_match(self, db, john, purchase_factory):
        for purchase_id in ("p-zulu", "p-alpha"):
            await db.purchases.put(john.uuid, purchase_factory(id=purchase_id))
            await db.feedbacks.put(
                john.ids[0], Feedback(purchase=purchase_id, date=date(2025, 1, 20), feedback="ok")
            )

        assert (await db.purchases.find(Query.where(tester_uuid=john.uuid))).id == "p-zulu"
        assert [f.purchase for f in await db.feedbacks.get_all()] == ["p-zulu", "p-alpha"]

    @pytest.mark.asyncio
    async def test_unusable_operands_rejected(self, db, john, purchase_factory):
        await db.purchases.put(john.uuid, purchase_factory())

        with pytest.raises(ValidationError):
            await db.purchases.filter(Query().and_where("id", Operator.IN, None))
        with pytest.raises(ValidationError):
            await db.purchases.filter(Query().and_where("description", Operator.CONTAINS, None))

    @pytest.mark.asyncio
    async def test_filter_with_date_range(self, db, john, purchase_factory):
        await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 1, 10), order="OLD"))
        await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 2, 10), order="NEW"))

        recent = await db.purchases.filter(
            Query.where(tester_uuid=john.uuid).and_where("date", Operator.GE, "2025-02-01")
        )

        assert [purchase.order for purchase in recent] == ["NEW"]

    @pytest.mark.asyncio
    async def test_delete_removes_dependents(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())
        await _complete(db, john, purchase_id)
        await _refund(db, john, purchase_id)
        await db.links.generate(purchase_id, 3600)

        assert await db.purchases.delete(purchase_id) is True
        assert await db.purchases.delete(purchase_id) is False

        assert await db.purchases.find(Query.where(id=purchase_id)) is None
        assert await db.feedbacks.filter(Query.where(purchase=purchase_id)) == []
        assert await db.publications.filter(Query.where(purchase=purchase_id)) == []
        assert await db.refunds.filter(Query.where(purchase=purchase_id)) == []
        assert await db.links.get_by_purchase_id(purchase_id) == []


class TestRefundLifecycle:
    """Test the purchase -> feedback -> publication -> refund flow."""

    @pytest.mark.asyncio
    async def test_john_doe_purchase_lifecycle(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory(amount=10.99))

        status = await db.purchases.get_purchase_status(john.uuid)
        row = status.results[0]
        assert status.page_info.total_count == 1
        assert (row.has_feedback, row.has_publication, row.has_refund, row.refunded) == (
            False, False, False, False
        )
        assert (await db.purchases.ready_for_refund(john.uuid)).total_count == 0

        await _complete(db, john, purchase_id)

        ready = await db.purchases.ready_for_refund(john.uuid)
        assert ready.total_count == 1
        assert ready.results[0].id == purchase_id
        assert ready.results[0].feedback == "Great product"
        assert ready.results[0].publication_screenshot == "published.png"
        assert (await db.purchases.get_purchase_statistics(john.uuid)).nb_ready_for_refund == 1

        await _refund(db, john, purchase_id)

        purchase = await db.purchases.find(Query.where(id=purchase_id))
        row = (await db.purchases.get_purchase_status(john.uuid)).results[0]
        assert purchase.refunded is True
        assert row.has_refund is True
        assert row.refunded is True
        assert row.transaction_id == "TX-1"
        assert row.publication_screenshot == "published.png"
        assert await db.purchases.refunded_amount(john.uuid) == 10.99
        assert await db.purchases.not_refunded_amount(john.uuid) == 0.0
        assert (await db.purchases.ready_for_refund(john.uuid)).total_count == 0
        assert (await db.purchases.refunded(john.uuid)).total_count == 1
        assert (await db.purchases.not_refunded(john.uuid)).total_count == 0

        stats = await db.purchases.get_purchase_statistics(john.uuid)
        assert stats.nb_refunded == 1
        assert stats.nb_not_refunded == 0
        assert stats.nb_ready_for_refund == 0
        assert stats.nb_total == 1
        assert stats.total_refunded_amount == 10.99
        assert stats.total_purchase_amount == 10.99

    @pytest.mark.asyncio
    async def test_single_record_is_not_ready_for_refund(self, db, john, purchase_factory):
        feedback_only = await db.purchases.put(john.uuid, purchase_factory(order="FEEDBACK-ONLY"))
        publication_only = await db.purchases.put(john.uuid, purchase_factory(order="PUBLICATION-ONLY"))
        await db.feedbacks.put(
            john.ids[0], Feedback(purchase=feedback_only, date=date(2025, 1, 20), feedback="Nice")
        )
        await db.publications.put(
            john.ids[0], Publication(purchase=publication_only, date=date(2025, 1, 21), screenshot="pub.png")
        )

        ready = await db.purchases.ready_for_refund(john.uuid)
        stats = await db.purchases.get_purchase_statistics(john.uuid)
        rows = {row.purchase: row for row in (await db.purchases.get_purchase_status(john.uuid)).results}

        assert ready.total_count == 0
        assert ready.results == []
        assert stats.nb_ready_for_refund == 0
        assert (rows[feedback_only].has_feedback, rows[feedback_only].has_publication) == (True, False)
        assert (rows[publication_only].has_feedback, rows[publication_only].has_publication) == (False, True)

    @pytest.mark.asyncio
    async def test_records_require_ownership(self, db, john, jane, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        with pytest.raises(NotFoundError):
            await db.feedbacks.put(
                jane.ids[0], Feedback(purchase=purchase_id, date=date(2025, 1, 20), feedback="Mine")
            )
        with pytest.raises(NotFoundError):
            await _refund(db, jane, purchase_id)

        assert (await db.purchases.find(Query.where(id=purchase_id))).refunded is False

    @pytest.mark.asyncio
    async def test_records_for_unknown_purchase(self, db, john):
        with pytest.raises(NotFoundError):
            await db.publications.put(
                john.ids[0], Publication(purchase="missing", date=date(2025, 1, 21), screenshot="x")
            )

    @pytest.mark.asyncio
    async def test_feedback_upsert_keeps_one_per_purchase(self, db, john, purchase_factory):
        if db.backend_name == "memory":
            pytest.skip("the in-process store keeps every submitted feedback")
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        for text in ("First", "Second"):
            await db.feedbacks.put(
                john.ids[0], Feedback(purchase=purchase_id, date=date(2025, 1, 20), feedback=text)
            )

        feedbacks = await db.feedbacks.filter(Query.where(purchase=purchase_id))
        assert [feedback.feedback for feedback in feedbacks] == ["Second"]

    @pytest.mark.asyncio
    async def test_status_is_scoped_to_tester(self, db, john, jane, purchase_factory):
        await db.purchases.put(john.uuid, purchase_factory())

        status = await db.purchases.get_purchase_status(jane.uuid)

        assert status.results == []
        assert status.page_info.total_count == 0
        assert await db.purchases.refunded_amount(jane.uuid) == 0.0

    @pytest.mark.asyncio
    async def test_status_requires_tester_uuid(self, db):
        with pytest.raises(ValidationError):
            await db.purchases.get_purchase_status("")


class TestStatusPagination:
    """Test sorting and paging of status rows."""

    @pytest.mark.asyncio
    async def test_unknown_sort_falls_back_to_date_desc(self, db, john, purchase_factory):
        for day, order in ((10, "B"), (20, "A"), (15, "C")):
            await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 1, day), order=order))

        by_amount = await db.purchases.get_purchase_status(john.uuid, sort="amount")
        by_order = await db.purchases.get_purchase_status(john.uuid, sort="order", order="asc")
        sideways = await db.purchases.get_purchase_status(john.uuid, order="sideways")

        assert [row.date.day for row in by_amount.results] == [20, 15, 10]
        assert [row.order for row in by_order.results] == ["A", "B", "C"]
        assert [row.date.day for row in sideways.results] == [20, 15, 10]

    @pytest.mark.asyncio
    async def test_pages_concatenate_to_full_listing(self, db, john, purchase_factory):
        for day in range(1, 6):
            await db.purchases.put(
                john.uuid, purchase_factory(date=date(2025, 1, day), order=f"ORDER-{day}")
            )

        full = await db.purchases.get_purchase_status(john.uuid, limit=10)
        pages = [await db.purchases.get_purchase_status(john.uuid, page=page, limit=2) for page in (1, 2, 3)]

        assert [row.purchase for page in pages for row in page.results] == [
            row.purchase for row in full.results
        ]
        first, _, last = (page.page_info for page in pages)
        assert (first.total_count, first.total_pages) == (5, 3)
        assert (first.has_next_page, first.next_page) == (True, 2)
        assert (first.has_previous_page, first.previous_page) == (False, None)
        assert (last.has_next_page, last.next_page) == (False, None)
        assert (last.has_previous_page, last.previous_page) == (True, 2)

    @pytest.mark.asyncio
    async def test_page_past_the_end_is_empty(self, db, john, purchase_factory):
        await db.purchases.put(john.uuid, purchase_factory())

        status = await db.purchases.get_purchase_status(john.uuid, page=4, limit=2)

        assert status.results == []
        assert status.page_info.total_count == 1

    @pytest.mark.asyncio
    async def test_limit_to_not_refunded(self, db, john, purchase_factory):
        refunded_id = await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 1, 1)))
        kept_id = await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 1, 2)))
        await _refund(db, john, refunded_id)

        status = await db.purchases.get_purchase_status(john.uuid, limit_to_not_refunded=True)

        assert [row.purchase for row in status.results] == [kept_id]
        assert status.page_info.total_count == 1

    @pytest.mark.asyncio
    async def test_listing_pagination(self, db, john, purchase_factory):
        for day in range(1, 4):
            await db.purchases.put(john.uuid, purchase_factory(date=date(2025, 1, day)))

        page = await db.purchases.not_refunded(
            john.uuid, Pagination(page=2, limit=2, sort="date", order="asc")
        )

        assert page.total_count == 3
        assert [purchase.date.day for purchase in page.results] == [3]


    @pytest.mark.asyncio
    @pytest.mark.parametrize("listing", ["refunded", "not_refunded", "ready_for_refund"])
    async def test_listing_pages_concatenate(self, db, john, purchase_factory, listing):
        for day in range(1, 6):
            purchase_id = await db.purchases.put(
                john.uuid, purchase_factory(date=date(2025, 1, day), order=f"ORDER-{day}")
            )
            if listing != "not_refunded":
                await _complete(db, john, purchase_id)
            if listing == "refunded":
                await _refund(db, john, purchase_id)
        fetch = getattr(db.purchases, listing)

        full = await fetch(john.uuid, Pagination(limit=10))
        pages = [await fetch(john.uuid, Pagination(page=page, limit=2)) for page in (1, 2, 3)]

        assert full.total_count == 5
        assert [p.id for page in pages for p in page.results] == [p.id for p in full.results]
        assert [len(page.results) for page in pages] == [2, 2, 1]
        assert all(page.total_count == 5 for page in pages)

class TestSearch:
    """Test fuzzy purchase search."""

    @pytest.mark.asyncio
    async def test_matches_newest_first(self, db, john, jane, purchase_factory):
        old = await db.purchases.put(
            john.uuid, purchase_factory(date=date(2025, 1, 10), description="Mechanical keyboard")
        )
        await db.purchases.put(
            john.uuid, purchase_factory(date=date(2025, 1, 20), description="Wireless mouse")
        )
        new = await db.purchases.put(
            john.uuid, purchase_factory(date=date(2025, 1, 25), description="Keyboard stand")
        )
        await db.purchases.put(jane.uuid, purchase_factory(description="Gaming keyboard"))

        assert await db.purchases.search_purchases(john.uuid, "keyboard") == [new, old]
        assert await db.purchases.search_purchases(john.uuid, "keybord") == [new, old]

    @pytest.mark.asyncio
    async def test_rejects_short_query(self, db, john):
        with pytest.raises(ValidationError):
            await db.purchases.search_purchases(john.uuid, "key")


class TestLinks:
    """Test short public links."""

    @pytest.mark.asyncio
    async def test_generate_and_resolve(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        code = await db.links.generate(purchase_id, 3600)

        assert validate_short_code(code)
        assert await db.links.get_purchase_by_code(code) == purchase_id
        assert [link.code for link in await db.links.get_by_purchase_id(purchase_id)] == [code]
        assert await db.links.cleanup_expired() == 0

    @pytest.mark.asyncio
    async def test_delete(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())
        code = await db.links.generate(purchase_id, 3600)

        assert await db.links.delete(code) is True

        assert await db.links.get_purchase_by_code(code) is None
        assert await db.links.get_all() == []

    @pytest.mark.asyncio
    async def test_generate_validation(self, db, john, purchase_factory):
        purchase_id = await db.purchases.put(john.uuid, purchase_factory())

        with pytest.raises(ValidationError):
            await db.links.generate(purchase_id, 10)
        with pytest.raises(ValidationError):
            await db.links.generate(purchase_id, 31536001)
        with pytest.raises(NotFoundError):
            await db.links.generate("missing", 3600)

    @pytest.mark.asyncio
    async def test_unknown_code(self, db):
        assert await db.links.get_purchase_by_code("zzzzzzz") is None
