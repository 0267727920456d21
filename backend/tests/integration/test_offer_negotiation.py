"""
Integration tests for the negotiation engine.

WHAT: Test counter, accept and reject flows plus turn-taking and item changes
WHY: Every action must advance the offer by one round and leave consistent rows
HOW: OfferNegotiationEngine on top of an offer created through OfferCreationEngine
"""

import re
import pytest
from datetime import timedelta

from offer_engine.core.config import settings
from offer_engine.core.models import (
    CatalogOffer, CatalogOfferAlternativeSuggestion, CatalogOfferItem, CatalogOfferMinimumTerms,
    CatalogOfferNegotiation, CatalogProductVariant, Order, OrderStatusHistory,
    ItemChangeType, ItemNegotiationStatus, ItemStatus, NegotiationOfferStatus, OfferStatus, UserRole,
)
from offer_engine.models.errors import ErrorCode
from offer_engine.models.offers import (
    AlternativeSuggestionInput, ItemChangeInput, ItemNegotiationInput, MinimumTermsInput,
    NegotiateOfferRequest, NegotiationAction, OfferItemInput, SuggestedVariantInput,
)
from offer_engine.services.negotiation_queries import effective_item_terms
from offer_engine.services.notifications import NotificationSink
from offer_engine.services.offer_negotiation import OfferNegotiationEngine
from offer_engine.utils.money import round_money


@pytest.fixture
def act(negotiation_engine, created_offer, marketplace):
    """
    Submit an action on the created offer.

    Role and user default from the action's side.
    """
    def submit(action, item_negotiations=None, user_id=None, role=None, **kwargs):
        role = role or action.role
        if user_id is None:
            user_id = marketplace.buyer_user_id if role == UserRole.BUYER else marketplace.seller_user_id
        request = NegotiateOfferRequest(
            catalog_offer_id=kwargs.pop("catalog_offer_id", created_offer.catalog_offer_id),
            user_id=user_id,
            user_role=role,
            action=action,
            item_negotiations=item_negotiations or [],
            **kwargs,
        )
        return negotiation_engine.negotiate(request)
    return submit


@pytest.fixture
def item_ids(created_offer):
    return [item.catalog_offer_item_id for item in created_offer.items]


def proposal(item_id, price, quantity):
    return ItemNegotiationInput(catalog_offer_item_id=item_id, offer_price_per_unit=price, offer_quantity=quantity)


def load_offer_row(db, public_id):
    return db.query(CatalogOffer).filter(CatalogOffer.public_id == public_id).one()


def current_rows(db, item):
    return (
        db.query(CatalogOfferNegotiation)
        .filter(
            CatalogOfferNegotiation.catalog_offer_item_id == item.catalog_offer_item_id,
            CatalogOfferNegotiation.is_current_offer.is_(True),
        )
        .all()
    )


@pytest.fixture
def seller_countered(act, item_ids):
    """Seller counters the first item at $6 for 10 units."""
    result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)])
    assert result.success, result.error
    return result


@pytest.mark.integration
class TestSellerCounter:
    """Test the seller's counter to the opening offer."""

    def test_counter_payload(self, seller_countered):
        """Round 2, negotiating, total 100."""
        data = seller_countered.data
        assert data.offer_status == "NEGOTIATING"
        assert data.current_round == 2
        assert data.total_offer_value == 100.0
        assert len(data.negotiations_created) == 1
        created = data.negotiations_created[0]
        assert created.action_type == "SELLER_COUNTER"
        assert created.negotiation_round == 2
        assert created.offer_price_per_unit == 6.0
        assert created.is_current_offer is True

    def test_counter_supersedes_previous_row(self, seller_countered, transaction, created_offer, item_ids):
        """Only the new row stays current on the countered item."""
        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            first, second = sorted(offer.items, key=lambda i: i.public_id != item_ids[0])

            rows = db.query(CatalogOfferNegotiation).filter(
                CatalogOfferNegotiation.catalog_offer_item_id == first.catalog_offer_item_id
            ).order_by(CatalogOfferNegotiation.negotiation_round).all()
            assert [r.offer_status for r in rows] == [NegotiationOfferStatus.SUPERSEDED, NegotiationOfferStatus.PENDING]
            assert [r.is_current_offer for r in rows] == [False, True]
            assert rows[1].parent_negotiation_id == rows[0].catalog_offer_negotiation_id

            assert first.negotiation_status == ItemNegotiationStatus.SELLER_COUNTERED
            assert first.seller_offer_price == 6.0
            assert first.current_seller_negotiation_id == rows[1].catalog_offer_negotiation_id
            assert first.item_version == 2
            assert second.negotiation_status == ItemNegotiationStatus.BUYER_OFFERED
            assert len(current_rows(db, second)) == 1

    def test_counter_leaves_requested_quantity(self, act, item_ids, transaction, created_offer):
        """Counters propose quantities without rewriting the item."""
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 8)])
        assert result.success
        with transaction() as db:
            item = db.query(CatalogOfferItem).filter(CatalogOfferItem.public_id == item_ids[0]).one()
            assert item.requested_quantity == 10

    def test_buyer_notified(self, seller_countered, sink, marketplace):
        """The counterparty hears about the counter."""
        event = sink.events[-1]
        assert event.event_type == "catalog_offer.countered"
        assert event.recipient_user_ids == [marketplace.buyer_user_id]


@pytest.mark.integration
class TestAccept:
    """Test acceptance and the spawned order."""

    def test_buyer_accepts_seller_counter(self, seller_countered, act, transaction, created_offer, clock):
        """Round 3, accepted, total 100, one order with two lines."""
        result = act(NegotiationAction.BUYER_ACCEPT)

        assert result.success, result.error
        data = result.data
        assert data.offer_status == "ACCEPTED"
        assert data.current_round == 3
        assert data.total_offer_value == 100.0
        assert data.order is not None
        assert data.order.total_amount == 100.0
        assert data.order.order_type == "CATALOG"
        assert data.order.order_status == "PENDING"
        assert data.order.payment_due_date == clock() + timedelta(days=settings.PAYMENT_DUE_DAYS)
        assert re.match(r"^24-001-\d{4}$", data.order.order_number)
        assert sorted((line.unit_price, line.quantity) for line in data.order.items) == [(6.0, 10), (8.0, 5)]

        with transaction() as db:
            assert db.query(Order).count() == 1
            assert db.query(OrderStatusHistory).count() == 1
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            assert offer.accepted_at == clock()
            for item in offer.items:
                assert item.negotiation_status == ItemNegotiationStatus.AGREED
                assert item.final_agreed_price is not None
                current = current_rows(db, item)
                assert len(current) == 1
                assert current[0].offer_status == NegotiationOfferStatus.ACCEPTED
                assert current[0].negotiation_round == 3

    def test_inventory_decremented(self, seller_countered, act, transaction, marketplace):
        """Accepted quantities come off available inventory."""
        assert act(NegotiationAction.BUYER_ACCEPT).success
        with transaction() as db:
            available = [
                db.query(CatalogProductVariant).filter(CatalogProductVariant.public_id == vid).one().available_quantity
                for vid in marketplace.variant_ids
            ]
        assert available == [90, 95, 100]

    def test_accepted_rows_marked(self, seller_countered, act, transaction, created_offer):
        """The accepted proposals are ACCEPTED and no longer current."""
        assert act(NegotiationAction.BUYER_ACCEPT).success
        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            accepted_earlier = db.query(CatalogOfferNegotiation).filter(
                CatalogOfferNegotiation.catalog_offer_id == offer.catalog_offer_id,
                CatalogOfferNegotiation.negotiation_round < 3,
                CatalogOfferNegotiation.offer_status == NegotiationOfferStatus.ACCEPTED,
            ).all()
        assert {row.negotiation_round for row in accepted_earlier} == {1, 2}
        assert all(row.is_current_offer is False for row in accepted_earlier)

    def test_seller_accepts_opening_offer(self, act):
        """Sellers can accept the buyer's first offer at its terms."""
        result = act(NegotiationAction.SELLER_ACCEPT)
        assert result.success, result.error
        assert result.data.current_round == 2
        assert result.data.total_offer_value == 90.0
        assert result.data.order.total_amount == 90.0

    def test_both_parties_notified(self, seller_countered, act, sink, marketplace):
        assert act(NegotiationAction.BUYER_ACCEPT).success
        event = sink.events[-1]
        assert event.event_type == "catalog_offer.accepted"
        assert set(event.recipient_user_ids) == {marketplace.buyer_user_id, marketplace.seller_user_id}

    def test_accept_rolls_back_when_order_fails(self, seller_countered, act, transaction, created_offer, update_row, marketplace):
        """Inventory drained after the counter makes the whole accept fail."""
        update_row(CatalogProductVariant, marketplace.variant_ids[1], available_quantity=1)

        result = act(NegotiationAction.BUYER_ACCEPT)

        assert result.error.code == ErrorCode.INSUFFICIENT_INVENTORY
        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            assert offer.offer_status == OfferStatus.NEGOTIATING
            assert offer.current_round == 2
            assert db.query(Order).count() == 0

    def test_accepted_offer_is_closed(self, seller_countered, act, item_ids):
        assert act(NegotiationAction.BUYER_ACCEPT).success
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 7.0, 10)])
        assert result.error.code == ErrorCode.INVALID_OFFER_STATUS


@pytest.mark.integration
class TestReject:
    """Test rejection."""

    def test_seller_rejects(self, act, clock, transaction, created_offer):
        """Rejected offers stay reopenable for the window."""
        result = act(
            NegotiationAction.SELLER_REJECT,
            rejection_reason="Price too low",
            rejection_category="PRICING_TOO_LOW",
        )

        assert result.success, result.error
        rejection = result.data.rejection
        assert result.data.offer_status == "REJECTED"
        assert result.data.current_round == 2
        assert rejection.reopen_deadline == clock() + timedelta(days=settings.REOPEN_WINDOW_DAYS)
        assert rejection.can_reopen is True
        assert rejection.rejection_category == "PRICING_TOO_LOW"

        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            assert offer.rejected_at == clock()
            for item in offer.items:
                assert item.negotiation_status == ItemNegotiationStatus.REJECTED
                current = current_rows(db, item)
                assert len(current) == 1
                assert current[0].offer_status == NegotiationOfferStatus.REJECTED

    def test_second_reject_fails(self, act):
        assert act(NegotiationAction.SELLER_REJECT, rejection_reason="No").success
        result = act(NegotiationAction.BUYER_REJECT, rejection_reason="Fine")
        assert result.error.code == ErrorCode.INVALID_OFFER_STATUS
        assert result.error.details.current_status == "REJECTED"

    def test_reason_required(self, act):
        result = act(NegotiationAction.BUYER_REJECT, rejection_reason="   ")
        assert result.error.code == ErrorCode.REJECTION_REASON_REQUIRED

    def test_default_category(self, act):
        result = act(NegotiationAction.BUYER_REJECT, rejection_reason="Changed plans")
        assert result.data.rejection.rejection_category == "OTHER"

    def test_alternatives_recorded(self, act, marketplace, transaction):
        """Suggested variants and minimum terms are stored with the rejection."""
        suggestion = AlternativeSuggestionInput(
            message="Try the A3 paper",
            suggested_variants=[SuggestedVariantInput(
                catalog_product_variant_id=marketplace.variant_ids[2],
                suggested_price=9.0, available_quantity=100, product_name="A3 white",
            )],
            minimum_acceptable_terms=MinimumTermsInput(minimum_unit_price=7.0, minimum_total_order=120.0),
        )
        result = act(NegotiationAction.SELLER_REJECT, rejection_reason="Too low", alternative_suggestion=suggestion)

        assert result.success, result.error
        with transaction() as db:
            suggestions = db.query(CatalogOfferAlternativeSuggestion).all()
            terms = db.query(CatalogOfferMinimumTerms).one()
        assert [s.product_name for s in suggestions] == ["A3 white"]
        assert suggestions[0].catalog_product_variant_id is not None
        assert terms.minimum_total_order == 120.0


@pytest.mark.integration
class TestTurnTaking:
    """Test alternation between buyer and seller."""

    def test_buyer_cannot_counter_own_offer(self, act, item_ids):
        result = act(NegotiationAction.BUYER_COUNTER, [proposal(item_ids[0], 4.0, 10)])
        assert result.error.code == ErrorCode.INVALID_NEGOTIATION_SEQUENCE
        assert result.error.details.last_action_type == "BUYER_OFFER"
        assert result.error.details.suggested_actions

    def test_buyer_cannot_accept_own_offer(self, act):
        result = act(NegotiationAction.BUYER_ACCEPT)
        assert result.error.code == ErrorCode.INVALID_NEGOTIATION_SEQUENCE

    def test_seller_cannot_counter_twice(self, seller_countered, act, item_ids):
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[1], 9.0, 5)])
        assert result.error.code == ErrorCode.INVALID_NEGOTIATION_SEQUENCE

    def test_full_exchange(self, seller_countered, act, item_ids):
        """Counter, counter, accept: rounds advance one at a time."""
        buyer = act(NegotiationAction.BUYER_COUNTER, [proposal(item_ids[0], 5.5, 10)])
        assert buyer.success, buyer.error
        assert buyer.data.current_round == 3
        assert buyer.data.total_offer_value == 95.0

        accepted = act(NegotiationAction.SELLER_ACCEPT)
        assert accepted.success, accepted.error
        assert accepted.data.current_round == 4
        assert accepted.data.total_offer_value == 95.0


@pytest.mark.integration
class TestNegotiationValidation:
    """Test request, participant and offer-state validation."""

    def test_offer_not_found(self, act):
        result = act(NegotiationAction.SELLER_REJECT, rejection_reason="x", catalog_offer_id="missing")
        assert result.error.code == ErrorCode.OFFER_NOT_FOUND

    def test_other_buyer_unauthorized(self, act, item_ids, marketplace):
        result = act(NegotiationAction.BUYER_REJECT, rejection_reason="x", user_id=marketplace.other_buyer_user_id)
        assert result.error.code == ErrorCode.UNAUTHORIZED_ACCESS

    def test_missing_profile_for_role(self, act, marketplace):
        """A buyer claiming the seller role has no seller profile."""
        result = act(
            NegotiationAction.SELLER_REJECT, rejection_reason="x",
            user_id=marketplace.buyer_user_id, role=UserRole.SELLER,
        )
        assert result.error.code == ErrorCode.USER_PROFILE_NOT_FOUND

    def test_action_must_match_role(self, act, item_ids):
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], role=UserRole.BUYER)
        assert result.error.code == ErrorCode.UNAUTHORIZED_ACCESS

    def test_expired_offer(self, negotiation_engine, creation_engine, make_offer_request, clock, marketplace):
        created = creation_engine.create_offer(make_offer_request(expires_at=clock() + timedelta(days=1))).data
        clock.advance(days=2)
        result = negotiation_engine.negotiate(NegotiateOfferRequest(
            catalog_offer_id=created.catalog_offer_id,
            user_id=marketplace.seller_user_id,
            user_role=UserRole.SELLER,
            action=NegotiationAction.SELLER_REJECT,
            rejection_reason="late",
        ))
        assert result.error.code == ErrorCode.OFFER_EXPIRED

    def test_counter_without_items(self, act):
        assert act(NegotiationAction.SELLER_COUNTER, []).error.code == ErrorCode.NO_ITEM_NEGOTIATIONS

    @pytest.mark.parametrize("price,quantity,code", [
        (0.0, 10, ErrorCode.INVALID_PRICE),
        (6.0, 0, ErrorCode.INVALID_QUANTITY),
        (6.0, 500, ErrorCode.INSUFFICIENT_INVENTORY),
    ])
    def test_invalid_proposals(self, act, item_ids, price, quantity, code):
        assert act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], price, quantity)]).error.code == code

    def test_unknown_item(self, act):
        result = act(NegotiationAction.SELLER_COUNTER, [proposal("missing", 6.0, 10)])
        assert result.error.code == ErrorCode.INVALID_OFFER_ITEM

    def test_failed_counter_changes_nothing(self, act, item_ids, transaction, created_offer, sink):
        """A later invalid proposal rolls back earlier ones in the same call."""
        events_before = len(sink.events)
        result = act(NegotiationAction.SELLER_COUNTER, [
            proposal(item_ids[0], 6.0, 10),
            proposal(item_ids[1], -1.0, 5),
        ])

        assert result.success is False
        assert len(sink.events) == events_before
        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            assert offer.current_round == 1
            assert offer.offer_status == OfferStatus.ACTIVE
            assert db.query(CatalogOfferNegotiation).count() == 2


@pytest.mark.integration
class TestCounterItemChanges:
    """Test structural item changes inside a counter."""

    def test_add_item(self, act, item_ids, marketplace, transaction, created_offer):
        change = ItemChangeInput(
            change_type=ItemChangeType.ITEM_ADDED,
            catalog_product_variant_id=marketplace.variant_ids[2],
            requested_quantity=4,
            buyer_offer_price=7.0,
        )
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])

        assert result.success, result.error
        assert result.data.total_offer_value == 128.0
        assert [c.change_type for c in result.data.item_changes_applied] == ["ITEM_ADDED"]
        with transaction() as db:
            offer = load_offer_row(db, created_offer.catalog_offer_id)
            added = [i for i in offer.items if i.public_id not in item_ids]
            assert len(added) == 1
            assert added[0].added_in_round == 2
            assert added[0].negotiation_status == ItemNegotiationStatus.BUYER_OFFERED
            assert len(current_rows(db, added[0])) == 1

    def test_add_existing_variant(self, act, item_ids, marketplace):
        change = ItemChangeInput(
            change_type=ItemChangeType.ITEM_ADDED,
            catalog_product_variant_id=marketplace.variant_ids[0],
            requested_quantity=4,
            buyer_offer_price=7.0,
        )
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])
        assert result.error.code == ErrorCode.INVALID_ITEM_ADDITION
        assert result.error.details.reason == "already_in_offer"

    def test_remove_item(self, act, item_ids, transaction, created_offer):
        change = ItemChangeInput(change_type=ItemChangeType.ITEM_REMOVED, catalog_offer_item_id=item_ids[1])
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])

        assert result.success, result.error
        assert result.data.total_offer_value == 60.0
        with transaction() as db:
            removed = db.query(CatalogOfferItem).filter(CatalogOfferItem.public_id == item_ids[1]).one()
            assert removed.item_status == ItemStatus.REMOVED
            assert removed.removed_in_round == 2
            assert current_rows(db, removed) == []

    def test_cannot_remove_last_item(self, creation_engine, negotiation_engine, make_offer_request, marketplace):
        items = [OfferItemInput(catalog_product_variant_id=marketplace.variant_ids[0],
                                requested_quantity=10, buyer_offer_price=5.0)]
        offer = creation_engine.create_offer(make_offer_request(items=items)).data
        only_item = offer.items[0].catalog_offer_item_id

        result = negotiation_engine.negotiate(NegotiateOfferRequest(
            catalog_offer_id=offer.catalog_offer_id,
            user_id=marketplace.seller_user_id,
            user_role=UserRole.SELLER,
            action=NegotiationAction.SELLER_COUNTER,
            item_negotiations=[proposal(only_item, 6.0, 10)],
            item_changes=[ItemChangeInput(change_type=ItemChangeType.ITEM_REMOVED, catalog_offer_item_id=only_item)],
        ))
        assert result.error.code == ErrorCode.INVALID_ITEM_REMOVAL
        assert result.error.details.reason == "last_active_item"

    def test_quantity_change(self, act, item_ids, transaction):
        change = ItemChangeInput(
            change_type=ItemChangeType.QUANTITY_CHANGED, catalog_offer_item_id=item_ids[1], new_quantity=8,
        )
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])

        assert result.success, result.error
        assert result.data.total_offer_value == 124.0
        change_record = result.data.item_changes_applied[0]
        assert (change_record.previous_quantity, change_record.new_quantity) == (5, 8)
        assert change_record.auto_generated is False

    def test_invalid_quantity_change(self, act, item_ids):
        change = ItemChangeInput(
            change_type=ItemChangeType.QUANTITY_CHANGED, catalog_offer_item_id=item_ids[1], new_quantity=0,
        )
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])
        assert result.error.code == ErrorCode.INVALID_QUANTITY_CHANGE

    def test_unsupported_change_type(self, act, item_ids):
        change = ItemChangeInput(change_type=ItemChangeType.PRICE_CHANGED, catalog_offer_item_id=item_ids[1])
        result = act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10)], item_changes=[change])
        assert result.error.code == ErrorCode.INVALID_OFFER_ITEM


@pytest.mark.integration
class TestNegotiationInvariants:
    """Test properties that hold after every successful action."""

    def assert_consistent(self, transaction, offer_public_id):
        with transaction() as db:
            offer = load_offer_row(db, offer_public_id)
            active = [i for i in offer.items if i.item_status == ItemStatus.ACTIVE]
            for item in active:
                assert len(current_rows(db, item)) == 1
            expected = round_money(sum(
                effective_item_terms(i)[0] * effective_item_terms(i)[1] for i in active
            ))
            assert offer.total_offer_value == expected

    def test_single_current_negotiation_and_total(self, act, item_ids, transaction, created_offer, clock):
        self.assert_consistent(transaction, created_offer.catalog_offer_id)

        clock.advance(hours=1)
        assert act(NegotiationAction.SELLER_COUNTER, [proposal(item_ids[0], 6.0, 10), proposal(item_ids[1], 9.0, 5)]).success
        self.assert_consistent(transaction, created_offer.catalog_offer_id)

        clock.advance(hours=1)
        assert act(NegotiationAction.BUYER_COUNTER, [proposal(item_ids[1], 8.5, 5)]).success
        self.assert_consistent(transaction, created_offer.catalog_offer_id)

        clock.advance(hours=1)
        result = act(NegotiationAction.SELLER_ACCEPT)
        assert result.success, result.error
        assert result.data.total_offer_value == 6.0 * 10 + 8.5 * 5
        self.assert_consistent(transaction, created_offer.catalog_offer_id)


class ExplodingSink(NotificationSink):
    def send(self, event):
        raise ConnectionError("notification service unreachable")


@pytest.mark.integration
class TestNotificationIsolation:
    """Test that delivery failures never fail a committed action."""

    def test_failing_sink_still_succeeds(self, transaction, clock, created_offer, item_ids, marketplace):
        engine = OfferNegotiationEngine(transaction=transaction, clock=clock, notifier=ExplodingSink())

        result = engine.negotiate(NegotiateOfferRequest(
            catalog_offer_id=created_offer.catalog_offer_id,
            user_id=marketplace.seller_user_id,
            user_role=UserRole.SELLER,
            action=NegotiationAction.SELLER_COUNTER,
            item_negotiations=[proposal(item_ids[0], 6.0, 10)],
        ))

        assert result.success
        with transaction() as db:
            assert load_offer_row(db, created_offer.catalog_offer_id).current_round == 2
