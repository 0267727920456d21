"""
Schema and constraint tests.

WHAT: Test CHECK constraints, unique constraints, foreign keys and optimistic locking
WHY: Ensure data integrity at database level, below the engines' own validation
HOW: Write invalid data directly through a session and verify IntegrityError / StaleDataError
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from offer_engine.core.models import (
    User, CatalogOffer, CatalogOfferItem, CatalogProductVariant, Order, SellerOrderCounter,
)

NOW = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def db_session(session_factory):
    """Plain session; each test decides whether it flushes."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def load_offer(db, public_id):
    return db.query(CatalogOffer).filter(CatalogOffer.public_id == public_id).one()


def order_row(offer, number):
    return Order(
        order_number=f"24-{number:03d}-0000",
        seller_order_number=number,
        catalog_offer_id=offer.catalog_offer_id,
        buyer_user_id=offer.buyer_user_id,
        seller_user_id=offer.seller_user_id,
        total_amount=offer.total_offer_value,
        total_amount_currency="USD",
        payment_due_date=NOW + timedelta(days=3),
    )


@pytest.mark.integration
class TestCheckConstraints:
    """Test CHECK constraints reject out-of-range values."""

    def test_negative_offer_total(self, db_session, created_offer):
        load_offer(db_session, created_offer.catalog_offer_id).total_offer_value = -1.0
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_round_zero(self, db_session, created_offer):
        load_offer(db_session, created_offer.catalog_offer_id).current_round = 0
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_item_version_zero(self, db_session, created_offer):
        offer = load_offer(db_session, created_offer.catalog_offer_id)
        offer.items[0].item_version = 0
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_negative_requested_quantity(self, db_session, created_offer):
        item = db_session.query(CatalogOfferItem).filter(
            CatalogOfferItem.public_id == created_offer.items[0].catalog_offer_item_id
        ).one()
        item.requested_quantity = -1
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_negative_available_quantity(self, db_session, marketplace):
        variant = db_session.query(CatalogProductVariant).filter(
            CatalogProductVariant.public_id == marketplace.variant_ids[0]
        ).one()
        variant.available_quantity = -5
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_untracked_inventory_is_allowed(self, db_session, marketplace):
        """NULL available_quantity means no inventory tracking."""
        variant = db_session.query(CatalogProductVariant).filter(
            CatalogProductVariant.public_id == marketplace.variant_ids[0]
        ).one()
        variant.available_quantity = None
        db_session.flush()

    @pytest.mark.parametrize("risk_score", [-1, 101])
    def test_risk_score_range(self, db_session, risk_score):
        db_session.add(User(username="risky", risk_score=risk_score))
        with pytest.raises(IntegrityError):
            db_session.flush()


@pytest.mark.integration
class TestUniqueConstraints:
    """Test unique constraints that back order spawning."""

    def test_one_counter_per_seller_and_year(self, db_session, marketplace):
        db_session.add(SellerOrderCounter(seller_user_id=marketplace.seller_user_id, year=2024, last_order_number=1))
        db_session.flush()
        db_session.add(SellerOrderCounter(seller_user_id=marketplace.seller_user_id, year=2024, last_order_number=2))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_next_year_gets_its_own_counter(self, db_session, marketplace):
        db_session.add_all([
            SellerOrderCounter(seller_user_id=marketplace.seller_user_id, year=2024, last_order_number=7),
            SellerOrderCounter(seller_user_id=marketplace.seller_user_id, year=2025, last_order_number=0),
        ])
        db_session.flush()
        assert db_session.query(SellerOrderCounter).count() == 2

    def test_one_order_per_offer(self, db_session, created_offer):
        offer = load_offer(db_session, created_offer.catalog_offer_id)
        db_session.add(order_row(offer, 1))
        db_session.flush()
        db_session.add(order_row(offer, 2))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_order_number_unique_per_seller(self, db_session, created_offer, creation_engine, make_offer_request,
                                            marketplace):
        second = creation_engine.create_offer(make_offer_request(
            buyer_user_id=marketplace.other_buyer_user_id, buyer_profile_id=marketplace.other_buyer_profile_id,
        ))
        assert second.success, second.error

        db_session.add(order_row(load_offer(db_session, created_offer.catalog_offer_id), 1))
        db_session.flush()
        db_session.add(order_row(load_offer(db_session, second.data.catalog_offer_id), 1))
        with pytest.raises(IntegrityError):
            db_session.flush()


@pytest.mark.integration
class TestForeignKeys:
    """Test foreign keys are enforced (PRAGMA foreign_keys=ON)."""

    def test_counter_for_unknown_seller(self, db_session, marketplace):
        db_session.add(SellerOrderCounter(seller_user_id="no-such-user", year=2024, last_order_number=1))
        with pytest.raises(IntegrityError):
            db_session.flush()

    def test_item_for_unknown_variant(self, db_session, created_offer):
        offer = load_offer(db_session, created_offer.catalog_offer_id)
        db_session.add(CatalogOfferItem(
            catalog_offer_id=offer.catalog_offer_id,
            catalog_product_variant_id="no-such-variant",
            requested_quantity=1,
        ))
        with pytest.raises(IntegrityError):
            db_session.flush()


@pytest.mark.integration
class TestOptimisticLock:
    """Test the offer version column."""

    def test_version_increments_on_update(self, db_session, created_offer):
        offer = load_offer(db_session, created_offer.catalog_offer_id)
        before = offer.version

        offer.offer_message = "Updated terms"
        db_session.flush()

        assert offer.version == before + 1

    def test_stale_write_is_rejected(self, db_session, created_offer):
        """A write based on an outdated version matches no row."""
        offer = load_offer(db_session, created_offer.catalog_offer_id)
        table = CatalogOffer.__table__
        db_session.execute(
            update(table)
            .where(table.c.catalog_offer_id == offer.catalog_offer_id)
            .values(version=table.c.version + 1)
        )

        offer.offer_message = "Lost update"
        with pytest.raises(StaleDataError):
            db_session.flush()
