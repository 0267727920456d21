"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers, storage and seed data
WHY: Every engine test needs an isolated database, a controllable clock and captured notifications
HOW: In-memory SQLite bound to a per-test schema, factories for catalog and identity rows
"""

import os

# Keep imports of the application away from the real data directory
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FILE", "./data/test_logs/app.log")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

import pytest
from datetime import datetime
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from offer_engine.core.clock import FrozenClock
from offer_engine.core.database import Base, transaction_scope
from offer_engine.core import models  # noqa: F401
from offer_engine.core.models import (
    User, BuyerProfile, SellerProfile, Address, CatalogListing,
    CatalogProduct, CatalogProductVariant, ListingStatus, VerificationStatus,
)
from offer_engine.models.offers import CreateOfferRequest, OfferItemInput
from offer_engine.services.notifications import RecordingNotificationSink, reset_notification_sink
from offer_engine.services.offer_creation import OfferCreationEngine
from offer_engine.services.offer_negotiation import OfferNegotiationEngine
from offer_engine.services.bulk_modify import BulkModifyEngine
from offer_engine.services.order_spawner import OrderService


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (engines against a real database)"
    )
    config.addinivalue_line(
        "markers", "api: HTTP endpoint tests through TestClient"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time to run"
    )


@pytest.fixture(autouse=True)
def reset_sink_singleton():
    """
    Reset notification sink singleton before each test.

    WHAT: Clear sink cache between tests
    WHY: Prevent test pollution through the module-level singleton
    HOW: Call reset_notification_sink() before and after each test
    """
    reset_notification_sink()
    yield
    reset_notification_sink()


# ========== Storage ==========

@pytest.fixture
def db_engine():
    """
    In-memory SQLite engine with the full schema.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False, autocommit=False)


@pytest.fixture
def transaction(session_factory):
    """Transaction factory with the same commit/rollback contract as get_db()."""
    return transaction_scope(session_factory)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 15, 12, 0, 0))


@pytest.fixture
def sink():
    return RecordingNotificationSink()


# ========== Engines ==========

@pytest.fixture
def creation_engine(transaction, clock, sink):
    return OfferCreationEngine(transaction=transaction, clock=clock, notifier=sink)


@pytest.fixture
def negotiation_engine(transaction, clock, sink):
    return OfferNegotiationEngine(transaction=transaction, clock=clock, notifier=sink)


@pytest.fixture
def bulk_engine(transaction, clock, sink):
    return BulkModifyEngine(transaction=transaction, clock=clock, notifier=sink)


@pytest.fixture
def order_service(transaction, clock, sink):
    return OrderService(transaction=transaction, clock=clock, notifier=sink)


# ========== Seed data ==========

class Marketplace:
    """Ids of the seeded rows (public ids where callers would use them)."""

    def __init__(self):
        self.buyer_user_id = None
        self.buyer_profile_id = None
        self.buyer_address_id = None
        self.seller_user_id = None
        self.listing_id = None
        self.variant_ids = []
        self.other_buyer_user_id = None
        self.other_buyer_profile_id = None
        self.other_address_id = None


def add_variant(db, listing, product, sku, available=100, retail_price=10.0, **extra):
    variant = CatalogProductVariant(
        catalog_product_id=product.catalog_product_id,
        catalog_listing_id=listing.catalog_listing_id,
        variant_sku=sku,
        variant_name=sku,
        available_quantity=available,
        retail_price=retail_price,
        retail_price_currency="USD",
        is_active=True,
        **extra,
    )
    db.add(variant)
    db.flush()
    return variant


def add_buyer(db, username, verified=True, segment="retail", country="US"):
    user = User(username=username, first_name=username.title(), last_name="Buyer")
    db.add(user)
    db.flush()
    profile = BuyerProfile(
        user_id=user.user_id,
        company_name=f"{username.title()} Co",
        verification_status=VerificationStatus.VERIFIED if verified else VerificationStatus.PENDING,
        buyer_segment=segment,
    )
    address = Address(user_id=user.user_id, line1="1 Main St", city="Austin", state="TX",
                      zip_code="73301", country=country, is_default=True)
    db.add_all([profile, address])
    db.flush()
    return user, profile, address


@pytest.fixture
def marketplace(transaction):
    """
    Seed one seller with an ACTIVE listing of three variants and two verified buyers.

    Returns:
        Marketplace with public ids (user ids are internal keys)
    """
    seeded = Marketplace()
    with transaction() as db:
        seller = User(username="seller", first_name="Sam", last_name="Seller")
        db.add(seller)
        db.flush()
        seller_profile = SellerProfile(user_id=seller.user_id, company_name="Acme Supply")
        db.add(seller_profile)
        db.flush()

        listing = CatalogListing(
            seller_user_id=seller.user_id,
            seller_profile_id=seller_profile.seller_profile_id,
            title="Office supplies",
            status=ListingStatus.ACTIVE,
        )
        db.add(listing)
        db.flush()
        product = CatalogProduct(catalog_listing_id=listing.catalog_listing_id, title="Paper")
        db.add(product)
        db.flush()

        variants = [
            add_variant(db, listing, product, "A4-WHITE"),
            add_variant(db, listing, product, "A4-BLUE"),
            add_variant(db, listing, product, "A3-WHITE"),
        ]

        buyer, buyer_profile, address = add_buyer(db, "bella")
        other, other_profile, other_address = add_buyer(db, "otto")

        seeded.seller_user_id = seller.user_id
        seeded.listing_id = listing.public_id
        seeded.variant_ids = [v.public_id for v in variants]
        seeded.buyer_user_id = buyer.user_id
        seeded.buyer_profile_id = buyer_profile.public_id
        seeded.buyer_address_id = address.public_id
        seeded.other_buyer_user_id = other.user_id
        seeded.other_buyer_profile_id = other_profile.public_id
        seeded.other_address_id = other_address.public_id
    return seeded


@pytest.fixture
def make_offer_request(marketplace):
    """
    Build CreateOfferRequest objects for the seeded buyer.

    Defaults to 10 @ $5 on the first variant and 5 @ $8 on the second.
    """
    def build(items=None, **overrides):
        if items is None:
            items = [
                OfferItemInput(catalog_product_variant_id=marketplace.variant_ids[0],
                               requested_quantity=10, buyer_offer_price=5.0),
                OfferItemInput(catalog_product_variant_id=marketplace.variant_ids[1],
                               requested_quantity=5, buyer_offer_price=8.0),
            ]
        fields = dict(
            catalog_listing_id=marketplace.listing_id,
            buyer_user_id=marketplace.buyer_user_id,
            buyer_profile_id=marketplace.buyer_profile_id,
            items=items,
        )
        fields.update(overrides)
        return CreateOfferRequest(**fields)

    return build


@pytest.fixture
def update_row(transaction):
    """Set columns on one row looked up by public id, or primary key for users."""
    def update(model, ref, **values):
        with transaction() as db:
            if hasattr(model, "public_id"):
                row = db.query(model).filter(model.public_id == ref).one()
            else:
                row = db.get(model, ref)
            for key, value in values.items():
                setattr(row, key, value)
    return update


@pytest.fixture
def created_offer(creation_engine, make_offer_request):
    """Opening offer snapshot: two items, total 90."""
    result = creation_engine.create_offer(make_offer_request())
    assert result.success, result.error
    return result.data
