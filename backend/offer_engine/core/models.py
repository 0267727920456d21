"""
ORM models for catalog offers, negotiations and orders.

WHAT: SQLAlchemy models for every table the negotiation engines touch
WHY: Persist offers, per-item negotiations, audit trail and spawned orders
HOW: Declarative models with constraints, relationships, indexes and closed status enums
"""

from datetime import datetime
from uuid import uuid4
import enum

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from .database import Base
from .identifiers import generate_public_id


def _uuid() -> str:
    return str(uuid4())


# ========== Enums ==========

class UserRole(str, enum.Enum):
    """Side of the table a participant sits on."""
    BUYER = "BUYER"
    SELLER = "SELLER"


class VerificationStatus(str, enum.Enum):
    """Buyer profile verification values."""
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class ListingStatus(str, enum.Enum):
    """Catalog listing status values."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class VisibilityRuleType(str, enum.Enum):
    """Attributes a private listing can be scoped on."""
    BUYER_SEGMENT = "BUYER_SEGMENT"
    LOCATION_COUNTRY = "LOCATION_COUNTRY"
    LOCATION_STATE = "LOCATION_STATE"
    LOCATION_CITY = "LOCATION_CITY"
    LOCATION_ZIP = "LOCATION_ZIP"


class OfferStatus(str, enum.Enum):
    """Catalog offer lifecycle values."""
    ACTIVE = "ACTIVE"
    NEGOTIATING = "NEGOTIATING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ItemNegotiationStatus(str, enum.Enum):
    """Who holds the latest word on a line item."""
    BUYER_OFFERED = "BUYER_OFFERED"
    BUYER_COUNTERED = "BUYER_COUNTERED"
    SELLER_COUNTERED = "SELLER_COUNTERED"
    AGREED = "AGREED"
    REJECTED = "REJECTED"


class ItemStatus(str, enum.Enum):
    """Line item presence (items are soft-deleted)."""
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class NegotiationOfferStatus(str, enum.Enum):
    """Status of a single negotiation row."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"
    EXPIRED = "EXPIRED"


class ActionType(str, enum.Enum):
    """Action recorded on a negotiation row."""
    BUYER_OFFER = "BUYER_OFFER"
    SELLER_OFFER = "SELLER_OFFER"
    BUYER_COUNTER = "BUYER_COUNTER"
    SELLER_COUNTER = "SELLER_COUNTER"
    BUYER_ACCEPT = "BUYER_ACCEPT"
    SELLER_ACCEPT = "SELLER_ACCEPT"
    BUYER_REJECT = "BUYER_REJECT"
    SELLER_REJECT = "SELLER_REJECT"


class ItemChangeType(str, enum.Enum):
    """Structural modification recorded against a line item."""
    ITEM_ADDED = "ITEM_ADDED"
    ITEM_REMOVED = "ITEM_REMOVED"
    QUANTITY_CHANGED = "QUANTITY_CHANGED"
    ITEM_REPLACED = "ITEM_REPLACED"
    PRICE_CHANGED = "PRICE_CHANGED"
    TERMS_UPDATED = "TERMS_UPDATED"
    AUTO_ACCEPTED = "AUTO_ACCEPTED"


class RejectionCategory(str, enum.Enum):
    """Why an offer was rejected."""
    PRICING_TOO_LOW = "PRICING_TOO_LOW"
    PRICING_TOO_HIGH = "PRICING_TOO_HIGH"
    BUDGET_CONSTRAINTS = "BUDGET_CONSTRAINTS"
    PRODUCT_NOT_NEEDED = "PRODUCT_NOT_NEEDED"
    INVENTORY_UNAVAILABLE = "INVENTORY_UNAVAILABLE"
    DELIVERY_TIMELINE_TOO_LONG = "DELIVERY_TIMELINE_TOO_LONG"
    FOUND_BETTER_ALTERNATIVE = "FOUND_BETTER_ALTERNATIVE"
    PROJECT_CANCELLED = "PROJECT_CANCELLED"
    OTHER = "OTHER"


class OrderType(str, enum.Enum):
    """Origin of an order."""
    CATALOG = "CATALOG"


class OrderStatus(str, enum.Enum):
    """Order fulfillment status values."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# ========== Identity ==========

class User(Base):
    """
    User table - marketplace account shared by buyers and sellers.

    WHAT: Account with lock/risk flags used by offer creation checks
    WHY: Risky or locked accounts must not open new offers
    HOW: UUID primary key, profiles hang off it
    """
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(200), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    account_locked = Column(Boolean, nullable=False, default=False)
    risk_score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    buyer_profile = relationship("BuyerProfile", back_populates="user", uselist=False)
    seller_profile = relationship("SellerProfile", back_populates="user", uselist=False)
    addresses = relationship("Address", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="check_risk_score_range"),
    )

    def __repr__(self):
        return f"<User(user_id={self.user_id}, username={self.username})>"


class BuyerProfile(Base):
    """Buyer profile - verification status and segment."""
    __tablename__ = "buyer_profiles"

    buyer_profile_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, unique=True)
    company_name = Column(String(200), nullable=True)
    verification_status = Column(SQLEnum(VerificationStatus), nullable=False, default=VerificationStatus.PENDING)
    buyer_segment = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="buyer_profile")

    def __repr__(self):
        return f"<BuyerProfile(public_id={self.public_id}, status={self.verification_status})>"


class SellerProfile(Base):
    """Seller profile - company identity behind catalog listings."""
    __tablename__ = "seller_profiles"

    seller_profile_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, unique=True)
    company_name = Column(String(200), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="seller_profile")

    def __repr__(self):
        return f"<SellerProfile(public_id={self.public_id}, company={self.company_name})>"


class Address(Base):
    """Postal address owned by a user (shipping, billing, visibility location)."""
    __tablename__ = "addresses"

    address_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    line1 = Column(String(200), nullable=False)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    zip_code = Column(String(20), nullable=True)
    country = Column(String(2), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="addresses")

    def __repr__(self):
        return f"<Address(public_id={self.public_id}, city={self.city}, country={self.country})>"


# ========== Catalog ==========

class CatalogListing(Base):
    """
    CatalogListing table - a seller's catalog open to offers.

    WHAT: Listing with status, privacy flag and minimum order value
    WHY: Offers are always made against exactly one listing
    HOW: Owns products, variants and visibility rules
    """
    __tablename__ = "catalog_listings"

    catalog_listing_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    seller_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    seller_profile_id = Column(String(36), ForeignKey("seller_profiles.seller_profile_id"), nullable=False)
    title = Column(String(200), nullable=False)
    status = Column(SQLEnum(ListingStatus), nullable=False, default=ListingStatus.ACTIVE)
    is_private = Column(Boolean, nullable=False, default=False)
    minimum_order_value = Column(Float, nullable=True)
    minimum_order_value_currency = Column(String(3), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    seller_profile = relationship("SellerProfile")
    products = relationship("CatalogProduct", back_populates="listing", cascade="all, delete-orphan")
    visibility_rules = relationship("ListingVisibilityRule", back_populates="listing", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<CatalogListing(public_id={self.public_id}, title={self.title}, status={self.status})>"


class ListingVisibilityRule(Base):
    """Inclusion or exclusion rule scoping a private listing."""
    __tablename__ = "listing_visibility_rules"

    rule_id = Column(String(36), primary_key=True, default=_uuid)
    catalog_listing_id = Column(
        String(36), ForeignKey("catalog_listings.catalog_listing_id", ondelete="CASCADE"), nullable=False
    )
    rule_type = Column(SQLEnum(VisibilityRuleType), nullable=False)
    rule_value = Column(String(200), nullable=False)
    is_inclusion = Column(Boolean, nullable=False, default=True)

    listing = relationship("CatalogListing", back_populates="visibility_rules")

    def __repr__(self):
        kind = "include" if self.is_inclusion else "exclude"
        return f"<ListingVisibilityRule({kind} {self.rule_type}={self.rule_value})>"


class CatalogProduct(Base):
    """Product grouping variants inside a listing."""
    __tablename__ = "catalog_products"

    catalog_product_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_listing_id = Column(
        String(36), ForeignKey("catalog_listings.catalog_listing_id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(200), nullable=False)
    brand_name = Column(String(100), nullable=True)

    listing = relationship("CatalogListing", back_populates="products")
    variants = relationship("CatalogProductVariant", back_populates="product", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<CatalogProduct(public_id={self.public_id}, title={self.title})>"


class CatalogProductVariant(Base):
    """
    CatalogProductVariant table - the unit an offer line item points at.

    WHAT: Sellable variant with inventory, order quantity bounds and retail price
    WHY: Offer validation and order spawning read and decrement these values
    HOW: Denormalized listing id for fast membership checks
    """
    __tablename__ = "catalog_product_variants"

    catalog_product_variant_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_product_id = Column(
        String(36), ForeignKey("catalog_products.catalog_product_id", ondelete="CASCADE"), nullable=False
    )
    catalog_listing_id = Column(String(36), ForeignKey("catalog_listings.catalog_listing_id"), nullable=False)
    variant_sku = Column(String(100), nullable=False)
    variant_name = Column(String(200), nullable=True)
    available_quantity = Column(Integer, nullable=True)
    min_order_quantity = Column(Integer, nullable=True)
    max_order_quantity = Column(Integer, nullable=True)
    retail_price = Column(Float, nullable=True)
    retail_price_currency = Column(String(3), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    product = relationship("CatalogProduct", back_populates="variants")

    __table_args__ = (
        CheckConstraint("available_quantity IS NULL OR available_quantity >= 0", name="check_available_non_negative"),
        Index("idx_variant_listing", "catalog_listing_id"),
    )

    def __repr__(self):
        return f"<CatalogProductVariant(sku={self.variant_sku}, available={self.available_quantity})>"


# ========== Offers ==========

class CatalogOffer(Base):
    """
    CatalogOffer table - one buyer's proposal against one seller's listing.

    WHAT: Offer header with status, round counter, money total and rejection metadata
    WHY: Anchor for items, negotiations, changes, audit entries and the spawned order
    HOW: Mutated only by the creation, negotiation and bulk-modify engines
    """
    __tablename__ = "catalog_offers"

    catalog_offer_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_listing_id = Column(String(36), ForeignKey("catalog_listings.catalog_listing_id"), nullable=False)
    buyer_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    buyer_profile_id = Column(String(36), ForeignKey("buyer_profiles.buyer_profile_id"), nullable=False)
    seller_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    seller_profile_id = Column(String(36), ForeignKey("seller_profiles.seller_profile_id"), nullable=False)

    offer_status = Column(SQLEnum(OfferStatus), nullable=False, default=OfferStatus.ACTIVE)
    total_offer_value = Column(Float, nullable=False, default=0.0)
    total_offer_value_currency = Column(String(3), nullable=False)
    current_round = Column(Integer, nullable=False, default=1)
    offer_message = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    auto_expire_at = Column(DateTime, nullable=True)

    # Rejection metadata
    rejection_reason = Column(Text, nullable=True)
    rejection_category = Column(SQLEnum(RejectionCategory), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejected_by_user_id = Column(String(36), nullable=True)
    reopen_deadline = Column(DateTime, nullable=True)
    can_reopen = Column(Boolean, nullable=False, default=False)

    last_action_by_user_id = Column(String(36), nullable=True)
    last_action_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    listing = relationship("CatalogListing")
    items = relationship(
        "CatalogOfferItem", back_populates="offer", cascade="all, delete-orphan",
        order_by="CatalogOfferItem.added_in_round"
    )
    negotiations = relationship("CatalogOfferNegotiation", back_populates="offer", cascade="all, delete-orphan")
    item_changes = relationship("CatalogOfferItemChange", back_populates="offer", cascade="all, delete-orphan")
    audit_entries = relationship("CatalogOfferAuditLog", back_populates="offer", cascade="all, delete-orphan")
    order = relationship("Order", back_populates="catalog_offer", uselist=False)

    __table_args__ = (
        CheckConstraint("total_offer_value >= 0", name="check_offer_total_non_negative"),
        CheckConstraint("current_round >= 1", name="check_offer_round_positive"),
        Index("idx_offer_buyer_listing", "buyer_user_id", "catalog_listing_id"),
        Index("idx_offer_status_expiry", "offer_status", "auto_expire_at"),
    )

    # Optimistic lock: concurrent writers to the same offer raise StaleDataError
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<CatalogOffer(public_id={self.public_id}, status={self.offer_status}, round={self.current_round})>"


class CatalogOfferItem(Base):
    """
    CatalogOfferItem table - one variant + quantity + price inside an offer.

    WHAT: Line item with per-side prices, negotiation status and final agreed terms
    WHY: Each item negotiates independently inside the offer's rounds
    HOW: Soft-deleted via item_status; item_version bumps on every mutation
    """
    __tablename__ = "catalog_offer_items"

    catalog_offer_item_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    catalog_product_id = Column(String(36), ForeignKey("catalog_products.catalog_product_id"), nullable=True)
    catalog_product_variant_id = Column(
        String(36), ForeignKey("catalog_product_variants.catalog_product_variant_id"), nullable=False
    )

    requested_quantity = Column(Integer, nullable=False)
    buyer_offer_price = Column(Float, nullable=True)
    buyer_offer_price_currency = Column(String(3), nullable=True)
    seller_offer_price = Column(Float, nullable=True)
    seller_offer_price_currency = Column(String(3), nullable=True)

    negotiation_status = Column(
        SQLEnum(ItemNegotiationStatus), nullable=False, default=ItemNegotiationStatus.BUYER_OFFERED
    )
    item_status = Column(SQLEnum(ItemStatus), nullable=False, default=ItemStatus.ACTIVE)
    item_version = Column(Integer, nullable=False, default=1)
    added_in_round = Column(Integer, nullable=False, default=1)
    removed_in_round = Column(Integer, nullable=True)

    final_agreed_price = Column(Float, nullable=True)
    final_agreed_price_currency = Column(String(3), nullable=True)
    final_agreed_quantity = Column(Integer, nullable=True)
    agreed_at = Column(DateTime, nullable=True)

    # Pointers to the live negotiation row on each side (no FK: rows reference each other)
    current_buyer_negotiation_id = Column(String(36), nullable=True)
    current_seller_negotiation_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    offer = relationship("CatalogOffer", back_populates="items")
    variant = relationship("CatalogProductVariant")
    negotiations = relationship("CatalogOfferNegotiation", back_populates="item")

    __table_args__ = (
        CheckConstraint("requested_quantity >= 0", name="check_item_quantity_non_negative"),
        CheckConstraint("buyer_offer_price IS NULL OR buyer_offer_price >= 0", name="check_buyer_price_non_negative"),
        CheckConstraint("seller_offer_price IS NULL OR seller_offer_price >= 0", name="check_seller_price_non_negative"),
        CheckConstraint("item_version >= 1", name="check_item_version_positive"),
        Index("idx_item_offer_status", "catalog_offer_id", "item_status"),
    )

    def __repr__(self):
        return (
            f"<CatalogOfferItem(public_id={self.public_id}, qty={self.requested_quantity}, "
            f"status={self.negotiation_status}/{self.item_status})>"
        )


class CatalogOfferNegotiation(Base):
    """
    CatalogOfferNegotiation table - one proposal for one item in one round.

    WHAT: Price/quantity proposal or response with its status and current flag
    WHY: The full proposal chain per item is the negotiation history
    HOW: Append-only except for status / is_current_offer flips on supersede
    """
    __tablename__ = "catalog_offer_negotiations"

    catalog_offer_negotiation_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    catalog_offer_item_id = Column(
        String(36), ForeignKey("catalog_offer_items.catalog_offer_item_id", ondelete="CASCADE"), nullable=False
    )
    parent_negotiation_id = Column(
        String(36), ForeignKey("catalog_offer_negotiations.catalog_offer_negotiation_id"), nullable=True
    )

    negotiation_round = Column(Integer, nullable=False)
    action_type = Column(SQLEnum(ActionType), nullable=False)
    offered_by_user_id = Column(String(36), nullable=False)
    offered_by_role = Column(SQLEnum(UserRole), nullable=False)

    offer_price_per_unit = Column(Float, nullable=False)
    offer_price_currency = Column(String(3), nullable=False)
    offer_quantity = Column(Integer, nullable=False)
    offer_message = Column(Text, nullable=True)

    offer_status = Column(SQLEnum(NegotiationOfferStatus), nullable=False, default=NegotiationOfferStatus.PENDING)
    is_current_offer = Column(Boolean, nullable=False, default=True)
    valid_until = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    includes_item_changes = Column(Boolean, nullable=False, default=False)
    auto_accepted = Column(Boolean, nullable=False, default=False)
    auto_accept_reason = Column(String(200), nullable=True)
    auto_expired = Column(Boolean, nullable=False, default=False)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    offer = relationship("CatalogOffer", back_populates="negotiations")
    item = relationship("CatalogOfferItem", back_populates="negotiations")

    __table_args__ = (
        CheckConstraint("negotiation_round >= 1", name="check_negotiation_round_positive"),
        CheckConstraint("offer_price_per_unit >= 0", name="check_negotiation_price_non_negative"),
        CheckConstraint("offer_quantity >= 0", name="check_negotiation_quantity_non_negative"),
        Index("idx_negotiation_item_current", "catalog_offer_item_id", "is_current_offer"),
        Index("idx_negotiation_offer_round", "catalog_offer_id", "negotiation_round"),
    )

    def __repr__(self):
        return (
            f"<CatalogOfferNegotiation(round={self.negotiation_round}, action={self.action_type}, "
            f"status={self.offer_status}, current={self.is_current_offer})>"
        )


class CatalogOfferItemChange(Base):
    """Append-only record of a structural item modification."""
    __tablename__ = "catalog_offer_item_changes"

    catalog_offer_item_change_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    catalog_offer_item_id = Column(
        String(36), ForeignKey("catalog_offer_items.catalog_offer_item_id", ondelete="CASCADE"), nullable=False
    )
    negotiation_round = Column(Integer, nullable=False)
    change_type = Column(SQLEnum(ItemChangeType), nullable=False)
    changed_by_user_id = Column(String(36), nullable=False)
    previous_quantity = Column(Integer, nullable=True)
    new_quantity = Column(Integer, nullable=True)
    previous_price = Column(Float, nullable=True)
    new_price = Column(Float, nullable=True)
    new_catalog_product_variant_id = Column(String(36), nullable=True)
    change_reason = Column(Text, nullable=True)
    auto_generated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    offer = relationship("CatalogOffer", back_populates="item_changes")

    def __repr__(self):
        return f"<CatalogOfferItemChange(type={self.change_type}, round={self.negotiation_round})>"


class CatalogOfferAuditLog(Base):
    """Append-only offer-level audit trail of status-changing actions."""
    __tablename__ = "catalog_offer_audit_log"

    audit_id = Column(String(36), primary_key=True, default=_uuid)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    action = Column(String(50), nullable=False)
    performed_by_user_id = Column(String(36), nullable=False)
    previous_status = Column(SQLEnum(OfferStatus), nullable=True)
    new_status = Column(SQLEnum(OfferStatus), nullable=False)
    changes_summary = Column(JSON, nullable=False, default=dict)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    offer = relationship("CatalogOffer", back_populates="audit_entries")

    __table_args__ = (
        Index("idx_audit_offer_created", "catalog_offer_id", "created_at"),
    )

    def __repr__(self):
        return f"<CatalogOfferAuditLog(action={self.action}, {self.previous_status}->{self.new_status})>"


class CatalogOfferAlternativeSuggestion(Base):
    """Variant suggested by the rejecting party."""
    __tablename__ = "catalog_offer_alternative_suggestions"

    suggestion_id = Column(String(36), primary_key=True, default=_uuid)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    suggested_by_user_id = Column(String(36), nullable=False)
    message = Column(Text, nullable=False)
    catalog_product_variant_id = Column(
        String(36), ForeignKey("catalog_product_variants.catalog_product_variant_id"), nullable=True
    )
    suggested_price = Column(Float, nullable=True)
    available_quantity = Column(Integer, nullable=True)
    product_name = Column(String(200), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<CatalogOfferAlternativeSuggestion(product={self.product_name}, price={self.suggested_price})>"


class CatalogOfferMinimumTerms(Base):
    """Minimum acceptable terms recorded with a rejection."""
    __tablename__ = "catalog_offer_minimum_terms"

    terms_id = Column(String(36), primary_key=True, default=_uuid)
    catalog_offer_id = Column(
        String(36), ForeignKey("catalog_offers.catalog_offer_id", ondelete="CASCADE"), nullable=False
    )
    specified_by_user_id = Column(String(36), nullable=False)
    minimum_unit_price = Column(Float, nullable=True)
    minimum_total_order = Column(Float, nullable=True)
    minimum_quantity = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<CatalogOfferMinimumTerms(unit={self.minimum_unit_price}, total={self.minimum_total_order})>"


# ========== Orders ==========

class SellerOrderCounter(Base):
    """Per-seller yearly sequence used in order numbers."""
    __tablename__ = "seller_order_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    year = Column(Integer, nullable=False)
    last_order_number = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("seller_user_id", "year", name="unique_seller_year_counter"),
    )


class Order(Base):
    """
    Order table - spawned from an accepted catalog offer.

    WHAT: Order header with totals, payment due date and addresses
    WHY: Accepted offers hand off to fulfillment through this row
    HOW: Unique catalog_offer_id guarantees at most one order per offer; order numbers are unique per seller
    """
    __tablename__ = "orders"

    order_id = Column(String(36), primary_key=True, default=_uuid)
    public_id = Column(String(14), unique=True, nullable=False, default=generate_public_id)
    order_number = Column(String(20), nullable=False)
    seller_order_number = Column(Integer, nullable=False)
    order_type = Column(SQLEnum(OrderType), nullable=False, default=OrderType.CATALOG)
    order_status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    catalog_offer_id = Column(String(36), ForeignKey("catalog_offers.catalog_offer_id"), nullable=False, unique=True)
    buyer_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    seller_user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    total_amount = Column(Float, nullable=False)
    total_amount_currency = Column(String(3), nullable=False)
    shipping_cost = Column(Float, nullable=False, default=0.0)
    tax_amount = Column(Float, nullable=False, default=0.0)
    payment_due_date = Column(DateTime, nullable=False)
    shipping_address_id = Column(String(36), ForeignKey("addresses.address_id"), nullable=True)
    billing_address_id = Column(String(36), ForeignKey("addresses.address_id"), nullable=True)
    order_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    catalog_offer = relationship("CatalogOffer", back_populates="order")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    status_history = relationship("OrderStatusHistory", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="check_order_total_non_negative"),
        UniqueConstraint("seller_user_id", "order_number", name="unique_seller_order_number"),
    )

    def __repr__(self):
        return f"<Order(order_number={self.order_number}, total={self.total_amount}, status={self.order_status})>"


class OrderItem(Base):
    """Order line linked to the negotiation that settled it."""
    __tablename__ = "order_items"

    order_item_id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False)
    catalog_offer_item_id = Column(String(36), ForeignKey("catalog_offer_items.catalog_offer_item_id"), nullable=False)
    final_negotiation_id = Column(
        String(36), ForeignKey("catalog_offer_negotiations.catalog_offer_negotiation_id"), nullable=False
    )
    catalog_product_id = Column(String(36), nullable=True)
    catalog_product_variant_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="check_order_item_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="check_order_item_price_non_negative"),
    )

    def __repr__(self):
        return f"<OrderItem(qty={self.quantity}, unit={self.unit_price})>"


class OrderStatusHistory(Base):
    """Order status transitions."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False)
    previous_status = Column(SQLEnum(OrderStatus), nullable=True)
    new_status = Column(SQLEnum(OrderStatus), nullable=False)
    changed_by_user_id = Column(String(36), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    order = relationship("Order", back_populates="status_history")
