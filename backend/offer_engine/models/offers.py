"""
Offer engine request and result models.

WHAT: Typed inputs and payloads for the creation, negotiation, bulk-modify and order operations
WHY: Every engine returns one {success, data, error} envelope with a fixed payload shape
HOW: Pydantic v2 models for data, a small generic dataclass for the envelope
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from ..core.clock import to_naive_utc
from ..core.models import (
    ActionType, ItemChangeType, RejectionCategory, UserRole,
    CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation, CatalogOfferItemChange, Order,
)
from .errors import OfferError

PayloadT = TypeVar("PayloadT", bound=BaseModel)


@dataclass
class OperationResult(Generic[PayloadT]):
    """Envelope returned by every engine entry point."""
    success: bool
    data: Optional[PayloadT] = None
    error: Optional[OfferError] = None

    @classmethod
    def ok(cls, data: PayloadT) -> "OperationResult[PayloadT]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: OfferError) -> "OperationResult[PayloadT]":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data.model_dump(mode="json") if self.data is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
        }


# ========== Actions ==========

class ActionKind(str, enum.Enum):
    COUNTER = "COUNTER"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class NegotiationAction(str, enum.Enum):
    """Actions a participant may submit to the negotiation engine."""
    BUYER_COUNTER = "BUYER_COUNTER"
    SELLER_COUNTER = "SELLER_COUNTER"
    BUYER_ACCEPT = "BUYER_ACCEPT"
    SELLER_ACCEPT = "SELLER_ACCEPT"
    BUYER_REJECT = "BUYER_REJECT"
    SELLER_REJECT = "SELLER_REJECT"

    @property
    def role(self) -> UserRole:
        return UserRole.BUYER if self.value.startswith("BUYER_") else UserRole.SELLER

    @property
    def kind(self) -> ActionKind:
        return ActionKind(self.value.split("_", 1)[1])

    @property
    def action_type(self) -> ActionType:
        return ActionType(self.value)


class ModificationAction(str, enum.Enum):
    """Seller bulk-modify operations."""
    ADD_PRODUCT = "ADD_PRODUCT"
    UPDATE_EXISTING = "UPDATE_EXISTING"
    REMOVE_PRODUCT = "REMOVE_PRODUCT"


# ========== Requests ==========

class OfferItemInput(BaseModel):
    """One requested line item on a new offer."""
    catalog_product_variant_id: str
    requested_quantity: int
    buyer_offer_price: float
    buyer_offer_price_currency: str = "USD"


class CreateOfferRequest(BaseModel):
    catalog_listing_id: str
    buyer_user_id: str
    buyer_profile_id: str
    items: List[OfferItemInput] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    offer_message: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _expiry_as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class ItemNegotiationInput(BaseModel):
    """Proposed terms for one item in a counter."""
    catalog_offer_item_id: str
    offer_price_per_unit: float
    offer_quantity: int
    offer_message: Optional[str] = None


class ItemChangeInput(BaseModel):
    """Structural change applied before a counter's item negotiations."""
    change_type: ItemChangeType
    catalog_offer_item_id: Optional[str] = None
    catalog_product_variant_id: Optional[str] = None
    new_quantity: Optional[int] = None
    requested_quantity: Optional[int] = None
    buyer_offer_price: Optional[float] = None
    buyer_offer_price_currency: Optional[str] = None
    change_reason: Optional[str] = None


class SuggestedVariantInput(BaseModel):
    catalog_product_variant_id: str
    suggested_price: float
    available_quantity: int
    product_name: str


class MinimumTermsInput(BaseModel):
    minimum_unit_price: Optional[float] = None
    minimum_total_order: Optional[float] = None
    minimum_quantity: Optional[int] = None


class AlternativeSuggestionInput(BaseModel):
    message: str
    suggested_variants: List[SuggestedVariantInput] = Field(default_factory=list)
    minimum_acceptable_terms: Optional[MinimumTermsInput] = None


class NegotiateOfferRequest(BaseModel):
    catalog_offer_id: str
    user_id: str
    user_role: UserRole
    action: NegotiationAction
    item_negotiations: List[ItemNegotiationInput] = Field(default_factory=list)
    item_changes: List[ItemChangeInput] = Field(default_factory=list)
    rejection_reason: Optional[str] = None
    rejection_category: Optional[RejectionCategory] = None
    alternative_suggestion: Optional[AlternativeSuggestionInput] = None
    message: Optional[str] = None
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None


class OfferModificationInput(BaseModel):
    action: ModificationAction
    catalog_product_variant_id: Optional[str] = None
    catalog_offer_item_id: Optional[str] = None
    quantity: Optional[int] = None
    seller_price_per_unit: Optional[float] = None
    new_quantity: Optional[int] = None
    new_seller_price_per_unit: Optional[float] = None
    modification_reason: Optional[str] = None


class ModifyAndAcceptRequest(BaseModel):
    catalog_offer_id: str
    seller_user_id: str
    seller_message: Optional[str] = None
    auto_create_order: bool = False
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    order_notes: Optional[str] = None
    modifications: List[OfferModificationInput] = Field(default_factory=list)


class CreateOrderRequest(BaseModel):
    catalog_offer_id: str
    buyer_user_id: str
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    order_notes: Optional[str] = None


# ========== Payloads ==========

class OfferItemSnapshot(BaseModel):
    catalog_offer_item_id: str
    catalog_product_variant_id: str
    requested_quantity: int
    buyer_offer_price: Optional[float] = None
    buyer_offer_price_currency: Optional[str] = None
    seller_offer_price: Optional[float] = None
    seller_offer_price_currency: Optional[str] = None
    negotiation_status: str
    item_status: str
    item_version: int
    added_in_round: int
    removed_in_round: Optional[int] = None
    final_agreed_price: Optional[float] = None
    final_agreed_price_currency: Optional[str] = None
    final_agreed_quantity: Optional[int] = None
    agreed_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: CatalogOfferItem) -> "OfferItemSnapshot":
        return cls(
            catalog_offer_item_id=item.public_id,
            catalog_product_variant_id=item.variant.public_id,
            requested_quantity=item.requested_quantity,
            buyer_offer_price=item.buyer_offer_price,
            buyer_offer_price_currency=item.buyer_offer_price_currency,
            seller_offer_price=item.seller_offer_price,
            seller_offer_price_currency=item.seller_offer_price_currency,
            negotiation_status=item.negotiation_status.value,
            item_status=item.item_status.value,
            item_version=item.item_version,
            added_in_round=item.added_in_round,
            removed_in_round=item.removed_in_round,
            final_agreed_price=item.final_agreed_price,
            final_agreed_price_currency=item.final_agreed_price_currency,
            final_agreed_quantity=item.final_agreed_quantity,
            agreed_at=item.agreed_at,
        )


class OfferSnapshot(BaseModel):
    catalog_offer_id: str
    catalog_listing_id: str
    offer_status: str
    total_offer_value: float
    total_offer_value_currency: str
    current_round: int
    expires_at: Optional[datetime] = None
    created_at: datetime
    last_action_by_user_id: Optional[str] = None
    last_action_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejection_category: Optional[str] = None
    reopen_deadline: Optional[datetime] = None
    can_reopen: bool = False
    items: List[OfferItemSnapshot] = Field(default_factory=list)

    @classmethod
    def from_offer(cls, offer: CatalogOffer) -> "OfferSnapshot":
        return cls(
            catalog_offer_id=offer.public_id,
            catalog_listing_id=offer.listing.public_id,
            offer_status=offer.offer_status.value,
            total_offer_value=offer.total_offer_value,
            total_offer_value_currency=offer.total_offer_value_currency,
            current_round=offer.current_round,
            expires_at=offer.expires_at,
            created_at=offer.created_at,
            last_action_by_user_id=offer.last_action_by_user_id,
            last_action_at=offer.last_action_at,
            rejection_reason=offer.rejection_reason,
            rejection_category=offer.rejection_category.value if offer.rejection_category else None,
            reopen_deadline=offer.reopen_deadline,
            can_reopen=offer.can_reopen,
            items=[OfferItemSnapshot.from_item(item) for item in offer.items],
        )


class NegotiationRecord(BaseModel):
    negotiation_id: str
    catalog_offer_item_id: str
    negotiation_round: int
    action_type: str
    offered_by_user_id: str
    offer_price_per_unit: float
    offer_price_currency: str
    offer_quantity: int
    offer_status: str
    is_current_offer: bool
    valid_until: Optional[datetime] = None
    includes_item_changes: bool = False
    auto_accepted: bool = False
    auto_accept_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_negotiation(cls, negotiation: CatalogOfferNegotiation) -> "NegotiationRecord":
        return cls(
            negotiation_id=negotiation.public_id,
            catalog_offer_item_id=negotiation.item.public_id,
            negotiation_round=negotiation.negotiation_round,
            action_type=negotiation.action_type.value,
            offered_by_user_id=negotiation.offered_by_user_id,
            offer_price_per_unit=negotiation.offer_price_per_unit,
            offer_price_currency=negotiation.offer_price_currency,
            offer_quantity=negotiation.offer_quantity,
            offer_status=negotiation.offer_status.value,
            is_current_offer=negotiation.is_current_offer,
            valid_until=negotiation.valid_until,
            includes_item_changes=negotiation.includes_item_changes,
            auto_accepted=negotiation.auto_accepted,
            auto_accept_reason=negotiation.auto_accept_reason,
            created_at=negotiation.created_at,
        )


class ItemChangeRecord(BaseModel):
    change_id: str
    catalog_offer_item_id: str
    change_type: str
    negotiation_round: int
    previous_quantity: Optional[int] = None
    new_quantity: Optional[int] = None
    previous_price: Optional[float] = None
    new_price: Optional[float] = None
    change_reason: Optional[str] = None
    auto_generated: bool = False

    @classmethod
    def from_change(cls, change: CatalogOfferItemChange, item_public_id: str) -> "ItemChangeRecord":
        return cls(
            change_id=change.public_id,
            catalog_offer_item_id=item_public_id,
            change_type=change.change_type.value,
            negotiation_round=change.negotiation_round,
            previous_quantity=change.previous_quantity,
            new_quantity=change.new_quantity,
            previous_price=change.previous_price,
            new_price=change.new_price,
            change_reason=change.change_reason,
            auto_generated=bool(change.auto_generated),
        )


class OrderLineSummary(BaseModel):
    catalog_offer_item_id: str
    catalog_product_variant_id: str
    quantity: int
    unit_price: float
    total_price: float


class OrderSummary(BaseModel):
    order_id: str
    order_number: str
    seller_order_number: int
    order_type: str
    order_status: str
    total_amount: float
    total_amount_currency: str
    shipping_cost: float
    tax_amount: float
    payment_due_date: datetime
    catalog_offer_id: str
    created_at: datetime
    items: List[OrderLineSummary] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order, lines: List[OrderLineSummary]) -> "OrderSummary":
        return cls(
            order_id=order.public_id,
            order_number=order.order_number,
            seller_order_number=order.seller_order_number,
            order_type=order.order_type.value,
            order_status=order.order_status.value,
            total_amount=order.total_amount,
            total_amount_currency=order.total_amount_currency,
            shipping_cost=order.shipping_cost,
            tax_amount=order.tax_amount,
            payment_due_date=order.payment_due_date,
            catalog_offer_id=order.catalog_offer.public_id,
            created_at=order.created_at,
            items=lines,
        )


class RejectionDetails(BaseModel):
    rejection_reason: str
    rejection_category: str
    rejected_at: datetime
    rejected_by_user_id: str
    reopen_deadline: datetime
    can_reopen: bool


class NegotiationPayload(BaseModel):
    catalog_offer_id: str
    offer_status: str
    current_round: int
    total_offer_value: float
    total_offer_value_currency: str
    negotiations_created: List[NegotiationRecord] = Field(default_factory=list)
    item_changes_applied: List[ItemChangeRecord] = Field(default_factory=list)
    order: Optional[OrderSummary] = None
    rejection: Optional[RejectionDetails] = None


class ModificationSummary(BaseModel):
    total_modifications: int
    products_added: int
    items_updated: int
    items_removed: int
    items_auto_finalized: int
    previous_offer_total: float
    new_offer_total: float
    total_change: float
    order_auto_created: bool


class ModifyAndAcceptPayload(BaseModel):
    offer: OfferSnapshot
    negotiations: List[NegotiationRecord] = Field(default_factory=list)
    item_changes: List[ItemChangeRecord] = Field(default_factory=list)
    order: Optional[OrderSummary] = None
    summary: ModificationSummary


class OrderPayload(BaseModel):
    order: OrderSummary


class ParticipantInfo(BaseModel):
    user_id: str
    role: str
    display_name: str
    company_name: Optional[str] = None


class OfferParticipants(BaseModel):
    buyer: ParticipantInfo
    seller: ParticipantInfo


class OfferStatistics(BaseModel):
    total_rounds: int
    total_negotiations: int
    average_response_time_hours: Optional[float] = None
    item_count: int
    active_item_count: int
    total_value: float
    currency: str


class AuditEntryRecord(BaseModel):
    action: str
    performed_by_user_id: str
    previous_status: Optional[str] = None
    new_status: str
    changes_summary: dict
    created_at: datetime


class ExpirationSweepResult(BaseModel):
    offers_expired: List[str] = Field(default_factory=list)
    negotiations_expired: int = 0
