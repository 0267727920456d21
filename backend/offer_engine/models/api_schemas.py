"""
Pydantic API schemas for the catalog offer endpoints.

WHAT: HTTP request bodies and read-endpoint response models
WHY: Caller identity comes from headers and offer ids from the path, so bodies carry the rest
HOW: Pydantic v2 models that convert into engine requests
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from ..core.clock import to_naive_utc
from ..core.models import RejectionCategory, UserRole
from .offers import (
    AlternativeSuggestionInput, AuditEntryRecord, CreateOfferRequest, CreateOrderRequest,
    ItemChangeInput, ItemChangeRecord, ItemNegotiationInput, ModifyAndAcceptRequest,
    NegotiateOfferRequest, NegotiationAction, NegotiationRecord, OfferItemInput,
    OfferModificationInput, OfferParticipants, OfferSnapshot, OfferStatistics,
)


# ========== Request bodies ==========

class CreateOfferBody(BaseModel):
    """Body for POST /catalog-offers."""
    catalog_listing_id: str = Field(..., min_length=1, description="Listing public id")
    buyer_profile_id: str = Field(..., min_length=1, description="Buyer profile public id")
    items: List[OfferItemInput] = Field(default_factory=list, description="Requested line items")
    expires_at: Optional[datetime] = Field(default=None, description="Optional offer expiry (UTC)")
    offer_message: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("expires_at")
    @classmethod
    def _expiry_as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Aware timestamps (e.g. a trailing Z) are stored as naive UTC."""
        return to_naive_utc(value)

    def to_request(self, buyer_user_id: str) -> CreateOfferRequest:
        return CreateOfferRequest(buyer_user_id=buyer_user_id, **self.model_dump())


class NegotiateBody(BaseModel):
    """Body for POST /catalog-offers/{id}/negotiate."""
    user_role: UserRole
    action: NegotiationAction
    item_negotiations: List[ItemNegotiationInput] = Field(default_factory=list)
    item_changes: List[ItemChangeInput] = Field(default_factory=list)
    rejection_reason: Optional[str] = Field(default=None, max_length=2000)
    rejection_category: Optional[RejectionCategory] = None
    alternative_suggestion: Optional[AlternativeSuggestionInput] = None
    message: Optional[str] = Field(default=None, max_length=2000)
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None

    def to_request(self, catalog_offer_id: str, user_id: str) -> NegotiateOfferRequest:
        return NegotiateOfferRequest(catalog_offer_id=catalog_offer_id, user_id=user_id, **self.model_dump())


class ModifyAndAcceptBody(BaseModel):
    """Body for POST /catalog-offers/{id}/modify-and-accept."""
    seller_message: Optional[str] = Field(default=None, max_length=2000)
    auto_create_order: bool = False
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    order_notes: Optional[str] = Field(default=None, max_length=2000)
    modifications: List[OfferModificationInput] = Field(default_factory=list)

    def to_request(self, catalog_offer_id: str, seller_user_id: str) -> ModifyAndAcceptRequest:
        return ModifyAndAcceptRequest(
            catalog_offer_id=catalog_offer_id, seller_user_id=seller_user_id, **self.model_dump()
        )


class CreateOrderBody(BaseModel):
    """Body for POST /catalog-offers/{id}/orders."""
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    order_notes: Optional[str] = Field(default=None, max_length=2000)

    def to_request(self, catalog_offer_id: str, buyer_user_id: str) -> CreateOrderRequest:
        return CreateOrderRequest(catalog_offer_id=catalog_offer_id, buyer_user_id=buyer_user_id, **self.model_dump())


# ========== Responses ==========

class OfferDetailResponse(BaseModel):
    """Offer snapshot plus participant display info."""
    offer: OfferSnapshot
    participants: OfferParticipants


class OfferHistoryResponse(BaseModel):
    """Full negotiation chain and structural changes of an offer."""
    catalog_offer_id: str
    current_round: int
    negotiations: List[NegotiationRecord]
    item_changes: List[ItemChangeRecord]


class OfferStatisticsResponse(BaseModel):
    catalog_offer_id: str
    statistics: OfferStatistics


class AuditLogResponse(BaseModel):
    catalog_offer_id: str
    entries: List[AuditEntryRecord]


class HealthResponse(BaseModel):
    """Overall application health."""
    status: str
    version: str
    app_name: str
    components: Dict[str, Any]
