"""
Error codes and typed error details.

WHAT: Closed set of error codes, each bound to one structured details model
WHY: Every error code has a fixed, testable payload shape for clients
HOW: ErrorCode enum + pydantic details variants + a code -> variant registry
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, Field


class ErrorClass(str, Enum):
    """Taxonomy used for propagation and HTTP mapping."""
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    CONCURRENCY = "concurrency"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Every error code the engines and the order spawner can return."""

    # Offer creation
    CATALOG_LISTING_NOT_FOUND = "CATALOG_LISTING_NOT_FOUND"
    CATALOG_LISTING_NOT_ACTIVE = "CATALOG_LISTING_NOT_ACTIVE"
    SELLER_CANNOT_MAKE_OFFER = "SELLER_CANNOT_MAKE_OFFER"
    INVALID_BUYER_PROFILE = "INVALID_BUYER_PROFILE"
    BUYER_NOT_VERIFIED = "BUYER_NOT_VERIFIED"
    NO_ITEMS_PROVIDED = "NO_ITEMS_PROVIDED"
    TOO_MANY_ITEMS = "TOO_MANY_ITEMS"
    DUPLICATE_ITEMS = "DUPLICATE_ITEMS"
    MIXED_CURRENCIES = "MIXED_CURRENCIES"
    ITEM_VALIDATION_ERRORS = "ITEM_VALIDATION_ERRORS"
    BELOW_MINIMUM_ORDER_VALUE = "BELOW_MINIMUM_ORDER_VALUE"
    ACCESS_DENIED = "ACCESS_DENIED"
    EXISTING_ACTIVE_OFFER = "EXISTING_ACTIVE_OFFER"
    EXPIRES_AT_IN_PAST = "EXPIRES_AT_IN_PAST"
    EXPIRES_AT_TOO_FAR = "EXPIRES_AT_TOO_FAR"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    HIGH_RISK_ACCOUNT = "HIGH_RISK_ACCOUNT"

    # Negotiation
    OFFER_NOT_FOUND = "OFFER_NOT_FOUND"
    INVALID_OFFER_STATUS = "INVALID_OFFER_STATUS"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    USER_PROFILE_NOT_FOUND = "USER_PROFILE_NOT_FOUND"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    INVALID_NEGOTIATION_SEQUENCE = "INVALID_NEGOTIATION_SEQUENCE"
    INVALID_OFFER_ITEM = "INVALID_OFFER_ITEM"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    INVALID_VARIANT_SELECTION = "INVALID_VARIANT_SELECTION"
    INVALID_ITEM_ADDITION = "INVALID_ITEM_ADDITION"
    INVALID_ITEM_REMOVAL = "INVALID_ITEM_REMOVAL"
    INVALID_QUANTITY_CHANGE = "INVALID_QUANTITY_CHANGE"
    REJECTION_REASON_REQUIRED = "REJECTION_REASON_REQUIRED"
    NO_ITEM_NEGOTIATIONS = "NO_ITEM_NEGOTIATIONS"

    # Bulk modify
    CATALOG_OFFER_NOT_FOUND = "CATALOG_OFFER_NOT_FOUND"
    UNAUTHORIZED_SELLER = "UNAUTHORIZED_SELLER"
    NO_MODIFICATIONS_PROVIDED = "NO_MODIFICATIONS_PROVIDED"

    # Orders
    OFFER_NOT_ACCEPTED = "OFFER_NOT_ACCEPTED"
    UNAUTHORIZED_BUYER = "UNAUTHORIZED_BUYER"
    ORDER_ALREADY_EXISTS = "ORDER_ALREADY_EXISTS"
    SHIPPING_ADDRESS_NOT_FOUND = "SHIPPING_ADDRESS_NOT_FOUND"
    SHIPPING_ADDRESS_ACCESS_DENIED = "SHIPPING_ADDRESS_ACCESS_DENIED"
    BILLING_ADDRESS_NOT_FOUND = "BILLING_ADDRESS_NOT_FOUND"
    BILLING_ADDRESS_ACCESS_DENIED = "BILLING_ADDRESS_ACCESS_DENIED"
    NO_AGREED_ITEMS = "NO_AGREED_ITEMS"
    INCOMPLETE_ITEM_AGREEMENT = "INCOMPLETE_ITEM_AGREEMENT"
    NO_CURRENT_NEGOTIATION = "NO_CURRENT_NEGOTIATION"

    # Infrastructure
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ItemIssueCode(str, Enum):
    """Per-item problems collected under ITEM_VALIDATION_ERRORS."""
    INVALID_VARIANT_SELECTION = "INVALID_VARIANT_SELECTION"
    VARIANT_NOT_ACTIVE = "VARIANT_NOT_ACTIVE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    BELOW_MINIMUM_QUANTITY = "BELOW_MINIMUM_QUANTITY"
    ABOVE_MAXIMUM_QUANTITY = "ABOVE_MAXIMUM_QUANTITY"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    INVALID_PRICE = "INVALID_PRICE"
    PRICE_TOO_HIGH = "PRICE_TOO_HIGH"
    PRICE_SUSPICIOUSLY_LOW = "PRICE_SUSPICIOUSLY_LOW"


# ========== Details variants ==========

class ListingDetails(BaseModel):
    catalog_listing_id: str
    listing_status: Optional[str] = None


class SellerSelfOfferDetails(BaseModel):
    catalog_listing_id: str
    user_id: str


class BuyerProfileDetails(BaseModel):
    buyer_profile_id: str
    verification_status: Optional[str] = None


class ItemCountDetails(BaseModel):
    item_count: int
    max_items: Optional[int] = None


class DuplicateItemsDetails(BaseModel):
    duplicate_variant_ids: List[str]


class CurrencyMismatchDetails(BaseModel):
    currencies: List[str]
    catalog_offer_item_id: Optional[str] = None


class ItemValidationIssue(BaseModel):
    """One problem found on one requested line item."""
    item_index: int
    catalog_product_variant_id: str
    code: ItemIssueCode
    message: str
    requested_quantity: Optional[int] = None
    available_quantity: Optional[int] = None
    shortage: Optional[int] = None
    min_order_quantity: Optional[int] = None
    max_order_quantity: Optional[int] = None
    price: Optional[float] = None
    max_price: Optional[float] = None
    retail_price: Optional[float] = None
    suggested_minimum: Optional[float] = None


class ItemValidationDetails(BaseModel):
    validation_errors: List[ItemValidationIssue]


class MinimumOrderValueDetails(BaseModel):
    total_offer_value: float
    minimum_order_value: float
    currency: Optional[str] = None
    shortfall: float


class AccessDeniedDetails(BaseModel):
    catalog_listing_id: str
    reason: str


class ExistingOfferDetails(BaseModel):
    existing_offer_id: str
    existing_offer_status: str
    suggested_actions: List[str] = Field(default_factory=list)


class ExpiryDetails(BaseModel):
    expires_at: datetime
    now: datetime
    max_expires_at: Optional[datetime] = None


class AccountRiskDetails(BaseModel):
    user_id: str
    risk_score: Optional[int] = None
    max_risk_score: Optional[int] = None


class OfferRefDetails(BaseModel):
    catalog_offer_id: str


class OfferStatusDetails(BaseModel):
    catalog_offer_id: str
    current_status: str
    valid_statuses: List[str]


class OfferExpiredDetails(BaseModel):
    catalog_offer_id: str
    expired_at: datetime


class ParticipantDetails(BaseModel):
    catalog_offer_id: str
    user_id: str
    role: Optional[str] = None


class SequenceDetails(BaseModel):
    catalog_offer_id: str
    attempted_action: str
    last_action_type: Optional[str] = None
    last_action_by_user_id: Optional[str] = None
    suggested_actions: List[str] = Field(default_factory=list)


class OfferItemDetails(BaseModel):
    catalog_offer_item_id: Optional[str] = None
    catalog_product_variant_id: Optional[str] = None
    reason: str


class PriceDetails(BaseModel):
    price: Optional[float] = None
    catalog_offer_item_id: Optional[str] = None


class QuantityDetails(BaseModel):
    quantity: Optional[int] = None
    catalog_offer_item_id: Optional[str] = None


class InventoryDetails(BaseModel):
    catalog_product_variant_id: str
    requested_quantity: int
    available_quantity: int
    shortage: int


class AddressDetails(BaseModel):
    address_id: str


class ExistingOrderDetails(BaseModel):
    catalog_offer_id: str
    order_id: str
    order_number: str


class ItemAgreementDetails(BaseModel):
    catalog_offer_item_id: str
    has_final_price: bool = False
    has_final_quantity: bool = False


class ConcurrencyDetails(BaseModel):
    catalog_offer_id: Optional[str] = None
    reason: str


class InternalErrorDetails(BaseModel):
    reference: str


# Each code has exactly one details variant
ERROR_DETAILS: Dict[ErrorCode, Type[BaseModel]] = {
    ErrorCode.CATALOG_LISTING_NOT_FOUND: ListingDetails,
    ErrorCode.CATALOG_LISTING_NOT_ACTIVE: ListingDetails,
    ErrorCode.SELLER_CANNOT_MAKE_OFFER: SellerSelfOfferDetails,
    ErrorCode.INVALID_BUYER_PROFILE: BuyerProfileDetails,
    ErrorCode.BUYER_NOT_VERIFIED: BuyerProfileDetails,
    ErrorCode.NO_ITEMS_PROVIDED: ItemCountDetails,
    ErrorCode.TOO_MANY_ITEMS: ItemCountDetails,
    ErrorCode.DUPLICATE_ITEMS: DuplicateItemsDetails,
    ErrorCode.MIXED_CURRENCIES: CurrencyMismatchDetails,
    ErrorCode.ITEM_VALIDATION_ERRORS: ItemValidationDetails,
    ErrorCode.BELOW_MINIMUM_ORDER_VALUE: MinimumOrderValueDetails,
    ErrorCode.ACCESS_DENIED: AccessDeniedDetails,
    ErrorCode.EXISTING_ACTIVE_OFFER: ExistingOfferDetails,
    ErrorCode.EXPIRES_AT_IN_PAST: ExpiryDetails,
    ErrorCode.EXPIRES_AT_TOO_FAR: ExpiryDetails,
    ErrorCode.ACCOUNT_LOCKED: AccountRiskDetails,
    ErrorCode.HIGH_RISK_ACCOUNT: AccountRiskDetails,
    ErrorCode.OFFER_NOT_FOUND: OfferRefDetails,
    ErrorCode.INVALID_OFFER_STATUS: OfferStatusDetails,
    ErrorCode.OFFER_EXPIRED: OfferExpiredDetails,
    ErrorCode.USER_PROFILE_NOT_FOUND: ParticipantDetails,
    ErrorCode.UNAUTHORIZED_ACCESS: ParticipantDetails,
    ErrorCode.INVALID_NEGOTIATION_SEQUENCE: SequenceDetails,
    ErrorCode.INVALID_OFFER_ITEM: OfferItemDetails,
    ErrorCode.INVALID_PRICE: PriceDetails,
    ErrorCode.INVALID_QUANTITY: QuantityDetails,
    ErrorCode.INSUFFICIENT_INVENTORY: InventoryDetails,
    ErrorCode.INVALID_VARIANT_SELECTION: OfferItemDetails,
    ErrorCode.INVALID_ITEM_ADDITION: OfferItemDetails,
    ErrorCode.INVALID_ITEM_REMOVAL: OfferItemDetails,
    ErrorCode.INVALID_QUANTITY_CHANGE: OfferItemDetails,
    ErrorCode.REJECTION_REASON_REQUIRED: OfferRefDetails,
    ErrorCode.NO_ITEM_NEGOTIATIONS: OfferRefDetails,
    ErrorCode.CATALOG_OFFER_NOT_FOUND: OfferRefDetails,
    ErrorCode.UNAUTHORIZED_SELLER: ParticipantDetails,
    ErrorCode.NO_MODIFICATIONS_PROVIDED: OfferRefDetails,
    ErrorCode.OFFER_NOT_ACCEPTED: OfferStatusDetails,
    ErrorCode.UNAUTHORIZED_BUYER: ParticipantDetails,
    ErrorCode.ORDER_ALREADY_EXISTS: ExistingOrderDetails,
    ErrorCode.SHIPPING_ADDRESS_NOT_FOUND: AddressDetails,
    ErrorCode.SHIPPING_ADDRESS_ACCESS_DENIED: AddressDetails,
    ErrorCode.BILLING_ADDRESS_NOT_FOUND: AddressDetails,
    ErrorCode.BILLING_ADDRESS_ACCESS_DENIED: AddressDetails,
    ErrorCode.NO_AGREED_ITEMS: OfferRefDetails,
    ErrorCode.INCOMPLETE_ITEM_AGREEMENT: ItemAgreementDetails,
    ErrorCode.NO_CURRENT_NEGOTIATION: ItemAgreementDetails,
    ErrorCode.CONCURRENT_MODIFICATION: ConcurrencyDetails,
    ErrorCode.INTERNAL_ERROR: InternalErrorDetails,
}

ERROR_CLASSES: Dict[ErrorCode, ErrorClass] = {
    ErrorCode.CATALOG_LISTING_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.OFFER_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.CATALOG_OFFER_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.USER_PROFILE_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.SHIPPING_ADDRESS_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.BILLING_ADDRESS_NOT_FOUND: ErrorClass.NOT_FOUND,
    ErrorCode.SELLER_CANNOT_MAKE_OFFER: ErrorClass.AUTHORIZATION,
    ErrorCode.INVALID_BUYER_PROFILE: ErrorClass.AUTHORIZATION,
    ErrorCode.ACCESS_DENIED: ErrorClass.AUTHORIZATION,
    ErrorCode.UNAUTHORIZED_ACCESS: ErrorClass.AUTHORIZATION,
    ErrorCode.UNAUTHORIZED_SELLER: ErrorClass.AUTHORIZATION,
    ErrorCode.UNAUTHORIZED_BUYER: ErrorClass.AUTHORIZATION,
    ErrorCode.SHIPPING_ADDRESS_ACCESS_DENIED: ErrorClass.AUTHORIZATION,
    ErrorCode.BILLING_ADDRESS_ACCESS_DENIED: ErrorClass.AUTHORIZATION,
    ErrorCode.ACCOUNT_LOCKED: ErrorClass.AUTHORIZATION,
    ErrorCode.HIGH_RISK_ACCOUNT: ErrorClass.AUTHORIZATION,
    ErrorCode.CATALOG_LISTING_NOT_ACTIVE: ErrorClass.STATE_CONFLICT,
    ErrorCode.EXISTING_ACTIVE_OFFER: ErrorClass.STATE_CONFLICT,
    ErrorCode.INVALID_OFFER_STATUS: ErrorClass.STATE_CONFLICT,
    ErrorCode.OFFER_EXPIRED: ErrorClass.STATE_CONFLICT,
    ErrorCode.INVALID_NEGOTIATION_SEQUENCE: ErrorClass.STATE_CONFLICT,
    ErrorCode.OFFER_NOT_ACCEPTED: ErrorClass.STATE_CONFLICT,
    ErrorCode.ORDER_ALREADY_EXISTS: ErrorClass.STATE_CONFLICT,
    ErrorCode.CONCURRENT_MODIFICATION: ErrorClass.CONCURRENCY,
    ErrorCode.INTERNAL_ERROR: ErrorClass.INTERNAL,
}


def error_class_for(code: ErrorCode) -> ErrorClass:
    """Classify a code; anything not listed is a validation error."""
    return ERROR_CLASSES.get(code, ErrorClass.VALIDATION)


class OfferError(BaseModel):
    """Structured error returned in every failed engine result."""
    code: ErrorCode
    message: str
    details: Optional[BaseModel] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details.model_dump(mode="json") if self.details is not None else None,
        }
