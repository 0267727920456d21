"""
Offer creation engine.

WHAT: Validate a buyer's multi-item offer against a listing and create it atomically
WHY: An offer must either exist completely (offer + items + negotiations) or not at all
HOW: Short-circuit validation chain, then inserts in one transaction, notification after commit
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.identifiers import generate_public_id, parse_ref, resolve
from ..core.models import (
    Address, BuyerProfile, CatalogListing, CatalogOffer, CatalogOfferItem, CatalogProductVariant, User,
    ActionType, ItemNegotiationStatus, ItemStatus, ListingStatus, OfferStatus, UserRole, VerificationStatus,
)
from ..models.errors import (
    ErrorCode, ItemIssueCode, ListingDetails, SellerSelfOfferDetails, BuyerProfileDetails,
    ItemCountDetails, DuplicateItemsDetails, CurrencyMismatchDetails, ItemValidationIssue,
    ItemValidationDetails, MinimumOrderValueDetails, AccessDeniedDetails, ExistingOfferDetails,
    ExpiryDetails, AccountRiskDetails,
)
from ..models.offers import CreateOfferRequest, OfferItemInput, OfferSnapshot, OperationResult
from ..utils.exceptions import OfferOperationError
from ..utils.money import line_total, round_money
from ..utils.logger import get_logger
from .engine_base import OfferEngineBase, new_negotiation, point_item_at, record_audit
from .negotiation_queries import OPEN_OFFER_STATUSES
from .notifications import NotificationEvent
from .visibility_filter import BuyerVisibilityContext, VisibilityPredicate, rule_based_visibility

logger = get_logger(__name__)


class OfferCreationEngine(OfferEngineBase):
    """
    Creates catalog offers.

    WHAT: create_offer() runs the full validation chain and inserts the offer
    WHY: First failure wins, so clients always get the most fundamental problem
    HOW: One _check_* method per rule group; each raises OfferOperationError
    """

    def __init__(self, *args, visibility_predicate: VisibilityPredicate = rule_based_visibility, **kwargs):
        super().__init__(*args, **kwargs)
        self.visibility_predicate = visibility_predicate

    def create_offer(self, request: CreateOfferRequest) -> OperationResult[OfferSnapshot]:
        """
        Create a new offer.

        Args:
            request: Listing, buyer identity, items and optional expiry

        Returns:
            OperationResult with the offer snapshot, or the first validation error
        """
        def work(db: Session, now: datetime):
            return self._create(db, request, now)

        return self._execute("create_offer", work)

    # ========== Validation ==========

    def _check_listing(self, db: Session, raw_listing_id: str) -> CatalogListing:
        listing = resolve(db, CatalogListing, parse_ref(raw_listing_id))
        if listing is None:
            raise OfferOperationError(
                ErrorCode.CATALOG_LISTING_NOT_FOUND,
                "Catalog listing not found",
                ListingDetails(catalog_listing_id=raw_listing_id),
            )
        if listing.status != ListingStatus.ACTIVE:
            raise OfferOperationError(
                ErrorCode.CATALOG_LISTING_NOT_ACTIVE,
                "Catalog listing is not active",
                ListingDetails(catalog_listing_id=listing.public_id, listing_status=listing.status.value),
            )
        return listing

    def _check_buyer_profile(self, db: Session, request: CreateOfferRequest, listing: CatalogListing) -> BuyerProfile:
        if request.buyer_user_id == listing.seller_user_id:
            raise OfferOperationError(
                ErrorCode.SELLER_CANNOT_MAKE_OFFER,
                "Sellers cannot make offers on their own listings",
                SellerSelfOfferDetails(catalog_listing_id=listing.public_id, user_id=request.buyer_user_id),
            )

        profile = resolve(db, BuyerProfile, parse_ref(request.buyer_profile_id))
        if profile is None or profile.user_id != request.buyer_user_id:
            raise OfferOperationError(
                ErrorCode.INVALID_BUYER_PROFILE,
                "Buyer profile not found or does not belong to the user",
                BuyerProfileDetails(buyer_profile_id=request.buyer_profile_id),
            )
        if profile.verification_status != VerificationStatus.VERIFIED:
            raise OfferOperationError(
                ErrorCode.BUYER_NOT_VERIFIED,
                "Buyer profile must be verified to make offers",
                BuyerProfileDetails(
                    buyer_profile_id=profile.public_id,
                    verification_status=profile.verification_status.value,
                ),
            )
        return profile

    def _check_item_list(self, items: List[OfferItemInput]) -> str:
        """Count, duplicates and currency checks. Returns the offer currency."""
        if not items:
            raise OfferOperationError(
                ErrorCode.NO_ITEMS_PROVIDED,
                "At least one item is required",
                ItemCountDetails(item_count=0),
            )
        if len(items) > settings.MAX_ITEMS_PER_OFFER:
            raise OfferOperationError(
                ErrorCode.TOO_MANY_ITEMS,
                f"Maximum {settings.MAX_ITEMS_PER_OFFER} items allowed per offer",
                ItemCountDetails(item_count=len(items), max_items=settings.MAX_ITEMS_PER_OFFER),
            )

        counts = Counter(item.catalog_product_variant_id for item in items)
        duplicates = sorted(variant_id for variant_id, count in counts.items() if count > 1)
        if duplicates:
            raise OfferOperationError(
                ErrorCode.DUPLICATE_ITEMS,
                "Duplicate product variants are not allowed",
                DuplicateItemsDetails(duplicate_variant_ids=duplicates),
            )

        currencies = sorted({item.buyer_offer_price_currency for item in items})
        if len(currencies) > 1:
            raise OfferOperationError(
                ErrorCode.MIXED_CURRENCIES,
                "All items must use the same currency",
                CurrencyMismatchDetails(currencies=currencies),
            )
        return currencies[0]

    def _item_issues(
        self,
        index: int,
        item: OfferItemInput,
        variant: Optional[CatalogProductVariant],
        listing: CatalogListing,
    ) -> List[ItemValidationIssue]:
        """Every problem with one requested item (empty when valid)."""
        variant_id = item.catalog_product_variant_id
        issues: List[ItemValidationIssue] = []

        def issue(code: ItemIssueCode, message: str, **extra) -> ItemValidationIssue:
            return ItemValidationIssue(
                item_index=index, catalog_product_variant_id=variant_id, code=code, message=message, **extra
            )

        if variant is None or variant.catalog_listing_id != listing.catalog_listing_id:
            return [issue(ItemIssueCode.INVALID_VARIANT_SELECTION, "Product variant not found in this listing")]
        if not variant.is_active:
            return [issue(ItemIssueCode.VARIANT_NOT_ACTIVE, "Product variant is not active")]

        quantity = item.requested_quantity
        if quantity <= 0:
            issues.append(issue(ItemIssueCode.INVALID_QUANTITY, "Quantity must be greater than zero",
                                requested_quantity=quantity))
        else:
            if variant.min_order_quantity and quantity < variant.min_order_quantity:
                issues.append(issue(
                    ItemIssueCode.BELOW_MINIMUM_QUANTITY,
                    f"Minimum order quantity is {variant.min_order_quantity}",
                    requested_quantity=quantity, min_order_quantity=variant.min_order_quantity,
                ))
            if variant.max_order_quantity and quantity > variant.max_order_quantity:
                issues.append(issue(
                    ItemIssueCode.ABOVE_MAXIMUM_QUANTITY,
                    f"Maximum order quantity is {variant.max_order_quantity}",
                    requested_quantity=quantity, max_order_quantity=variant.max_order_quantity,
                ))
            if variant.available_quantity is not None and quantity > variant.available_quantity:
                issues.append(issue(
                    ItemIssueCode.INSUFFICIENT_INVENTORY,
                    f"Only {variant.available_quantity} units available",
                    requested_quantity=quantity,
                    available_quantity=variant.available_quantity,
                    shortage=quantity - variant.available_quantity,
                ))

        price = item.buyer_offer_price
        if price <= 0:
            issues.append(issue(ItemIssueCode.INVALID_PRICE, "Price must be greater than zero", price=price))
        elif price > settings.MAX_UNIT_PRICE:
            issues.append(issue(
                ItemIssueCode.PRICE_TOO_HIGH,
                f"Price exceeds the maximum of {settings.MAX_UNIT_PRICE}",
                price=price, max_price=settings.MAX_UNIT_PRICE,
            ))
        elif variant.retail_price and price < variant.retail_price * settings.SUSPICIOUS_PRICE_RATIO:
            issues.append(issue(
                ItemIssueCode.PRICE_SUSPICIOUSLY_LOW,
                "Offer price is implausibly low compared to the retail price",
                price=price,
                retail_price=variant.retail_price,
                suggested_minimum=round_money(variant.retail_price * settings.SUGGESTED_MINIMUM_RATIO),
            ))

        return issues

    def _check_items(
        self,
        db: Session,
        items: List[OfferItemInput],
        listing: CatalogListing,
    ) -> List[Tuple[OfferItemInput, CatalogProductVariant]]:
        """Collect every per-item problem before failing."""
        variants = [resolve(db, CatalogProductVariant, parse_ref(item.catalog_product_variant_id)) for item in items]

        # A public id and an internal key can name the same variant
        counts = Counter(variant.catalog_product_variant_id for variant in variants if variant is not None)
        duplicates = sorted({
            variant.public_id for variant in variants
            if variant is not None and counts[variant.catalog_product_variant_id] > 1
        })
        if duplicates:
            raise OfferOperationError(
                ErrorCode.DUPLICATE_ITEMS,
                "Duplicate product variants are not allowed",
                DuplicateItemsDetails(duplicate_variant_ids=duplicates),
            )

        resolved: List[Tuple[OfferItemInput, CatalogProductVariant]] = []
        issues: List[ItemValidationIssue] = []
        for index, (item, variant) in enumerate(zip(items, variants)):
            item_issues = self._item_issues(index, item, variant, listing)
            if item_issues:
                issues.extend(item_issues)
            else:
                resolved.append((item, variant))

        if issues:
            raise OfferOperationError(
                ErrorCode.ITEM_VALIDATION_ERRORS,
                f"{len(issues)} item validation error(s)",
                ItemValidationDetails(validation_errors=issues),
            )
        return resolved

    def _check_minimum_order_value(self, listing: CatalogListing, total: float, currency: str) -> None:
        minimum = listing.minimum_order_value
        if minimum and total < minimum:
            raise OfferOperationError(
                ErrorCode.BELOW_MINIMUM_ORDER_VALUE,
                f"Offer total {total} is below the listing minimum of {minimum}",
                MinimumOrderValueDetails(
                    total_offer_value=total,
                    minimum_order_value=minimum,
                    currency=listing.minimum_order_value_currency or currency,
                    shortfall=round_money(minimum - total),
                ),
            )

    def _check_visibility(self, db: Session, listing: CatalogListing, profile: BuyerProfile) -> None:
        if not listing.is_private:
            return
        address = (
            db.query(Address)
            .filter(Address.user_id == profile.user_id)
            .order_by(Address.is_default.desc())
            .first()
        )
        context = BuyerVisibilityContext.from_profile(profile, address)
        if not self.visibility_predicate(context, listing.visibility_rules):
            raise OfferOperationError(
                ErrorCode.ACCESS_DENIED,
                "You do not have access to this private catalog",
                AccessDeniedDetails(catalog_listing_id=listing.public_id, reason="visibility_rules"),
            )

    def _check_existing_offer(self, db: Session, buyer_user_id: str, listing: CatalogListing) -> None:
        existing = (
            db.query(CatalogOffer)
            .filter(
                CatalogOffer.buyer_user_id == buyer_user_id,
                CatalogOffer.catalog_listing_id == listing.catalog_listing_id,
                CatalogOffer.offer_status.in_(OPEN_OFFER_STATUSES),
            )
            .first()
        )
        if existing is not None:
            raise OfferOperationError(
                ErrorCode.EXISTING_ACTIVE_OFFER,
                "You already have an open offer on this listing",
                ExistingOfferDetails(
                    existing_offer_id=existing.public_id,
                    existing_offer_status=existing.offer_status.value,
                    suggested_actions=["Continue negotiating the existing offer", "Wait for it to expire"],
                ),
            )

    def _check_expiry(self, expires_at: Optional[datetime], now: datetime) -> None:
        if expires_at is None:
            return
        if expires_at <= now:
            raise OfferOperationError(
                ErrorCode.EXPIRES_AT_IN_PAST,
                "Expiry must be in the future",
                ExpiryDetails(expires_at=expires_at, now=now),
            )
        max_expires_at = now + timedelta(days=settings.MAX_OFFER_EXPIRY_DAYS)
        if expires_at > max_expires_at:
            raise OfferOperationError(
                ErrorCode.EXPIRES_AT_TOO_FAR,
                f"Expiry cannot be more than {settings.MAX_OFFER_EXPIRY_DAYS} days out",
                ExpiryDetails(expires_at=expires_at, now=now, max_expires_at=max_expires_at),
            )

    def _check_account(self, db: Session, buyer_user_id: str) -> None:
        user = db.get(User, buyer_user_id)
        if user is None:
            return
        if user.account_locked:
            raise OfferOperationError(
                ErrorCode.ACCOUNT_LOCKED,
                "Account is locked",
                AccountRiskDetails(user_id=buyer_user_id),
            )
        if user.risk_score > settings.MAX_RISK_SCORE:
            raise OfferOperationError(
                ErrorCode.HIGH_RISK_ACCOUNT,
                "Account risk score is too high to make offers",
                AccountRiskDetails(
                    user_id=buyer_user_id, risk_score=user.risk_score, max_risk_score=settings.MAX_RISK_SCORE
                ),
            )

    # ========== Creation ==========

    def _create(self, db: Session, request: CreateOfferRequest, now: datetime):
        listing = self._check_listing(db, request.catalog_listing_id)
        profile = self._check_buyer_profile(db, request, listing)
        currency = self._check_item_list(request.items)
        resolved = self._check_items(db, request.items, listing)

        total = round_money(sum(
            line_total(item.buyer_offer_price, item.requested_quantity, context=f"new item {index}")
            for index, (item, _) in enumerate(resolved)
        ))
        self._check_minimum_order_value(listing, total, currency)
        self._check_visibility(db, listing, profile)
        self._check_existing_offer(db, request.buyer_user_id, listing)
        self._check_expiry(request.expires_at, now)
        self._check_account(db, request.buyer_user_id)

        offer = CatalogOffer(
            catalog_offer_id=str(uuid4()),
            public_id=generate_public_id(),
            catalog_listing_id=listing.catalog_listing_id,
            buyer_user_id=request.buyer_user_id,
            buyer_profile_id=profile.buyer_profile_id,
            seller_user_id=listing.seller_user_id,
            seller_profile_id=listing.seller_profile_id,
            offer_status=OfferStatus.ACTIVE,
            total_offer_value=total,
            total_offer_value_currency=currency,
            current_round=1,
            offer_message=request.offer_message,
            expires_at=request.expires_at,
            auto_expire_at=request.expires_at,
            last_action_by_user_id=request.buyer_user_id,
            last_action_at=now,
            created_at=now,
            updated_at=now,
        )
        offer.listing = listing
        db.add(offer)

        for item_input, variant in resolved:
            item = CatalogOfferItem(
                catalog_offer_item_id=str(uuid4()),
                public_id=generate_public_id(),
                catalog_offer_id=offer.catalog_offer_id,
                catalog_product_id=variant.catalog_product_id,
                catalog_product_variant_id=variant.catalog_product_variant_id,
                requested_quantity=item_input.requested_quantity,
                buyer_offer_price=item_input.buyer_offer_price,
                buyer_offer_price_currency=item_input.buyer_offer_price_currency,
                negotiation_status=ItemNegotiationStatus.BUYER_OFFERED,
                item_status=ItemStatus.ACTIVE,
                item_version=1,
                added_in_round=1,
                created_at=now,
                updated_at=now,
            )
            item.variant = variant
            offer.items.append(item)

            negotiation = new_negotiation(
                db, offer, item, 1, ActionType.BUYER_OFFER, request.buyer_user_id, UserRole.BUYER,
                item_input.buyer_offer_price, item_input.requested_quantity, item_input.buyer_offer_price_currency,
                now, valid_until=request.expires_at, offer_message=request.offer_message,
            )
            point_item_at(item, negotiation, UserRole.BUYER)

        record_audit(
            db, offer, "OFFER_CREATED", request.buyer_user_id, None, OfferStatus.ACTIVE, now,
            summary={"itemCount": len(resolved), "totalOfferValue": total, "currency": currency},
        )
        db.flush()

        logger.info(
            f"Offer {offer.public_id} created on listing {listing.public_id}: "
            f"{len(resolved)} items, {total} {currency}"
        )

        event = NotificationEvent(
            event_type="catalog_offer.created",
            catalog_offer_id=offer.public_id,
            recipient_user_ids=[offer.seller_user_id],
            occurred_at=now,
            payload={"buyer_user_id": offer.buyer_user_id, "total_offer_value": total, "currency": currency},
        )
        return OfferSnapshot.from_offer(offer), [event]
