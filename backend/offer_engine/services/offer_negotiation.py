"""
Offer negotiation engine.

WHAT: Counter, accept and reject actions on an open offer
WHY: Buyer and seller alternate proposals per item until one side accepts or rejects
HOW: Validate request -> turn check -> dispatch on action kind, all in one transaction;
     accept spawns the order in the same transaction, notifications go out after commit
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.identifiers import generate_public_id, parse_ref, resolve
from ..core.models import (
    BuyerProfile, SellerProfile, CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation,
    CatalogOfferItemChange, CatalogProductVariant, CatalogOfferAlternativeSuggestion, CatalogOfferMinimumTerms,
    ItemChangeType, ItemNegotiationStatus, ItemStatus, NegotiationOfferStatus, OfferStatus,
    RejectionCategory, UserRole,
)
from ..models.errors import (
    ErrorCode, OfferRefDetails, OfferStatusDetails, OfferExpiredDetails, ParticipantDetails,
    SequenceDetails, OfferItemDetails,
)
from ..models.offers import (
    ActionKind, ItemChangeInput, ItemChangeRecord, NegotiateOfferRequest, NegotiationPayload,
    NegotiationRecord, OperationResult, RejectionDetails,
)
from ..utils.exceptions import OfferOperationError
from ..utils.money import line_total, round_money
from ..utils.logger import get_logger
from .engine_base import (
    OfferEngineBase, load_offer, new_negotiation, point_item_at, record_audit, record_item_change,
)
from .negotiation_queries import (
    OPEN_OFFER_STATUSES, effective_item_terms, get_active_items, get_current_item_negotiation,
    get_current_round, get_last_action, mark_previous_negotiations_superseded, recalculate_offer_value,
)
from .negotiation_rules import audit_negotiation_type, check_inventory, check_turn, validate_item_negotiation
from .notifications import NotificationEvent
from .order_spawner import OrderSpawner

logger = get_logger(__name__)


class OfferNegotiationEngine(OfferEngineBase):
    """
    Applies one negotiation action per call.

    WHAT: negotiate() validates, checks turn order and runs counter/accept/reject
    WHY: Every action advances the offer by exactly one round, atomically
    HOW: One private handler per action kind, each returning (payload, events)
    """

    def __init__(self, *args, spawner: Optional[OrderSpawner] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawner = spawner or OrderSpawner()

    def negotiate(self, request: NegotiateOfferRequest) -> OperationResult[NegotiationPayload]:
        """
        Apply a negotiation action.

        Args:
            request: Offer, caller, action and action-specific inputs

        Returns:
            OperationResult with the negotiation payload, or a structured error
        """
        def work(db: Session, now: datetime):
            offer = load_offer(db, parse_ref(request.catalog_offer_id))
            self._validate_offer_state(offer, now)
            self._validate_participant(db, offer, request)

            last_action = get_last_action(db, offer.catalog_offer_id)
            verdict = check_turn(request.action, request.user_id, last_action)
            if not verdict.allowed:
                raise OfferOperationError(
                    ErrorCode.INVALID_NEGOTIATION_SEQUENCE,
                    verdict.message,
                    SequenceDetails(
                        catalog_offer_id=offer.public_id,
                        attempted_action=request.action.value,
                        last_action_type=last_action.action_type.value if last_action else None,
                        last_action_by_user_id=last_action.offered_by_user_id if last_action else None,
                        suggested_actions=verdict.suggested_actions,
                    ),
                )

            kind = request.action.kind
            if kind == ActionKind.COUNTER:
                return self._counter(db, offer, request, now)
            elif kind == ActionKind.ACCEPT:
                return self._accept(db, offer, request, now)
            elif kind == ActionKind.REJECT:
                return self._reject(db, offer, request, now)
            raise ValueError(f"Unhandled action kind: {kind}")

        return self._execute(f"negotiate[{request.action.value}]", work, request.catalog_offer_id)

    # ========== Validation ==========

    def _validate_offer_state(self, offer: CatalogOffer, now: datetime) -> None:
        if offer.offer_status not in OPEN_OFFER_STATUSES:
            raise OfferOperationError(
                ErrorCode.INVALID_OFFER_STATUS,
                f"Cannot negotiate an offer in {offer.offer_status.value} status",
                OfferStatusDetails(
                    catalog_offer_id=offer.public_id,
                    current_status=offer.offer_status.value,
                    valid_statuses=[s.value for s in OPEN_OFFER_STATUSES],
                ),
            )
        if offer.expires_at is not None and offer.expires_at < now:
            raise OfferOperationError(
                ErrorCode.OFFER_EXPIRED,
                "Offer has expired",
                OfferExpiredDetails(catalog_offer_id=offer.public_id, expired_at=offer.expires_at),
            )

    def _validate_participant(self, db: Session, offer: CatalogOffer, request: NegotiateOfferRequest) -> None:
        role = request.user_role
        details = ParticipantDetails(catalog_offer_id=offer.public_id, user_id=request.user_id, role=role.value)

        if role == UserRole.BUYER:
            profile = db.query(BuyerProfile).filter(BuyerProfile.user_id == request.user_id).first()
            participant_id = offer.buyer_user_id
        elif role == UserRole.SELLER:
            profile = db.query(SellerProfile).filter(SellerProfile.user_id == request.user_id).first()
            participant_id = offer.seller_user_id
        else:
            raise ValueError(f"Unhandled role: {role}")

        if profile is None:
            raise OfferOperationError(
                ErrorCode.USER_PROFILE_NOT_FOUND,
                f"No {role.value.lower()} profile found for user",
                details,
            )
        if request.user_id != participant_id:
            raise OfferOperationError(
                ErrorCode.UNAUTHORIZED_ACCESS,
                f"User is not the {role.value.lower()} on this offer",
                details,
            )
        if request.action.role != role:
            raise OfferOperationError(
                ErrorCode.UNAUTHORIZED_ACCESS,
                f"{role.value} cannot perform {request.action.value}",
                details,
            )

    def _load_item(self, db: Session, offer: CatalogOffer, raw_item_id: Optional[str]) -> Optional[CatalogOfferItem]:
        if not raw_item_id:
            return None
        item = resolve(db, CatalogOfferItem, parse_ref(raw_item_id))
        if item is None or item.catalog_offer_id != offer.catalog_offer_id:
            return None
        return item

    # ========== Counter ==========

    def _apply_item_change(
        self,
        db: Session,
        offer: CatalogOffer,
        change: ItemChangeInput,
        request: NegotiateOfferRequest,
        new_round: int,
        now: datetime,
    ) -> Tuple[CatalogOfferItem, CatalogOfferItemChange]:
        """Apply one structural change before the counter's item negotiations."""
        db.flush()
        change_type = change.change_type

        if change_type == ItemChangeType.ITEM_ADDED:
            variant = resolve(db, CatalogProductVariant, parse_ref(change.catalog_product_variant_id or ""))
            if variant is None or variant.catalog_listing_id != offer.catalog_listing_id or not variant.is_active:
                raise OfferOperationError(
                    ErrorCode.INVALID_VARIANT_SELECTION,
                    "Product variant is not available in this listing",
                    OfferItemDetails(catalog_product_variant_id=change.catalog_product_variant_id, reason="not_in_listing"),
                )
            already_present = any(
                item.catalog_product_variant_id == variant.catalog_product_variant_id
                for item in get_active_items(db, offer.catalog_offer_id)
            )
            quantity = change.requested_quantity or 0
            price = change.buyer_offer_price or 0.0
            if already_present or quantity <= 0 or price <= 0:
                reason = "already_in_offer" if already_present else "invalid_terms"
                raise OfferOperationError(
                    ErrorCode.INVALID_ITEM_ADDITION,
                    "Item cannot be added to the offer",
                    OfferItemDetails(catalog_product_variant_id=variant.public_id, reason=reason),
                )
            check_inventory(variant, quantity)

            currency = change.buyer_offer_price_currency or offer.total_offer_value_currency
            item = CatalogOfferItem(
                catalog_offer_item_id=str(uuid4()),
                public_id=generate_public_id(),
                catalog_offer_id=offer.catalog_offer_id,
                catalog_product_id=variant.catalog_product_id,
                catalog_product_variant_id=variant.catalog_product_variant_id,
                requested_quantity=quantity,
                buyer_offer_price=price,
                buyer_offer_price_currency=currency,
                negotiation_status=ItemNegotiationStatus.BUYER_OFFERED,
                item_status=ItemStatus.ACTIVE,
                item_version=1,
                added_in_round=new_round,
                created_at=now,
                updated_at=now,
            )
            item.variant = variant
            offer.items.append(item)

            negotiation = new_negotiation(
                db, offer, item, new_round, request.action.action_type, request.user_id, request.user_role,
                price, quantity, currency, now,
                valid_until=offer.expires_at, includes_item_changes=True, offer_message=change.change_reason,
            )
            point_item_at(item, negotiation, request.user_role)
            record = record_item_change(
                db, offer, item, new_round, change_type, request.user_id, now,
                new_quantity=quantity, new_price=price,
                new_catalog_product_variant_id=variant.catalog_product_variant_id,
                change_reason=change.change_reason,
            )
            return item, record

        elif change_type == ItemChangeType.ITEM_REMOVED:
            item = self._load_item(db, offer, change.catalog_offer_item_id)
            active_items = get_active_items(db, offer.catalog_offer_id)
            if item is None or item.item_status != ItemStatus.ACTIVE or len(active_items) <= 1:
                reason = "last_active_item" if item is not None and item.item_status == ItemStatus.ACTIVE else "not_active"
                raise OfferOperationError(
                    ErrorCode.INVALID_ITEM_REMOVAL,
                    "Item cannot be removed from the offer",
                    OfferItemDetails(catalog_offer_item_id=change.catalog_offer_item_id, reason=reason),
                )
            price, quantity, _ = effective_item_terms(item)
            item.item_status = ItemStatus.REMOVED
            item.removed_in_round = new_round
            item.item_version += 1
            item.updated_at = now
            db.flush()
            mark_previous_negotiations_superseded(db, item.catalog_offer_item_id, keep_negotiation_id="")
            record = record_item_change(
                db, offer, item, new_round, change_type, request.user_id, now,
                previous_quantity=quantity, new_quantity=0, previous_price=price,
                change_reason=change.change_reason,
            )
            return item, record

        elif change_type == ItemChangeType.QUANTITY_CHANGED:
            item = self._load_item(db, offer, change.catalog_offer_item_id)
            if item is None or item.item_status != ItemStatus.ACTIVE:
                raise OfferOperationError(
                    ErrorCode.INVALID_QUANTITY_CHANGE,
                    "Quantity can only change on an active item of this offer",
                    OfferItemDetails(catalog_offer_item_id=change.catalog_offer_item_id, reason="not_active"),
                )
            if not change.new_quantity or change.new_quantity <= 0:
                raise OfferOperationError(
                    ErrorCode.INVALID_QUANTITY_CHANGE,
                    "New quantity must be greater than zero",
                    OfferItemDetails(catalog_offer_item_id=item.public_id, reason="invalid_quantity"),
                )
            check_inventory(db.get(CatalogProductVariant, item.catalog_product_variant_id), change.new_quantity)
            previous_quantity = item.requested_quantity
            item.requested_quantity = change.new_quantity
            item.item_version += 1
            item.updated_at = now
            record = record_item_change(
                db, offer, item, new_round, change_type, request.user_id, now,
                previous_quantity=previous_quantity, new_quantity=change.new_quantity,
                change_reason=change.change_reason,
            )
            return item, record

        raise OfferOperationError(
            ErrorCode.INVALID_OFFER_ITEM,
            f"Unsupported item change: {change_type.value}",
            OfferItemDetails(catalog_offer_item_id=change.catalog_offer_item_id, reason="unsupported_change_type"),
        )

    def _counter(self, db: Session, offer: CatalogOffer, request: NegotiateOfferRequest, now: datetime):
        if not request.item_negotiations:
            raise OfferOperationError(
                ErrorCode.NO_ITEM_NEGOTIATIONS,
                "Counter-offers need at least one item negotiation",
                OfferRefDetails(catalog_offer_id=offer.public_id),
            )

        previous_status = offer.offer_status
        new_round = get_current_round(db, offer) + 1
        role = request.user_role

        change_records: List[ItemChangeRecord] = []
        created: List[CatalogOfferNegotiation] = []
        for change in request.item_changes:
            item, change_row = self._apply_item_change(db, offer, change, request, new_round, now)
            change_records.append(ItemChangeRecord.from_change(change_row, item.public_id))
        includes_changes = bool(change_records)

        for proposal in request.item_negotiations:
            db.flush()
            item = self._load_item(db, offer, proposal.catalog_offer_item_id)
            variant = db.get(CatalogProductVariant, item.catalog_product_variant_id) if item else None
            validate_item_negotiation(proposal, item, variant)

            previous = get_current_item_negotiation(db, item.catalog_offer_item_id)
            if role == UserRole.BUYER:
                currency = item.buyer_offer_price_currency or offer.total_offer_value_currency
            else:
                currency = item.seller_offer_price_currency or item.buyer_offer_price_currency \
                    or offer.total_offer_value_currency

            negotiation = new_negotiation(
                db, offer, item, new_round, request.action.action_type, request.user_id, role,
                proposal.offer_price_per_unit, proposal.offer_quantity, currency, now,
                parent_negotiation_id=previous.catalog_offer_negotiation_id if previous else None,
                valid_until=offer.expires_at,
                includes_item_changes=includes_changes,
                offer_message=proposal.offer_message or request.message,
            )
            db.flush()
            mark_previous_negotiations_superseded(db, item.catalog_offer_item_id, negotiation.catalog_offer_negotiation_id)

            if role == UserRole.BUYER:
                item.buyer_offer_price = proposal.offer_price_per_unit
                item.buyer_offer_price_currency = currency
                item.negotiation_status = ItemNegotiationStatus.BUYER_COUNTERED
            elif role == UserRole.SELLER:
                item.seller_offer_price = proposal.offer_price_per_unit
                item.seller_offer_price_currency = currency
                item.negotiation_status = ItemNegotiationStatus.SELLER_COUNTERED
            else:
                raise ValueError(f"Unhandled role: {role}")
            item.item_version += 1
            item.updated_at = now
            point_item_at(item, negotiation, role)
            created.append(negotiation)

        offer.offer_status = OfferStatus.NEGOTIATING
        offer.current_round = new_round
        offer.last_action_by_user_id = request.user_id
        offer.last_action_at = now
        offer.updated_at = now
        total = recalculate_offer_value(db, offer)

        record_audit(
            db, offer, request.action.value, request.user_id, previous_status, OfferStatus.NEGOTIATING, now,
            summary={
                "negotiationType": audit_negotiation_type(request.action),
                "round": new_round,
                "itemNegotiations": len(created),
                "itemChanges": len(change_records),
                "totalOfferValue": total,
            },
        )
        db.flush()

        logger.info(
            f"Offer {offer.public_id} {request.action.value} by {request.user_id}: "
            f"round {new_round}, {len(created)} items, total {total}"
        )

        counterparty = offer.seller_user_id if role == UserRole.BUYER else offer.buyer_user_id
        event = NotificationEvent(
            event_type="catalog_offer.countered",
            catalog_offer_id=offer.public_id,
            recipient_user_ids=[counterparty],
            occurred_at=now,
            payload={"action": request.action.value, "round": new_round, "total_offer_value": total},
        )
        payload = self._payload(offer, created, change_records)
        return payload, [event]

    # ========== Accept ==========

    def _accept(self, db: Session, offer: CatalogOffer, request: NegotiateOfferRequest, now: datetime):
        previous_status = offer.offer_status
        new_round = get_current_round(db, offer) + 1
        role = request.user_role

        created: List[CatalogOfferNegotiation] = []
        total = 0.0
        currency = offer.total_offer_value_currency
        for item in get_active_items(db, offer.catalog_offer_id):
            current = get_current_item_negotiation(db, item.catalog_offer_item_id)
            if current is not None:
                price = current.offer_price_per_unit
                quantity = current.offer_quantity
                item_currency = current.offer_price_currency
                current.offer_status = NegotiationOfferStatus.ACCEPTED
                current.is_current_offer = False
                current.responded_at = now
            else:
                price, quantity, item_currency = effective_item_terms(item)
                item_currency = item_currency or currency

            negotiation = new_negotiation(
                db, offer, item, new_round, request.action.action_type, request.user_id, role,
                price, quantity, item_currency, now,
                status=NegotiationOfferStatus.ACCEPTED,
                parent_negotiation_id=current.catalog_offer_negotiation_id if current else None,
                offer_message=request.message,
                responded_at=now,
            )
            db.flush()
            mark_previous_negotiations_superseded(db, item.catalog_offer_item_id, negotiation.catalog_offer_negotiation_id)

            item.final_agreed_price = price
            item.final_agreed_quantity = quantity
            item.final_agreed_price_currency = item_currency
            item.negotiation_status = ItemNegotiationStatus.AGREED
            item.agreed_at = now
            item.item_version += 1
            item.updated_at = now
            point_item_at(item, negotiation, role)

            total += line_total(price, quantity, context=f"accepted item {item.public_id}")
            currency = item_currency
            created.append(negotiation)

        offer.offer_status = OfferStatus.ACCEPTED
        offer.current_round = new_round
        offer.total_offer_value = round_money(total)
        offer.total_offer_value_currency = currency
        offer.accepted_at = now
        offer.last_action_by_user_id = request.user_id
        offer.last_action_at = now
        offer.updated_at = now

        record_audit(
            db, offer, request.action.value, request.user_id, previous_status, OfferStatus.ACCEPTED, now,
            summary={
                "negotiationType": audit_negotiation_type(request.action),
                "round": new_round,
                "acceptedItems": len(created),
                "finalTotal": offer.total_offer_value,
            },
        )

        order = self.spawner.spawn(
            db, offer, request.user_id, now,
            shipping_address_id=request.shipping_address_id,
            billing_address_id=request.billing_address_id,
        )

        logger.info(
            f"Offer {offer.public_id} accepted by {request.user_id} at round {new_round}: "
            f"{offer.total_offer_value} {currency}, order {order.order_number}"
        )

        event = NotificationEvent(
            event_type="catalog_offer.accepted",
            catalog_offer_id=offer.public_id,
            recipient_user_ids=[offer.buyer_user_id, offer.seller_user_id],
            occurred_at=now,
            payload={"order_number": order.order_number, "total_offer_value": offer.total_offer_value},
        )
        payload = self._payload(offer, created, [])
        payload.order = order
        return payload, [event]

    # ========== Reject ==========

    def _record_alternatives(self, db: Session, offer: CatalogOffer, request: NegotiateOfferRequest, now: datetime) -> None:
        suggestion = request.alternative_suggestion
        if suggestion is None:
            return

        if suggestion.suggested_variants:
            for suggested in suggestion.suggested_variants:
                variant = resolve(db, CatalogProductVariant, parse_ref(suggested.catalog_product_variant_id))
                db.add(CatalogOfferAlternativeSuggestion(
                    catalog_offer_id=offer.catalog_offer_id,
                    suggested_by_user_id=request.user_id,
                    message=suggestion.message,
                    catalog_product_variant_id=variant.catalog_product_variant_id if variant else None,
                    suggested_price=suggested.suggested_price,
                    available_quantity=suggested.available_quantity,
                    product_name=suggested.product_name,
                    created_at=now,
                ))
        else:
            db.add(CatalogOfferAlternativeSuggestion(
                catalog_offer_id=offer.catalog_offer_id,
                suggested_by_user_id=request.user_id,
                message=suggestion.message,
                created_at=now,
            ))

        terms = suggestion.minimum_acceptable_terms
        if terms is not None:
            db.add(CatalogOfferMinimumTerms(
                catalog_offer_id=offer.catalog_offer_id,
                specified_by_user_id=request.user_id,
                minimum_unit_price=terms.minimum_unit_price,
                minimum_total_order=terms.minimum_total_order,
                minimum_quantity=terms.minimum_quantity,
                created_at=now,
            ))

    def _reject(self, db: Session, offer: CatalogOffer, request: NegotiateOfferRequest, now: datetime):
        reason = (request.rejection_reason or "").strip()
        if not reason:
            raise OfferOperationError(
                ErrorCode.REJECTION_REASON_REQUIRED,
                "A rejection reason is required",
                OfferRefDetails(catalog_offer_id=offer.public_id),
            )

        previous_status = offer.offer_status
        new_round = get_current_round(db, offer) + 1
        role = request.user_role
        category = request.rejection_category or RejectionCategory.OTHER

        created: List[CatalogOfferNegotiation] = []
        for item in get_active_items(db, offer.catalog_offer_id):
            current = get_current_item_negotiation(db, item.catalog_offer_item_id)
            if current is not None:
                price, quantity, currency = current.offer_price_per_unit, current.offer_quantity, current.offer_price_currency
                current.responded_at = now
            else:
                price, quantity, currency = effective_item_terms(item)
                currency = currency or offer.total_offer_value_currency

            negotiation = new_negotiation(
                db, offer, item, new_round, request.action.action_type, request.user_id, role,
                price, quantity, currency, now,
                status=NegotiationOfferStatus.REJECTED,
                parent_negotiation_id=current.catalog_offer_negotiation_id if current else None,
                offer_message=reason,
                responded_at=now,
            )
            db.flush()
            mark_previous_negotiations_superseded(db, item.catalog_offer_item_id, negotiation.catalog_offer_negotiation_id)

            item.negotiation_status = ItemNegotiationStatus.REJECTED
            item.item_version += 1
            item.updated_at = now
            point_item_at(item, negotiation, role)
            created.append(negotiation)

        reopen_deadline = now + timedelta(days=settings.REOPEN_WINDOW_DAYS)
        offer.offer_status = OfferStatus.REJECTED
        offer.current_round = new_round
        offer.rejection_reason = reason
        offer.rejection_category = category
        offer.rejected_at = now
        offer.rejected_by_user_id = request.user_id
        offer.reopen_deadline = reopen_deadline
        offer.can_reopen = True
        offer.last_action_by_user_id = request.user_id
        offer.last_action_at = now
        offer.updated_at = now

        self._record_alternatives(db, offer, request, now)
        record_audit(
            db, offer, request.action.value, request.user_id, previous_status, OfferStatus.REJECTED, now,
            summary={
                "negotiationType": audit_negotiation_type(request.action),
                "round": new_round,
                "rejectionReason": reason,
                "rejectionCategory": category.value,
                "hasAlternatives": request.alternative_suggestion is not None,
            },
        )
        db.flush()

        logger.info(f"Offer {offer.public_id} rejected by {request.user_id} at round {new_round} ({category.value})")

        counterparty = offer.seller_user_id if role == UserRole.BUYER else offer.buyer_user_id
        event = NotificationEvent(
            event_type="catalog_offer.rejected",
            catalog_offer_id=offer.public_id,
            recipient_user_ids=[counterparty],
            occurred_at=now,
            payload={"rejection_reason": reason, "rejection_category": category.value},
        )
        payload = self._payload(offer, created, [])
        payload.rejection = RejectionDetails(
            rejection_reason=reason,
            rejection_category=category.value,
            rejected_at=now,
            rejected_by_user_id=request.user_id,
            reopen_deadline=reopen_deadline,
            can_reopen=True,
        )
        return payload, [event]

    # ========== Payload ==========

    def _payload(
        self,
        offer: CatalogOffer,
        negotiations: List[CatalogOfferNegotiation],
        changes: List[ItemChangeRecord],
    ) -> NegotiationPayload:
        return NegotiationPayload(
            catalog_offer_id=offer.public_id,
            offer_status=offer.offer_status.value,
            current_round=offer.current_round,
            total_offer_value=offer.total_offer_value,
            total_offer_value_currency=offer.total_offer_value_currency,
            negotiations_created=[NegotiationRecord.from_negotiation(n) for n in negotiations],
            item_changes_applied=changes,
        )
