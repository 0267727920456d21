"""
Seller bulk-modify-and-auto-accept engine.

WHAT: Apply seller edits (add / update / remove items) and accept the whole offer in one shot
WHY: Sellers often want to fix a few lines and close the deal without another round trip
HOW: Apply modifications at round+1, auto-finalize every untouched item, supersede old
     negotiations, mark the offer ACCEPTED and optionally spawn the order, all in one transaction
"""

from datetime import datetime
from typing import List, Optional, Set
from uuid import uuid4

from sqlalchemy.orm import Session

from ..core.identifiers import generate_public_id, parse_ref, resolve
from ..core.models import (
    CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation, CatalogProductVariant,
    ActionType, ItemChangeType, ItemNegotiationStatus, ItemStatus, NegotiationOfferStatus,
    OfferStatus, UserRole,
)
from ..models.errors import (
    ErrorCode, OfferRefDetails, OfferStatusDetails, ParticipantDetails, OfferItemDetails,
    PriceDetails, QuantityDetails,
)
from ..models.offers import (
    ItemChangeRecord, ModificationAction, ModificationSummary, ModifyAndAcceptPayload,
    ModifyAndAcceptRequest, NegotiationRecord, OfferModificationInput, OfferSnapshot, OperationResult,
)
from ..utils.exceptions import OfferOperationError
from ..utils.money import line_total, round_money
from ..utils.logger import get_logger
from .engine_base import (
    OfferEngineBase, load_offer, new_negotiation, point_item_at, record_audit, record_item_change,
)
from .negotiation_queries import (
    OPEN_OFFER_STATUSES, get_active_items, get_current_item_negotiation, get_current_round,
    mark_previous_negotiations_superseded,
)
from .negotiation_rules import check_inventory
from .notifications import NotificationEvent
from .order_spawner import OrderSpawner

logger = get_logger(__name__)

AUDIT_ACTION = "SELLER_MODIFY_AUTO_ACCEPT"
AUTO_FINALIZE_REASON = "Auto-accepted with seller bulk modification"


class _BulkRun:
    """Mutable bookkeeping for one modify-and-accept call."""

    def __init__(self, offer: CatalogOffer, request: ModifyAndAcceptRequest, new_round: int, now: datetime):
        self.offer = offer
        self.request = request
        self.new_round = new_round
        self.now = now
        self.touched: Set[str] = set()
        self.negotiations: List[CatalogOfferNegotiation] = []
        self.changes: List[ItemChangeRecord] = []
        self.products_added = 0
        self.items_updated = 0
        self.items_removed = 0
        self.items_auto_finalized = 0


class BulkModifyEngine(OfferEngineBase):
    """
    Seller-only modify-and-accept.

    WHAT: modify_and_accept() leaves every ACTIVE item AGREED with final terms
    WHY: A bulk accept must not leave partially negotiated residue behind
    HOW: Modification handlers per action, then auto-finalize, then offer header update
    """

    def __init__(self, *args, spawner: Optional[OrderSpawner] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawner = spawner or OrderSpawner()

    def modify_and_accept(self, request: ModifyAndAcceptRequest) -> OperationResult[ModifyAndAcceptPayload]:
        """
        Apply seller modifications and accept the offer.

        Args:
            request: Offer, seller, modifications and order auto-creation options

        Returns:
            OperationResult with the accepted offer, created rows and a summary
        """
        def work(db: Session, now: datetime):
            return self._run(db, request, now)

        return self._execute("modify_and_accept", work, request.catalog_offer_id)

    # ========== Validation ==========

    def _validate(self, offer: CatalogOffer, request: ModifyAndAcceptRequest) -> None:
        if offer.seller_user_id != request.seller_user_id:
            raise OfferOperationError(
                ErrorCode.UNAUTHORIZED_SELLER,
                "Only the offer's seller can modify and accept it",
                ParticipantDetails(catalog_offer_id=offer.public_id, user_id=request.seller_user_id, role="SELLER"),
            )
        if offer.offer_status not in OPEN_OFFER_STATUSES:
            raise OfferOperationError(
                ErrorCode.INVALID_OFFER_STATUS,
                f"Cannot modify an offer in {offer.offer_status.value} status",
                OfferStatusDetails(
                    catalog_offer_id=offer.public_id,
                    current_status=offer.offer_status.value,
                    valid_statuses=[s.value for s in OPEN_OFFER_STATUSES],
                ),
            )
        if not request.modifications:
            raise OfferOperationError(
                ErrorCode.NO_MODIFICATIONS_PROVIDED,
                "At least one modification is required",
                OfferRefDetails(catalog_offer_id=offer.public_id),
            )

    def _active_item(self, db: Session, offer: CatalogOffer, raw_item_id: Optional[str]) -> CatalogOfferItem:
        item = resolve(db, CatalogOfferItem, parse_ref(raw_item_id)) if raw_item_id else None
        if item is None or item.catalog_offer_id != offer.catalog_offer_id or item.item_status != ItemStatus.ACTIVE:
            raise OfferOperationError(
                ErrorCode.INVALID_OFFER_ITEM,
                f"Offer item not found or not active: {raw_item_id}",
                OfferItemDetails(catalog_offer_item_id=raw_item_id, reason="not_active"),
            )
        return item

    @staticmethod
    def _require_positive(price: Optional[float], quantity: Optional[int], item_ref: Optional[str]) -> None:
        if quantity is None or quantity <= 0:
            raise OfferOperationError(
                ErrorCode.INVALID_QUANTITY,
                "Quantity must be greater than zero",
                QuantityDetails(quantity=quantity, catalog_offer_item_id=item_ref),
            )
        if price is None or price <= 0:
            raise OfferOperationError(
                ErrorCode.INVALID_PRICE,
                "Price must be greater than zero",
                PriceDetails(price=price, catalog_offer_item_id=item_ref),
            )

    # ========== Modifications ==========

    def _add_product(self, db: Session, run: _BulkRun, mod: OfferModificationInput) -> None:
        offer = run.offer
        variant = resolve(db, CatalogProductVariant, parse_ref(mod.catalog_product_variant_id or ""))
        if variant is None or variant.catalog_listing_id != offer.catalog_listing_id or not variant.is_active:
            raise OfferOperationError(
                ErrorCode.INVALID_VARIANT_SELECTION,
                "Product variant is not available in this listing",
                OfferItemDetails(catalog_product_variant_id=mod.catalog_product_variant_id, reason="not_in_listing"),
            )
        db.flush()
        if any(i.catalog_product_variant_id == variant.catalog_product_variant_id
               for i in get_active_items(db, offer.catalog_offer_id)):
            raise OfferOperationError(
                ErrorCode.INVALID_VARIANT_SELECTION,
                "Product variant is already part of this offer",
                OfferItemDetails(catalog_product_variant_id=variant.public_id, reason="already_in_offer"),
            )
        self._require_positive(mod.seller_price_per_unit, mod.quantity, None)
        check_inventory(variant, mod.quantity)

        currency = offer.total_offer_value_currency
        item = CatalogOfferItem(
            catalog_offer_item_id=str(uuid4()),
            public_id=generate_public_id(),
            catalog_offer_id=offer.catalog_offer_id,
            catalog_product_id=variant.catalog_product_id,
            catalog_product_variant_id=variant.catalog_product_variant_id,
            requested_quantity=mod.quantity,
            seller_offer_price=mod.seller_price_per_unit,
            seller_offer_price_currency=currency,
            negotiation_status=ItemNegotiationStatus.AGREED,
            item_status=ItemStatus.ACTIVE,
            item_version=1,
            added_in_round=run.new_round,
            final_agreed_price=mod.seller_price_per_unit,
            final_agreed_price_currency=currency,
            final_agreed_quantity=mod.quantity,
            agreed_at=run.now,
            created_at=run.now,
            updated_at=run.now,
        )
        item.variant = variant
        offer.items.append(item)

        negotiation = new_negotiation(
            db, offer, item, run.new_round, ActionType.SELLER_OFFER, run.request.seller_user_id, UserRole.SELLER,
            mod.seller_price_per_unit, mod.quantity, currency, run.now,
            status=NegotiationOfferStatus.ACCEPTED, auto_accepted=True,
            auto_accept_reason="Product added by seller", offer_message=mod.modification_reason,
            includes_item_changes=True,
        )
        point_item_at(item, negotiation, UserRole.SELLER)
        change = record_item_change(
            db, offer, item, run.new_round, ItemChangeType.ITEM_ADDED, run.request.seller_user_id, run.now,
            new_quantity=mod.quantity, new_price=mod.seller_price_per_unit,
            new_catalog_product_variant_id=variant.catalog_product_variant_id,
            change_reason=mod.modification_reason,
        )

        run.touched.add(item.catalog_offer_item_id)
        run.negotiations.append(negotiation)
        run.changes.append(ItemChangeRecord.from_change(change, item.public_id))
        run.products_added += 1

    def _update_existing(self, db: Session, run: _BulkRun, mod: OfferModificationInput) -> None:
        offer = run.offer
        item = self._active_item(db, offer, mod.catalog_offer_item_id)
        current_price, current_quantity, currency = self._last_terms(db, item)
        currency = currency or offer.total_offer_value_currency

        new_quantity = mod.new_quantity if mod.new_quantity is not None else current_quantity
        new_price = mod.new_seller_price_per_unit if mod.new_seller_price_per_unit is not None else current_price
        self._require_positive(new_price, new_quantity, item.public_id)

        quantity_changed = new_quantity != current_quantity
        price_changed = new_price != current_price
        if quantity_changed:
            check_inventory(db.get(CatalogProductVariant, item.catalog_product_variant_id), new_quantity)

        if quantity_changed and price_changed:
            change_type = ItemChangeType.TERMS_UPDATED
        elif quantity_changed:
            change_type = ItemChangeType.QUANTITY_CHANGED
        else:
            change_type = ItemChangeType.PRICE_CHANGED

        item.requested_quantity = new_quantity
        item.seller_offer_price = new_price
        item.seller_offer_price_currency = currency
        self._finalize(item, new_price, new_quantity, currency, run.now)

        negotiation = new_negotiation(
            db, offer, item, run.new_round, ActionType.SELLER_COUNTER, run.request.seller_user_id, UserRole.SELLER,
            new_price, new_quantity, currency, run.now,
            status=NegotiationOfferStatus.ACCEPTED, auto_accepted=True,
            auto_accept_reason="Terms updated by seller", offer_message=mod.modification_reason,
            includes_item_changes=True,
        )
        point_item_at(item, negotiation, UserRole.SELLER)
        change = record_item_change(
            db, offer, item, run.new_round, change_type, run.request.seller_user_id, run.now,
            previous_quantity=current_quantity, new_quantity=new_quantity,
            previous_price=current_price, new_price=new_price,
            change_reason=mod.modification_reason,
        )

        run.touched.add(item.catalog_offer_item_id)
        run.negotiations.append(negotiation)
        run.changes.append(ItemChangeRecord.from_change(change, item.public_id))
        run.items_updated += 1

    def _remove_product(self, db: Session, run: _BulkRun, mod: OfferModificationInput) -> None:
        offer = run.offer
        item = self._active_item(db, offer, mod.catalog_offer_item_id)
        previous_price, previous_quantity, currency = self._last_terms(db, item)

        item.item_status = ItemStatus.REMOVED
        item.removed_in_round = run.new_round
        item.item_version += 1
        item.updated_at = run.now

        negotiation = new_negotiation(
            db, offer, item, run.new_round, ActionType.SELLER_COUNTER, run.request.seller_user_id, UserRole.SELLER,
            0.0, 0, currency or offer.total_offer_value_currency, run.now,
            status=NegotiationOfferStatus.ACCEPTED, auto_accepted=True,
            auto_accept_reason="Product removed by seller", offer_message=mod.modification_reason,
            includes_item_changes=True,
        )
        point_item_at(item, negotiation, UserRole.SELLER)
        change = record_item_change(
            db, offer, item, run.new_round, ItemChangeType.ITEM_REMOVED, run.request.seller_user_id, run.now,
            previous_quantity=previous_quantity, new_quantity=0, previous_price=previous_price,
            change_reason=mod.modification_reason,
        )

        run.touched.add(item.catalog_offer_item_id)
        run.negotiations.append(negotiation)
        run.changes.append(ItemChangeRecord.from_change(change, item.public_id))
        run.items_removed += 1

    # ========== Auto-finalize ==========

    def _last_terms(self, db: Session, item: CatalogOfferItem) -> tuple:
        """
        Last known (price, quantity, currency) of an item.

        Priority: final agreed terms, then the current negotiation, then the buyer's offer.
        """
        db.flush()
        current = get_current_item_negotiation(db, item.catalog_offer_item_id)

        if item.final_agreed_price is not None:
            price = item.final_agreed_price
        elif current is not None:
            price = current.offer_price_per_unit
        else:
            price = item.buyer_offer_price

        if item.final_agreed_quantity is not None:
            quantity = item.final_agreed_quantity
        elif current is not None:
            quantity = current.offer_quantity
        else:
            quantity = item.requested_quantity

        currency = (
            item.final_agreed_price_currency
            or (current.offer_price_currency if current is not None else None)
            or item.buyer_offer_price_currency
        )
        return price, quantity, currency

    @staticmethod
    def _finalize(item: CatalogOfferItem, price: float, quantity: int, currency: str, now: datetime) -> None:
        item.final_agreed_price = price
        item.final_agreed_quantity = quantity
        item.final_agreed_price_currency = currency
        item.negotiation_status = ItemNegotiationStatus.AGREED
        item.agreed_at = now
        item.item_version += 1
        item.updated_at = now

    def _auto_finalize(self, db: Session, run: _BulkRun) -> None:
        offer = run.offer
        db.flush()
        for item in get_active_items(db, offer.catalog_offer_id):
            if item.catalog_offer_item_id in run.touched:
                continue
            price, quantity, currency = self._last_terms(db, item)
            currency = currency or offer.total_offer_value_currency
            self._finalize(item, price, quantity, currency, run.now)

            negotiation = new_negotiation(
                db, offer, item, run.new_round, ActionType.SELLER_OFFER, run.request.seller_user_id, UserRole.SELLER,
                price, quantity, currency, run.now,
                status=NegotiationOfferStatus.ACCEPTED, auto_accepted=True,
                auto_accept_reason=AUTO_FINALIZE_REASON,
            )
            point_item_at(item, negotiation, UserRole.SELLER)
            change = record_item_change(
                db, offer, item, run.new_round, ItemChangeType.AUTO_ACCEPTED, run.request.seller_user_id, run.now,
                previous_quantity=quantity, new_quantity=quantity, previous_price=price, new_price=price,
                change_reason=AUTO_FINALIZE_REASON, auto_generated=True,
            )

            run.negotiations.append(negotiation)
            run.changes.append(ItemChangeRecord.from_change(change, item.public_id))
            run.items_auto_finalized += 1

    # ========== Run ==========

    def _run(self, db: Session, request: ModifyAndAcceptRequest, now: datetime):
        offer = load_offer(db, parse_ref(request.catalog_offer_id), ErrorCode.CATALOG_OFFER_NOT_FOUND)
        self._validate(offer, request)

        previous_status = offer.offer_status
        previous_total = offer.total_offer_value
        run = _BulkRun(offer, request, get_current_round(db, offer) + 1, now)

        for mod in request.modifications:
            action = mod.action
            if action == ModificationAction.ADD_PRODUCT:
                self._add_product(db, run, mod)
            elif action == ModificationAction.UPDATE_EXISTING:
                self._update_existing(db, run, mod)
            elif action == ModificationAction.REMOVE_PRODUCT:
                self._remove_product(db, run, mod)
            else:
                raise ValueError(f"Unhandled modification action: {action}")

        self._auto_finalize(db, run)

        db.flush()
        for negotiation in run.negotiations:
            mark_previous_negotiations_superseded(
                db, negotiation.catalog_offer_item_id, negotiation.catalog_offer_negotiation_id
            )

        surviving = get_active_items(db, offer.catalog_offer_id)
        if not surviving:
            raise OfferOperationError(
                ErrorCode.INVALID_OFFER_ITEM,
                "An accepted offer must keep at least one active item",
                OfferItemDetails(reason="no_items_remaining"),
            )
        total = round_money(sum(
            line_total(item.final_agreed_price, item.final_agreed_quantity, context=f"bulk item {item.public_id}")
            for item in surviving
        ))
        currency = surviving[0].final_agreed_price_currency or offer.total_offer_value_currency

        offer.offer_status = OfferStatus.ACCEPTED
        offer.current_round = run.new_round
        offer.total_offer_value = total
        offer.total_offer_value_currency = currency
        offer.accepted_at = now
        offer.last_action_by_user_id = request.seller_user_id
        offer.last_action_at = now
        offer.updated_at = now

        summary = ModificationSummary(
            total_modifications=len(request.modifications),
            products_added=run.products_added,
            items_updated=run.items_updated,
            items_removed=run.items_removed,
            items_auto_finalized=run.items_auto_finalized,
            previous_offer_total=previous_total,
            new_offer_total=total,
            total_change=round_money(total - previous_total),
            order_auto_created=request.auto_create_order,
        )
        record_audit(
            db, offer, AUDIT_ACTION, request.seller_user_id, previous_status, OfferStatus.ACCEPTED, now,
            summary={
                "round": run.new_round,
                "productsAdded": run.products_added,
                "itemsUpdated": run.items_updated,
                "itemsRemoved": run.items_removed,
                "itemsAutoFinalized": run.items_auto_finalized,
                "previousTotal": previous_total,
                "newTotal": total,
            },
            context={"sellerMessage": request.seller_message} if request.seller_message else None,
        )

        order = None
        if request.auto_create_order:
            order = self.spawner.spawn(
                db, offer, request.seller_user_id, now,
                shipping_address_id=request.shipping_address_id,
                billing_address_id=request.billing_address_id,
                order_notes=request.order_notes,
            )
        db.flush()

        logger.info(
            f"Offer {offer.public_id} modified and accepted by seller {request.seller_user_id}: "
            f"+{run.products_added} ~{run.items_updated} -{run.items_removed} "
            f"auto {run.items_auto_finalized}, total {previous_total} -> {total}"
        )

        event = NotificationEvent(
            event_type="catalog_offer.accepted",
            catalog_offer_id=offer.public_id,
            recipient_user_ids=[offer.buyer_user_id],
            occurred_at=now,
            payload={
                "modified_by_seller": True,
                "total_offer_value": total,
                "order_number": order.order_number if order else None,
            },
        )
        payload = ModifyAndAcceptPayload(
            offer=OfferSnapshot.from_offer(offer),
            negotiations=[NegotiationRecord.from_negotiation(n) for n in run.negotiations],
            item_changes=run.changes,
            order=order,
            summary=summary,
        )
        return payload, [event]
