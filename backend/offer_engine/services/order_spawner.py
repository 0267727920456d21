"""
Order spawning from accepted catalog offers.

WHAT: Validate an accepted offer and create its order, order lines and status history
WHY: Both accept paths (negotiation accept, seller bulk-accept) must produce a real order
HOW: In-transaction validation + creation on the caller's session; inventory re-checked and decremented
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.identifiers import parse_ref, resolve
from ..core.models import (
    Address, CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation, CatalogProductVariant,
    Order, OrderItem, OrderStatusHistory, SellerOrderCounter,
    ItemNegotiationStatus, OfferStatus, OrderStatus, OrderType,
)
from ..models.errors import (
    ErrorCode, OfferRefDetails, OfferStatusDetails, ParticipantDetails, ExistingOrderDetails,
    AddressDetails, ItemAgreementDetails, CurrencyMismatchDetails,
)
from ..models.offers import CreateOrderRequest, OperationResult, OrderLineSummary, OrderPayload, OrderSummary
from ..utils.exceptions import OfferOperationError
from ..utils.money import line_total, round_money
from ..utils.logger import get_logger
from .negotiation_queries import get_active_items, get_current_item_negotiation
from .engine_base import OfferEngineBase
from .negotiation_rules import check_inventory
from .notifications import NotificationEvent

logger = get_logger(__name__)

ORDER_CREATED_REASON = "Order created from accepted catalog offer"


@dataclass
class ValidatedOrderLine:
    """One agreed item ready to become an order line."""
    item: CatalogOfferItem
    final_negotiation: CatalogOfferNegotiation
    quantity: int
    unit_price: float
    total_price: float


@dataclass
class ValidatedOrder:
    """Everything create_order needs, checked against current state."""
    offer: CatalogOffer
    lines: List[ValidatedOrderLine] = field(default_factory=list)
    total_amount: float = 0.0
    currency: str = "USD"
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None


class OrderSpawner:
    """
    Creates orders inside the caller's transaction.

    WHAT: validate_order_creation + create_order, or both through spawn()
    WHY: Accept paths must fail as a whole when the order cannot be created
    HOW: Raise OfferOperationError on any failed check; never commit on its own
    """

    def _resolve_address(
        self,
        db: Session,
        raw_id: Optional[str],
        buyer_user_id: str,
        not_found: ErrorCode,
        denied: ErrorCode,
    ) -> Optional[Address]:
        if not raw_id:
            return (
                db.query(Address)
                .filter(Address.user_id == buyer_user_id, Address.is_default.is_(True))
                .first()
            )
        address = resolve(db, Address, parse_ref(raw_id))
        if address is None:
            raise OfferOperationError(not_found, f"Address not found: {raw_id}", AddressDetails(address_id=raw_id))
        if address.user_id != buyer_user_id:
            raise OfferOperationError(denied, f"Address {raw_id} does not belong to the buyer", AddressDetails(address_id=raw_id))
        return address

    def _final_negotiation(self, db: Session, item: CatalogOfferItem) -> Optional[CatalogOfferNegotiation]:
        """Latest of the item's buyer/seller current pointers, else its current negotiation."""
        candidates = [
            db.get(CatalogOfferNegotiation, negotiation_id)
            for negotiation_id in (item.current_seller_negotiation_id, item.current_buyer_negotiation_id)
            if negotiation_id
        ]
        candidates = [c for c in candidates if c is not None]
        if candidates:
            return max(candidates, key=lambda n: (n.negotiation_round, n.created_at))
        return get_current_item_negotiation(db, item.catalog_offer_item_id)

    def validate_order_creation(
        self,
        db: Session,
        offer: Optional[CatalogOffer],
        buyer_user_id: str,
        shipping_address_id: Optional[str] = None,
        billing_address_id: Optional[str] = None,
    ) -> ValidatedOrder:
        """
        Check an offer can become an order.

        Raises:
            OfferOperationError: CATALOG_OFFER_NOT_FOUND, OFFER_NOT_ACCEPTED, UNAUTHORIZED_BUYER,
                ORDER_ALREADY_EXISTS, *_ADDRESS_NOT_FOUND / *_ACCESS_DENIED, NO_AGREED_ITEMS,
                INCOMPLETE_ITEM_AGREEMENT, NO_CURRENT_NEGOTIATION, MIXED_CURRENCIES
        """
        if offer is None:
            raise OfferOperationError(
                ErrorCode.CATALOG_OFFER_NOT_FOUND, "Catalog offer not found", OfferRefDetails(catalog_offer_id="")
            )
        if offer.offer_status != OfferStatus.ACCEPTED:
            raise OfferOperationError(
                ErrorCode.OFFER_NOT_ACCEPTED,
                f"Catalog offer must be accepted before an order can be created (status {offer.offer_status.value})",
                OfferStatusDetails(
                    catalog_offer_id=offer.public_id,
                    current_status=offer.offer_status.value,
                    valid_statuses=[OfferStatus.ACCEPTED.value],
                ),
            )
        if offer.buyer_user_id != buyer_user_id:
            raise OfferOperationError(
                ErrorCode.UNAUTHORIZED_BUYER,
                "Only the offer's buyer can create an order",
                ParticipantDetails(catalog_offer_id=offer.public_id, user_id=buyer_user_id, role="BUYER"),
            )

        existing = db.query(Order).filter(Order.catalog_offer_id == offer.catalog_offer_id).first()
        if existing is not None:
            raise OfferOperationError(
                ErrorCode.ORDER_ALREADY_EXISTS,
                f"Order {existing.order_number} already exists for this offer",
                ExistingOrderDetails(
                    catalog_offer_id=offer.public_id, order_id=existing.public_id, order_number=existing.order_number
                ),
            )

        validated = ValidatedOrder(offer=offer)
        validated.shipping_address = self._resolve_address(
            db, shipping_address_id, offer.buyer_user_id,
            ErrorCode.SHIPPING_ADDRESS_NOT_FOUND, ErrorCode.SHIPPING_ADDRESS_ACCESS_DENIED,
        )
        validated.billing_address = self._resolve_address(
            db, billing_address_id, offer.buyer_user_id,
            ErrorCode.BILLING_ADDRESS_NOT_FOUND, ErrorCode.BILLING_ADDRESS_ACCESS_DENIED,
        )

        items = get_active_items(db, offer.catalog_offer_id)
        if not items:
            raise OfferOperationError(
                ErrorCode.NO_AGREED_ITEMS,
                "No agreed items found in the catalog offer",
                OfferRefDetails(catalog_offer_id=offer.public_id),
            )

        currency: Optional[str] = None
        total = 0.0
        for item in items:
            price = item.final_agreed_price
            quantity = item.final_agreed_quantity
            if item.negotiation_status != ItemNegotiationStatus.AGREED or not price or not quantity:
                raise OfferOperationError(
                    ErrorCode.INCOMPLETE_ITEM_AGREEMENT,
                    "Item does not have finalized price and quantity",
                    ItemAgreementDetails(
                        catalog_offer_item_id=item.public_id,
                        has_final_price=bool(price),
                        has_final_quantity=bool(quantity),
                    ),
                )

            final_negotiation = self._final_negotiation(db, item)
            if final_negotiation is None:
                raise OfferOperationError(
                    ErrorCode.NO_CURRENT_NEGOTIATION,
                    "No current negotiation found for catalog offer item",
                    ItemAgreementDetails(catalog_offer_item_id=item.public_id, has_final_price=True, has_final_quantity=True),
                )

            item_currency = item.final_agreed_price_currency or final_negotiation.offer_price_currency
            if currency is None:
                currency = item_currency
            elif item_currency != currency:
                raise OfferOperationError(
                    ErrorCode.MIXED_CURRENCIES,
                    "All items in an order must use the same currency",
                    CurrencyMismatchDetails(currencies=[currency, item_currency], catalog_offer_item_id=item.public_id),
                )

            subtotal = line_total(price, quantity, context=f"order line {item.public_id}")
            total += subtotal
            validated.lines.append(ValidatedOrderLine(
                item=item,
                final_negotiation=final_negotiation,
                quantity=quantity,
                unit_price=price,
                total_price=subtotal,
            ))

        validated.total_amount = round_money(total)
        validated.currency = currency or offer.total_offer_value_currency
        return validated

    def _next_order_number(self, db: Session, seller_user_id: str, now: datetime) -> tuple:
        counter = (
            db.query(SellerOrderCounter)
            .filter(SellerOrderCounter.seller_user_id == seller_user_id, SellerOrderCounter.year == now.year)
            .first()
        )
        if counter is None:
            counter = SellerOrderCounter(seller_user_id=seller_user_id, year=now.year, last_order_number=0)
            db.add(counter)
        counter.last_order_number = (counter.last_order_number or 0) + 1

        sequence = counter.last_order_number
        order_number = f"{now.year % 100:02d}-{sequence:03d}-{secrets.randbelow(10000):04d}"
        return order_number, sequence

    def create_order(
        self,
        db: Session,
        validated: ValidatedOrder,
        acting_user_id: str,
        now: datetime,
        order_notes: Optional[str] = None,
    ) -> OrderSummary:
        """
        Create the order rows and decrement inventory.

        WHAT: Order (CATALOG, PENDING), one line per agreed item, status history
        WHY: Accepted terms become a purchase commitment
        HOW: Re-check inventory per line, decrement available_quantity, flush
        """
        offer = validated.offer
        order_number, sequence = self._next_order_number(db, offer.seller_user_id, now)

        order = Order(
            order_number=order_number,
            seller_order_number=sequence,
            order_type=OrderType.CATALOG,
            order_status=OrderStatus.PENDING,
            catalog_offer_id=offer.catalog_offer_id,
            buyer_user_id=offer.buyer_user_id,
            seller_user_id=offer.seller_user_id,
            total_amount=validated.total_amount,
            total_amount_currency=validated.currency,
            shipping_cost=0.0,
            tax_amount=0.0,
            payment_due_date=now + timedelta(days=settings.PAYMENT_DUE_DAYS),
            shipping_address_id=validated.shipping_address.address_id if validated.shipping_address else None,
            billing_address_id=validated.billing_address.address_id if validated.billing_address else None,
            order_notes=order_notes,
            created_at=now,
        )
        order.catalog_offer = offer
        db.add(order)

        lines: List[OrderLineSummary] = []
        for line in validated.lines:
            variant = db.get(CatalogProductVariant, line.item.catalog_product_variant_id)
            check_inventory(variant, line.quantity)
            if variant is not None and variant.available_quantity is not None:
                variant.available_quantity -= line.quantity

            order.items.append(OrderItem(
                catalog_offer_item_id=line.item.catalog_offer_item_id,
                final_negotiation_id=line.final_negotiation.catalog_offer_negotiation_id,
                catalog_product_id=line.item.catalog_product_id,
                catalog_product_variant_id=line.item.catalog_product_variant_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
            ))
            lines.append(OrderLineSummary(
                catalog_offer_item_id=line.item.public_id,
                catalog_product_variant_id=variant.public_id if variant is not None else line.item.catalog_product_variant_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
            ))

        order.status_history.append(OrderStatusHistory(
            previous_status=None,
            new_status=OrderStatus.PENDING,
            changed_by_user_id=acting_user_id,
            reason=ORDER_CREATED_REASON,
            created_at=now,
        ))
        db.flush()

        logger.info(
            f"Order {order.order_number} created for offer {offer.public_id}: "
            f"{len(lines)} lines, {order.total_amount} {order.total_amount_currency}"
        )
        return OrderSummary.from_order(order, lines)

    def spawn(
        self,
        db: Session,
        offer: CatalogOffer,
        acting_user_id: str,
        now: datetime,
        shipping_address_id: Optional[str] = None,
        billing_address_id: Optional[str] = None,
        order_notes: Optional[str] = None,
    ) -> OrderSummary:
        """Validate and create the order for an offer the engine just accepted."""
        db.flush()
        validated = self.validate_order_creation(
            db, offer, offer.buyer_user_id, shipping_address_id, billing_address_id
        )
        return self.create_order(db, validated, acting_user_id, now, order_notes)


class OrderService(OfferEngineBase):
    """
    Buyer-initiated order creation for an already accepted offer.

    Runs the same spawner as the accept paths, in its own transaction.
    """

    def __init__(self, *args, spawner: Optional[OrderSpawner] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawner = spawner or OrderSpawner()

    def create_order_from_offer(self, request: CreateOrderRequest) -> OperationResult[OrderPayload]:
        """
        Create the order for an accepted offer.

        Returns:
            OperationResult with the order summary, or the first failed check
        """
        def work(db: Session, now: datetime):
            offer = resolve(db, CatalogOffer, parse_ref(request.catalog_offer_id))
            if offer is None:
                raise OfferOperationError(
                    ErrorCode.CATALOG_OFFER_NOT_FOUND,
                    "Catalog offer not found",
                    OfferRefDetails(catalog_offer_id=request.catalog_offer_id),
                )
            validated = self.spawner.validate_order_creation(
                db, offer, request.buyer_user_id, request.shipping_address_id, request.billing_address_id
            )
            summary = self.spawner.create_order(db, validated, request.buyer_user_id, now, request.order_notes)
            event = NotificationEvent(
                event_type="order.created",
                catalog_offer_id=offer.public_id,
                recipient_user_ids=[offer.seller_user_id],
                occurred_at=now,
                payload={"order_number": summary.order_number, "total_amount": summary.total_amount},
            )
            return OrderPayload(order=summary), [event]

        return self._execute("create_order_from_offer", work, request.catalog_offer_id)
