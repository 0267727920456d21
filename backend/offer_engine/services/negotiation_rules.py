"""
Turn-taking and item validation rules for negotiation actions.

WHAT: Pure checks deciding whether an action is allowed right now
WHY: Buyers and sellers must alternate; accepts need something to accept
HOW: Functions over the last negotiation row and the proposed terms, returning dataclass verdicts
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..core.models import (
    ActionType, CatalogOfferNegotiation, CatalogOfferItem, CatalogProductVariant,
    ItemStatus,
)
from ..models.offers import ActionKind, NegotiationAction, ItemNegotiationInput
from ..models.errors import (
    ErrorCode, OfferItemDetails, PriceDetails, QuantityDetails, InventoryDetails,
)
from ..utils.exceptions import OfferOperationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

SELLER_PROPOSALS = (ActionType.SELLER_OFFER, ActionType.SELLER_COUNTER)
BUYER_PROPOSALS = (ActionType.BUYER_OFFER, ActionType.BUYER_COUNTER)


@dataclass
class TurnVerdict:
    """Outcome of a turn-taking check."""
    allowed: bool
    message: str = ""
    suggested_actions: List[str] = field(default_factory=list)


def check_turn(
    action: NegotiationAction,
    user_id: str,
    last_action: Optional[CatalogOfferNegotiation]
) -> TurnVerdict:
    """
    Check whether the caller may take this action now.

    WHAT: Enforce alternation between buyer and seller
    WHY: No consecutive self-counters; accepts must answer the other side
    HOW: Compare the action against the last negotiation row on the offer

    Rules:
    - BUYER_ACCEPT needs the last action to be a seller offer/counter
    - SELLER_ACCEPT needs the last action to be a buyer offer/counter
    - Counters are refused when the caller made the last action
    - Rejections are always in turn

    Args:
        action: Requested action
        user_id: Caller
        last_action: Latest negotiation row (None for an offer without history)

    Returns:
        TurnVerdict
    """
    if last_action is None:
        return TurnVerdict(allowed=True)

    if action == NegotiationAction.BUYER_ACCEPT:
        if last_action.action_type not in SELLER_PROPOSALS:
            return TurnVerdict(
                allowed=False,
                message="No pending seller offer to accept",
                suggested_actions=["Wait for seller response", "Make a counter-offer"],
            )
    elif action == NegotiationAction.SELLER_ACCEPT:
        if last_action.action_type not in BUYER_PROPOSALS:
            return TurnVerdict(
                allowed=False,
                message="No pending buyer offer to accept",
                suggested_actions=["Wait for buyer response", "Make a counter-offer"],
            )
    elif action in (NegotiationAction.BUYER_COUNTER, NegotiationAction.SELLER_COUNTER):
        if last_action.offered_by_user_id == user_id:
            other_side = "seller" if action == NegotiationAction.BUYER_COUNTER else "buyer"
            return TurnVerdict(
                allowed=False,
                message=f"Cannot make consecutive counter-offers; waiting for {other_side} response",
                suggested_actions=[f"Wait for {other_side} response"],
            )
    elif action in (NegotiationAction.BUYER_REJECT, NegotiationAction.SELLER_REJECT):
        pass
    else:
        raise ValueError(f"Unhandled negotiation action: {action}")

    return TurnVerdict(allowed=True)


def audit_negotiation_type(action: NegotiationAction) -> str:
    """Label used in audit change summaries."""
    kind = action.kind
    if kind == ActionKind.COUNTER:
        return "counter_offer"
    elif kind == ActionKind.ACCEPT:
        return "acceptance"
    elif kind == ActionKind.REJECT:
        return "rejection"
    raise ValueError(f"Unhandled action kind: {kind}")


def validate_item_negotiation(
    proposal: ItemNegotiationInput,
    item: Optional[CatalogOfferItem],
    variant: Optional[CatalogProductVariant]
) -> None:
    """
    Validate one proposed item negotiation.

    Raises:
        OfferOperationError: INVALID_OFFER_ITEM, INVALID_PRICE, INVALID_QUANTITY or INSUFFICIENT_INVENTORY
    """
    if item is None:
        raise OfferOperationError(
            ErrorCode.INVALID_OFFER_ITEM,
            f"Offer item not found: {proposal.catalog_offer_item_id}",
            OfferItemDetails(catalog_offer_item_id=proposal.catalog_offer_item_id, reason="not_found"),
        )
    if item.item_status != ItemStatus.ACTIVE:
        raise OfferOperationError(
            ErrorCode.INVALID_OFFER_ITEM,
            f"Offer item {item.public_id} is not active",
            OfferItemDetails(catalog_offer_item_id=item.public_id, reason="item_removed"),
        )
    if proposal.offer_price_per_unit is None or proposal.offer_price_per_unit <= 0:
        raise OfferOperationError(
            ErrorCode.INVALID_PRICE,
            "Offer price must be greater than zero",
            PriceDetails(price=proposal.offer_price_per_unit, catalog_offer_item_id=item.public_id),
        )
    if proposal.offer_quantity is None or proposal.offer_quantity <= 0:
        raise OfferOperationError(
            ErrorCode.INVALID_QUANTITY,
            "Offer quantity must be greater than zero",
            QuantityDetails(quantity=proposal.offer_quantity, catalog_offer_item_id=item.public_id),
        )
    check_inventory(variant, proposal.offer_quantity)


def check_inventory(variant: Optional[CatalogProductVariant], requested_quantity: int) -> None:
    """
    Refuse quantities above available inventory.

    Variants with no tracked inventory (available_quantity is None) are unlimited.
    """
    if variant is None or variant.available_quantity is None:
        return
    if requested_quantity > variant.available_quantity:
        raise OfferOperationError(
            ErrorCode.INSUFFICIENT_INVENTORY,
            f"Insufficient inventory: {variant.available_quantity} available, {requested_quantity} requested",
            InventoryDetails(
                catalog_product_variant_id=variant.public_id,
                requested_quantity=requested_quantity,
                available_quantity=variant.available_quantity,
                shortage=requested_quantity - variant.available_quantity,
            ),
        )
