"""
Negotiation query layer.

WHAT: Reconstruct an offer's current state from storage and recompute its total
WHY: All engines need the same view of rounds, last action and current negotiations
HOW: Explicit query functions over a session; a few narrow transactional writers
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.models import (
    CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation, CatalogOfferItemChange,
    CatalogOfferAuditLog, User, BuyerProfile, SellerProfile,
    ItemStatus, ItemNegotiationStatus, NegotiationOfferStatus, OfferStatus, UserRole,
)
from ..models.offers import (
    OfferStatistics, OfferParticipants, ParticipantInfo, AuditEntryRecord,
)
from ..utils.money import line_total, round_money
from ..utils.logger import get_logger

logger = get_logger(__name__)

OPEN_OFFER_STATUSES = (OfferStatus.ACTIVE, OfferStatus.NEGOTIATING)


# ========== Reads ==========

def get_current_round(db: Session, offer: CatalogOffer) -> int:
    """
    Current negotiation round of an offer.

    Returns:
        offer.current_round when set, else the highest negotiation round, else 0
    """
    if offer.current_round:
        return offer.current_round
    max_round = (
        db.query(func.max(CatalogOfferNegotiation.negotiation_round))
        .filter(CatalogOfferNegotiation.catalog_offer_id == offer.catalog_offer_id)
        .scalar()
    )
    return max_round or 0


def get_last_action(db: Session, catalog_offer_id: str) -> Optional[CatalogOfferNegotiation]:
    """Most recent negotiation row on the offer (round desc, then creation time desc)."""
    return (
        db.query(CatalogOfferNegotiation)
        .filter(CatalogOfferNegotiation.catalog_offer_id == catalog_offer_id)
        .order_by(
            CatalogOfferNegotiation.negotiation_round.desc(),
            CatalogOfferNegotiation.created_at.desc(),
        )
        .first()
    )


def get_current_item_negotiation(db: Session, catalog_offer_item_id: str) -> Optional[CatalogOfferNegotiation]:
    """
    The item's live negotiation.

    WHAT: Row flagged is_current_offer, falling back to the latest row
    WHY: Accept and auto-finalize settle items at their last proposed terms
    HOW: Prefer current flag, order by round desc then created_at desc
    """
    base = db.query(CatalogOfferNegotiation).filter(
        CatalogOfferNegotiation.catalog_offer_item_id == catalog_offer_item_id
    )
    ordering = (
        CatalogOfferNegotiation.negotiation_round.desc(),
        CatalogOfferNegotiation.created_at.desc(),
    )
    current = base.filter(CatalogOfferNegotiation.is_current_offer.is_(True)).order_by(*ordering).first()
    if current is not None:
        return current
    return base.order_by(*ordering).first()


def get_active_items(db: Session, catalog_offer_id: str) -> List[CatalogOfferItem]:
    """ACTIVE items ordered by the round they joined the offer."""
    return (
        db.query(CatalogOfferItem)
        .filter(
            CatalogOfferItem.catalog_offer_id == catalog_offer_id,
            CatalogOfferItem.item_status == ItemStatus.ACTIVE,
        )
        .order_by(CatalogOfferItem.added_in_round.asc(), CatalogOfferItem.created_at.asc())
        .all()
    )


def get_negotiation_history(db: Session, catalog_offer_id: str) -> List[CatalogOfferNegotiation]:
    """Every negotiation on the offer in chronological order."""
    return (
        db.query(CatalogOfferNegotiation)
        .filter(CatalogOfferNegotiation.catalog_offer_id == catalog_offer_id)
        .order_by(
            CatalogOfferNegotiation.negotiation_round.asc(),
            CatalogOfferNegotiation.created_at.asc(),
        )
        .all()
    )


def get_item_negotiation_chain(db: Session, catalog_offer_item_id: str) -> List[CatalogOfferNegotiation]:
    """All proposals for one item, oldest first."""
    return (
        db.query(CatalogOfferNegotiation)
        .filter(CatalogOfferNegotiation.catalog_offer_item_id == catalog_offer_item_id)
        .order_by(
            CatalogOfferNegotiation.negotiation_round.asc(),
            CatalogOfferNegotiation.created_at.asc(),
        )
        .all()
    )


def get_item_changes(db: Session, catalog_offer_id: str, negotiation_round: Optional[int] = None) -> List[CatalogOfferItemChange]:
    """Structural changes on the offer, optionally limited to one round."""
    query = db.query(CatalogOfferItemChange).filter(CatalogOfferItemChange.catalog_offer_id == catalog_offer_id)
    if negotiation_round is not None:
        query = query.filter(CatalogOfferItemChange.negotiation_round == negotiation_round)
    return query.order_by(CatalogOfferItemChange.negotiation_round.asc(), CatalogOfferItemChange.created_at.asc()).all()


def has_pending_negotiations(db: Session, catalog_offer_id: str, excluding_user_id: str) -> bool:
    """True when a counterparty proposal is still waiting for this user."""
    count = (
        db.query(func.count(CatalogOfferNegotiation.catalog_offer_negotiation_id))
        .filter(
            CatalogOfferNegotiation.catalog_offer_id == catalog_offer_id,
            CatalogOfferNegotiation.offer_status == NegotiationOfferStatus.PENDING,
            CatalogOfferNegotiation.is_current_offer.is_(True),
            CatalogOfferNegotiation.offered_by_user_id != excluding_user_id,
        )
        .scalar()
    )
    return bool(count)


def _display_name(user: Optional[User], company_name: Optional[str]) -> str:
    if company_name:
        return company_name
    if user is None:
        return "Unknown"
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return full_name or user.username


def get_participants(db: Session, offer: CatalogOffer) -> OfferParticipants:
    """Buyer and seller display info (company, else full name, else username)."""
    buyer_user = db.get(User, offer.buyer_user_id)
    seller_user = db.get(User, offer.seller_user_id)
    buyer_profile = db.get(BuyerProfile, offer.buyer_profile_id)
    seller_profile = db.get(SellerProfile, offer.seller_profile_id)

    buyer_company = buyer_profile.company_name if buyer_profile else None
    seller_company = seller_profile.company_name if seller_profile else None

    return OfferParticipants(
        buyer=ParticipantInfo(
            user_id=offer.buyer_user_id,
            role=UserRole.BUYER.value,
            display_name=_display_name(buyer_user, buyer_company),
            company_name=buyer_company,
        ),
        seller=ParticipantInfo(
            user_id=offer.seller_user_id,
            role=UserRole.SELLER.value,
            display_name=_display_name(seller_user, seller_company),
            company_name=seller_company,
        ),
    )


def get_statistics(db: Session, offer: CatalogOffer) -> OfferStatistics:
    """
    Summary numbers for an offer.

    Average response time is measured in hours between consecutive
    negotiation rows made by different users.
    """
    history = get_negotiation_history(db, offer.catalog_offer_id)
    items = db.query(CatalogOfferItem).filter(CatalogOfferItem.catalog_offer_id == offer.catalog_offer_id).all()

    response_hours: List[float] = []
    for previous, current in zip(history, history[1:]):
        if previous.offered_by_user_id != current.offered_by_user_id:
            delta = current.created_at - previous.created_at
            response_hours.append(delta.total_seconds() / 3600)

    average = round(sum(response_hours) / len(response_hours), 2) if response_hours else None

    return OfferStatistics(
        total_rounds=get_current_round(db, offer),
        total_negotiations=len(history),
        average_response_time_hours=average,
        item_count=len(items),
        active_item_count=sum(1 for item in items if item.item_status == ItemStatus.ACTIVE),
        total_value=offer.total_offer_value,
        currency=offer.total_offer_value_currency,
    )


def get_audit_log(db: Session, catalog_offer_id: str, limit: int = 50) -> List[AuditEntryRecord]:
    """Newest-first audit entries."""
    entries = (
        db.query(CatalogOfferAuditLog)
        .filter(CatalogOfferAuditLog.catalog_offer_id == catalog_offer_id)
        .order_by(CatalogOfferAuditLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        AuditEntryRecord(
            action=entry.action,
            performed_by_user_id=entry.performed_by_user_id,
            previous_status=entry.previous_status.value if entry.previous_status else None,
            new_status=entry.new_status.value,
            changes_summary=entry.changes_summary or {},
            created_at=entry.created_at,
        )
        for entry in entries
    ]


def can_reopen(offer: CatalogOffer, now: datetime) -> bool:
    """A rejected offer may be revived until its reopen deadline."""
    return (
        offer.offer_status == OfferStatus.REJECTED
        and bool(offer.can_reopen)
        and offer.reopen_deadline is not None
        and now <= offer.reopen_deadline
    )


def get_offers_for_auto_expiration(db: Session, now: datetime) -> List[CatalogOffer]:
    """Open offers whose auto-expiry instant has passed."""
    return (
        db.query(CatalogOffer)
        .filter(
            CatalogOffer.offer_status.in_(OPEN_OFFER_STATUSES),
            CatalogOffer.auto_expire_at.isnot(None),
            CatalogOffer.auto_expire_at <= now,
        )
        .all()
    )


# ========== Totals ==========

def effective_item_terms(item: CatalogOfferItem) -> tuple:
    """
    Price and quantity an item currently contributes.

    Price priority: final agreed price, then the seller price when the seller
    holds the latest word (SELLER_COUNTERED or AGREED), then the buyer price.
    Quantity: final agreed quantity, else requested quantity.
    """
    if item.final_agreed_price is not None:
        price = item.final_agreed_price
        currency = item.final_agreed_price_currency
    elif item.negotiation_status in (ItemNegotiationStatus.SELLER_COUNTERED, ItemNegotiationStatus.AGREED) \
            and item.seller_offer_price is not None:
        price = item.seller_offer_price
        currency = item.seller_offer_price_currency
    else:
        price = item.buyer_offer_price or 0.0
        currency = item.buyer_offer_price_currency

    quantity = item.final_agreed_quantity if item.final_agreed_quantity is not None else item.requested_quantity
    return price, quantity, currency


def recalculate_offer_value(db: Session, offer: CatalogOffer) -> float:
    """
    Recompute and store the offer total from its ACTIVE items.

    WHAT: total_offer_value = sum of effective price * quantity over ACTIVE items
    WHY: Counters and item changes move prices; the header must follow
    HOW: Read items, apply price priority, write total and currency back (idempotent)

    Returns:
        The new total
    """
    db.flush()
    total = 0.0
    currency = offer.total_offer_value_currency
    for item in get_active_items(db, offer.catalog_offer_id):
        price, quantity, item_currency = effective_item_terms(item)
        total += line_total(price, quantity, context=f"item {item.public_id}")
        currency = item_currency or currency

    offer.total_offer_value = round_money(total)
    offer.total_offer_value_currency = currency
    logger.debug(f"Recalculated offer {offer.public_id} total: {offer.total_offer_value} {currency}")
    return offer.total_offer_value


# ========== Narrow writers ==========

def mark_previous_negotiations_superseded(db: Session, catalog_offer_item_id: str, keep_negotiation_id: str) -> int:
    """
    Retire every current negotiation on an item except one.

    Returns:
        Number of rows changed (0 when re-run with no new rows)
    """
    rows = (
        db.query(CatalogOfferNegotiation)
        .filter(
            CatalogOfferNegotiation.catalog_offer_item_id == catalog_offer_item_id,
            CatalogOfferNegotiation.catalog_offer_negotiation_id != keep_negotiation_id,
            CatalogOfferNegotiation.is_current_offer.is_(True),
        )
        .all()
    )
    for row in rows:
        row.is_current_offer = False
        if row.offer_status == NegotiationOfferStatus.PENDING:
            row.offer_status = NegotiationOfferStatus.SUPERSEDED
    # Autoflush is off; later queries in the same transaction must see the retirement
    db.flush()
    return len(rows)


def _expired_negotiations_query(db: Session, now: datetime):
    return db.query(CatalogOfferNegotiation).filter(
        CatalogOfferNegotiation.offer_status == NegotiationOfferStatus.PENDING,
        CatalogOfferNegotiation.is_current_offer.is_(True),
        or_(
            CatalogOfferNegotiation.valid_until < now,
            CatalogOfferNegotiation.expires_at < now,
        ),
    )


def has_expired_negotiations(db: Session, catalog_offer_id: str, now: datetime) -> bool:
    return _expired_negotiations_query(db, now).filter(
        CatalogOfferNegotiation.catalog_offer_id == catalog_offer_id
    ).first() is not None


def mark_expired_negotiations(db: Session, catalog_offer_id: str, now: datetime) -> int:
    """Flip stale PENDING current negotiations on one offer to EXPIRED."""
    rows = _expired_negotiations_query(db, now).filter(
        CatalogOfferNegotiation.catalog_offer_id == catalog_offer_id
    ).all()
    for row in rows:
        row.offer_status = NegotiationOfferStatus.EXPIRED
        row.is_current_offer = False
        row.auto_expired = True
    db.flush()
    return len(rows)


def bulk_expire_offers(db: Session, now: datetime, system_user_id: str = "system") -> Dict[str, int]:
    """
    Expire every open offer past its auto-expiry instant.

    WHAT: Out-of-band timeout sweep
    WHY: Stale offers must not stay open for action forever
    HOW: Mark pending negotiations EXPIRED, offer EXPIRED, one audit row per offer

    Returns:
        Mapping of expired offer public id -> negotiations expired on it
    """
    expired: Dict[str, int] = {}
    for offer in get_offers_for_auto_expiration(db, now):
        pending = (
            db.query(CatalogOfferNegotiation)
            .filter(
                CatalogOfferNegotiation.catalog_offer_id == offer.catalog_offer_id,
                CatalogOfferNegotiation.offer_status == NegotiationOfferStatus.PENDING,
            )
            .all()
        )
        for row in pending:
            row.offer_status = NegotiationOfferStatus.EXPIRED
            row.is_current_offer = False
            row.auto_expired = True

        previous_status = offer.offer_status
        offer.offer_status = OfferStatus.EXPIRED
        offer.updated_at = now
        db.add(CatalogOfferAuditLog(
            catalog_offer_id=offer.catalog_offer_id,
            action="OFFER_EXPIRED",
            performed_by_user_id=system_user_id,
            previous_status=previous_status,
            new_status=OfferStatus.EXPIRED,
            changes_summary={
                "action": "OFFER_EXPIRED",
                "timestamp": now.isoformat(),
                "statusChange": {"from": previous_status.value, "to": OfferStatus.EXPIRED.value},
                "negotiationsExpired": len(pending),
            },
            created_at=now,
        ))
        expired[offer.public_id] = len(pending)
        logger.info(f"Offer {offer.public_id} expired ({len(pending)} pending negotiations)")

    db.flush()
    return expired
