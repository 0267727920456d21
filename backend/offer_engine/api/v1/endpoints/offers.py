"""
Catalog offer endpoints.

WHAT: Create, negotiate, bulk-accept, order and inspect catalog offers
WHY: HTTP surface over the offer engines and the query layer
HOW: Thin handlers; engines come from dependencies so tests can swap storage and clock
"""

from fastapi import APIRouter, Depends, Header

from ....core.clock import Clock, system_clock
from ....core.database import TransactionFactory, get_db
from ....core.identifiers import parse_ref
from ....core.models import CatalogOffer
from ....models.api_schemas import (
    AuditLogResponse,
    CreateOfferBody,
    CreateOrderBody,
    ModifyAndAcceptBody,
    NegotiateBody,
    OfferDetailResponse,
    OfferHistoryResponse,
    OfferStatisticsResponse,
)
from ....models.errors import ErrorCode, ParticipantDetails
from ....models.offers import (
    ExpirationSweepResult, ItemChangeRecord, NegotiationRecord, OfferSnapshot, OperationResult,
)
from ....services.bulk_modify import BulkModifyEngine
from ....services.engine_base import load_offer
from ....services.negotiation_queries import (
    bulk_expire_offers, get_audit_log, get_current_round, get_item_changes,
    get_negotiation_history, get_participants, get_statistics,
)
from ....services.offer_creation import OfferCreationEngine
from ....services.offer_negotiation import OfferNegotiationEngine
from ....services.order_spawner import OrderService
from ....utils.exceptions import OfferOperationError
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


# ========== Dependencies ==========

def get_transaction() -> TransactionFactory:
    """Transaction factory used by every endpoint."""
    return get_db


def get_clock() -> Clock:
    return system_clock


def get_creation_engine(
    transaction: TransactionFactory = Depends(get_transaction),
    clock: Clock = Depends(get_clock),
) -> OfferCreationEngine:
    return OfferCreationEngine(transaction=transaction, clock=clock)


def get_negotiation_engine(
    transaction: TransactionFactory = Depends(get_transaction),
    clock: Clock = Depends(get_clock),
) -> OfferNegotiationEngine:
    return OfferNegotiationEngine(transaction=transaction, clock=clock)


def get_bulk_modify_engine(
    transaction: TransactionFactory = Depends(get_transaction),
    clock: Clock = Depends(get_clock),
) -> BulkModifyEngine:
    return BulkModifyEngine(transaction=transaction, clock=clock)


def get_order_service(
    transaction: TransactionFactory = Depends(get_transaction),
    clock: Clock = Depends(get_clock),
) -> OrderService:
    return OrderService(transaction=transaction, clock=clock)


def _unwrap(result: OperationResult) -> dict:
    """Return the envelope on success, raise for the exception handlers otherwise."""
    if not result.success:
        raise OfferOperationError.from_error(result.error)
    return result.to_dict()


def _load_for_participant(db, offer_id: str, user_id: str) -> CatalogOffer:
    offer = load_offer(db, parse_ref(offer_id))
    if user_id not in (offer.buyer_user_id, offer.seller_user_id):
        raise OfferOperationError(
            ErrorCode.UNAUTHORIZED_ACCESS,
            "Only the offer's buyer or seller can view it",
            ParticipantDetails(catalog_offer_id=offer.public_id, user_id=user_id),
        )
    return offer


# ========== Commands ==========

@router.post("/catalog-offers", status_code=201)
async def create_offer(
    body: CreateOfferBody,
    x_user_id: str = Header(..., alias="X-User-Id"),
    engine: OfferCreationEngine = Depends(get_creation_engine),
):
    """
    Create a catalog offer.

    WHAT: Buyer submits items against a listing
    WHY: Entry point of every negotiation
    HOW: Delegate to OfferCreationEngine
    """
    logger.info(f"Create offer on listing {body.catalog_listing_id} by {x_user_id}")
    return _unwrap(engine.create_offer(body.to_request(x_user_id)))


@router.post("/catalog-offers/expire")
async def expire_offers(
    transaction: TransactionFactory = Depends(get_transaction),
    clock: Clock = Depends(get_clock),
):
    """
    Expire stale offers.

    WHAT: Out-of-band sweep moving overdue open offers to EXPIRED
    WHY: Engines never expire offers themselves
    HOW: bulk_expire_offers inside one transaction
    """
    now = clock()
    with transaction() as db:
        expired = bulk_expire_offers(db, now)

    result = ExpirationSweepResult(
        offers_expired=sorted(expired),
        negotiations_expired=sum(expired.values()),
    )
    logger.info(f"Expiration sweep: {len(result.offers_expired)} offers expired")
    return {"success": True, "data": result.model_dump(mode="json"), "error": None}


@router.post("/catalog-offers/{offer_id}/negotiate")
async def negotiate_offer(
    offer_id: str,
    body: NegotiateBody,
    x_user_id: str = Header(..., alias="X-User-Id"),
    engine: OfferNegotiationEngine = Depends(get_negotiation_engine),
):
    """Counter, accept or reject an offer."""
    return _unwrap(engine.negotiate(body.to_request(offer_id, x_user_id)))


@router.post("/catalog-offers/{offer_id}/modify-and-accept")
async def modify_and_accept(
    offer_id: str,
    body: ModifyAndAcceptBody,
    x_user_id: str = Header(..., alias="X-User-Id"),
    engine: BulkModifyEngine = Depends(get_bulk_modify_engine),
):
    """Seller applies modifications and accepts the whole offer."""
    return _unwrap(engine.modify_and_accept(body.to_request(offer_id, x_user_id)))


@router.post("/catalog-offers/{offer_id}/orders", status_code=201)
async def create_order(
    offer_id: str,
    body: CreateOrderBody,
    x_user_id: str = Header(..., alias="X-User-Id"),
    service: OrderService = Depends(get_order_service),
):
    """Buyer creates the order for an accepted offer."""
    return _unwrap(service.create_order_from_offer(body.to_request(offer_id, x_user_id)))


# ========== Queries ==========

@router.get("/catalog-offers/{offer_id}", response_model=OfferDetailResponse)
async def get_offer(
    offer_id: str,
    x_user_id: str = Header(..., alias="X-User-Id"),
    transaction: TransactionFactory = Depends(get_transaction),
):
    """Offer snapshot with participants."""
    with transaction() as db:
        offer = _load_for_participant(db, offer_id, x_user_id)
        return OfferDetailResponse(
            offer=OfferSnapshot.from_offer(offer),
            participants=get_participants(db, offer),
        )


@router.get("/catalog-offers/{offer_id}/history", response_model=OfferHistoryResponse)
async def get_offer_history(
    offer_id: str,
    x_user_id: str = Header(..., alias="X-User-Id"),
    transaction: TransactionFactory = Depends(get_transaction),
):
    """Every negotiation and item change on the offer, oldest first."""
    with transaction() as db:
        offer = _load_for_participant(db, offer_id, x_user_id)
        item_ids = {item.catalog_offer_item_id: item.public_id for item in offer.items}
        return OfferHistoryResponse(
            catalog_offer_id=offer.public_id,
            current_round=get_current_round(db, offer),
            negotiations=[
                NegotiationRecord.from_negotiation(n)
                for n in get_negotiation_history(db, offer.catalog_offer_id)
            ],
            item_changes=[
                ItemChangeRecord.from_change(c, item_ids.get(c.catalog_offer_item_id, c.catalog_offer_item_id))
                for c in get_item_changes(db, offer.catalog_offer_id)
            ],
        )


@router.get("/catalog-offers/{offer_id}/statistics", response_model=OfferStatisticsResponse)
async def get_offer_statistics(
    offer_id: str,
    x_user_id: str = Header(..., alias="X-User-Id"),
    transaction: TransactionFactory = Depends(get_transaction),
):
    """Rounds, negotiation counts and response times."""
    with transaction() as db:
        offer = _load_for_participant(db, offer_id, x_user_id)
        return OfferStatisticsResponse(catalog_offer_id=offer.public_id, statistics=get_statistics(db, offer))


@router.get("/catalog-offers/{offer_id}/audit-log", response_model=AuditLogResponse)
async def get_offer_audit_log(
    offer_id: str,
    limit: int = 50,
    x_user_id: str = Header(..., alias="X-User-Id"),
    transaction: TransactionFactory = Depends(get_transaction),
):
    """Newest-first audit entries."""
    with transaction() as db:
        offer = _load_for_participant(db, offer_id, x_user_id)
        return AuditLogResponse(
            catalog_offer_id=offer.public_id,
            entries=get_audit_log(db, offer.catalog_offer_id, limit=limit),
        )
