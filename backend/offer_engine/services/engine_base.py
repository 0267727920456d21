"""
Shared plumbing for the offer engines.

WHAT: Transaction wrapper, error envelope conversion and common row builders
WHY: Every engine call is one atomic unit of work returning {success, data, error}
HOW: Run work inside the transaction factory, map exceptions to OfferError, notify after commit
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.clock import Clock, system_clock
from ..core.database import TransactionFactory, get_db
from ..core.models import (
    CatalogOffer, CatalogOfferItem, CatalogOfferNegotiation, CatalogOfferItemChange,
    CatalogOfferAuditLog, ActionType, ItemChangeType, NegotiationOfferStatus, OfferStatus, UserRole,
)
from ..core.identifiers import EntityRef, generate_public_id, resolve
from ..models.errors import ErrorCode, OfferError, ConcurrencyDetails, InternalErrorDetails, OfferRefDetails
from ..models.offers import OperationResult
from ..utils.exceptions import OfferOperationError
from ..utils.logger import get_logger
from .notifications import NotificationEvent, NotificationSink, dispatch_notifications, get_notification_sink

logger = get_logger(__name__)

WorkResult = Tuple[Any, List[NotificationEvent]]


class OfferEngineBase:
    """
    Base class for engines that mutate offers.

    WHAT: Owns the transaction factory, clock and notification sink
    WHY: Engines share identical commit/rollback and error-propagation rules
    HOW: Subclasses pass a work callable to _execute
    """

    def __init__(
        self,
        transaction: Optional[TransactionFactory] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationSink] = None,
    ):
        self.transaction = transaction or get_db
        self.clock = clock or system_clock
        self._notifier = notifier

    @property
    def notifier(self) -> Optional[NotificationSink]:
        return self._notifier if self._notifier is not None else get_notification_sink()

    def _execute(
        self,
        operation: str,
        work: Callable[[Session, datetime], WorkResult],
        offer_ref: Optional[str] = None,
    ) -> OperationResult:
        """
        Run one operation atomically.

        Args:
            operation: Name used in log lines
            work: Callable(db, now) -> (payload, notification events)
            offer_ref: Offer identifier for concurrency error details

        Returns:
            OperationResult with the payload, or the structured error
        """
        now = self.clock()
        try:
            with self.transaction() as db:
                payload, events = work(db, now)
        except OfferOperationError as e:
            logger.warning(f"{operation} rejected: {e.code} - {e.message}")
            return OperationResult.fail(e.to_error())
        except (IntegrityError, StaleDataError) as e:
            logger.warning(f"{operation} collided with a concurrent transaction: {e}")
            return OperationResult.fail(OfferError(
                code=ErrorCode.CONCURRENT_MODIFICATION,
                message="The offer was modified by another request; reload and retry",
                details=ConcurrencyDetails(catalog_offer_id=offer_ref, reason=type(e).__name__),
            ))
        except Exception:
            reference = str(uuid4())
            logger.exception(f"{operation} failed unexpectedly (reference {reference})")
            return OperationResult.fail(OfferError(
                code=ErrorCode.INTERNAL_ERROR,
                message="An unexpected error occurred",
                details=InternalErrorDetails(reference=reference),
            ))

        dispatch_notifications(self.notifier, events)
        return OperationResult.ok(payload)


# ========== Row builders ==========

def load_offer(db: Session, ref: EntityRef, not_found_code: ErrorCode = ErrorCode.OFFER_NOT_FOUND) -> CatalogOffer:
    """Resolve an offer or raise the given not-found code."""
    offer = resolve(db, CatalogOffer, ref)
    if offer is None:
        raise OfferOperationError(
            not_found_code,
            f"Catalog offer not found: {ref}",
            OfferRefDetails(catalog_offer_id=str(ref)),
        )
    return offer


def new_negotiation(
    db: Session,
    offer: CatalogOffer,
    item: CatalogOfferItem,
    negotiation_round: int,
    action_type: ActionType,
    user_id: str,
    role: UserRole,
    price: float,
    quantity: int,
    currency: str,
    now: datetime,
    status: NegotiationOfferStatus = NegotiationOfferStatus.PENDING,
    **extra,
) -> CatalogOfferNegotiation:
    """Insert a current negotiation row and return it (with its id assigned)."""
    # Column defaults only apply at flush; payload builders read these right away
    extra.setdefault("includes_item_changes", False)
    extra.setdefault("auto_accepted", False)
    extra.setdefault("auto_expired", False)
    negotiation = CatalogOfferNegotiation(
        catalog_offer_negotiation_id=str(uuid4()),
        public_id=generate_public_id(),
        catalog_offer_id=offer.catalog_offer_id,
        catalog_offer_item_id=item.catalog_offer_item_id,
        negotiation_round=negotiation_round,
        action_type=action_type,
        offered_by_user_id=user_id,
        offered_by_role=role,
        offer_price_per_unit=price,
        offer_price_currency=currency,
        offer_quantity=quantity,
        offer_status=status,
        is_current_offer=True,
        created_at=now,
        **extra,
    )
    db.add(negotiation)
    return negotiation


def point_item_at(item: CatalogOfferItem, negotiation: CatalogOfferNegotiation, role: UserRole) -> None:
    """Move the item's current pointer for one side to a negotiation row."""
    if role == UserRole.BUYER:
        item.current_buyer_negotiation_id = negotiation.catalog_offer_negotiation_id
    elif role == UserRole.SELLER:
        item.current_seller_negotiation_id = negotiation.catalog_offer_negotiation_id
    else:
        raise ValueError(f"Unhandled role: {role}")


def record_item_change(
    db: Session,
    offer: CatalogOffer,
    item: CatalogOfferItem,
    negotiation_round: int,
    change_type: ItemChangeType,
    user_id: str,
    now: datetime,
    **values,
) -> CatalogOfferItemChange:
    """Append one ItemChange row."""
    values.setdefault("auto_generated", False)
    change = CatalogOfferItemChange(
        public_id=generate_public_id(),
        catalog_offer_id=offer.catalog_offer_id,
        catalog_offer_item_id=item.catalog_offer_item_id,
        negotiation_round=negotiation_round,
        change_type=change_type,
        changed_by_user_id=user_id,
        created_at=now,
        **values,
    )
    db.add(change)
    return change


def record_audit(
    db: Session,
    offer: CatalogOffer,
    action: str,
    user_id: str,
    previous_status: Optional[OfferStatus],
    new_status: OfferStatus,
    now: datetime,
    summary: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> CatalogOfferAuditLog:
    """
    Append one audit entry.

    The changes summary always carries action, timestamp and the status change.
    """
    changes_summary = {
        "action": action,
        "timestamp": now.isoformat(),
        "statusChange": {
            "from": previous_status.value if previous_status else None,
            "to": new_status.value,
        },
    }
    changes_summary.update(summary or {})
    entry = CatalogOfferAuditLog(
        catalog_offer_id=offer.catalog_offer_id,
        action=action,
        performed_by_user_id=user_id,
        previous_status=previous_status,
        new_status=new_status,
        changes_summary=changes_summary,
        context=context,
        created_at=now,
    )
    db.add(entry)
    return entry
