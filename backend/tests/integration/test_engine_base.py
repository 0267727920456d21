"""
Tests for the shared engine transaction wrapper.

WHAT: Test commit/rollback, error mapping and post-commit notification
WHY: Every engine relies on _execute for atomicity and its error envelope
HOW: Minimal OfferEngineBase subclass with hand-written work callables
"""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from offer_engine.core.models import SellerOrderCounter
from offer_engine.models.errors import ErrorCode, OfferRefDetails
from offer_engine.services.engine_base import OfferEngineBase
from offer_engine.services.notifications import NotificationEvent
from offer_engine.utils.exceptions import OfferOperationError


class ProbeEngine(OfferEngineBase):
    def run(self, work, offer_ref="OFFER"):
        return self._execute("probe", work, offer_ref)


@pytest.fixture
def engine(transaction, clock, sink):
    return ProbeEngine(transaction=transaction, clock=clock, notifier=sink)


def counter_count(transaction):
    with transaction() as db:
        return db.query(SellerOrderCounter).count()


def write_then(error, seller_user_id):
    """Work that writes a row, then fails."""
    def work(db, now):
        db.add(SellerOrderCounter(seller_user_id=seller_user_id, year=now.year, last_order_number=1))
        db.flush()
        raise error
    return work


@pytest.mark.integration
class TestExecute:
    """Test OfferEngineBase._execute."""

    def test_success_commits_and_notifies(self, engine, transaction, sink, clock, marketplace):
        event = NotificationEvent(
            event_type="probe.done", catalog_offer_id="OFFER", recipient_user_ids=["u1"], occurred_at=clock(),
        )

        def work(db, now):
            db.add(SellerOrderCounter(seller_user_id=marketplace.seller_user_id, year=now.year, last_order_number=1))
            return {"ok": True}, [event]

        result = engine.run(work)

        assert result.success
        assert result.data == {"ok": True}
        assert counter_count(transaction) == 1
        assert sink.events == [event]

    def test_work_sees_the_clock(self, engine, clock):
        result = engine.run(lambda db, now: (now, []))
        assert result.data == clock()

    def test_operation_error_becomes_failure(self, engine, transaction, sink, marketplace):
        error = OfferOperationError(ErrorCode.OFFER_NOT_FOUND, "missing", OfferRefDetails(catalog_offer_id="X"))

        result = engine.run(write_then(error, marketplace.seller_user_id))

        assert result.success is False
        assert result.data is None
        assert result.error.code == ErrorCode.OFFER_NOT_FOUND
        assert result.error.details.catalog_offer_id == "X"
        assert counter_count(transaction) == 0
        assert sink.events == []

    @pytest.mark.parametrize("error", [
        StaleDataError("UPDATE statement on table 'catalog_offers' expected to update 1 row(s); 0 were matched."),
        IntegrityError("INSERT INTO orders", {}, Exception("UNIQUE constraint failed: orders.catalog_offer_id")),
    ])
    def test_storage_conflicts_become_concurrent_modification(self, engine, transaction, error, marketplace):
        result = engine.run(write_then(error, marketplace.seller_user_id), offer_ref="OFFER-7")

        assert result.error.code == ErrorCode.CONCURRENT_MODIFICATION
        assert result.error.details.catalog_offer_id == "OFFER-7"
        assert result.error.details.reason == type(error).__name__
        assert counter_count(transaction) == 0

    def test_unexpected_error_becomes_internal(self, engine, transaction, marketplace):
        result = engine.run(write_then(KeyError("boom"), marketplace.seller_user_id))

        assert result.error.code == ErrorCode.INTERNAL_ERROR
        assert result.error.details.reference
        assert "boom" not in result.error.message
        assert counter_count(transaction) == 0


@pytest.mark.integration
class TestNotifierFallback:
    """Test the engine's notifier when none is injected."""

    def test_disabled_notifications(self, transaction, clock):
        engine = ProbeEngine(transaction=transaction, clock=clock)
        assert engine.notifier is None
        assert engine.run(lambda db, now: ("done", [])).success
