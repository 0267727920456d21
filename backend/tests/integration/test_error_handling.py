"""
Integration tests for error handling and HTTP status codes.

WHAT: Test that errors are properly mapped to HTTP status codes
WHY: Ensure consistent {success, error, timestamp} responses for every error class
HOW: Small FastAPI app with the real exception handlers and routes that raise on demand
"""

import pytest
from fastapi import FastAPI, Header
from fastapi.testclient import TestClient

from offer_engine.middleware.error_handler import register_exception_handlers
from offer_engine.models.errors import (
    ConcurrencyDetails, ErrorCode, InternalErrorDetails, OfferRefDetails, OfferStatusDetails, ParticipantDetails,
    PriceDetails,
)
from offer_engine.utils.exceptions import BusinessException, OfferOperationError

RAISED = {
    "validation": OfferOperationError(ErrorCode.INVALID_PRICE, "Offer price must be greater than zero",
                                      PriceDetails(price=0.0)),
    "authorization": OfferOperationError(ErrorCode.UNAUTHORIZED_ACCESS, "Not a participant",
                                         ParticipantDetails(catalog_offer_id="X", user_id="u1", role="BUYER")),
    "state_conflict": OfferOperationError(ErrorCode.INVALID_OFFER_STATUS, "Offer is closed",
                                          OfferStatusDetails(catalog_offer_id="X", current_status="ACCEPTED",
                                                             valid_statuses=["ACTIVE", "NEGOTIATING"])),
    "not_found": OfferOperationError(ErrorCode.OFFER_NOT_FOUND, "Catalog offer not found",
                                     OfferRefDetails(catalog_offer_id="X")),
    "concurrency": OfferOperationError(ErrorCode.CONCURRENT_MODIFICATION, "Reload and retry",
                                       ConcurrencyDetails(catalog_offer_id="X", reason="StaleDataError")),
    "internal": OfferOperationError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred",
                                    InternalErrorDetails(reference="ref-1")),
}


@pytest.fixture
def client():
    """Create a test client for an app that only raises."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    async def raise_error(kind: str):
        raise RAISED[kind]

    @app.get("/business")
    async def raise_business():
        raise BusinessException("Something the caller did", code="CUSTOM_RULE")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("database password is hunter2")

    @app.get("/needs-header")
    async def needs_header(x_user_id: str = Header(..., alias="X-User-Id")):
        return {"user": x_user_id}

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.integration
class TestOfferErrorMapping:
    """Test error classes map to HTTP status codes."""

    @pytest.mark.parametrize("kind,status_code", [
        ("validation", 422),
        ("authorization", 403),
        ("state_conflict", 409),
        ("not_found", 404),
        ("concurrency", 409),
        ("internal", 500),
    ])
    def test_status_codes(self, client, kind, status_code):
        response = client.get(f"/raise/{kind}")

        assert response.status_code == status_code
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == RAISED[kind].code
        assert "timestamp" in body

    def test_details_are_preserved(self, client):
        """Clients get the typed details unchanged."""
        error = client.get("/raise/state_conflict").json()["error"]
        assert error["details"] == {
            "catalog_offer_id": "X",
            "current_status": "ACCEPTED",
            "valid_statuses": ["ACTIVE", "NEGOTIATING"],
        }


@pytest.mark.integration
class TestOtherErrors:
    """Test request validation, business and unhandled exceptions."""

    def test_missing_header_is_400(self, client):
        response = client.get("/needs-header")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["loc"] == ["header", "X-User-Id"]

    def test_business_exception_is_400(self, client):
        response = client.get("/business")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CUSTOM_RULE"

    def test_unhandled_exception_hides_detail(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["details"]["reference"]
        assert "hunter2" not in response.text
