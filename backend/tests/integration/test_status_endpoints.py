"""
Integration tests for status endpoints.

WHAT: Test /api/v1/health and the root endpoint
WHY: Ensure HTTP layer correctly reports database availability
HOW: Use TestClient with a patched database ping
"""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from offer_engine.main import app


@pytest.fixture
def client():
    """Create FastAPI test client."""
    return TestClient(app)


@pytest.mark.api
@pytest.mark.integration
class TestHealthEndpoint:
    """Test /api/v1/health endpoint."""

    def test_health_with_database(self, client):
        """Healthy when the database answers."""
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["app_name"] == "Catalog Offer Engine"
        assert data["components"]["database"]["available"] is True
        assert data["components"]["database"]["error"] is None

    def test_health_without_database(self, client):
        """Degraded, not failing, when the database is down."""
        with patch("offer_engine.api.v1.endpoints.status.ping_database") as mock_ping:
            mock_ping.return_value = {
                "available": False,
                "url": "sqlite:///./data/offers.db",
                "error": "unable to open database file",
            }
            response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["database"]["error"] == "unable to open database file"


@pytest.mark.api
@pytest.mark.integration
class TestRootEndpoint:
    """Test / endpoint."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"
