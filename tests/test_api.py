"""
Status API Tests

Run with: pytest tests/test_api.py -v
"""

import pytest

# Mark entire module as medium - uses TestClient with mocked dependencies
pytestmark = pytest.mark.medium

from unittest.mock import Mock

import psycopg2
from fastapi.testclient import TestClient

from sales_intel.api.deps import get_config, get_database, get_result_store
from sales_intel.api.main import app
from sales_intel.config import PipelineConfig
from sales_intel.errors import ConfigurationError


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_db():
    return Mock()


@pytest.fixture
def mock_store():
    store = Mock()
    store.get_analysis_stats.return_value = {"total_analyzed": 12, "avg_confidence": 0.72}
    store.get_category_breakdown.return_value = [
        {"product_category": "Phones", "count": 8, "percentage": 66.67},
        {"product_category": "TVs", "count": 4, "percentage": 33.33},
    ]
    store.get_high_priority_leads.return_value = [
        {"conversation_id": "1@s.whatsapp.net", "chat_name": "Ana", "urgency_level": "High",
         "product_category": "Phones", "lead_stage": "Intent", "next_action_required": "Call back"},
    ]
    return store


@pytest.fixture
def client(mock_db, mock_store):
    """Create a test client with overridden dependencies."""
    app.dependency_overrides[get_database] = lambda: mock_db
    app.dependency_overrides[get_result_store] = lambda: mock_store
    app.dependency_overrides[get_config] = lambda: PipelineConfig(openai_api_key="sk-test", ai_concurrency=3)

    yield TestClient(app)

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Tests
# -----------------------------------------------------------------------------


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_db_health_connected(self, client, mock_db):
        response = client.get("/health/db")
        assert response.json()["connected"] is True
        mock_db.ping.assert_called_once()

    def test_db_health_disconnected(self, client, mock_db):
        mock_db.ping.side_effect = psycopg2.OperationalError("could not connect")
        data = client.get("/health/db").json()
        assert data["connected"] is False
        assert "could not connect" in data["error"]


class TestStatus:

    def test_status_with_stats(self, client):
        data = client.get("/status").json()
        assert data["status"] == "ok"
        assert data["config"]["openai_configured"] is True
        assert data["config"]["ai_concurrency"] == 3
        assert data["config"]["cache_policy"] == "never"
        assert data["analysis_stats"]["total_analyzed"] == 12

    def test_status_never_exposes_key(self, client):
        assert "sk-test" not in client.get("/status").text

    def test_status_degraded_when_db_down(self, client, mock_store):
        mock_store.get_analysis_stats.side_effect = psycopg2.OperationalError("timeout")
        response = client.get("/status")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["database_error"] == "timeout"

    def test_configuration_error(self, client):
        def broken_config():
            raise ConfigurationError("CACHE_STALENESS_POLICY='x' not recognized")

        app.dependency_overrides[get_config] = broken_config
        response = client.get("/status")
        assert response.status_code == 500
        assert "CACHE_STALENESS_POLICY" in response.json()["detail"]


class TestReport:

    def test_report(self, client, mock_store):
        response = client.get("/api/report?limit=5")
        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["total_conversations_analyzed"] == 12
        assert data["summary"]["average_confidence"] == 0.72
        assert len(data["product_categories"]) == 2
        mock_store.get_high_priority_leads.assert_called_once_with(limit=5)

    @pytest.mark.parametrize("limit", [0, -1, 101])
    def test_report_limit_out_of_range(self, client, mock_store, limit):
        response = client.get(f"/api/report?limit={limit}")
        assert response.status_code == 422
        mock_store.get_high_priority_leads.assert_not_called()

    def test_report_db_unavailable(self, client, mock_store):
        mock_store.get_analysis_stats.side_effect = psycopg2.OperationalError("down")
        assert client.get("/api/report").status_code == 503


def test_root(client):
    assert client.get("/").json()["status"] == "/status"
