"""
Tests for the cos-tool FastAPI application.
"""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from cos_tool.api import create_app

TESTDATA = Path(__file__).parent / "testdata"


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(create_app())


class TestTransformEndpoint:
    """Test POST /api/transform."""

    def test_transform_promql(self, client):
        """Test the default PromQL dialect."""
        response = client.post("/api/transform", json={
            "expression": 'rate(up{job="$job"}[$__rate_interval])',
            "label_matchers": {"env": "prod"},
        })
        assert response.status_code == 200
        assert response.json() == {"result": 'rate(up{env="prod",job="$job"}[$__rate_interval])'}

    def test_transform_logql(self, client):
        """Test the LogQL dialect."""
        response = client.post("/api/transform", json={
            "format": "logql",
            "expression": '{job="loki"} !~ ".+"',
            "label_matchers": {"model": "lma"},
        })
        assert response.status_code == 200
        assert response.json()["result"] == '{job="loki", model="lma"} !~ ".+"'

    def test_unsupported_variable_position(self, client):
        """Test that a rejected variable slot is a 400."""
        response = client.post("/api/transform", json={
            "expression": 'sum(rate(up[5m])) by ($grouping)',
            "label_matchers": {"env": "prod"},
        })
        assert response.status_code == 400
        assert "grouping (by/without) positions are not supported" in response.json()["detail"]

    def test_parse_error(self, client):
        """Test that an unparsable expression is a 400."""
        response = client.post("/api/transform", json={"expression": "sum(up"})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("parse error")

    def test_missing_expression(self, client):
        """Test request validation."""
        response = client.post("/api/transform", json={"format": "promql"})
        assert response.status_code == 422


class TestValidateEndpoint:
    """Test POST /api/validate."""

    def test_valid_rules(self, client):
        """Test a valid rule file."""
        content = (TESTDATA / "prom_alerts" / "basic.yaml").read_text()
        response = client.post("/api/validate", json={"content": content})
        assert response.status_code == 200
        assert response.json() == {"valid": True, "groups": 2, "errors": []}

    def test_invalid_rules(self, client):
        """Test that violations are returned rather than raised."""
        content = (TESTDATA / "loki_alerts" / "duplicate_group.yaml").read_text()
        response = client.post("/api/validate", json={
            "format": "logql",
            "filename": "loki.yaml",
            "content": content,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert data["groups"] == 2
        assert data["errors"] == ['groupname: "testgroup" is repeated in the same file']

    def test_undecodable_rules(self, client):
        """Test that a decode failure reports zero groups."""
        response = client.post("/api/validate", json={"content": "groups: ["})
        data = response.json()
        assert data["valid"] is False
        assert data["groups"] == 0


class TestHealth:
    """Test GET /health."""

    def test_health(self, client):
        """Test the health check."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
