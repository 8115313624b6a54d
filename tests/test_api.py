"""Tests for the FastAPI web API."""

from __future__ import annotations

import os
from unittest.mock import patch

os.environ["OPENAI_API_KEY"] = ""
os.environ["HUBSPOT_TOKEN"] = ""
os.environ["BRIEFING_API_KEY"] = ""  # disable auth for tests

from fastapi.testclient import TestClient

from leadbrief.api import app
from leadbrief.brief.qa import validate_summary_html

client = TestClient(app)


class TestHealthEndpoint:
    def test_health_returns_ok(self):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"

    def test_health_shows_config_status(self):
        data = client.get("/health").json()
        assert data["openai_configured"] is False
        assert data["hubspot_configured"] is False
        assert "record_links_enabled" in data


class TestSummaryEndpoint:
    def test_requires_bundle(self):
        assert client.post("/summary", json={}).status_code == 422

    def test_rejects_bad_since_days(self, sample_bundle_dict):
        response = client.post("/summary", json={"bundle": sample_bundle_dict, "since_days": 0})
        assert response.status_code == 422

    def test_empty_bundle(self):
        response = client.post("/summary", json={"bundle": {}})
        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "deterministic"
        assert validate_summary_html(data["summary_html"]).ok

    def test_sample_bundle(self, sample_bundle_dict):
        response = client.post("/summary", json={
            "bundle": sample_bundle_dict,
            "since_days": 365,
            "record_base_url": "https://crm.example.com",
        })
        assert response.status_code == 200
        data = response.json()
        assert validate_summary_html(data["summary_html"]).ok
        assert "https://crm.example.com/0065e000001AbCdAAA" in data["summary_html"]
        assert data["meta"]["llm"]["error"] == "unconfigured"
        assert data["meta"]["product_rules_version"] == "product_interest_rules_v1"
        assert data["narrative"]["product"] == "Navigator"

    def test_html_endpoint(self, sample_bundle_dict):
        response = client.post("/summary/html", json={"bundle": sample_bundle_dict, "use_generator": False})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "<p><strong>Why Sales Should Care</strong></p>" in response.text


class TestAuth:
    def test_missing_key_rejected(self):
        with patch("leadbrief.api.settings.briefing_api_key", "secret"):
            response = client.post("/summary", json={"bundle": {}})
        assert response.status_code == 401

    def test_wrong_key_rejected(self):
        with patch("leadbrief.api.settings.briefing_api_key", "secret"):
            response = client.post(
                "/summary", json={"bundle": {}}, headers={"Authorization": "Bearer nope"}
            )
        assert response.status_code == 401

    def test_valid_key_accepted(self):
        with patch("leadbrief.api.settings.briefing_api_key", "secret"):
            response = client.post(
                "/summary", json={"bundle": {}}, headers={"Authorization": "Bearer secret"}
            )
        assert response.status_code == 200

    def test_health_is_open(self):
        with patch("leadbrief.api.settings.briefing_api_key", "secret"):
            assert client.get("/health").status_code == 200
