"""
Delay Prediction Agent - API Unit Tests

Tests for the FastAPI endpoints using TestClient. The app is wired to
in-memory stores so no database is touched.
Run with: pytest agents/delay_prediction/tests/test_api.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from agents.delay_prediction.api import app, app_state
from agents.delay_prediction.storage import (
    InMemoryEvaluationStore,
    InMemoryModelStore,
    InMemoryRoundStore,
    InMemoryTaskRepository,
)

from .factories import separable_history


@pytest.fixture
def client(test_settings):
    """Test client over in-memory stores with one eligible tenant."""
    app_state.configure(
        InMemoryTaskRepository(separable_history("tenant-a")),
        InMemoryModelStore(),
        InMemoryRoundStore(),
        InMemoryEvaluationStore(),
        app_settings=test_settings,
        seed=7,
    )
    with TestClient(app) as test_client:
        yield test_client
    app_state.coordinator = None
    app_state.training_jobs.clear()


def _due_in(hours):
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_check_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_check_returns_valid_structure(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "skipped"
        assert data["checks"]["mlflow"]["status"] == "disabled"


class TestPredictEndpoint:
    """Tests for the /predict endpoint."""

    def test_cold_start_uses_rule_based_score(self, client):
        response = client.post(
            "/predict",
            json={"tenant_id": "tenant-new", "priority": "high", "due_date": _due_in(10), "sla_hours": 16},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "rule_based"
        assert data["model_version"] is None
        assert 0.0 <= data["confidence_score"] <= 1.0
        assert set(data["factors"]) == {
            "priority_score",
            "due_date_gap_score",
            "workload_score",
            "sla_risk_score",
            "historical_score",
        }
        assert data["recommendations"]

    def test_trained_tenant_uses_model(self, client):
        client.post("/train", json={"tenant_id": "tenant-a"})

        data = client.post("/predict", json={"tenant_id": "tenant-a", "due_date": _due_in(48)}).json()

        assert data["source"] == "model"
        assert data["model_version"] == 1

    def test_invalid_priority_rejected(self, client):
        response = client.post("/predict", json={"tenant_id": "tenant-a", "priority": "urgent"})
        assert response.status_code == 422

    def test_negative_sla_rejected(self, client):
        response = client.post("/predict", json={"tenant_id": "tenant-a", "sla_hours": -1})
        assert response.status_code == 422


class TestTrainEndpoint:
    """Tests for /train and /train/{job_id}."""

    def test_inline_training_returns_summary(self, client):
        response = client.post("/train", json={"tenant_id": "tenant-a", "epochs": 20})

        assert response.status_code == 200
        data = response.json()
        assert data["model_version"] == 1
        assert data["epochs"] == 20
        assert data["training_samples"] == 11
        assert len(data["weights"]["coefficients"]) == 8

    def test_insufficient_data_is_422(self, client):
        response = client.post("/train", json={"tenant_id": "tenant-empty"})

        assert response.status_code == 422
        assert response.json()["error"] == "insufficient_data"

    def test_background_job_can_be_polled(self, client):
        response = client.post("/train", json={"tenant_id": "tenant-a", "background": True})

        assert response.status_code == 200
        job_id = response.json()["job_id"]
        assert response.json()["status"] == "pending"

        status = client.get(f"/train/{job_id}").json()
        assert status["status"] == "completed"
        assert status["result"]["tenant_id"] == "tenant-a"

    def test_failed_background_job_reports_error(self, client):
        job_id = client.post("/train", json={"tenant_id": "tenant-empty", "background": True}).json()["job_id"]

        status = client.get(f"/train/{job_id}").json()
        assert status["status"] == "failed"
        assert status["result"]["error"] == "insufficient_data"

    def test_unknown_job_is_404(self, client):
        assert client.get("/train/nonexistent").status_code == 404

    def test_invalid_hyperparameters(self, client):
        response = client.post("/train", json={"tenant_id": "tenant-a", "learning_rate": 0})
        assert response.status_code == 422


class TestRoundEndpoints:
    """Start, aggregate and inspect federated rounds."""

    def test_full_round(self, client):
        response = client.post("/rounds")
        assert response.status_code == 201
        started = response.json()
        assert started["status"] == "aggregating"
        assert started["participating_tenants"] == ["tenant-a"]
        assert started["partial_failure"] is False

        round_id = started["round_id"]
        aggregated = client.post(f"/rounds/{round_id}/aggregate").json()
        assert aggregated["total_samples"] == 11
        assert aggregated["tenant_model_versions"] == {"tenant-a": 2}

        stored = client.get(f"/rounds/{round_id}").json()
        assert stored["status"] == "completed"
        assert stored["global_weights"] == aggregated["global_weights"]

        status = client.get("/rounds/status").json()
        assert status["latest_round"]["id"] == round_id
        assert len(status["recent_rounds"]) == 1

    def test_second_aggregation_conflicts(self, client):
        round_id = client.post("/rounds").json()["round_id"]
        client.post(f"/rounds/{round_id}/aggregate")

        response = client.post(f"/rounds/{round_id}/aggregate")

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_round_state"

    def test_unknown_round(self, client):
        assert client.get("/rounds/missing").status_code == 404
        response = client.post("/rounds/missing/aggregate")
        assert response.status_code == 404
        assert response.json()["error"] == "stale_or_missing_round"

    def test_no_eligible_tenants(self, client, test_settings):
        app_state.configure(
            InMemoryTaskRepository(separable_history("tenant-a", delayed=3, on_time=3)),
            InMemoryModelStore(),
            InMemoryRoundStore(),
            app_settings=test_settings,
        )

        response = client.post("/rounds")

        assert response.status_code == 422
        assert client.get("/rounds/status").json()["latest_round"] is None


class TestEvaluateEndpoint:
    def test_no_model_is_422(self, client):
        response = client.post("/evaluate", json={"tenant_id": "tenant-a"})
        assert response.status_code == 422

    def test_local_and_federated(self, client):
        round_id = client.post("/rounds").json()["round_id"]
        client.post(f"/rounds/{round_id}/aggregate")

        data = client.post("/evaluate", json={"tenant_id": "tenant-a", "round_id": round_id}).json()

        assert [e["evaluation_type"] for e in data["evaluations"]] == ["local", "federated"]
        assert data["evaluations"][0]["test_samples"] == 12


class TestModelsEndpoint:
    def test_latest_model_404_before_training(self, client):
        assert client.get("/models/tenant-a/latest").status_code == 404

    def test_latest_model_after_training(self, client):
        client.post("/train", json={"tenant_id": "tenant-a"})

        data = client.get("/models/tenant-a/latest").json()

        assert data["model_version"] == 1
        assert data["source"] == "local"
        assert len(data["feature_names"]) == 8
