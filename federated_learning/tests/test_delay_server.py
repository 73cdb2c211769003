"""
Federated Learning - Delay Prediction Server Tests

Run with: pytest federated_learning/tests/test_delay_server.py -v
"""

import json

import pytest

from agents.delay_prediction.features import FEATURE_NAMES, NUM_FEATURES
from federated_learning.client.serde import ModelWeights
from federated_learning.server import delay_server
from federated_learning.server.delay_server import (
    DelayServerConfig,
    create_server_config,
    create_strategy,
    fit_config,
    fit_metrics_aggregation,
    save_global_model,
    weighted_average_metrics,
)


class TestWeightedAverageMetrics:
    """Tests for metrics aggregation across tenants."""

    def test_weights_by_examples(self):
        metrics = [
            (30, {"accuracy": 0.9, "f1": 0.8}),
            (10, {"accuracy": 0.5, "f1": 0.4}),
        ]

        aggregated = weighted_average_metrics(metrics)

        assert aggregated["accuracy"] == pytest.approx(0.8)
        assert aggregated["f1"] == pytest.approx(0.7)
        assert aggregated["total_examples"] == 40
        assert aggregated["num_clients"] == 2
        assert "aggregation_time" in aggregated

    def test_non_numeric_values_are_ignored(self):
        metrics = [
            (10, {"tenant_id": "tenant-a", "fit_phase": True, "loss": 0.5}),
            (10, {"tenant_id": "tenant-b", "loss": 0.3}),
        ]

        aggregated = weighted_average_metrics(metrics)

        assert "tenant_id" not in aggregated
        assert "fit_phase" not in aggregated
        assert aggregated["loss"] == pytest.approx(0.4)

    def test_key_missing_at_one_client(self):
        aggregated = weighted_average_metrics([(10, {"recall": 1.0}), (30, {})])
        assert aggregated["recall"] == pytest.approx(1.0)

    def test_empty_input(self):
        assert weighted_average_metrics([]) == {}

    def test_zero_examples(self):
        assert "error" in weighted_average_metrics([(0, {"accuracy": 1.0})])

    def test_fit_phase_flag(self):
        assert fit_metrics_aggregation([(5, {"accuracy": 0.6})])["fit_phase"] is True


class TestServerSetup:
    def test_fit_config_carries_training_settings(self):
        config = fit_config(3)
        assert config == {
            "server_round": 3,
            "local_epochs": DelayServerConfig.LOCAL_EPOCHS,
            "learning_rate": DelayServerConfig.LEARNING_RATE,
        }

    def test_server_config(self):
        config = create_server_config()
        assert config.num_rounds == DelayServerConfig.NUM_ROUNDS

    def test_strategy_starts_from_zero_weights(self):
        strategy = create_strategy()

        initial = ModelWeights.from_parameters(strategy.initial_parameters)

        assert initial == ModelWeights.zeros(NUM_FEATURES)
        assert strategy.expected_num_features == NUM_FEATURES
        assert strategy.min_fit_clients == DelayServerConfig.MIN_FIT_CLIENTS
        assert strategy.on_fit_config_fn is fit_config

    def test_flower_settings_live_on_server_config(self):
        from agents.delay_prediction.config import Settings

        assert not [name for name in Settings.model_fields if name.startswith("fl_")]
        assert DelayServerConfig.SERVER_ADDRESS


class TestSaveGlobalModel:
    def test_writes_weights_and_feature_names(self, tmp_path, monkeypatch):
        monkeypatch.setattr(delay_server.DelayServerConfig, "MODEL_SAVE_PATH", str(tmp_path / "models"))
        weights = ModelWeights(coefficients=(0.5,) * NUM_FEATURES, intercept=-1.0)

        path = save_global_model(weights, num_rounds=5)

        assert path.name == "global_model_round_5.json"
        payload = json.loads(path.read_text())
        assert payload["weights"] == weights.to_dict()
        assert payload["feature_names"] == FEATURE_NAMES
        assert payload["rounds"] == 5

    def test_nothing_to_save(self):
        assert save_global_model(None, num_rounds=1) is None
