"""
Delay Prediction Agent - Local Training Pipeline Tests

Covers train_local_model / evaluate_models against in-memory stores and the
end-to-end single-tenant federated round.

Run with: pytest agents/delay_prediction/tests/test_train.py -v
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from agents.delay_prediction.features import FEATURE_NAMES, NUM_FEATURES, TaskStatus
from agents.delay_prediction.storage import InMemoryTaskRepository
from agents.delay_prediction.train import LocalTrainingService, generate_synthetic_tasks
from federated_learning.errors import (
    InsufficientDataError,
    RoundStateError,
    StaleOrMissingRoundError,
)
from federated_learning.server.coordinator import TrainingRoundCoordinator
from federated_learning.server.records import RoundStatus

from .factories import NOW, make_task, on_time_task, separable_history


def _service(tasks, model_store, round_store, evaluation_store, settings, **kwargs):
    return LocalTrainingService(
        InMemoryTaskRepository(tasks),
        model_store,
        round_store,
        evaluation_store,
        settings=settings,
        seed=11,
        clock=lambda: NOW,
        **kwargs,
    )


class TestTrainLocalModel:
    def test_trains_and_stores_first_version(self, training_service, model_store):
        summary = training_service.train_local_model("tenant-a")

        assert summary.model_version == 1
        assert summary.positive_examples == 7
        assert summary.negative_examples == 5
        assert summary.training_samples == 11
        assert summary.validation_samples == 3
        assert summary.validation_accuracy >= 0.5
        assert summary.degenerate is False
        assert summary.feature_names == FEATURE_NAMES

        stored = model_store.latest("tenant-a")
        assert stored.weights == summary.weights
        assert stored.source == "local"
        assert stored.round_id is None
        assert stored.last_trained_at == NOW

    def test_each_call_appends_a_version(self, training_service, model_store):
        training_service.train_local_model("tenant-a")
        training_service.train_local_model("tenant-a", epochs=20)

        assert [v.model_version for v in model_store.list_versions("tenant-a")] == [1, 2]

    def test_hyperparameter_overrides(self, training_service):
        summary = training_service.train_local_model("tenant-a", epochs=15, validation_split=0.0)
        assert summary.epochs == 15
        assert summary.validation_samples == 0
        assert summary.validation_accuracy is None

    def test_too_few_completed_tasks(self, model_store, round_store, evaluation_store, test_settings):
        service = _service(separable_history(delayed=5, on_time=4), model_store, round_store,
                           evaluation_store, test_settings)

        with pytest.raises(InsufficientDataError) as exc_info:
            service.train_local_model("tenant-a")

        assert exc_info.value.details["task_count"] == 9
        assert model_store.latest("tenant-a") is None

    def test_too_few_labelled_examples(self, model_store, round_store, evaluation_store, test_settings):
        no_due_date = [
            make_task(f"nd-{i}", due_in_hours=None, completed_after_hours=10) for i in range(10)
        ]
        service = _service(no_due_date + separable_history(delayed=2, on_time=2), model_store,
                           round_store, evaluation_store, test_settings)

        with pytest.raises(InsufficientDataError) as exc_info:
            service.train_local_model("tenant-a")

        assert exc_info.value.details["example_count"] == 4

    def test_open_tasks_do_not_count(self, model_store, round_store, evaluation_store, test_settings):
        open_tasks = [make_task(f"open-{i}", status=TaskStatus.IN_PROGRESS) for i in range(20)]
        service = _service(open_tasks, model_store, round_store, evaluation_store, test_settings)

        with pytest.raises(InsufficientDataError):
            service.train_local_model("tenant-a")

    def test_single_class_history_is_flagged_degenerate(
        self, model_store, round_store, evaluation_store, test_settings
    ):
        service = _service([on_time_task(f"ok-{i}") for i in range(12)], model_store, round_store,
                           evaluation_store, test_settings)

        summary = service.train_local_model("tenant-a")

        assert summary.degenerate is True
        assert model_store.latest("tenant-a").degenerate is True


class TestTrainingInsideRound:
    def test_missing_round(self, training_service):
        with pytest.raises(StaleOrMissingRoundError):
            training_service.train_local_model("tenant-a", round_id="no-such-round")

    def test_round_not_training(self, training_service, round_store):
        training_round = round_store.create_round(["tenant-a"], RoundStatus.AGGREGATING, NOW)

        with pytest.raises(RoundStateError) as exc_info:
            training_service.train_local_model("tenant-a", round_id=training_round.id)

        assert exc_info.value.details["expected_status"] == "training"
        assert exc_info.value.details["terminal"] is False

    def test_finished_round_rejects_training(self, training_service, round_store):
        training_round = round_store.create_round(["tenant-a"], RoundStatus.FAILED, NOW)

        with pytest.raises(RoundStateError) as exc_info:
            training_service.train_local_model("tenant-a", round_id=training_round.id)

        assert exc_info.value.details["terminal"] is True
        assert "already 'failed'" in exc_info.value.message

    def test_writes_training_metadata(self, training_service, round_store, model_store):
        training_round = round_store.create_round(["tenant-a"], RoundStatus.TRAINING, NOW)

        summary = training_service.train_local_model("tenant-a", round_id=training_round.id)

        (metadata,) = round_store.list_training_metadata(training_round.id)
        assert metadata.tenant_id == "tenant-a"
        assert metadata.local_weights == summary.weights
        assert metadata.training_samples == summary.training_samples
        assert metadata.epochs_completed == 100
        assert model_store.latest("tenant-a").round_id == training_round.id


class TestMlflowLogging:
    def test_run_id_recorded_when_enabled(self, task_repository, model_store, round_store, test_settings):
        settings = test_settings.model_copy(update={"mlflow_enabled": True})
        service = LocalTrainingService(
            task_repository, model_store, round_store, settings=settings, seed=1, tracker=MagicMock()
        )

        with patch(
            "agents.delay_prediction.mlflow_tracking.log_training_run", return_value="run-123"
        ) as log_run:
            summary = service.train_local_model("tenant-a", epochs=10)

        assert summary.mlflow_run_id == "run-123"
        hyperparameters = log_run.call_args.kwargs["hyperparameters"]
        assert hyperparameters["epochs"] == 10

    def test_tracking_failure_does_not_fail_training(
        self, task_repository, model_store, round_store, test_settings
    ):
        settings = test_settings.model_copy(update={"mlflow_enabled": True})
        service = LocalTrainingService(
            task_repository, model_store, round_store, settings=settings, seed=1, tracker=MagicMock()
        )

        with patch(
            "agents.delay_prediction.mlflow_tracking.log_training_run",
            side_effect=ConnectionError("tracking server down"),
        ):
            summary = service.train_local_model("tenant-a", epochs=10)

        assert summary.mlflow_run_id is None
        assert model_store.latest("tenant-a") is not None


class TestEvaluateModels:
    def test_requires_a_model(self, training_service):
        with pytest.raises(InsufficientDataError):
            training_service.evaluate_models("tenant-a")

    def test_requires_labelled_tasks(self, training_service):
        with pytest.raises(InsufficientDataError):
            training_service.evaluate_models("tenant-empty")

    def test_local_evaluation_is_stored(self, training_service, evaluation_store):
        training_service.train_local_model("tenant-a")

        (record,) = training_service.evaluate_models("tenant-a")

        assert record.evaluation_type == "local"
        assert record.model_version == 1
        assert record.test_samples == 12
        assert evaluation_store.list_evaluations("tenant-a")[0].id == record.id

    def test_round_without_global_model(self, training_service, round_store):
        training_service.train_local_model("tenant-a")
        training_round = round_store.create_round(["tenant-a"], RoundStatus.TRAINING, NOW)

        with pytest.raises(RoundStateError):
            training_service.evaluate_models("tenant-a", round_id=training_round.id)


class TestSingleTenantRound:
    """12 completed tasks (7 late, 5 on time), one tenant, one round."""

    @pytest.fixture
    def coordinator(self, task_repository, round_store, model_store, training_service, test_settings):
        return TrainingRoundCoordinator(
            tenants=task_repository,
            rounds=round_store,
            models=model_store,
            train_fn=training_service.train_local_model,
            feature_names=FEATURE_NAMES,
            min_completed_tasks=test_settings.min_completed_tasks,
            momentum=test_settings.momentum,
            clock=lambda: NOW,
        )

    def test_global_weights_equal_local_weights(self, coordinator, round_store, model_store):
        summary = coordinator.start_round()

        assert summary.status == RoundStatus.AGGREGATING
        assert summary.participating_tenants == ["tenant-a"]
        local_weights = round_store.list_training_metadata(summary.round_id)[0].local_weights
        assert summary.training_results[0].result["validation_accuracy"] >= 0.5

        aggregation = coordinator.aggregate_round(summary.round_id)

        assert aggregation.global_weights == local_weights
        assert aggregation.tenant_model_versions == {"tenant-a": 2}

        federated = model_store.latest("tenant-a")
        assert federated.source == "federated"
        assert federated.round_id == summary.round_id
        assert federated.weights == local_weights

        completed = round_store.get_round(summary.round_id)
        assert completed.status == RoundStatus.COMPLETED
        assert completed.global_weights == local_weights
        assert completed.total_samples == 11

    def test_federated_vs_local_evaluation(self, coordinator, training_service):
        summary = coordinator.start_round()
        coordinator.aggregate_round(summary.round_id)

        records = training_service.evaluate_models("tenant-a", round_id=summary.round_id)

        assert [r.evaluation_type for r in records] == ["local", "federated"]
        assert records[1].round_id == summary.round_id
        # One participant: global and hybrid weights coincide
        assert records[0].accuracy == records[1].accuracy


class TestSyntheticTasks:
    def test_reproducible_and_trainable(self):
        first = generate_synthetic_tasks("demo", 80, rng=np.random.default_rng(5), now=NOW)
        second = generate_synthetic_tasks("demo", 80, rng=np.random.default_rng(5), now=NOW)

        assert first == second
        assert len(first) == 80
        assert all(t.tenant_id == "demo" for t in first)
        assert sum(t.is_completed for t in first) >= 10

    def test_features_have_canonical_length(self):
        from agents.delay_prediction.features import build_training_dataset

        tasks = generate_synthetic_tasks("demo", 40, rng=np.random.default_rng(2), now=NOW)
        dataset = build_training_dataset(tasks)
        assert all(len(e.features) == NUM_FEATURES for e in dataset.examples)
