import pytest

from agents.delay_prediction.config import Settings
from agents.delay_prediction.storage import (
    InMemoryEvaluationStore,
    InMemoryModelStore,
    InMemoryRoundStore,
    InMemoryTaskRepository,
)
from agents.delay_prediction.train import LocalTrainingService

from .factories import NOW, separable_history


@pytest.fixture
def test_settings():
    """Defaults with MLflow off and no .env influence on training."""
    return Settings(
        _env_file=None,
        mlflow_enabled=False,
        learning_rate=0.01,
        epochs=100,
        regularization=0.01,
        validation_split=0.2,
        min_training_examples=5,
        min_completed_tasks=10,
        momentum=0.5,
        max_parallel_training=4,
    )


@pytest.fixture
def task_repository():
    return InMemoryTaskRepository(separable_history("tenant-a"))


@pytest.fixture
def model_store():
    return InMemoryModelStore()


@pytest.fixture
def round_store():
    return InMemoryRoundStore()


@pytest.fixture
def evaluation_store():
    return InMemoryEvaluationStore()


@pytest.fixture
def training_service(task_repository, model_store, round_store, evaluation_store, test_settings):
    return LocalTrainingService(
        task_repository,
        model_store,
        round_store,
        evaluation_store,
        settings=test_settings,
        seed=7,
        clock=lambda: NOW,
    )
