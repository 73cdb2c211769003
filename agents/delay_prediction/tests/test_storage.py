"""
Delay Prediction Agent - Storage Tests

SQL stores run against a throwaway SQLite file; the in-memory stores are
checked for the same contract.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from agents.delay_prediction.features import FEATURE_NAMES, NUM_FEATURES, TaskStatus
from agents.delay_prediction.storage import (
    Database,
    InMemoryEvaluationStore,
    InMemoryModelStore,
    InMemoryRoundStore,
    SqlEvaluationStore,
    SqlModelStore,
    SqlRoundStore,
    SqlTaskRepository,
)
from federated_learning.client.serde import ModelWeights
from federated_learning.server.records import (
    EvaluationRecord,
    NewModelVersion,
    RoundStatus,
    TenantTrainingMetadata,
)

from .factories import NOW, delayed_task, make_task, on_time_task


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'delay.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture(params=["sql", "memory"])
def model_store(request, db):
    return SqlModelStore(db) if request.param == "sql" else InMemoryModelStore()


@pytest.fixture(params=["sql", "memory"])
def round_store(request, db):
    return SqlRoundStore(db) if request.param == "sql" else InMemoryRoundStore()


@pytest.fixture(params=["sql", "memory"])
def evaluation_store(request, db):
    return SqlEvaluationStore(db) if request.param == "sql" else InMemoryEvaluationStore()


def _new_version(tenant_id="tenant-a", intercept=0.0, **overrides):
    params = dict(
        tenant_id=tenant_id,
        weights=ModelWeights(coefficients=(0.1,) * NUM_FEATURES, intercept=intercept),
        feature_names=FEATURE_NAMES,
        training_samples=10,
        accuracy=0.8,
        f1=0.75,
        last_trained_at=NOW,
    )
    params.update(overrides)
    return NewModelVersion(**params)


def _metadata(round_id, tenant_id, samples=10):
    return TenantTrainingMetadata(
        tenant_id=tenant_id,
        round_id=round_id,
        local_weights=ModelWeights(coefficients=(0.5,) * NUM_FEATURES, intercept=0.1),
        training_samples=samples,
        validation_samples=2,
        training_accuracy=0.9,
        validation_accuracy=0.5,
        loss=0.4,
        epochs_completed=100,
        training_duration_ms=12,
    )


class TestSqlTaskRepository:
    def test_round_trip_keeps_utc_timestamps(self, db):
        tasks = SqlTaskRepository(db)
        original = delayed_task("t1", assignee_id="u1")
        tasks.add_tasks([original])

        (loaded,) = tasks.list_tasks("tenant-a")

        assert loaded == original

    def test_filters_and_tenant_directory(self, db):
        tasks = SqlTaskRepository(db)
        tasks.add_tasks([
            delayed_task("a-1"),
            on_time_task("a-2"),
            make_task("a-3", status=TaskStatus.IN_PROGRESS),
            make_task("a-4", due_in_hours=None),
            on_time_task("b-1", tenant_id="tenant-b"),
        ])

        assert tasks.list_tenant_ids() == ["tenant-a", "tenant-b"]
        assert tasks.count_completed_tasks("tenant-a") == 2
        assert {t.id for t in tasks.list_tasks("tenant-a", completed=False)} == {"a-3", "a-4"}
        assert {t.id for t in tasks.list_tasks("tenant-a", with_due_date=False)} == {"a-4"}
        assert tasks.list_tasks("tenant-c") == []

    def test_add_is_an_upsert(self, db):
        tasks = SqlTaskRepository(db)
        tasks.add_tasks([make_task("t1")])
        tasks.add_tasks([make_task("t1", completed_after_hours=5)])

        (loaded,) = tasks.list_tasks("tenant-a")
        assert loaded.is_completed


class TestModelStore:
    """Append-only versioning, shared by both implementations."""

    def test_versions_increment_per_tenant(self, model_store):
        first = model_store.insert_version(_new_version())
        second = model_store.insert_version(_new_version(intercept=1.0, source="federated", round_id="r1"))
        other = model_store.insert_version(_new_version(tenant_id="tenant-b"))

        assert (first.model_version, second.model_version, other.model_version) == (1, 2, 1)
        assert model_store.latest("tenant-a").model_version == 2
        assert model_store.latest("tenant-a").source == "federated"
        assert model_store.latest("tenant-c") is None

    def test_older_versions_are_kept(self, model_store):
        model_store.insert_version(_new_version(intercept=0.0))
        model_store.insert_version(_new_version(intercept=1.0))

        versions = model_store.list_versions("tenant-a")

        assert [v.model_version for v in versions] == [1, 2]
        assert versions[0].weights.intercept == 0.0

    def test_weights_round_trip(self, model_store):
        stored = model_store.insert_version(_new_version(degenerate=True))
        loaded = model_store.latest("tenant-a")

        assert loaded.weights == stored.weights
        assert loaded.feature_names == FEATURE_NAMES
        assert loaded.f1 == 0.75
        assert loaded.degenerate is True


class TestRoundStore:
    def test_round_numbers_increase(self, round_store):
        first = round_store.create_round(["tenant-a"], RoundStatus.TRAINING, NOW)
        second = round_store.create_round(["tenant-b"], RoundStatus.TRAINING, NOW)

        assert (first.round_number, second.round_number) == (1, 2)
        assert [r.round_number for r in round_store.list_rounds()] == [2, 1]
        assert round_store.get_round("missing") is None

    def test_conditional_transition(self, round_store):
        training_round = round_store.create_round(["tenant-a", "tenant-b"], RoundStatus.TRAINING, NOW)

        assert round_store.transition_round(
            training_round.id,
            RoundStatus.TRAINING,
            RoundStatus.AGGREGATING,
            participating_tenants=["tenant-a"],
            metadata={"training_results": []},
        )
        # Second caller expecting the old status loses
        assert not round_store.transition_round(
            training_round.id, RoundStatus.TRAINING, RoundStatus.FAILED
        )

        stored = round_store.get_round(training_round.id)
        assert stored.status == RoundStatus.AGGREGATING
        assert stored.participating_tenants == ["tenant-a"]
        assert stored.metadata == {"training_results": []}

    def test_completion_merges_metadata(self, round_store):
        training_round = round_store.create_round(["tenant-a"], RoundStatus.AGGREGATING, NOW)
        round_store.transition_round(
            training_round.id, RoundStatus.AGGREGATING, RoundStatus.AGGREGATING, metadata={"a": 1}
        )

        completed_at = NOW + timedelta(minutes=5)
        assert round_store.transition_round(
            training_round.id,
            RoundStatus.AGGREGATING,
            RoundStatus.COMPLETED,
            global_weights=ModelWeights(coefficients=(0.2,) * NUM_FEATURES, intercept=0.3),
            total_samples=40,
            global_accuracy=0.7,
            completed_at=completed_at,
            metadata={"b": 2},
        )

        stored = round_store.get_round(training_round.id)
        assert stored.status == RoundStatus.COMPLETED
        assert stored.global_weights.intercept == 0.3
        assert stored.total_samples == 40
        assert stored.completed_at == completed_at
        assert stored.metadata == {"a": 1, "b": 2}

    def test_training_metadata(self, round_store):
        training_round = round_store.create_round(["tenant-a", "tenant-b"], RoundStatus.TRAINING, NOW)
        round_store.add_training_metadata(_metadata(training_round.id, "tenant-b", samples=30))
        round_store.add_training_metadata(_metadata(training_round.id, "tenant-a"))

        rows = round_store.list_training_metadata(training_round.id)

        assert [r.tenant_id for r in rows] == ["tenant-a", "tenant-b"]
        assert rows[1].training_samples == 30
        assert rows[0].local_weights.intercept == 0.1
        assert round_store.list_training_metadata("other") == []


def test_duplicate_training_metadata_rejected_in_sql(db):
    rounds = SqlRoundStore(db)
    training_round = rounds.create_round(["tenant-a"], RoundStatus.TRAINING, NOW)
    rounds.add_training_metadata(_metadata(training_round.id, "tenant-a"))

    with pytest.raises(IntegrityError):
        rounds.add_training_metadata(_metadata(training_round.id, "tenant-a"))


def test_duplicate_training_metadata_rejected_in_memory():
    rounds = InMemoryRoundStore()
    training_round = rounds.create_round(["tenant-a"], RoundStatus.TRAINING, NOW)
    rounds.add_training_metadata(_metadata(training_round.id, "tenant-a"))

    with pytest.raises(ValueError):
        rounds.add_training_metadata(_metadata(training_round.id, "tenant-a"))


class TestEvaluationStore:
    def test_most_recent_first(self, evaluation_store):
        for i, evaluation_type in enumerate(["local", "federated"]):
            evaluation_store.add_evaluation(
                EvaluationRecord(
                    tenant_id="tenant-a",
                    evaluation_type=evaluation_type,
                    test_samples=12,
                    accuracy=0.5 + i / 10,
                    precision=0.5,
                    recall=0.5,
                    f1=0.5,
                    true_positives=3,
                    true_negatives=3,
                    false_positives=3,
                    false_negatives=3,
                    evaluated_at=NOW + timedelta(minutes=i),
                )
            )

        records = evaluation_store.list_evaluations("tenant-a")

        assert [r.evaluation_type for r in records] == ["federated", "local"]
        assert records[0].id is not None
        assert evaluation_store.list_evaluations("tenant-b") == []
