"""
Delay Prediction Agent - Prediction Engine Tests

Run with: pytest agents/delay_prediction/tests/test_predictor.py -v
"""

from datetime import timedelta

import pytest

from agents.delay_prediction.features import FEATURE_NAMES, NUM_FEATURES, TaskPriority
from agents.delay_prediction.predictor import (
    MONITOR_MESSAGE,
    ON_TRACK_MESSAGE,
    DelayPredictionService,
    PredictionFactors,
    PredictionSource,
    RiskLevel,
    generate_recommendations,
    predict_delay,
    risk_level,
    rule_based_probability,
    sla_risk,
)
from agents.delay_prediction.storage import InMemoryModelStore, InMemoryTaskRepository
from federated_learning.client.serde import ModelWeights
from federated_learning.server.records import ModelVersion, NewModelVersion

from .factories import NOW, make_task


def _open_task(task_id="t1", priority=TaskPriority.MEDIUM, due_in_hours=48.0, sla_hours=None, assignee_id=None):
    """Open task whose due date is ``due_in_hours`` after NOW."""
    return make_task(
        task_id,
        priority=priority,
        due_in_hours=due_in_hours,
        sla_hours=sla_hours,
        assignee_id=assignee_id,
        created_at=NOW,
    )


def _model(coefficients=(0.0,) * NUM_FEATURES, intercept=0.0, feature_names=None, version=1):
    return ModelVersion(
        tenant_id="tenant-a",
        model_version=version,
        weights=ModelWeights(coefficients=coefficients, intercept=intercept),
        feature_names=list(feature_names or FEATURE_NAMES),
        training_samples=20,
    )


class TestRuleBasedScore:
    """Cold-start scoring through the weighted sub-scores."""

    def test_high_risk_task(self):
        task = _open_task(priority=TaskPriority.HIGH, due_in_hours=10, sla_hours=16)

        result = predict_delay(task, workload=3, completion_rate=0.8, reference_time=NOW)

        assert result.source == PredictionSource.RULE_BASED
        assert result.factors == PredictionFactors(
            priority_score=0.6,
            due_date_gap_score=0.7,
            workload_score=0.4,
            sla_risk_score=0.95,
            historical_score=0.3,
        )
        # .25*.7 + .25*.95 + .2*.4 + .15*.6 + .15*.3
        assert result.confidence_score == 0.63
        assert result.predicted_delayed is True
        assert result.risk_level == RiskLevel.HIGH
        assert result.recommendations == ["SLA timeline is at risk - consider extending deadline"]
        assert result.model_version is None

    def test_low_risk_task(self):
        task = _open_task(priority=TaskPriority.LOW, due_in_hours=200)

        result = predict_delay(task, workload=0, completion_rate=0.95, reference_time=NOW)

        assert result.confidence_score == pytest.approx(0.12, abs=0.01)
        assert result.predicted_delayed is False
        assert result.risk_level == RiskLevel.LOW
        assert result.recommendations == [ON_TRACK_MESSAGE]

    def test_borderline_not_delayed_is_medium(self):
        task = _open_task(priority=TaskPriority.MEDIUM, due_in_hours=30)

        result = predict_delay(task, workload=3, completion_rate=0.6, reference_time=NOW)

        assert result.predicted_delayed is False
        assert 0.3 < result.confidence_score < 0.5
        assert result.risk_level == RiskLevel.MEDIUM

    def test_overdue_task_gets_every_recommendation(self):
        task = _open_task(priority=TaskPriority.CRITICAL, due_in_hours=-5, sla_hours=8)

        result = predict_delay(task, workload=9, completion_rate=0.1, reference_time=NOW)

        assert result.risk_level == RiskLevel.CRITICAL
        assert len(result.recommendations) == 5
        assert "High priority task requires immediate attention" in result.recommendations

    def test_missing_due_date_is_neutral(self):
        task = _open_task(due_in_hours=None)
        result = predict_delay(task, workload=0, completion_rate=0.5, reference_time=NOW)

        assert result.factors.due_date_gap_score == 0.3
        assert result.factors.sla_risk_score == 0.3

    def test_probability_is_clamped(self):
        factors = PredictionFactors(1.0, 1.0, 1.0, 1.0, 1.0)
        assert rule_based_probability(factors) == 1.0


class TestSlaRisk:
    @pytest.mark.parametrize(
        "sla_hours, hours_remaining, expected",
        [
            (16, 10, 0.95),
            (12, 10, 0.8),
            (8, 10, 0.6),
            (6, 10, 0.4),
            (2, 10, 0.2),
            (None, 100, 0.2),
            (None, 20, 0.8),
            (5, 0, 1.0),
        ],
    )
    def test_ratio_bands(self, sla_hours, hours_remaining, expected):
        assert sla_risk(sla_hours, hours_remaining) == expected


class TestRiskLevel:
    @pytest.mark.parametrize(
        "probability, predicted, expected",
        [
            (0.85, True, RiskLevel.CRITICAL),
            (0.8, True, RiskLevel.CRITICAL),
            (0.65, True, RiskLevel.HIGH),
            (0.55, True, RiskLevel.MEDIUM),
            (0.4, False, RiskLevel.MEDIUM),
            (0.3, False, RiskLevel.LOW),
            (0.1, False, RiskLevel.LOW),
        ],
    )
    def test_bands(self, probability, predicted, expected):
        assert risk_level(probability, predicted) == expected


class TestRecommendations:
    def test_delayed_without_strong_factor_asks_to_monitor(self):
        factors = PredictionFactors(0.3, 0.5, 0.4, 0.6, 0.5)
        assert generate_recommendations(factors, 0.55, True) == [MONITOR_MESSAGE]

    def test_priority_needs_high_probability(self):
        factors = PredictionFactors(0.9, 0.1, 0.1, 0.1, 0.1)
        assert generate_recommendations(factors, 0.6, True) == [MONITOR_MESSAGE]
        assert generate_recommendations(factors, 0.75, True) == [
            "High priority task requires immediate attention"
        ]


class TestModelScore:
    def test_uses_model_when_schema_matches(self):
        task = _open_task()
        result = predict_delay(task, 0, 0.5, model=_model(intercept=2.0, version=4), reference_time=NOW)

        assert result.source == PredictionSource.MODEL
        assert result.model_version == 4
        assert result.confidence_score == 0.88
        assert result.risk_level == RiskLevel.CRITICAL
        assert len(result.features) == NUM_FEATURES

    def test_factors_reported_for_model_predictions(self):
        task = _open_task(priority=TaskPriority.HIGH, due_in_hours=10, sla_hours=16)
        result = predict_delay(task, 3, 0.8, model=_model(intercept=-3.0), reference_time=NOW)

        assert result.predicted_delayed is False
        assert result.factors.sla_risk_score == 0.95

    def test_outdated_schema_falls_back_to_rules(self):
        stale = _model(coefficients=(0.1,) * 7, feature_names=FEATURE_NAMES[:7])
        result = predict_delay(_open_task(), 0, 0.5, model=stale, reference_time=NOW)

        assert result.source == PredictionSource.RULE_BASED
        assert result.model_version is None


class TestDelayPredictionService:
    def test_looks_up_workload_and_latest_model(self):
        history = [
            make_task(f"open-{i}", assignee_id="u1", created_at=NOW - timedelta(days=1))
            for i in range(3)
        ]
        tasks = InMemoryTaskRepository(history)
        models = InMemoryModelStore()
        service = DelayPredictionService(tasks, models)

        task = _open_task(task_id="new", priority=TaskPriority.HIGH, due_in_hours=10, sla_hours=16)
        cold = service.generate_prediction(task, assignee_id="u1", reference_time=NOW)
        assert cold.source == PredictionSource.RULE_BASED
        assert cold.factors.workload_score == 0.4  # 3 open tasks

        models.insert_version(
            NewModelVersion(
                tenant_id="tenant-a",
                weights=ModelWeights(coefficients=(0.0,) * NUM_FEATURES, intercept=-2.0),
                feature_names=FEATURE_NAMES,
                training_samples=12,
            )
        )
        warm = service.generate_prediction(task, assignee_id="u1", reference_time=NOW)
        assert warm.source == PredictionSource.MODEL
        assert warm.model_version == 1
        assert warm.predicted_delayed is False

    def test_scored_task_is_not_counted_in_its_own_workload(self):
        existing = make_task("t1", assignee_id="u1", created_at=NOW - timedelta(hours=1))
        service = DelayPredictionService(InMemoryTaskRepository([existing]), InMemoryModelStore())

        result = service.generate_prediction(existing, reference_time=NOW)

        assert result.factors.workload_score == 0.1
