"""
Delay Prediction Agent - Prediction Engine

Scores an open task for delay risk. Tenants with a trained model are scored
through the logistic regression; tenants without one (cold start) fall back
to a transparent weighted rule set, so a prediction is always available.

Both paths report the same five factor scores. A factor is always "higher
means riskier" regardless of which path produced the probability, and the
recommendations are derived from those factors.

    task ─┬─► rule sub-scores ──────────────► factors ──► recommendations
          │         │
          │         └─ no usable model ─► weighted sum ─┐
          │                                              ├─► probability ─► risk level
          └─► extract_features ─► sigmoid(w·x + b) ─────┘
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from federated_learning.server.records import ModelStore, ModelVersion

from .features import (
    FEATURE_NAMES,
    AssigneeHistory,
    TaskPriority,
    TaskRecord,
    hours_between,
    extract_features,
)
from .model import predict_proba

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PredictionSource(str, Enum):
    RULE_BASED = "rule_based"
    MODEL = "model"


PRIORITY_WEIGHTS: Dict[TaskPriority, float] = {
    TaskPriority.LOW: 0.1,
    TaskPriority.MEDIUM: 0.3,
    TaskPriority.HIGH: 0.6,
    TaskPriority.CRITICAL: 0.9,
}

FACTOR_WEIGHTS = {
    "due_date_gap_score": 0.25,
    "sla_risk_score": 0.25,
    "workload_score": 0.20,
    "priority_score": 0.15,
    "historical_score": 0.15,
}

ON_TRACK_MESSAGE = "Task is on track for on-time completion"
MONITOR_MESSAGE = "Monitor task progress closely"


@dataclass(frozen=True)
class PredictionFactors:
    """Interpretable risk sub-scores in [0, 1]; higher means riskier."""

    priority_score: float
    due_date_gap_score: float
    workload_score: float
    sla_risk_score: float
    historical_score: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "priority_score": self.priority_score,
            "due_date_gap_score": self.due_date_gap_score,
            "workload_score": self.workload_score,
            "sla_risk_score": self.sla_risk_score,
            "historical_score": self.historical_score,
        }


@dataclass
class PredictionResult:
    predicted_delayed: bool
    confidence_score: float
    risk_level: RiskLevel
    factors: PredictionFactors
    recommendations: List[str] = field(default_factory=list)
    source: PredictionSource = PredictionSource.RULE_BASED
    model_version: Optional[int] = None
    features: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "predicted_delayed": self.predicted_delayed,
            "confidence_score": self.confidence_score,
            "risk_level": self.risk_level.value,
            "factors": self.factors.to_dict(),
            "recommendations": list(self.recommendations),
            "source": self.source.value,
            "model_version": self.model_version,
            "features": self.features,
        }


# =============================================================================
# RULE-BASED SUB-SCORES
# =============================================================================

def due_date_urgency(hours_remaining: Optional[float]) -> float:
    if hours_remaining is None:
        return 0.3
    if hours_remaining < 0:
        return 1.0
    if hours_remaining < 4:
        return 0.9
    if hours_remaining < 24:
        return 0.7
    if hours_remaining < 48:
        return 0.5
    if hours_remaining < 72:
        return 0.3
    if hours_remaining < 168:
        return 0.2
    return 0.1


def workload_saturation(active_tasks: int) -> float:
    if active_tasks <= 0:
        return 0.1
    if active_tasks <= 2:
        return 0.2
    if active_tasks <= 4:
        return 0.4
    if active_tasks <= 6:
        return 0.6
    if active_tasks <= 8:
        return 0.8
    return 0.95


def sla_risk(
    sla_hours: Optional[float],
    hours_remaining: Optional[float],
    default_completion_hours: float = 24.0,
) -> float:
    """Score the estimated effort against the time left before the due date."""
    if hours_remaining is None:
        return 0.3
    if hours_remaining <= 0:
        return 1.0

    estimated = sla_hours if sla_hours and sla_hours > 0 else default_completion_hours
    ratio = estimated / hours_remaining
    if ratio > 1.5:
        return 0.95
    if ratio > 1.0:
        return 0.8
    if ratio > 0.75:
        return 0.6
    if ratio > 0.5:
        return 0.4
    return 0.2


def historical_risk(completion_rate: float) -> float:
    if completion_rate >= 0.9:
        return 0.1
    if completion_rate >= 0.75:
        return 0.3
    if completion_rate >= 0.5:
        return 0.5
    if completion_rate >= 0.25:
        return 0.7
    return 0.9


def compute_factors(
    task: TaskRecord,
    workload: int,
    completion_rate: float,
    reference_time: datetime,
    default_completion_hours: float = 24.0,
) -> PredictionFactors:
    hours_remaining = (
        hours_between(task.due_date, reference_time) if task.due_date is not None else None
    )
    return PredictionFactors(
        priority_score=PRIORITY_WEIGHTS[TaskPriority(task.priority)],
        due_date_gap_score=due_date_urgency(hours_remaining),
        workload_score=workload_saturation(workload),
        sla_risk_score=sla_risk(task.sla_hours, hours_remaining, default_completion_hours),
        historical_score=historical_risk(completion_rate),
    )


def rule_based_probability(factors: PredictionFactors) -> float:
    score = sum(getattr(factors, name) * weight for name, weight in FACTOR_WEIGHTS.items())
    return min(1.0, max(0.0, score))


# =============================================================================
# RISK LEVEL AND RECOMMENDATIONS
# =============================================================================

def risk_level(probability: float, predicted_delayed: bool) -> RiskLevel:
    if probability >= 0.8:
        return RiskLevel.CRITICAL
    if probability >= 0.6:
        return RiskLevel.HIGH
    if probability >= 0.5:
        return RiskLevel.MEDIUM
    if probability > 0.3 and not predicted_delayed:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def generate_recommendations(
    factors: PredictionFactors,
    probability: float,
    predicted_delayed: bool,
) -> List[str]:
    if not predicted_delayed:
        return [ON_TRACK_MESSAGE]

    recommendations = []
    if factors.workload_score > 0.6:
        recommendations.append("Consider reassigning to reduce workload imbalance")
    if factors.due_date_gap_score > 0.7:
        recommendations.append("Deadline is approaching - prioritize this task")
    if factors.sla_risk_score > 0.7:
        recommendations.append("SLA timeline is at risk - consider extending deadline")
    if factors.historical_score > 0.6:
        recommendations.append("Assignee may benefit from additional support")
    if factors.priority_score > 0.5 and probability > 0.7:
        recommendations.append("High priority task requires immediate attention")

    return recommendations or [MONITOR_MESSAGE]


# =============================================================================
# SCORING
# =============================================================================

def model_is_usable(model: Optional[ModelVersion]) -> bool:
    """A stored model is only used if it was trained on the current feature schema."""
    if model is None:
        return False
    if list(model.feature_names) != FEATURE_NAMES or model.weights.num_features != len(FEATURE_NAMES):
        logger.warning(
            f"Model v{model.model_version} for tenant {model.tenant_id} has an outdated "
            f"feature schema; using rule-based scoring",
            extra={"feature_names": list(model.feature_names)},
        )
        return False
    return True


def predict_delay(
    task: TaskRecord,
    workload: int,
    completion_rate: float,
    model: Optional[ModelVersion] = None,
    reference_time: Optional[datetime] = None,
    threshold: float = 0.5,
    default_completion_hours: float = 24.0,
) -> PredictionResult:
    """
    Score one task. Pure: no I/O, no state.

    Args:
        task: The task to score
        workload: Assignee's current open-task count
        completion_rate: Assignee's historical on-time share
        model: Tenant's latest model version, if any
        reference_time: "Now"; defaults to the current UTC time
        threshold: Probability at which a task counts as predicted delayed
        default_completion_hours: Effort estimate for tasks without an SLA

    Returns:
        PredictionResult from the model when usable, else from the rules
    """
    reference_time = reference_time or datetime.now(timezone.utc)
    factors = compute_factors(task, workload, completion_rate, reference_time, default_completion_hours)

    if model_is_usable(model):
        features = extract_features(task, workload, completion_rate, reference_time)
        probability = predict_proba(model.weights, features)
        source = PredictionSource.MODEL
        model_version = model.model_version
        feature_list = list(features)
    else:
        probability = rule_based_probability(factors)
        source = PredictionSource.RULE_BASED
        model_version = None
        feature_list = None

    predicted = probability >= threshold
    return PredictionResult(
        predicted_delayed=predicted,
        confidence_score=round(probability, 2),
        risk_level=risk_level(probability, predicted),
        factors=factors,
        recommendations=generate_recommendations(factors, probability, predicted),
        source=source,
        model_version=model_version,
        features=feature_list,
    )


class DelayPredictionService:
    """
    Looks up assignee context and the tenant's latest model, then scores.

    Example:
        >>> service = DelayPredictionService(task_repository, model_store)
        >>> service.generate_prediction(task, assignee_id="user-7").risk_level
        <RiskLevel.HIGH: 'high'>
    """

    def __init__(
        self,
        tasks,
        models: ModelStore,
        threshold: float = 0.5,
        default_completion_hours: float = 24.0,
    ) -> None:
        self.tasks = tasks
        self.models = models
        self.threshold = threshold
        self.default_completion_hours = default_completion_hours

    def generate_prediction(
        self,
        task: TaskRecord,
        assignee_id: Optional[str] = None,
        reference_time: Optional[datetime] = None,
    ) -> PredictionResult:
        reference_time = reference_time or datetime.now(timezone.utc)
        assignee_id = assignee_id if assignee_id is not None else task.assignee_id

        history = AssigneeHistory(self.tasks.list_tasks(task.tenant_id))
        workload = history.workload(assignee_id, reference_time, exclude_task_id=task.id)
        completion_rate = history.completion_rate(assignee_id, reference_time)

        result = predict_delay(
            task,
            workload=workload,
            completion_rate=completion_rate,
            model=self.models.latest(task.tenant_id),
            reference_time=reference_time,
            threshold=self.threshold,
            default_completion_hours=self.default_completion_hours,
        )
        logger.debug(
            f"Prediction for task {task.id}: p={result.confidence_score} ({result.source.value})",
            extra={"tenant_id": task.tenant_id, "risk_level": result.risk_level.value},
        )
        return result
