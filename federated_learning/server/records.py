"""
Federated Learning Server - Round and Model Records

Plain records exchanged between the round coordinator, the local trainer and
the storage layer, plus the storage contracts the coordinator relies on.

Round lifecycle:

    pending ──► training ──► aggregating ──► completed
                   │
                   └──────► failed   (no tenant finished local training)

Model versions and training-metadata rows are append-only. Only the round
record changes after creation, and only through conditional status
transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..client.serde import ModelWeights
from ..errors import RoundStateError


class RoundStatus(str, Enum):
    """Lifecycle status of a federated training round."""

    PENDING = "pending"
    TRAINING = "training"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RoundStatus.COMPLETED, RoundStatus.FAILED)


@dataclass
class TrainingRound:
    """One federated cycle: local training at each tenant plus one aggregation."""

    id: str
    round_number: int
    status: RoundStatus
    participating_tenants: List[str] = field(default_factory=list)
    aggregation_method: str = "federated_averaging"
    global_weights: Optional[ModelWeights] = None
    total_samples: int = 0
    global_accuracy: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def require_status(self, expected: RoundStatus) -> None:
        """Raise RoundStateError unless the round is in ``expected``."""
        if self.status == expected:
            return
        if self.status.is_terminal:
            message = f"Round {self.id} is already '{self.status.value}'"
        else:
            message = f"Round {self.id} is '{self.status.value}', expected '{expected.value}'"
        raise RoundStateError(
            message,
            details={
                "round_id": self.id,
                "status": self.status.value,
                "expected_status": expected.value,
                "terminal": self.status.is_terminal,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "round_number": self.round_number,
            "status": self.status.value,
            "participating_tenants": list(self.participating_tenants),
            "aggregation_method": self.aggregation_method,
            "global_weights": self.global_weights.to_dict() if self.global_weights else None,
            "total_samples": self.total_samples,
            "global_accuracy": self.global_accuracy,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class TenantTrainingMetadata:
    """Hand-off artifact from one tenant's local training to the aggregator."""

    tenant_id: str
    round_id: str
    local_weights: ModelWeights
    training_samples: int
    validation_samples: int
    training_accuracy: Optional[float]
    validation_accuracy: Optional[float]
    loss: Optional[float]
    epochs_completed: int
    training_duration_ms: int
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ModelVersion:
    """Immutable row of a tenant's versioned model history."""

    tenant_id: str
    model_version: int
    weights: ModelWeights
    feature_names: List[str]
    training_samples: int
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1: Optional[float] = None
    last_trained_at: Optional[datetime] = None
    source: str = "local"
    round_id: Optional[str] = None
    degenerate: bool = False
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "model_version": self.model_version,
            "weights": self.weights.to_dict(),
            "feature_names": list(self.feature_names),
            "training_samples": self.training_samples,
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "last_trained_at": self.last_trained_at.isoformat() if self.last_trained_at else None,
            "source": self.source,
            "round_id": self.round_id,
            "degenerate": self.degenerate,
        }


@dataclass(frozen=True)
class NewModelVersion:
    """Everything needed to append a model version; the store assigns the number."""

    tenant_id: str
    weights: ModelWeights
    feature_names: Sequence[str]
    training_samples: int
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1: Optional[float] = None
    last_trained_at: Optional[datetime] = None
    source: str = "local"
    round_id: Optional[str] = None
    degenerate: bool = False


@dataclass(frozen=True)
class EvaluationRecord:
    """Stored outcome of evaluating one weight set against one tenant's examples."""

    tenant_id: str
    evaluation_type: str
    test_samples: int
    accuracy: float
    precision: float
    recall: float
    f1: float
    true_positives: int
    true_negatives: int
    false_positives: int
    false_negatives: int
    round_id: Optional[str] = None
    model_version: Optional[int] = None
    evaluated_at: Optional[datetime] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "evaluation_type": self.evaluation_type,
            "round_id": self.round_id,
            "model_version": self.model_version,
            "test_samples": self.test_samples,
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "true_positives": self.true_positives,
            "true_negatives": self.true_negatives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


# =============================================================================
# STORAGE CONTRACTS
# =============================================================================

class TenantDirectory(Protocol):
    def list_tenant_ids(self) -> List[str]: ...

    def count_completed_tasks(self, tenant_id: str) -> int: ...


class ModelStore(Protocol):
    def latest(self, tenant_id: str) -> Optional[ModelVersion]: ...

    def insert_version(self, new_version: NewModelVersion) -> ModelVersion: ...


class RoundStore(Protocol):
    def create_round(
        self,
        participating_tenants: Sequence[str],
        status: RoundStatus,
        started_at: datetime,
        aggregation_method: str = "federated_averaging",
    ) -> TrainingRound:
        """Insert a round numbered ``max(round_number) + 1``."""
        ...

    def get_round(self, round_id: str) -> Optional[TrainingRound]: ...

    def list_rounds(self, limit: int = 10) -> List[TrainingRound]:
        """Most recent first."""
        ...

    def transition_round(
        self,
        round_id: str,
        expected_status: RoundStatus,
        new_status: RoundStatus,
        *,
        participating_tenants: Optional[Sequence[str]] = None,
        global_weights: Optional[ModelWeights] = None,
        total_samples: Optional[int] = None,
        global_accuracy: Optional[float] = None,
        completed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Conditionally move a round from ``expected_status`` to ``new_status``.

        Returns False, leaving the row untouched, when the round is not in
        ``expected_status``. ``metadata`` is merged into existing metadata.
        """
        ...

    def add_training_metadata(self, record: TenantTrainingMetadata) -> TenantTrainingMetadata: ...

    def list_training_metadata(self, round_id: str) -> List[TenantTrainingMetadata]: ...


class EvaluationStore(Protocol):
    def add_evaluation(self, record: EvaluationRecord) -> EvaluationRecord: ...

    def list_evaluations(self, tenant_id: str) -> List[EvaluationRecord]: ...
