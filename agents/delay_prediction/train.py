"""
Delay Prediction Agent - Local Training Pipeline

This module is the per-tenant unit of work of the federated cycle:

================================================================================
train_local_model(tenant_id, round_id=None)
================================================================================

    1. Validate the round (if any)        round must exist and be 'training'
    2. Load the tenant's task history     >= 10 completed tasks required
    3. Label + extract features           point-in-time assignee context
    4. Train (LocalTrainer)               >= 5 labelled examples required
    5. Append a model version             source='local', degenerate flag
    6. Hand-off metadata (round only)     consumed by aggregation
    7. Mirror to MLflow (optional)

Without a round id the call simply refreshes one tenant's model outside the
federated cycle. Raw tasks are read here and nowhere else; only the weights
and scalar metrics leave this function.

It also provides ``evaluate_models`` for federated-vs-local comparison and a
command-line entry point.
================================================================================
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from federated_learning.client.serde import ModelWeights
from federated_learning.errors import (
    InsufficientDataError,
    RoundStateError,
    StaleOrMissingRoundError,
)
from federated_learning.server.records import (
    EvaluationRecord,
    EvaluationStore,
    ModelStore,
    NewModelVersion,
    RoundStatus,
    RoundStore,
    TenantTrainingMetadata,
)

from .config import Settings, get_settings
from .features import (
    FEATURE_NAMES,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    build_training_dataset,
)
from .model import EvaluationMetrics, LocalTrainer, evaluate_model
from .storage import TaskSource

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrainingSummary:
    """What ``train_local_model`` reports back to callers and to the round."""

    tenant_id: str
    model_version: int
    weights: ModelWeights
    metrics: EvaluationMetrics
    loss: float
    training_accuracy: float
    validation_accuracy: Optional[float]
    training_samples: int
    validation_samples: int
    epochs: int
    training_duration_ms: int
    positive_examples: int
    negative_examples: int
    degenerate: bool = False
    round_id: Optional[str] = None
    feature_names: List[str] = field(default_factory=lambda: list(FEATURE_NAMES))
    mlflow_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "round_id": self.round_id,
            "model_version": self.model_version,
            "weights": self.weights.to_dict(),
            "feature_names": list(self.feature_names),
            "metrics": self.metrics.to_dict(),
            "loss": self.loss,
            "training_accuracy": self.training_accuracy,
            "validation_accuracy": self.validation_accuracy,
            "training_samples": self.training_samples,
            "validation_samples": self.validation_samples,
            "epochs": self.epochs,
            "training_duration_ms": self.training_duration_ms,
            "positive_examples": self.positive_examples,
            "negative_examples": self.negative_examples,
            "degenerate": self.degenerate,
            "mlflow_run_id": self.mlflow_run_id,
        }


class LocalTrainingService:
    """
    Trains and evaluates tenant models against the configured stores.

    Safe to call from several threads at once (one call per tenant): each
    call draws its own random generator from a shared seed sequence.

    Example:
        >>> service = LocalTrainingService(tasks, models, rounds, evaluations)
        >>> summary = service.train_local_model("tenant-a")
        >>> summary.model_version
        1
    """

    def __init__(
        self,
        tasks: TaskSource,
        models: ModelStore,
        rounds: RoundStore,
        evaluations: Optional[EvaluationStore] = None,
        settings: Optional[Settings] = None,
        seed: Optional[int] = None,
        tracker: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tasks = tasks
        self.models = models
        self.rounds = rounds
        self.evaluations = evaluations
        self.settings = settings or get_settings()
        self.tracker = tracker
        self.clock = clock
        self._seeds = np.random.SeedSequence(seed)
        self._seed_lock = threading.Lock()

    def _next_rng(self) -> np.random.Generator:
        with self._seed_lock:
            child = self._seeds.spawn(1)[0]
        return np.random.default_rng(child)

    def _require_training_round(self, round_id: str) -> None:
        training_round = self.rounds.get_round(round_id)
        if training_round is None:
            raise StaleOrMissingRoundError(
                f"Training round not found: {round_id}", details={"round_id": round_id}
            )
        training_round.require_status(RoundStatus.TRAINING)

    def train_local_model(
        self,
        tenant_id: str,
        round_id: Optional[str] = None,
        *,
        learning_rate: Optional[float] = None,
        epochs: Optional[int] = None,
        regularization: Optional[float] = None,
        validation_split: Optional[float] = None,
    ) -> TrainingSummary:
        """
        Train one tenant's model and append it as a new version.

        Args:
            tenant_id: Tenant to train
            round_id: Federated round this run belongs to, if any
            learning_rate: Overrides settings
            epochs: Overrides settings
            regularization: Overrides settings
            validation_split: Overrides settings

        Returns:
            TrainingSummary of the stored version

        Raises:
            InsufficientDataError: Too few completed tasks or labelled examples
            StaleOrMissingRoundError: ``round_id`` does not exist
            RoundStateError: The round is not accepting training results
        """
        if round_id is not None:
            self._require_training_round(round_id)

        history = self.tasks.list_tasks(tenant_id)
        completed = [t for t in history if t.is_completed and t.completed_at is not None]
        if len(completed) < self.settings.min_completed_tasks:
            raise InsufficientDataError(
                f"Need at least {self.settings.min_completed_tasks} completed tasks for training",
                details={"tenant_id": tenant_id, "task_count": len(completed)},
            )

        dataset = build_training_dataset(history)
        if len(dataset.examples) < self.settings.min_training_examples:
            raise InsufficientDataError(
                f"Need at least {self.settings.min_training_examples} tasks with due dates for training",
                details={"tenant_id": tenant_id, "example_count": len(dataset.examples)},
            )

        degenerate = dataset.is_single_class
        if degenerate:
            logger.warning(
                f"Tenant {tenant_id} has single-class training data; "
                f"the model will be stored as degenerate",
                extra={"positives": dataset.positive_count, "negatives": dataset.negative_count},
            )

        trainer = LocalTrainer.from_settings(
            self.settings,
            rng=self._next_rng(),
            learning_rate=learning_rate,
            epochs=epochs,
            regularization=regularization,
            validation_split=validation_split,
        )
        result = trainer.train(dataset.examples)

        version = self.models.insert_version(
            NewModelVersion(
                tenant_id=tenant_id,
                weights=result.weights,
                feature_names=dataset.feature_names,
                training_samples=result.training_samples,
                accuracy=result.metrics.accuracy,
                precision=result.metrics.precision,
                recall=result.metrics.recall,
                f1=result.metrics.f1,
                last_trained_at=self.clock(),
                source="local",
                round_id=round_id,
                degenerate=degenerate,
            )
        )

        if round_id is not None:
            self.rounds.add_training_metadata(
                TenantTrainingMetadata(
                    tenant_id=tenant_id,
                    round_id=round_id,
                    local_weights=result.weights,
                    training_samples=result.training_samples,
                    validation_samples=result.validation_samples,
                    training_accuracy=result.training_accuracy,
                    validation_accuracy=result.validation_accuracy,
                    loss=result.loss,
                    epochs_completed=result.epochs,
                    training_duration_ms=result.duration_ms,
                )
            )

        summary = TrainingSummary(
            tenant_id=tenant_id,
            round_id=round_id,
            model_version=version.model_version,
            weights=result.weights,
            feature_names=list(dataset.feature_names),
            metrics=result.metrics,
            loss=result.loss,
            training_accuracy=result.training_accuracy,
            validation_accuracy=result.validation_accuracy,
            training_samples=result.training_samples,
            validation_samples=result.validation_samples,
            epochs=result.epochs,
            training_duration_ms=result.duration_ms,
            positive_examples=dataset.positive_count,
            negative_examples=dataset.negative_count,
            degenerate=degenerate,
        )

        logger.info(
            f"Trained tenant {tenant_id}: model v{version.model_version}, "
            f"accuracy={result.metrics.accuracy:.3f}",
            extra={"round_id": round_id, "training_samples": result.training_samples},
        )

        if self.settings.mlflow_enabled:
            summary.mlflow_run_id = self._log_to_mlflow(summary, trainer)

        return summary

    def _log_to_mlflow(self, summary: TrainingSummary, trainer: LocalTrainer) -> Optional[str]:
        from .mlflow_tracking import MLflowTracker, log_training_run

        try:
            self.tracker = self.tracker or MLflowTracker(settings=self.settings)
            return log_training_run(
                summary.to_dict(),
                hyperparameters={
                    "learning_rate": trainer.learning_rate,
                    "epochs": trainer.epochs,
                    "regularization": trainer.regularization,
                    "validation_split": trainer.validation_split,
                },
                tracker=self.tracker,
            )
        except Exception as e:
            logger.warning(f"Could not log training run to MLflow: {e}")
            return None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_models(self, tenant_id: str, round_id: Optional[str] = None) -> List[EvaluationRecord]:
        """
        Evaluate the tenant's latest model and, optionally, a round's global model.

        Both are scored on the tenant's own labelled examples; the results are
        stored (when an evaluation store is configured) and returned.

        Raises:
            InsufficientDataError: No labelled examples, or nothing to evaluate
            StaleOrMissingRoundError: ``round_id`` does not exist
            RoundStateError: The round has no global weights yet
        """
        dataset = build_training_dataset(self.tasks.list_tasks(tenant_id))
        if not dataset.examples:
            raise InsufficientDataError(
                "No labelled tasks available for evaluation", details={"tenant_id": tenant_id}
            )

        candidates = []
        latest = self.models.latest(tenant_id)
        if latest is not None:
            candidates.append(("local", latest.weights, latest.model_version, None))

        if round_id is not None:
            training_round = self.rounds.get_round(round_id)
            if training_round is None:
                raise StaleOrMissingRoundError(
                    f"Training round not found: {round_id}", details={"round_id": round_id}
                )
            if training_round.status != RoundStatus.COMPLETED or training_round.global_weights is None:
                raise RoundStateError(
                    f"Round {round_id} has no global model yet",
                    details={"round_id": round_id, "status": training_round.status.value},
                )
            candidates.append(("federated", training_round.global_weights, None, round_id))

        if not candidates:
            raise InsufficientDataError(
                f"Tenant {tenant_id} has no model to evaluate", details={"tenant_id": tenant_id}
            )

        records = []
        for evaluation_type, weights, model_version, eval_round_id in candidates:
            metrics = evaluate_model(weights, dataset.examples, self.settings.delay_threshold)
            record = EvaluationRecord(
                tenant_id=tenant_id,
                evaluation_type=evaluation_type,
                round_id=eval_round_id,
                model_version=model_version,
                test_samples=len(dataset.examples),
                accuracy=metrics.accuracy,
                precision=metrics.precision,
                recall=metrics.recall,
                f1=metrics.f1,
                true_positives=metrics.true_positives,
                true_negatives=metrics.true_negatives,
                false_positives=metrics.false_positives,
                false_negatives=metrics.false_negatives,
                evaluated_at=self.clock(),
            )
            if self.evaluations is not None:
                record = self.evaluations.add_evaluation(record)
            records.append(record)
            logger.info(
                f"Evaluated {evaluation_type} model for tenant {tenant_id}: "
                f"accuracy={metrics.accuracy:.3f}, f1={metrics.f1:.3f}"
            )
        return records


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

def generate_synthetic_tasks(
    tenant_id: str,
    n_tasks: int = 60,
    n_assignees: int = 4,
    rng: Optional[np.random.Generator] = None,
    now: Optional[datetime] = None,
) -> List[TaskRecord]:
    """
    Generate a plausible task history for demos and smoke tests.

    Delays are more likely for high/critical priorities, tight deadlines and
    SLAs that exceed the time available, so a trained model has signal to find.
    """
    rng = rng or np.random.default_rng()
    now = now or utcnow()
    priorities = list(TaskPriority)
    tasks = []

    for i in range(n_tasks):
        priority = priorities[int(rng.choice(4, p=[0.3, 0.35, 0.25, 0.1]))]
        created_at = now - timedelta(days=float(rng.uniform(5, 90)))
        window_hours = float(rng.choice([4, 24, 72, 168, 336]))
        due_date = created_at + timedelta(hours=window_hours)
        sla_hours = float(rng.choice([8, 24, 48, 96])) if rng.random() < 0.6 else None
        description = "x" * int(rng.integers(20, 800))

        risk = 0.15 + 0.15 * (priority in (TaskPriority.HIGH, TaskPriority.CRITICAL))
        risk += 0.3 if window_hours <= 24 else 0.0
        risk += 0.2 if sla_hours and sla_hours > window_hours else 0.0
        delayed = rng.random() < min(0.9, risk)
        completion_hours = window_hours * (float(rng.uniform(1.05, 2.0)) if delayed else float(rng.uniform(0.2, 0.95)))

        completed = created_at + timedelta(hours=completion_hours) < now and rng.random() < 0.85
        tasks.append(
            TaskRecord(
                id=f"{tenant_id}-task-{i:04d}",
                tenant_id=tenant_id,
                priority=priority,
                status=TaskStatus.COMPLETED if completed else TaskStatus.IN_PROGRESS,
                due_date=due_date,
                sla_hours=sla_hours,
                assignee_id=f"{tenant_id}-user-{int(rng.integers(0, n_assignees))}",
                description=description,
                created_at=created_at,
                started_at=created_at,
                completed_at=created_at + timedelta(hours=completion_hours) if completed else None,
            )
        )
    return tasks


def main() -> None:
    """
    Command-line interface for local training.

    Usage:
        python -m agents.delay_prediction.train --tenant-id TENANT [--round-id ID]
        python -m agents.delay_prediction.train --tenant-id demo --synthetic 80 --evaluate
    """
    import argparse

    from .storage import (
        Database,
        SqlEvaluationStore,
        SqlModelStore,
        SqlRoundStore,
        SqlTaskRepository,
    )

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Train a tenant's delay-risk model")
    parser.add_argument("--tenant-id", type=str, required=True, help="Tenant to train")
    parser.add_argument("--round-id", type=str, default=None, help="Federated round to report into")
    parser.add_argument("--database-url", type=str, default=settings.database_url)
    parser.add_argument("--epochs", type=int, default=None)
    parser.add_argument("--learning-rate", type=float, default=None)
    parser.add_argument(
        "--synthetic",
        type=int,
        default=0,
        metavar="N",
        help="Seed N synthetic tasks for the tenant before training",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--evaluate", action="store_true", help="Evaluate after training")

    args = parser.parse_args()

    db = Database(args.database_url, echo=settings.db_echo)
    db.create_all()
    tasks = SqlTaskRepository(db)

    if args.synthetic:
        added = tasks.add_tasks(
            generate_synthetic_tasks(args.tenant_id, args.synthetic, rng=np.random.default_rng(args.seed))
        )
        logger.info(f"Seeded {added} synthetic tasks for tenant {args.tenant_id}")

    service = LocalTrainingService(
        tasks=tasks,
        models=SqlModelStore(db),
        rounds=SqlRoundStore(db),
        evaluations=SqlEvaluationStore(db),
        settings=settings,
        seed=args.seed,
    )

    try:
        summary = service.train_local_model(
            args.tenant_id,
            round_id=args.round_id,
            epochs=args.epochs,
            learning_rate=args.learning_rate,
        )
        print(f"\n{'='*60}")
        print("TRAINING COMPLETE")
        print(f"{'='*60}")
        print(f"Tenant: {summary.tenant_id}")
        print(f"Model version: {summary.model_version}")
        print(f"Samples: {summary.training_samples} train / {summary.validation_samples} validation")
        print(f"Accuracy: {summary.metrics.accuracy:.3f}")
        print(f"F1: {summary.metrics.f1:.3f}")
        print(f"Loss: {summary.loss:.4f}")
        if summary.degenerate:
            print("WARNING: single-class training data, model is degenerate")
        print(f"{'='*60}")

        if args.evaluate:
            for record in service.evaluate_models(args.tenant_id):
                print(
                    f"{record.evaluation_type}: accuracy={record.accuracy:.3f} "
                    f"precision={record.precision:.3f} recall={record.recall:.3f} f1={record.f1:.3f}"
                )
    finally:
        db.dispose()


if __name__ == "__main__":
    main()
