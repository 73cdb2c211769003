"""
Delay Prediction Agent - MLflow Tracking Module

Optional experiment tracking for local training runs. The authoritative
model history lives in the model store (``tenant_model_weights``); MLflow is
an audit mirror that makes runs comparable across tenants and rounds:

1. Parameter logging (learning rate, epochs, L2 strength, validation split)
2. Metric logging (accuracy, precision, recall, F1, loss, sample counts)
3. Weight snapshots as JSON artifacts, tagged with tenant and round

Only aggregate numbers and weight vectors are logged. Raw task data never
leaves the tenant, so it never reaches the tracking server either.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional

import mlflow
from mlflow.exceptions import MlflowException

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class MLflowTracker:
    """
    Thin wrapper around MLflow for delay-risk training runs.

    Example:
        >>> tracker = MLflowTracker()
        >>> with tracker.start_run(run_name="tenant-a_local", tags={"tenant_id": "a"}):
        ...     tracker.log_params({"learning_rate": 0.01})
        ...     tracker.log_metrics({"accuracy": 0.83})
    """

    def __init__(
        self,
        tracking_uri: Optional[str] = None,
        experiment_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.tracking_uri = tracking_uri or self.settings.mlflow_tracking_uri
        self.experiment_name = experiment_name or self.settings.mlflow_experiment_name

        mlflow.set_tracking_uri(self.tracking_uri)
        self._setup_experiment()

        logger.info(
            "MLflow tracker initialized",
            extra={
                "tracking_uri": self.tracking_uri,
                "experiment_name": self.experiment_name,
            }
        )

    def _setup_experiment(self) -> None:
        try:
            experiment = mlflow.get_experiment_by_name(self.experiment_name)
            if experiment is None:
                experiment_id = mlflow.create_experiment(
                    self.experiment_name,
                    tags={
                        "agent": "delay-prediction",
                        "model_type": "logistic_regression",
                    }
                )
                logger.info(f"Created new experiment: {self.experiment_name} (ID: {experiment_id})")
            else:
                experiment_id = experiment.experiment_id

            mlflow.set_experiment(self.experiment_name)
            self.experiment_id = experiment_id

        except MlflowException as e:
            logger.error(f"Failed to setup MLflow experiment: {e}")
            raise

    @contextmanager
    def start_run(
        self,
        run_name: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Generator[mlflow.ActiveRun, None, None]:
        now = datetime.now(timezone.utc)
        default_tags = {
            "environment": self.settings.environment,
            "service": self.settings.service_name,
            "timestamp": now.isoformat(),
        }
        if tags:
            default_tags.update({k: str(v) for k, v in tags.items() if v is not None})

        run_name = run_name or f"run_{now.strftime('%Y%m%d_%H%M%S')}"

        try:
            with mlflow.start_run(run_name=run_name, tags=default_tags) as run:
                logger.info(f"Started MLflow run: {run.info.run_id}")
                yield run
        except MlflowException as e:
            logger.error(f"MLflow run failed: {e}")
            raise

    def log_params(self, params: Dict[str, Any]) -> None:
        try:
            mlflow.log_params({k: str(v) for k, v in params.items()})
        except MlflowException as e:
            logger.error(f"Failed to log parameters: {e}")
            raise

    def log_metrics(self, metrics: Dict[str, Optional[float]], step: Optional[int] = None) -> None:
        """Log numeric metrics; ``None`` values (e.g. no validation split) are skipped."""
        present = {k: float(v) for k, v in metrics.items() if v is not None}
        try:
            mlflow.log_metrics(present, step=step)
            logger.debug(f"Logged {len(present)} metrics: {present}")
        except MlflowException as e:
            logger.error(f"Failed to log metrics: {e}")
            raise

    def log_weights(self, weights: Dict[str, Any], artifact_file: str = "weights.json") -> None:
        try:
            mlflow.log_dict(weights, artifact_file)
        except MlflowException as e:
            logger.error(f"Failed to log weights: {e}")
            raise


def log_training_run(
    summary: Dict[str, Any],
    hyperparameters: Dict[str, Any],
    tracker: Optional[MLflowTracker] = None,
) -> str:
    """
    Log one ``train_local_model`` summary as an MLflow run.

    Args:
        summary: ``TrainingSummary.to_dict()`` output
        hyperparameters: Trainer settings used for the run
        tracker: Existing tracker; a new one is created when omitted

    Returns:
        MLflow run ID
    """
    tracker = tracker or MLflowTracker()
    tenant_id = summary["tenant_id"]
    round_id = summary.get("round_id")
    run_name = f"{tenant_id}_{'round_' + round_id if round_id else 'local'}"

    with tracker.start_run(
        run_name=run_name,
        tags={"tenant_id": tenant_id, "round_id": round_id, "degenerate": summary.get("degenerate")},
    ) as run:
        tracker.log_params(hyperparameters)
        metrics = summary.get("metrics", {})
        tracker.log_metrics({
            "accuracy": metrics.get("accuracy"),
            "precision": metrics.get("precision"),
            "recall": metrics.get("recall"),
            "f1": metrics.get("f1"),
            "loss": summary.get("loss"),
            "training_samples": summary.get("training_samples"),
            "validation_samples": summary.get("validation_samples"),
            "training_duration_ms": summary.get("training_duration_ms"),
        })
        tracker.log_weights({
            "feature_names": summary.get("feature_names"),
            "weights": summary.get("weights"),
            "model_version": summary.get("model_version"),
        })
        return run.info.run_id
