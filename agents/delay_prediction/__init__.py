"""
Delay Prediction Agent

A microservice that estimates the risk that a task in a multi-tenant task
tracker will miss its due date, using a per-tenant logistic regression that
is improved through federated averaging across tenants.

This agent provides:
- Rule-based cold-start scoring for tenants without a model
- Local SGD training with class balancing and checkpoint selection
- Federated training rounds that share weights, never tasks
- MLflow integration for experiment tracking
- REST API for predictions, training and round management

Components:
-----------
- config: Environment-based configuration
- features: Task records, labelling and the 8-feature extractor
- model: LocalTrainer and the evaluator
- predictor: Prediction engine (model or rule-based)
- storage: SQLAlchemy and in-memory stores
- mlflow_tracking: MLflow integration utilities
- train: Local training pipeline
- api: FastAPI application

Usage:
------
    # As API server
    python -m uvicorn agents.delay_prediction.api:app --host 0.0.0.0 --port 8005

    # As FL client
    python -m federated_learning.client.delay_client --tenant-id acme

    # Training only
    python -m agents.delay_prediction.train --tenant-id demo --synthetic 80
"""

__version__ = "1.0.0"

from .features import FEATURE_NAMES, TaskRecord
from .model import LocalTrainer
from .predictor import DelayPredictionService, PredictionResult, predict_delay

__all__ = [
    "FEATURE_NAMES",
    "TaskRecord",
    "LocalTrainer",
    "DelayPredictionService",
    "PredictionResult",
    "predict_delay",
    "__version__",
]
