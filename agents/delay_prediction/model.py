"""
Delay Prediction Agent - Logistic Regression Model

This module implements the per-tenant delay-risk classifier: a plain
logistic regression trained with stochastic gradient descent, plus the
evaluator used both during training and for post-hoc comparisons.

================================================================================
ARCHITECTURAL DECISION: Why hand-written SGD logistic regression?
================================================================================

1. FEDERATION-FRIENDLY PARAMETERS:
   ───────────────────────────────
   The whole model is 8 coefficients and an intercept. Averaging those
   across tenants is exactly meaningful; there are no tree structures or
   optimizer states that would need reconciling.

2. AUDITABILITY:
   ─────────────
   One SGD step per example, L2 penalty, no momentum or adaptive rates.
   Every coefficient change can be traced back to a single example.

3. SMALL DATA:
   ───────────
   Tenants may only have a dozen completed tasks. A linear model with
   regularisation and class balancing degrades gracefully where larger
   models would memorise.

TRAINING LOOP:
──────────────
    balance ─► shuffle ─► split ─► init(±0.05) ─┐
                                                 ▼
        ┌──────────────── epoch 1..E ───────────────────┐
        │ shuffle train; SGD step per example           │
        │ every 10th epoch: val loss < best? keep copy  │
        └───────────────────────────────────────────────┘
                                                 ▼
             evaluate the kept (best) weights, not the last ones

================================================================================
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from federated_learning.client.serde import ModelWeights
from federated_learning.errors import InsufficientDataError

from .features import NUM_FEATURES, TrainingExample, balance_examples

logger = logging.getLogger(__name__)

SIGMOID_CLIP = 500.0
LOG_EPSILON = 1e-15


# =============================================================================
# SCORING
# =============================================================================

def sigmoid(z):
    """Logistic function; inputs clipped to avoid overflow in exp."""
    return 1.0 / (1.0 + np.exp(-np.clip(z, -SIGMOID_CLIP, SIGMOID_CLIP)))


def predict_proba(weights: ModelWeights, features: Sequence[float]) -> float:
    """Delay probability for a single feature vector."""
    x = np.asarray(features, dtype=np.float64)
    if x.shape[0] != weights.num_features:
        raise ValueError(
            f"Feature vector has {x.shape[0]} values, model expects {weights.num_features}"
        )
    return float(sigmoid(float(np.dot(weights.coefficient_array(), x)) + weights.intercept))


def _as_matrix(examples: Sequence[TrainingExample]):
    X = np.asarray([e.features for e in examples], dtype=np.float64).reshape(len(examples), -1)
    y = np.asarray([e.label for e in examples], dtype=np.float64)
    return X, y


def binary_cross_entropy(weights: ModelWeights, examples: Sequence[TrainingExample]) -> float:
    """Mean log loss over ``examples``; 0 for an empty set."""
    if not examples:
        return 0.0
    X, y = _as_matrix(examples)
    p = sigmoid(X @ weights.coefficient_array() + weights.intercept)
    p = np.clip(p, LOG_EPSILON, 1.0 - LOG_EPSILON)
    return float(-np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p)))


# =============================================================================
# EVALUATION
# =============================================================================

@dataclass(frozen=True)
class EvaluationMetrics:
    """Confusion-matrix metrics of one weight set on one example set."""

    accuracy: float
    precision: float
    recall: float
    f1: float
    true_positives: int = 0
    true_negatives: int = 0
    false_positives: int = 0
    false_negatives: int = 0

    @property
    def total(self) -> int:
        return self.true_positives + self.true_negatives + self.false_positives + self.false_negatives

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "true_positives": self.true_positives,
            "true_negatives": self.true_negatives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
        }


def evaluate_model(
    weights: ModelWeights,
    examples: Sequence[TrainingExample],
    threshold: float = 0.5,
) -> EvaluationMetrics:
    """
    Score ``examples`` and build the 2x2 confusion matrix.

    Precision, recall and F1 are 0 whenever their denominator is 0; an empty
    example set yields all-zero metrics.
    """
    if not examples:
        return EvaluationMetrics(accuracy=0.0, precision=0.0, recall=0.0, f1=0.0)

    X, y = _as_matrix(examples)
    predicted = sigmoid(X @ weights.coefficient_array() + weights.intercept) >= threshold
    actual = y == 1.0

    tp = int(np.sum(predicted & actual))
    tn = int(np.sum(~predicted & ~actual))
    fp = int(np.sum(predicted & ~actual))
    fn = int(np.sum(~predicted & actual))

    accuracy = (tp + tn) / len(examples)
    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0

    return EvaluationMetrics(
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1=f1,
        true_positives=tp,
        true_negatives=tn,
        false_positives=fp,
        false_negatives=fn,
    )


# =============================================================================
# LOCAL TRAINER
# =============================================================================

@dataclass
class TrainingResult:
    """Output of one local training run."""

    weights: ModelWeights
    metrics: EvaluationMetrics
    loss: float
    training_accuracy: float
    training_samples: int
    validation_samples: int
    epochs: int
    duration_ms: int
    best_epoch: Optional[int] = None

    @property
    def validation_accuracy(self) -> Optional[float]:
        return self.metrics.accuracy if self.validation_samples > 0 else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": self.weights.to_dict(),
            "metrics": self.metrics.to_dict(),
            "loss": self.loss,
            "training_accuracy": self.training_accuracy,
            "validation_accuracy": self.validation_accuracy,
            "training_samples": self.training_samples,
            "validation_samples": self.validation_samples,
            "epochs": self.epochs,
            "duration_ms": self.duration_ms,
            "best_epoch": self.best_epoch,
        }


class LocalTrainer:
    """
    Trains a logistic-regression delay classifier on one tenant's examples.

    Attributes:
        learning_rate: SGD step size
        epochs: Passes over the training split (all of them always run)
        regularization: L2 penalty strength
        validation_split: Fraction held out for checkpoint selection
        validation_interval: Validate every N epochs
        init_scale: Half-width of the uniform coefficient initialisation

    Example:
        >>> trainer = LocalTrainer(rng=np.random.default_rng(7))
        >>> result = trainer.train(dataset.examples)
        >>> result.weights.coefficients
    """

    def __init__(
        self,
        learning_rate: float = 0.01,
        epochs: int = 100,
        regularization: float = 0.01,
        validation_split: float = 0.2,
        validation_interval: int = 10,
        init_scale: float = 0.05,
        min_examples: int = 5,
        threshold: float = 0.5,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if not 0.0 <= validation_split < 1.0:
            raise ValueError(f"validation_split must be within [0, 1), got {validation_split}")
        if epochs < 1:
            raise ValueError(f"epochs must be positive, got {epochs}")
        self.learning_rate = learning_rate
        self.epochs = epochs
        self.regularization = regularization
        self.validation_split = validation_split
        self.validation_interval = max(1, validation_interval)
        self.init_scale = init_scale
        self.min_examples = min_examples
        self.threshold = threshold
        self.rng = rng or np.random.default_rng()

    @classmethod
    def from_settings(cls, settings, rng: Optional[np.random.Generator] = None, **overrides) -> "LocalTrainer":
        """Build a trainer from service settings; explicit overrides win."""
        params = {
            "learning_rate": settings.learning_rate,
            "epochs": settings.epochs,
            "regularization": settings.regularization,
            "validation_split": settings.validation_split,
            "validation_interval": settings.validation_interval,
            "init_scale": settings.init_scale,
            "min_examples": settings.min_training_examples,
            "threshold": settings.delay_threshold,
        }
        params.update({k: v for k, v in overrides.items() if v is not None})
        return cls(rng=rng, **params)

    def initial_weights(self, num_features: int = NUM_FEATURES) -> ModelWeights:
        coefficients = self.rng.uniform(-self.init_scale, self.init_scale, size=num_features)
        return ModelWeights(coefficients=tuple(coefficients.tolist()), intercept=0.0)

    def split(self, examples: Sequence[TrainingExample]):
        """Shuffle, then hold out the trailing ``validation_split`` share."""
        order = self.rng.permutation(len(examples))
        shuffled = [examples[i] for i in order]
        split_index = int(np.floor(len(shuffled) * (1.0 - self.validation_split)))
        split_index = min(len(shuffled), max(1, split_index))
        return shuffled[:split_index], shuffled[split_index:]

    def train(
        self,
        examples: Sequence[TrainingExample],
        initial_weights: Optional[ModelWeights] = None,
    ) -> TrainingResult:
        """
        Run balanced SGD training with validation checkpoint selection.

        Args:
            examples: Labelled examples of one tenant
            initial_weights: Starting point (e.g. a federated model version);
                random small weights when omitted

        Returns:
            TrainingResult holding the best checkpoint and its metrics

        Raises:
            ValueError: If ``examples`` is empty
            InsufficientDataError: If there are fewer than ``min_examples``
        """
        if not examples:
            raise ValueError("Cannot train on an empty example set")
        if len(examples) < self.min_examples:
            raise InsufficientDataError(
                f"Need at least {self.min_examples} labelled examples, got {len(examples)}",
                details={"examples": len(examples), "minimum": self.min_examples},
            )

        started = time.perf_counter()

        balanced = balance_examples(examples, self.rng)
        train_set, val_set = self.split(balanced)
        X_train, y_train = _as_matrix(train_set)

        weights = initial_weights or self.initial_weights(X_train.shape[1])
        if weights.num_features != X_train.shape[1]:
            raise ValueError(
                f"Initial weights have {weights.num_features} coefficients, "
                f"examples have {X_train.shape[1]} features"
            )
        coef = weights.coefficient_array().copy()
        intercept = weights.intercept

        best: Optional[ModelWeights] = None
        best_loss = float("inf")
        best_epoch: Optional[int] = None

        for epoch in range(1, self.epochs + 1):
            for i in self.rng.permutation(len(train_set)):
                x = X_train[i]
                error = float(sigmoid(float(np.dot(coef, x)) + intercept)) - y_train[i]
                coef -= self.learning_rate * (error * x + self.regularization * coef)
                intercept -= self.learning_rate * error

            if val_set and epoch % self.validation_interval == 0:
                candidate = ModelWeights(coefficients=tuple(coef.tolist()), intercept=intercept)
                val_loss = binary_cross_entropy(candidate, val_set)
                if val_loss < best_loss:
                    best, best_loss, best_epoch = candidate, val_loss, epoch
                    logger.debug(f"Epoch {epoch}: new best validation loss {val_loss:.4f}")

        final = ModelWeights(coefficients=tuple(coef.tolist()), intercept=intercept)
        if best is None:
            # No validation checkpoint was taken; keep the trained weights
            best = final
            best_loss = binary_cross_entropy(final, val_set or train_set)

        metrics = evaluate_model(best, val_set or train_set, self.threshold)
        training_accuracy = evaluate_model(best, train_set, self.threshold).accuracy
        duration_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            f"Local training finished: {len(train_set)} train / {len(val_set)} validation, "
            f"accuracy={metrics.accuracy:.3f}, loss={best_loss:.4f}",
            extra={"best_epoch": best_epoch, "duration_ms": duration_ms},
        )

        return TrainingResult(
            weights=best,
            metrics=metrics,
            loss=best_loss,
            training_accuracy=training_accuracy,
            training_samples=len(train_set),
            validation_samples=len(val_set),
            epochs=self.epochs,
            duration_ms=duration_ms,
            best_epoch=best_epoch,
        )

