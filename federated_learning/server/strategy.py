"""
Federated Learning Server - Aggregation Strategy

This module is the Federated Aggregator of the delay-risk subsystem. It turns
the locally trained logistic-regression weights of several tenants into one
global weight set, and blends that global set back into each tenant's model.

================================================================================
DATA SOVEREIGNTY: Weights Travel, Task History Does Not
================================================================================

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                      Aggregator (This Module)                            │
    │   • Receives (coefficients, intercept, sample_count) per tenant          │
    │   • Never sees a task, an assignee or a due date                         │
    └───────────────────────────────┬─────────────────────────────────────────┘
                                    │
              ┌─────────────────────┼─────────────────────┐
              ▼                     ▼                     ▼
    ┌─────────────────┐   ┌─────────────────┐   ┌─────────────────┐
    │    Tenant A     │   │    Tenant B     │   │    Tenant C     │
    │ [Task History]  │   │ [Task History]  │   │ [Task History]  │
    │      ▼          │   │      ▼          │   │      ▼          │
    │ [Local Model]   │   │ [Local Model]   │   │ [Local Model]   │
    │  weights only ──┼───┼──► weights ◄────┼───┼── weights only  │
    └─────────────────┘   └─────────────────┘   └─────────────────┘

================================================================================
FEDERATED AVERAGING
================================================================================

    w_global = Σ (n_k / n_total) * w_k

    where:
    - w_k = coefficients (and, separately, intercept) of tenant k
    - n_k = number of training samples at tenant k
    - n_total = total samples across all participants

Example with two tenants:

    Tenant A: [1, 0], n = 100      share = 0.25
    Tenant B: [0, 1], n = 300      share = 0.75
    ──────────────────────────────────────────
    Global:   [0.25, 0.75]

A naive 50/50 mean would give [0.5, 0.5] and let a tenant with a handful of
tasks pull the model as hard as one with thousands.

================================================================================
HYBRID UPDATE
================================================================================

The global model does not overwrite a tenant's model. Each tenant's next
model version is a momentum blend:

    w_next = momentum * w_local + (1 - momentum) * w_global

momentum = 1.0 keeps the local model, momentum = 0.0 adopts the global one.
The default of 0.5 keeps each tenant close to its own task distribution
while still importing cross-tenant signal.

================================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from flwr.common import FitRes, Parameters, Scalar
from flwr.server.client_proxy import ClientProxy
from flwr.server.strategy import FedAvg

from ..client.serde import ModelWeights
from ..errors import InconsistentModelSchemaError

logger = logging.getLogger(__name__)


AGGREGATION_METHOD = "federated_averaging"


def _check_schema(weight_sets: Sequence[ModelWeights]) -> int:
    """Return the shared feature count or raise if tenants disagree."""
    lengths = [w.num_features for w in weight_sets]
    if len(set(lengths)) > 1:
        raise InconsistentModelSchemaError(
            "Weight vectors have mismatched lengths; all tenant models must share "
            "the same feature schema",
            details={"lengths": lengths},
        )
    return lengths[0]


def federated_average(updates: Sequence[Tuple[ModelWeights, int]]) -> ModelWeights:
    """
    Sample-count-weighted average of tenant weight sets.

    Args:
        updates: One ``(weights, sample_count)`` pair per participating tenant

    Returns:
        Global weight set with the same feature schema as the inputs

    Raises:
        ValueError: If ``updates`` is empty or a sample count is negative
        InconsistentModelSchemaError: If coefficient vectors differ in length
    """
    if not updates:
        raise ValueError("No model updates to aggregate")

    weight_sets = [weights for weights, _ in updates]
    sample_counts = [int(samples) for _, samples in updates]
    if any(samples < 0 for samples in sample_counts):
        raise ValueError(f"Sample counts must be non-negative, got {sample_counts}")

    num_features = _check_schema(weight_sets)

    total_samples = sum(sample_counts)
    if total_samples > 0:
        shares = [samples / total_samples for samples in sample_counts]
    else:
        # No participant reported samples; fall back to a plain mean
        shares = [1.0 / len(updates)] * len(updates)

    coefficients = np.zeros(num_features, dtype=np.float64)
    intercept = 0.0
    for weights, share in zip(weight_sets, shares):
        coefficients += weights.coefficient_array() * share
        intercept += weights.intercept * share

    return ModelWeights(coefficients=tuple(coefficients.tolist()), intercept=intercept)


def hybrid_update(
    local_weights: ModelWeights,
    global_weights: ModelWeights,
    momentum: float = 0.5,
) -> ModelWeights:
    """
    Blend a tenant's local weights with the global weights.

    Args:
        local_weights: The tenant's locally trained weights
        global_weights: Output of :func:`federated_average`
        momentum: Share kept from the local model, in [0, 1]

    Returns:
        ``momentum * local + (1 - momentum) * global`` componentwise

    Raises:
        ValueError: If ``momentum`` is outside [0, 1]
        InconsistentModelSchemaError: If the two weight sets differ in length
    """
    if not 0.0 <= momentum <= 1.0:
        raise ValueError(f"momentum must be within [0, 1], got {momentum}")
    _check_schema([local_weights, global_weights])

    local = local_weights.coefficient_array()
    global_ = global_weights.coefficient_array()
    blended = momentum * local + (1 - momentum) * global_

    return ModelWeights(
        coefficients=tuple(blended.tolist()),
        intercept=momentum * local_weights.intercept + (1 - momentum) * global_weights.intercept,
    )


class FederatedAveragingStrategy(FedAvg):
    """
    Flower strategy running the delay-risk federated average.

    Extends FedAvg so the standard Flower client sampling and evaluation
    behaviour is kept, while ``aggregate_fit`` goes through
    :func:`federated_average` (same schema check, same weighting, same
    uniform fallback) as the database-driven round coordinator.

    Example:
        >>> strategy = FederatedAveragingStrategy(min_fit_clients=2)
        >>> fl.server.start_server(strategy=strategy, ...)
    """

    def __init__(self, *, expected_num_features: Optional[int] = None, **kwargs: Any) -> None:
        """
        Args:
            expected_num_features: If given, updates with a different number
                of coefficients are rejected
            **kwargs: Passed through to :class:`flwr.server.strategy.FedAvg`
        """
        kwargs.setdefault("accept_failures", True)
        super().__init__(**kwargs)
        self.expected_num_features = expected_num_features
        self.current_round = 0
        self.latest_weights: Optional[ModelWeights] = None
        self.aggregation_history: List[Dict[str, Any]] = []

        logger.info(
            f"FederatedAveragingStrategy initialized: "
            f"expected_num_features={expected_num_features}, "
            f"accept_failures={self.accept_failures}"
        )

    def aggregate_fit(
        self,
        server_round: int,
        results: List[Tuple[ClientProxy, FitRes]],
        failures: List[Union[Tuple[ClientProxy, FitRes], BaseException]],
    ) -> Tuple[Optional[Parameters], Dict[str, Scalar]]:
        """Aggregate tenant updates into the next global parameters."""
        self.current_round = server_round

        if not results:
            logger.warning(f"Round {server_round}: No results to aggregate")
            return None, {}
        if failures and not self.accept_failures:
            logger.warning(f"Round {server_round}: {len(failures)} failures, not aggregating")
            return None, {}

        logger.info(
            f"Round {server_round}: Aggregating {len(results)} tenant updates "
            f"({len(failures)} failures)"
        )

        updates = []
        client_ids = []
        accuracies = []
        for client_proxy, fit_res in results:
            weights = ModelWeights.from_parameters(fit_res.parameters)
            if (
                self.expected_num_features is not None
                and weights.num_features != self.expected_num_features
            ):
                raise InconsistentModelSchemaError(
                    f"Client {client_proxy.cid} sent {weights.num_features} coefficients, "
                    f"expected {self.expected_num_features}",
                    details={"client_id": client_proxy.cid},
                )
            updates.append((weights, fit_res.num_examples))
            client_ids.append(client_proxy.cid)
            accuracy = (fit_res.metrics or {}).get("accuracy")
            if isinstance(accuracy, (int, float)):
                accuracies.append((float(accuracy), fit_res.num_examples))

        global_weights = federated_average(updates)
        self.latest_weights = global_weights

        total_samples = sum(samples for _, samples in updates)
        metrics: Dict[str, Scalar] = {
            "aggregation_method": AGGREGATION_METHOD,
            "round": server_round,
            "num_clients": len(updates),
            "total_samples": total_samples,
        }
        if accuracies:
            metrics["global_accuracy"] = float(np.mean([a for a, _ in accuracies]))
            weight_sum = sum(n for _, n in accuracies)
            if weight_sum > 0:
                metrics["weighted_accuracy"] = sum(a * n for a, n in accuracies) / weight_sum

        if self.fit_metrics_aggregation_fn:
            client_metrics = [(res.num_examples, res.metrics) for _, res in results]
            for key, value in self.fit_metrics_aggregation_fn(client_metrics).items():
                metrics.setdefault(key, value)

        self._record_aggregation(server_round, client_ids, updates, metrics)

        logger.info(
            f"Round {server_round} aggregation complete. "
            f"Samples: {dict(zip(client_ids, [n for _, n in updates]))}"
        )

        return global_weights.to_parameters(), metrics

    def _record_aggregation(
        self,
        server_round: int,
        client_ids: List[str],
        updates: List[Tuple[ModelWeights, int]],
        metrics: Dict[str, Scalar],
    ) -> None:
        """Keep a bounded history of aggregations for monitoring."""
        self.aggregation_history.append({
            "round": server_round,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "client_samples": {cid: n for cid, (_, n) in zip(client_ids, updates)},
            "metrics": dict(metrics),
        })
        if len(self.aggregation_history) > 100:
            self.aggregation_history = self.aggregation_history[-100:]

    def get_aggregation_summary(self) -> Dict[str, Any]:
        return {
            "total_rounds": len(self.aggregation_history),
            "recent_rounds": self.aggregation_history[-5:],
            "latest_weights": self.latest_weights.to_dict() if self.latest_weights else None,
        }
