"""
Federated Learning Server Package

This package contains the aggregation side of delay-risk training:
- strategy: federated averaging, hybrid update and the Flower strategy
- coordinator: database-driven training-round lifecycle
- records: round, model-version and evaluation records plus store protocols
- delay_server: gRPC Flower server for remote tenants
"""

from .coordinator import TrainingRoundCoordinator
from .strategy import FederatedAveragingStrategy, federated_average, hybrid_update

__all__ = [
    "TrainingRoundCoordinator",
    "FederatedAveragingStrategy",
    "federated_average",
    "hybrid_update",
]
