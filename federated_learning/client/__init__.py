"""
Federated Learning Client Package

This package contains the tenant side of delay-risk training:
- serde: ModelWeights and its Flower / JSON wire formats
- delay_client: Flower NumPyClient training on one tenant's tasks
"""

from .serde import ModelWeights, parameters_to_weights, weights_to_parameters

__all__ = [
    "ModelWeights",
    "parameters_to_weights",
    "weights_to_parameters",
]
