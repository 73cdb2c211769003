"""
Federated Learning - Model Weight Serialization

The delay-risk classifier is a logistic regression: one coefficient per
feature plus a scalar intercept. That is the only thing that ever crosses a
tenant boundary, so this module owns its container and every wire format it
travels in.

================================================================================
SERIALIZATION FLOW
================================================================================

    ┌─────────────────────┐
    │    ModelWeights     │   coefficients: (c_0 ... c_7), intercept: b
    └──────────┬──────────┘
               │
               ├──► to_ndarrays()   -> [float64[8], float64[1]]   (Flower NDArrays)
               │         │
               │         ▼ ndarrays_to_parameters()
               │    Flower Parameters (gRPC transport)
               │
               └──► to_dict()       -> {"coefficients": [...], "intercept": b}
                         │
                         ▼
                    JSON column in the model / round stores

Both directions are lossless for float64 values.

================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Sequence, Tuple

import numpy as np
from flwr.common import NDArrays, Parameters, ndarrays_to_parameters, parameters_to_ndarrays


@dataclass(frozen=True)
class ModelWeights:
    """
    Immutable logistic-regression parameters.

    Attributes:
        coefficients: One weight per feature, in canonical feature order
        intercept: Bias term
    """

    coefficients: Tuple[float, ...]
    intercept: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "coefficients", tuple(float(c) for c in self.coefficients))
        object.__setattr__(self, "intercept", float(self.intercept))

    @property
    def num_features(self) -> int:
        return len(self.coefficients)

    def coefficient_array(self) -> np.ndarray:
        return np.asarray(self.coefficients, dtype=np.float64)

    # ------------------------------------------------------------------
    # numpy / Flower
    # ------------------------------------------------------------------

    def to_ndarrays(self) -> NDArrays:
        """Return ``[coefficients, [intercept]]`` as float64 arrays."""
        return [
            self.coefficient_array(),
            np.asarray([self.intercept], dtype=np.float64),
        ]

    @classmethod
    def from_ndarrays(cls, ndarrays: Sequence[np.ndarray]) -> "ModelWeights":
        """
        Rebuild weights from the layout produced by :meth:`to_ndarrays`.

        Raises:
            ValueError: If the list does not hold exactly two arrays or the
                intercept array is not a single value
        """
        if len(ndarrays) != 2:
            raise ValueError(
                f"Expected 2 arrays (coefficients, intercept), got {len(ndarrays)}"
            )
        coefficients, intercept = ndarrays
        intercept = np.asarray(intercept, dtype=np.float64).ravel()
        if intercept.size != 1:
            raise ValueError(f"Intercept array must hold one value, got {intercept.size}")
        return cls(
            coefficients=tuple(np.asarray(coefficients, dtype=np.float64).ravel().tolist()),
            intercept=float(intercept[0]),
        )

    def to_parameters(self) -> Parameters:
        return ndarrays_to_parameters(self.to_ndarrays())

    @classmethod
    def from_parameters(cls, parameters: Parameters) -> "ModelWeights":
        return cls.from_ndarrays(parameters_to_ndarrays(parameters))

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coefficients": list(self.coefficients),
            "intercept": self.intercept,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelWeights":
        """
        Parse the JSON shape stored in the model and round stores.

        Raises:
            ValueError: If ``coefficients`` is missing or not a list
        """
        coefficients = data.get("coefficients")
        if not isinstance(coefficients, (list, tuple)):
            raise ValueError("Model weights require a 'coefficients' list")
        return cls(coefficients=tuple(coefficients), intercept=data.get("intercept", 0.0))

    @classmethod
    def zeros(cls, num_features: int) -> "ModelWeights":
        return cls(coefficients=(0.0,) * num_features, intercept=0.0)


def weights_to_parameters(weights: ModelWeights) -> Parameters:
    """Convenience wrapper used by the Flower strategy and client."""
    return weights.to_parameters()


def parameters_to_weights(parameters: Parameters) -> ModelWeights:
    """Inverse of :func:`weights_to_parameters`."""
    return ModelWeights.from_parameters(parameters)
