"""
Federated Learning - Weight Serialization Tests
"""

import numpy as np
import pytest

from federated_learning.client.serde import (
    ModelWeights,
    parameters_to_weights,
    weights_to_parameters,
)


class TestModelWeights:
    def test_ndarray_layout(self):
        weights = ModelWeights(coefficients=(0.1, 0.2, 0.3), intercept=-0.5)

        coefficients, intercept = weights.to_ndarrays()

        assert coefficients.dtype == np.float64
        assert coefficients.tolist() == [0.1, 0.2, 0.3]
        assert intercept.tolist() == [-0.5]

    def test_parameters_transport(self):
        weights = ModelWeights(coefficients=(1.5, -2.25), intercept=0.125)
        assert parameters_to_weights(weights_to_parameters(weights)) == weights

    def test_dict_shape(self):
        weights = ModelWeights(coefficients=(1, 2), intercept=3)

        assert weights.to_dict() == {"coefficients": [1.0, 2.0], "intercept": 3.0}
        assert ModelWeights.from_dict({"coefficients": [1, 2]}).intercept == 0.0

    def test_values_are_coerced_to_float(self):
        weights = ModelWeights(coefficients=np.array([1, 2]), intercept=np.float32(0.5))
        assert weights.coefficients == (1.0, 2.0)
        assert isinstance(weights.intercept, float)

    def test_zeros(self):
        weights = ModelWeights.zeros(8)
        assert weights.num_features == 8
        assert not any(weights.coefficients)

    @pytest.mark.parametrize(
        "ndarrays",
        [
            [np.zeros(3)],
            [np.zeros(3), np.zeros(1), np.zeros(1)],
            [np.zeros(3), np.zeros(2)],
        ],
    )
    def test_bad_ndarray_layout(self, ndarrays):
        with pytest.raises(ValueError):
            ModelWeights.from_ndarrays(ndarrays)

    @pytest.mark.parametrize("data", [{}, {"coefficients": "0.1,0.2"}])
    def test_bad_dict(self, data):
        with pytest.raises(ValueError):
            ModelWeights.from_dict(data)
