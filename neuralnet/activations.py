"""
activations.py
~~~~~~~~~~~~~~

Activation functions and their derivatives.

Each activation works on a scalar (``forward`` / ``backward``) and on a 2D
array (``forward_matrix`` / ``backward_matrix``). Softmax is the exception:
it normalizes whole rows, so only the vector and matrix forms exist.

Activations are stateless. ``get_activation`` hands out one shared instance
per type.
"""

import math
from enum import Enum
from typing import Dict, Union

import numpy as np

from neuralnet.errors import UnsupportedOperationError


class ActivationType(str, Enum):
    """Activation functions available to layers."""

    SIGMOID = 'sigmoid'
    RELU = 'relu'
    TANH = 'tanh'
    SOFTMAX = 'softmax'
    LINEAR = 'linear'


class Activation:
    """Base class for all activation functions."""

    type: ActivationType

    @property
    def name(self) -> str:
        return self.type.value

    def forward(self, x: float) -> float:
        """Compute the activation for a single value."""
        raise NotImplementedError

    def backward(self, x: float) -> float:
        """Compute the derivative at input value x."""
        raise NotImplementedError

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        """Apply the activation element-wise to a 2D array."""
        return np.vectorize(self.forward, otypes=[np.float64])(x)

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        """Apply the derivative element-wise to a 2D array of inputs."""
        return np.vectorize(self.backward, otypes=[np.float64])(x)

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        """
        Derivative expressed in terms of the activation's output.

        Layers cache their post-activation output, so backpropagation
        evaluates the derivative from that output instead of re-running the
        forward function on the pre-activation values.

        Args:
            y: Output of forward_matrix

        Returns:
            Derivative f'(x) for each element, where y = f(x)
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Sigmoid(Activation):
    """
    Logistic sigmoid.

    Mathematical form:
        forward: f(x) = 1 / (1 + e^-x)
        backward: f'(x) = f(x) * (1 - f(x))
    """

    type = ActivationType.SIGMOID

    def forward(self, x: float) -> float:
        # Split on sign so exp never overflows
        if x >= 0:
            return 1.0 / (1.0 + math.exp(-x))
        z = math.exp(x)
        return z / (1.0 + z)

    def backward(self, x: float) -> float:
        s = self.forward(x)
        return s * (1.0 - s)

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        return np.exp(-np.logaddexp(0.0, -x))

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        s = self.forward_matrix(x)
        return s * (1.0 - s)

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        return y * (1.0 - y)


class ReLU(Activation):
    """
    Rectified linear unit.

    The derivative at exactly 0 is defined as 0.
    """

    type = ActivationType.RELU

    def forward(self, x: float) -> float:
        return max(0.0, x)

    def backward(self, x: float) -> float:
        return 1.0 if x > 0 else 0.0

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, np.asarray(x, dtype=np.float64))

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.where(np.asarray(x) > 0, 1.0, 0.0)

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        return np.where(y > 0, 1.0, 0.0)


class Tanh(Activation):
    """Hyperbolic tangent, derivative 1 - tanh^2(x)."""

    type = ActivationType.TANH

    def forward(self, x: float) -> float:
        return math.tanh(x)

    def backward(self, x: float) -> float:
        t = math.tanh(x)
        return 1.0 - t * t

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(np.asarray(x, dtype=np.float64))

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        return 1.0 - np.tanh(np.asarray(x, dtype=np.float64)) ** 2

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        return 1.0 - y ** 2


class Linear(Activation):
    """Identity activation with constant derivative 1."""

    type = ActivationType.LINEAR

    def forward(self, x: float) -> float:
        return x

    def backward(self, x: float) -> float:
        return 1.0

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.array(x, dtype=np.float64)

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.ones_like(np.asarray(x, dtype=np.float64))

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        return np.ones_like(y)


class Softmax(Activation):
    """
    Row-wise softmax.

    Softmax is not decomposable per element, so the scalar forms raise
    UnsupportedOperationError. The derivative is never used on its own
    during backpropagation: paired with cross-entropy, the loss gradient
    (prediction - target) / batch_size is already the gradient with respect
    to the softmax input, so ``derivative_from_output`` is all ones.
    """

    type = ActivationType.SOFTMAX

    def forward(self, x: float) -> float:
        raise UnsupportedOperationError(
            "Softmax cannot be applied to a single value; use forward_vector "
            "or forward_matrix"
        )

    def backward(self, x: float) -> float:
        raise UnsupportedOperationError(
            "Softmax backward cannot be applied to a single value; use "
            "backward_vector or backward_matrix"
        )

    def forward_vector(self, x: np.ndarray) -> np.ndarray:
        return self.forward_matrix(np.asarray(x, dtype=np.float64).reshape(1, -1))[0]

    def forward_matrix(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        shifted = x - np.max(x, axis=1, keepdims=True)
        exp_x = np.exp(shifted)
        return exp_x / np.sum(exp_x, axis=1, keepdims=True)

    def backward_vector(self, x: np.ndarray) -> np.ndarray:
        return self.backward_matrix(np.asarray(x, dtype=np.float64).reshape(1, -1))[0]

    def backward_matrix(self, x: np.ndarray) -> np.ndarray:
        """Diagonal of the softmax Jacobian, s * (1 - s), for each row."""
        s = self.forward_matrix(x)
        return s * (1.0 - s)

    def derivative_from_output(self, y: np.ndarray) -> np.ndarray:
        return np.ones_like(y)


_ACTIVATIONS: Dict[ActivationType, Activation] = {
    ActivationType.SIGMOID: Sigmoid(),
    ActivationType.RELU: ReLU(),
    ActivationType.TANH: Tanh(),
    ActivationType.SOFTMAX: Softmax(),
    ActivationType.LINEAR: Linear(),
}


def get_activation(activation: Union[str, ActivationType, Activation]) -> Activation:
    """
    Return the shared activation instance for a type or name.

    Args:
        activation: ActivationType, its string value (case-insensitive) or
            an Activation instance (returned unchanged)

    Returns:
        Activation: Shared, stateless activation object

    Raises:
        UnsupportedOperationError: If the activation is unknown
    """
    if isinstance(activation, Activation):
        return activation
    if isinstance(activation, ActivationType):
        return _ACTIVATIONS[activation]
    try:
        activation_type = ActivationType(str(activation).lower())
    except ValueError:
        raise UnsupportedOperationError(
            f"Unknown activation type: {activation!r}. "
            f"Available: {[t.value for t in ActivationType]}"
        ) from None
    return _ACTIVATIONS[activation_type]
