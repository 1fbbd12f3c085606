"""
losses.py
~~~~~~~~~

Loss functions and their gradients with respect to the network output.

Both functions take 2D arrays of shape (batch_size, outputs). The
cross-entropy gradient is the combined softmax + cross-entropy gradient, i.e.
the gradient with respect to the softmax *input*, which is why a model pairs
it with a softmax output layer.
"""

from enum import Enum
from typing import Callable, Dict, Tuple, Union

import numpy as np

from neuralnet.errors import ShapeMismatchError, UnsupportedOperationError

EPSILON = 1e-15


class LossType(str, Enum):
    """Loss functions a model can be trained with."""

    MSE = 'mse'
    CROSS_ENTROPY = 'cross_entropy'


def _check_shapes(outputs: np.ndarray, targets: np.ndarray, name: str) -> None:
    if outputs.shape != targets.shape:
        raise ShapeMismatchError(
            f"{name}: output shape {outputs.shape} must match target shape "
            f"{targets.shape}"
        )


def mse_loss(outputs, targets) -> float:
    """
    Mean squared error over all elements.

    Loss = (1/n) * sum((output - target)^2), n = batch_size * outputs
    """
    outputs = np.asarray(outputs, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)
    _check_shapes(outputs, targets, 'MSE')
    return float(np.mean((outputs - targets) ** 2))


def mse_gradient(outputs, targets) -> np.ndarray:
    """Gradient of MSE: 2 * (output - target) / n."""
    outputs = np.asarray(outputs, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)
    _check_shapes(outputs, targets, 'MSE')
    return 2.0 * (outputs - targets) / outputs.size


def cross_entropy_loss(predictions, targets) -> float:
    """
    Categorical cross-entropy averaged over the batch.

    Loss = -(1/N) * sum_samples sum_classes target * log(prediction)

    Predictions are clipped to [1e-15, 1 - 1e-15] so log never sees 0.

    Args:
        predictions: Softmax probabilities (batch_size, num_classes)
        targets: One-hot labels (batch_size, num_classes)

    Returns:
        float: Non-negative loss value
    """
    predictions = np.asarray(predictions, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)
    _check_shapes(predictions, targets, 'Cross-entropy')
    clipped = np.clip(predictions, EPSILON, 1.0 - EPSILON)
    return float(-np.sum(targets * np.log(clipped)) / predictions.shape[0])


def cross_entropy_gradient(predictions, targets) -> np.ndarray:
    """
    Combined softmax + cross-entropy gradient: (prediction - target) / N.

    Uses the unclipped predictions.
    """
    predictions = np.asarray(predictions, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)
    _check_shapes(predictions, targets, 'Cross-entropy')
    return (predictions - targets) / predictions.shape[0]


LossFunction = Tuple[Callable[..., float], Callable[..., np.ndarray]]

_LOSSES: Dict[LossType, LossFunction] = {
    LossType.MSE: (mse_loss, mse_gradient),
    LossType.CROSS_ENTROPY: (cross_entropy_loss, cross_entropy_gradient),
}


def get_loss(loss: Union[str, LossType]) -> LossFunction:
    """
    Look up a (loss, gradient) pair.

    Raises:
        UnsupportedOperationError: If the loss type is unknown
    """
    if not isinstance(loss, LossType):
        try:
            loss = LossType(str(loss).lower())
        except ValueError:
            raise UnsupportedOperationError(
                f"Unknown loss function: {loss!r}. "
                f"Available: {[t.value for t in LossType]}"
            ) from None
    return _LOSSES[loss]
