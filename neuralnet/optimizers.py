"""
optimizers.py
~~~~~~~~~~~~~

Optimizers turn parameter gradients into parameter updates.

Layers never apply an update rule themselves; they hand each
(parameter, gradient) pair to an optimizer's ``update_weights``, so the rule
can be swapped in one place.
"""

import logging
from typing import Any, Dict, Type

from neuralnet.errors import ShapeMismatchError, UnsupportedOperationError, ValidationError
from neuralnet.matrix import Matrix

logger = logging.getLogger(__name__)


class Optimizer:
    """
    Base class for optimizers.

    Attributes:
        name: Optimizer identifier used in serialized configs
        learning_rate: Step size applied to gradients
    """

    name = 'optimizer'

    def __init__(self, learning_rate: float = 0.01):
        self.learning_rate = self._validate_learning_rate(learning_rate)

    @staticmethod
    def _validate_learning_rate(learning_rate: float) -> float:
        if isinstance(learning_rate, bool) or not isinstance(learning_rate, (int, float)):
            raise ValidationError(
                f"learning_rate must be a number, got {learning_rate!r}"
            )
        if learning_rate <= 0:
            raise ValidationError(
                f"learning_rate must be positive, got {learning_rate}"
            )
        return float(learning_rate)

    def update_weights(self, weights: Matrix, gradients: Matrix) -> Matrix:
        """Return updated weights; must be implemented by subclasses."""
        raise NotImplementedError

    def set_learning_rate(self, learning_rate: float) -> None:
        self.learning_rate = self._validate_learning_rate(learning_rate)
        logger.debug(f"{self.name} learning rate set to {self.learning_rate}")

    def to_json(self) -> Dict[str, Any]:
        return {'name': self.name, 'learning_rate': self.learning_rate}

    def from_json(self, config: Dict[str, Any]) -> None:
        if config.get('learning_rate') is not None:
            self.set_learning_rate(config['learning_rate'])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(learning_rate={self.learning_rate})"


class SGDOptimizer(Optimizer):
    """Plain stochastic gradient descent: w <- w - learning_rate * g."""

    name = 'sgd'

    def update_weights(self, weights: Matrix, gradients: Matrix) -> Matrix:
        """
        Apply one SGD step.

        Args:
            weights: Current parameter matrix
            gradients: Gradient matrix of the same shape

        Returns:
            Matrix: New parameter matrix (the inputs are not modified)

        Raises:
            ShapeMismatchError: If the shapes differ
        """
        if weights.shape != gradients.shape:
            raise ShapeMismatchError(
                f"Weights {weights.rows}x{weights.cols} and gradients "
                f"{gradients.rows}x{gradients.cols} must have the same shape"
            )
        return weights.subtract(gradients.multiply_scalar(self.learning_rate))


OPTIMIZERS: Dict[str, Type[Optimizer]] = {
    SGDOptimizer.name: SGDOptimizer,
}


def create_optimizer(config: Dict[str, Any]) -> Optimizer:
    """
    Rebuild an optimizer from its ``to_json`` output.

    Raises:
        UnsupportedOperationError: If the optimizer name is unknown
    """
    name = str(config.get('name', SGDOptimizer.name)).lower()
    if name not in OPTIMIZERS:
        raise UnsupportedOperationError(
            f"Unknown optimizer: {name!r}. Available: {list(OPTIMIZERS)}"
        )
    optimizer = OPTIMIZERS[name]()
    optimizer.from_json(config)
    return optimizer
