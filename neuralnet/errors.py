"""
errors.py
~~~~~~~~~

Exception hierarchy for the neural network engine.

Every error derives from NeuralNetworkError and from the closest builtin
exception, so callers can catch either the library-specific type or the
usual Python one (e.g. ValueError for a shape mismatch).
"""


class NeuralNetworkError(Exception):
    """Base class for all errors raised by the neural network engine."""


class ShapeMismatchError(NeuralNetworkError, ValueError):
    """Raised when matrix or layer dimensions are incompatible."""


class IndexOutOfRangeError(NeuralNetworkError, IndexError):
    """Raised when a matrix is accessed outside its bounds."""


class StateError(NeuralNetworkError, RuntimeError):
    """Raised when an operation is called in the wrong lifecycle state."""


class UnsupportedOperationError(NeuralNetworkError, NotImplementedError):
    """Raised for operations or configuration values that are not supported."""


class ValidationError(NeuralNetworkError, ValueError):
    """Raised when a payload (weights, model data, request) is malformed."""


class ModelNotFoundError(NeuralNetworkError, LookupError):
    """Raised when a model or training run cannot be found."""
