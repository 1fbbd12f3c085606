"""
neuralnet package
~~~~~~~~~~~~~~~~~

Neural network backend for image classification.
Contains the matrix, activation, loss, layer, optimizer and model core,
plus image preprocessing, model persistence, the training service and
the API server.
"""

from neuralnet.activations import ActivationType, get_activation
from neuralnet.errors import (
    IndexOutOfRangeError,
    ModelNotFoundError,
    NeuralNetworkError,
    ShapeMismatchError,
    StateError,
    UnsupportedOperationError,
    ValidationError,
)
from neuralnet.layers import (
    ConvolutionalLayer,
    DenseLayer,
    InputLayer,
    LayerType,
    Padding,
    create_layer,
)
from neuralnet.losses import LossType
from neuralnet.matrix import Matrix
from neuralnet.models import (
    ConvolutionalModel,
    SequentialModel,
    model_from_data,
)
from neuralnet.optimizers import SGDOptimizer, create_optimizer

__version__ = "1.0.0"
