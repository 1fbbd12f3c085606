"""
layers.py
~~~~~~~~~

Network layers: input, dense (fully connected) and 2D convolutional.

All layers exchange 2D arrays of shape (batch_size, features). A
convolutional layer reshapes each row to a channel-last (height, width,
channels) volume internally and flattens its output back to a row.

Layers own their parameters (Matrix objects). Only ``backward`` and
``set_weights`` replace them, and every update goes through an optimizer's
``update_weights``.
"""

import logging
import math
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from neuralnet.activations import Activation, ActivationType, get_activation
from neuralnet.errors import (
    ShapeMismatchError,
    StateError,
    UnsupportedOperationError,
    ValidationError,
)
from neuralnet.matrix import Matrix
from neuralnet.optimizers import Optimizer, SGDOptimizer

logger = logging.getLogger(__name__)

WeightsMap = Dict[str, List[List[float]]]


class LayerType(str, Enum):
    """Layer kinds known to the layer factory."""

    INPUT = 'input'
    DENSE = 'dense'
    CONVOLUTIONAL = 'convolutional'
    POOLING = 'pooling'


class Padding(str, Enum):
    VALID = 'valid'
    SAME = 'same'


def _generate_id(layer_type: LayerType) -> str:
    return f"{layer_type.value}_{uuid.uuid4().hex[:8]}"


def _pair(value: Union[int, Sequence[int]], name: str) -> Tuple[int, int]:
    """Normalize an int or a 2-sequence to a (height, width) tuple."""
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        pair = (int(value), int(value))
    else:
        try:
            pair = tuple(int(v) for v in value)
        except TypeError:
            raise ValidationError(f"{name} must be an int or a pair, got {value!r}") from None
        if len(pair) != 2:
            raise ValidationError(f"{name} must have 2 values, got {value!r}")
    if pair[0] < 1 or pair[1] < 1:
        raise ValidationError(f"{name} must be positive, got {value!r}")
    return pair


class Layer:
    """
    Base class for all layers.

    Attributes:
        id: Unique identifier, used to match persisted weights
        type: LayerType of the concrete layer
        input_shape: Shape of one input sample
        output_shape: Shape of one output sample
        activation: Shared activation object or None
        initialized: Whether parameters have been allocated
    """

    type: LayerType

    def __init__(
        self,
        layer_id: Optional[str],
        input_shape: Sequence[int],
        output_shape: Sequence[int],
        activation: Union[str, ActivationType, Activation, None] = None
    ):
        self.id = layer_id or _generate_id(self.type)
        self.input_shape = tuple(int(d) for d in input_shape)
        self.output_shape = tuple(int(d) for d in output_shape)
        if any(d < 1 for d in self.input_shape + self.output_shape):
            raise ValidationError(
                f"Layer '{self.id}': shapes must be positive, got "
                f"{self.input_shape} -> {self.output_shape}"
            )
        self.activation = get_activation(activation) if activation is not None else None
        self.initialized = False

    @property
    def input_size(self) -> int:
        """Number of features in one flattened input sample."""
        return int(np.prod(self.input_shape))

    @property
    def output_size(self) -> int:
        """Number of features in one flattened output sample."""
        return int(np.prod(self.output_shape))

    def initialize(self) -> None:
        """Allocate parameters. Calling it again is a no-op."""
        if self.initialized:
            return
        self._initialize_parameters()
        self.initialized = True
        logger.debug(
            f"Initialized {self.type.value} layer '{self.id}' "
            f"{self.input_shape} -> {self.output_shape}"
        )

    def _initialize_parameters(self) -> None:
        pass

    def forward(self, inputs) -> np.ndarray:
        raise NotImplementedError

    def backward(
        self,
        output_gradient,
        learning_rate: float,
        optimizer: Optional[Optimizer] = None
    ) -> np.ndarray:
        raise NotImplementedError

    def get_weights(self) -> WeightsMap:
        raise NotImplementedError

    def set_weights(self, weights: WeightsMap) -> None:
        raise NotImplementedError

    def parameter_count(self) -> int:
        if not self.initialized:
            return 0
        return sum(
            np.asarray(values).size for values in self.get_weights().values()
        )

    def get_config(self) -> Dict[str, Any]:
        """Constructor arguments needed to rebuild this layer."""
        return {
            'id': self.id,
            'type': self.type.value,
            'input_shape': list(self.input_shape),
            'output_shape': list(self.output_shape),
            'activation': self.activation.name if self.activation else None,
        }

    def to_json(self) -> Dict[str, Any]:
        config = self.get_config()
        config['weights'] = self.get_weights() if self.initialized else None
        return config

    def from_json(self, config: Dict[str, Any]) -> None:
        """
        Load weights from a ``to_json`` payload.

        Raises:
            ValidationError: If the payload carries no weights
        """
        if not isinstance(config, dict) or config.get('weights') is None:
            raise ValidationError(
                f"Invalid configuration for layer '{self.id}': missing weights"
            )
        self.set_weights(config['weights'])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _as_batch(self, inputs) -> np.ndarray:
        """Convert inputs to a (batch_size, input_size) float array."""
        if isinstance(inputs, Matrix):
            batch = inputs.to_numpy()
        else:
            batch = np.array(inputs, dtype=np.float64)
        if batch.ndim == 1:
            batch = batch.reshape(1, -1)
        if batch.ndim != 2 or batch.shape[1] != self.input_size:
            raise ShapeMismatchError(
                f"Layer '{self.id}' expects input of shape (batch, "
                f"{self.input_size}), got {batch.shape}"
            )
        return batch

    def _check_gradient(self, output_gradient, batch_size: int) -> np.ndarray:
        gradient = np.array(output_gradient, dtype=np.float64)
        if gradient.ndim == 1:
            gradient = gradient.reshape(1, -1)
        if gradient.shape != (batch_size, self.output_size):
            raise ShapeMismatchError(
                f"Layer '{self.id}' expects output gradient of shape "
                f"({batch_size}, {self.output_size}), got {gradient.shape}"
            )
        return gradient

    def _missing_forward(self) -> StateError:
        return StateError(
            f"Layer '{self.id}': no cached forward pass; call forward() "
            f"before backward()"
        )

    @staticmethod
    def _optimizer_for(learning_rate: float, optimizer: Optional[Optimizer]) -> Optimizer:
        if optimizer is not None:
            return optimizer
        return SGDOptimizer(learning_rate)

    def _read_parameter(
        self,
        weights: WeightsMap,
        key: str,
        shape: Tuple[int, int]
    ) -> Matrix:
        if key not in weights:
            raise ValidationError(
                f"Invalid weights for layer '{self.id}': missing '{key}'"
            )
        try:
            matrix = Matrix.from_array(weights[key])
        except ValidationError as e:
            raise ValidationError(
                f"Invalid weights for layer '{self.id}', key '{key}': {e}"
            ) from e
        if matrix.shape != shape:
            raise ValidationError(
                f"Invalid weights for layer '{self.id}': '{key}' has shape "
                f"{matrix.shape}, expected {shape}"
            )
        return matrix

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(id={self.id!r}, "
            f"{self.input_shape} -> {self.output_shape})"
        )


class InputLayer(Layer):
    """Pass-through layer that only checks the width of incoming batches."""

    type = LayerType.INPUT

    def __init__(self, layer_id: Optional[str], input_shape: Sequence[int]):
        super().__init__(layer_id, input_shape, input_shape)
        self._seen_batch: Optional[int] = None

    def forward(self, inputs) -> np.ndarray:
        batch = self._as_batch(inputs)
        self._seen_batch = batch.shape[0]
        return batch

    def backward(self, output_gradient, learning_rate, optimizer=None) -> np.ndarray:
        if self._seen_batch is None:
            raise self._missing_forward()
        return self._check_gradient(output_gradient, self._seen_batch)

    def get_weights(self) -> WeightsMap:
        return {}

    def set_weights(self, weights: WeightsMap) -> None:
        if weights:
            raise ValidationError(
                f"Input layer '{self.id}' has no parameters, got "
                f"{sorted(weights)}"
            )
        self.initialized = True


class DenseLayer(Layer):
    """
    Fully connected layer: output = activation(input . weights + biases).

    Weights have shape (input_size, output_size) and are Xavier/Glorot
    initialized, uniform in [-s, s] with s = sqrt(2 / (in + out)). Biases
    have shape (1, output_size) and start at zero.
    """

    type = LayerType.DENSE

    def __init__(
        self,
        layer_id: Optional[str],
        input_size: int,
        output_size: int,
        activation: Union[str, ActivationType, Activation, None] = None
    ):
        super().__init__(layer_id, (input_size,), (output_size,), activation)
        self.weights: Optional[Matrix] = None
        self.biases: Optional[Matrix] = None
        self._input: Optional[Matrix] = None
        self._output: Optional[Matrix] = None

    def _initialize_parameters(self) -> None:
        std_dev = math.sqrt(2.0 / (self.input_size + self.output_size))
        self.weights = Matrix.random(self.input_size, self.output_size, -std_dev, std_dev)
        self.biases = Matrix.zeros(1, self.output_size)

    def forward(self, inputs) -> np.ndarray:
        """
        Propagate a batch forward and cache what backward needs.

        Args:
            inputs: Array-like of shape (batch_size, input_size)

        Returns:
            np.ndarray: Activations of shape (batch_size, output_size)
        """
        self.initialize()
        self._input = Matrix.from_array(self._as_batch(inputs))

        pre_activation = self._input.multiply(self.weights).add_row_vector(self.biases)
        if self.activation is not None:
            self._output = Matrix.from_array(
                self.activation.forward_matrix(pre_activation.data)
            )
        else:
            self._output = pre_activation

        return self._output.to_numpy()

    def backward(
        self,
        output_gradient,
        learning_rate: float,
        optimizer: Optional[Optimizer] = None
    ) -> np.ndarray:
        """
        Backpropagate through the layer and update its parameters.

        The activation derivative is evaluated at the cached output. The
        returned input gradient uses the weights as they were before this
        update.

        Args:
            output_gradient: dLoss/dOutput, shape (batch_size, output_size)
            learning_rate: Step size, used when no optimizer is given
            optimizer: Optimizer that applies the update

        Returns:
            np.ndarray: dLoss/dInput, shape (batch_size, input_size)

        Raises:
            StateError: If forward has not been called
        """
        if self._input is None or self._output is None:
            raise self._missing_forward()

        gradient = Matrix.from_array(
            self._check_gradient(output_gradient, self._input.rows)
        )
        if self.activation is not None:
            gradient = gradient.hadamard_product(Matrix.from_array(
                self.activation.derivative_from_output(self._output.data)
            ))

        weights_gradient = self._input.transpose().multiply(gradient)
        biases_gradient = gradient.column_sums()
        input_gradient = gradient.multiply(self.weights.transpose())

        updater = self._optimizer_for(learning_rate, optimizer)
        self.weights = updater.update_weights(self.weights, weights_gradient)
        self.biases = updater.update_weights(self.biases, biases_gradient)

        return input_gradient.to_numpy()

    def get_weights(self) -> WeightsMap:
        if self.weights is None or self.biases is None:
            raise StateError(f"Layer '{self.id}' is not initialized")
        return {
            'weights': self.weights.to_array(),
            'biases': self.biases.to_array(),
        }

    def set_weights(self, weights: WeightsMap) -> None:
        """
        Replace weights and biases.

        Raises:
            ValidationError: If a key is missing or a shape is wrong
        """
        if not isinstance(weights, dict):
            raise ValidationError(f"Invalid weights object for layer '{self.id}'")
        new_weights = self._read_parameter(
            weights, 'weights', (self.input_size, self.output_size)
        )
        new_biases = self._read_parameter(weights, 'biases', (1, self.output_size))
        self.weights = new_weights
        self.biases = new_biases
        self.initialized = True

    def get_config(self) -> Dict[str, Any]:
        config = super().get_config()
        config['input_size'] = self.input_size
        config['output_size'] = self.output_size
        return config


class ConvolutionalLayer(Layer):
    """
    2D convolution over channel-last volumes.

    Each of the ``filters`` kernels is stored as a Matrix of shape
    (kernel_height, kernel_width * input_channels); kernel[a, b * C + c]
    weights input channel c at offset (a, b) of the receptive field.

    Output size per dimension:
        valid: floor((in - kernel) / stride) + 1
        same:  ceil(in / stride), with floor((kernel - 1) / 2) zero rows and
               columns added before the input. Receptive fields that run past
               the trailing edge see zeros.
    """

    type = LayerType.CONVOLUTIONAL

    def __init__(
        self,
        layer_id: Optional[str],
        input_shape: Sequence[int],
        kernel_size: Union[int, Sequence[int]],
        filters: int,
        stride: Union[int, Sequence[int]] = 1,
        padding: Union[str, Padding] = Padding.VALID,
        activation: Union[str, ActivationType, Activation, None] = ActivationType.RELU
    ):
        input_shape = tuple(int(d) for d in input_shape)
        if len(input_shape) == 2:
            input_shape = input_shape + (1,)
        if len(input_shape) != 3:
            raise ValidationError(
                f"Convolutional input shape must be (height, width[, channels]), "
                f"got {input_shape}"
            )
        try:
            self.padding = padding if isinstance(padding, Padding) else Padding(str(padding).lower())
        except ValueError:
            raise ValidationError(
                f"Padding must be 'valid' or 'same', got {padding!r}"
            ) from None
        if isinstance(filters, bool) or not isinstance(filters, (int, np.integer)) or filters < 1:
            raise ValidationError(f"filters must be a positive integer, got {filters!r}")

        self.kernel_height, self.kernel_width = _pair(kernel_size, 'kernel_size')
        self.stride_height, self.stride_width = _pair(stride, 'stride')
        self.filters = int(filters)
        height, width, self.input_channels = input_shape

        out_height, self.pad_top, self.pad_bottom = self._plan_dimension(
            height, self.kernel_height, self.stride_height
        )
        out_width, self.pad_left, self.pad_right = self._plan_dimension(
            width, self.kernel_width, self.stride_width
        )

        super().__init__(
            layer_id,
            input_shape,
            (out_height, out_width, self.filters),
            activation
        )
        self.kernels: List[Matrix] = []
        self.biases: Optional[Matrix] = None
        self._padded_input: Optional[np.ndarray] = None
        self._output: Optional[np.ndarray] = None

    def _plan_dimension(self, size: int, kernel: int, stride: int) -> Tuple[int, int, int]:
        """Return (output_size, pad_before, pad_after) for one dimension."""
        if self.padding is Padding.VALID:
            if size < kernel:
                raise ValidationError(
                    f"Kernel size {kernel} is larger than input size {size} "
                    f"with 'valid' padding"
                )
            return (size - kernel) // stride + 1, 0, 0

        output = math.ceil(size / stride)
        pad_before = (kernel - 1) // 2
        extent = (output - 1) * stride + kernel
        pad_after = max(0, extent - size - pad_before)
        return output, pad_before, pad_after

    def _initialize_parameters(self) -> None:
        # He-style scaling for ReLU networks
        fan_in = self.kernel_height * self.kernel_width * self.input_channels
        limit = math.sqrt(2.0 / fan_in)
        self.kernels = [
            Matrix.random(
                self.kernel_height,
                self.kernel_width * self.input_channels,
                -limit,
                limit
            )
            for _ in range(self.filters)
        ]
        self.biases = Matrix.zeros(1, self.filters)

    def _kernel_stack(self) -> np.ndarray:
        """All kernels as a (filters, kh * kw * C) array."""
        return np.stack([kernel.data.reshape(-1) for kernel in self.kernels])

    def _receptive_fields(self):
        """Yield (out_row, out_col, row_slice, col_slice) in the padded volume."""
        out_height, out_width, _ = self.output_shape
        for i in range(out_height):
            top = i * self.stride_height
            rows = slice(top, top + self.kernel_height)
            for j in range(out_width):
                left = j * self.stride_width
                yield i, j, rows, slice(left, left + self.kernel_width)

    def forward(self, inputs) -> np.ndarray:
        """
        Convolve a batch of flattened volumes.

        Args:
            inputs: Array-like of shape (batch_size, height * width * channels)

        Returns:
            np.ndarray: Shape (batch_size, out_height * out_width * filters)
        """
        self.initialize()
        batch = self._as_batch(inputs)
        batch_size = batch.shape[0]
        height, width, channels = self.input_shape
        out_height, out_width, _ = self.output_shape

        volume = batch.reshape(batch_size, height, width, channels)
        padded = np.pad(
            volume,
            ((0, 0), (self.pad_top, self.pad_bottom), (self.pad_left, self.pad_right), (0, 0)),
            mode='constant'
        )

        kernels = self._kernel_stack()
        biases = self.biases.data[0]
        output = np.empty((batch_size, out_height, out_width, self.filters))
        for i, j, rows, cols in self._receptive_fields():
            patch = padded[:, rows, cols, :].reshape(batch_size, -1)
            output[:, i, j, :] = patch @ kernels.T + biases

        flat = output.reshape(batch_size, -1)
        if self.activation is not None:
            flat = self.activation.forward_matrix(flat)

        self._padded_input = padded
        self._output = flat
        return flat.copy()

    def backward(
        self,
        output_gradient,
        learning_rate: float,
        optimizer: Optional[Optimizer] = None
    ) -> np.ndarray:
        """
        Backpropagate through the convolution and update kernels and biases.

        Kernel and bias gradients are accumulated over every output position
        and averaged over the batch before the update. The input gradient is
        built by scattering gradient * kernel back over each receptive field
        in the padded volume and cropping the padding away.

        Returns:
            np.ndarray: dLoss/dInput, shape (batch_size, input_size)

        Raises:
            StateError: If forward has not been called
        """
        if self._padded_input is None or self._output is None:
            raise self._missing_forward()

        padded = self._padded_input
        batch_size = padded.shape[0]
        height, width, channels = self.input_shape
        out_height, out_width, _ = self.output_shape

        gradient = self._check_gradient(output_gradient, batch_size)
        if self.activation is not None:
            gradient = gradient * self.activation.derivative_from_output(self._output)
        gradient = gradient.reshape(batch_size, out_height, out_width, self.filters)

        kernels = self._kernel_stack()
        kernel_gradient = np.zeros_like(kernels)
        bias_gradient = gradient.sum(axis=(0, 1, 2))
        padded_gradient = np.zeros_like(padded)

        for i, j, rows, cols in self._receptive_fields():
            patch = padded[:, rows, cols, :].reshape(batch_size, -1)
            position_gradient = gradient[:, i, j, :]
            kernel_gradient += position_gradient.T @ patch
            padded_gradient[:, rows, cols, :] += (position_gradient @ kernels).reshape(
                batch_size, self.kernel_height, self.kernel_width, channels
            )

        input_gradient = padded_gradient[
            :,
            self.pad_top:self.pad_top + height,
            self.pad_left:self.pad_left + width,
            :
        ].reshape(batch_size, -1)

        kernel_gradient /= batch_size
        bias_gradient = bias_gradient / batch_size

        updater = self._optimizer_for(learning_rate, optimizer)
        kernel_shape = (self.kernel_height, self.kernel_width * channels)
        self.kernels = [
            updater.update_weights(
                kernel,
                Matrix.from_array(kernel_gradient[f].reshape(kernel_shape))
            )
            for f, kernel in enumerate(self.kernels)
        ]
        self.biases = updater.update_weights(
            self.biases, Matrix.from_array(bias_gradient.reshape(1, -1))
        )

        return input_gradient

    def get_weights(self) -> WeightsMap:
        if not self.kernels or self.biases is None:
            raise StateError(f"Layer '{self.id}' is not initialized")
        weights = {
            f'kernel_{f}': kernel.to_array() for f, kernel in enumerate(self.kernels)
        }
        weights['biases'] = self.biases.to_array()
        return weights

    def set_weights(self, weights: WeightsMap) -> None:
        """
        Replace every kernel and the bias row.

        Raises:
            ValidationError: If a kernel or the biases are missing or misshapen
        """
        if not isinstance(weights, dict):
            raise ValidationError(f"Invalid weights object for layer '{self.id}'")
        kernel_shape = (self.kernel_height, self.kernel_width * self.input_channels)
        kernels = [
            self._read_parameter(weights, f'kernel_{f}', kernel_shape)
            for f in range(self.filters)
        ]
        biases = self._read_parameter(weights, 'biases', (1, self.filters))
        self.kernels = kernels
        self.biases = biases
        self.initialized = True

    def get_config(self) -> Dict[str, Any]:
        config = super().get_config()
        config.update({
            'kernel_size': [self.kernel_height, self.kernel_width],
            'filters': self.filters,
            'stride': [self.stride_height, self.stride_width],
            'padding': self.padding.value,
        })
        return config


# ----------------------------------------------------------------------
# Factory
# ----------------------------------------------------------------------

def _build_input(config: Dict[str, Any]) -> Layer:
    return InputLayer(config.get('id'), config['input_shape'])


def _build_dense(config: Dict[str, Any]) -> Layer:
    input_size = config.get('input_size')
    if input_size is None and config.get('input_shape') is not None:
        input_size = int(np.prod(config['input_shape']))
    output_size = config.get('output_size')
    if output_size is None and config.get('output_shape') is not None:
        output_size = int(np.prod(config['output_shape']))
    return DenseLayer(
        config.get('id'),
        input_size,
        output_size,
        config.get('activation', ActivationType.SIGMOID)
    )


def _build_convolutional(config: Dict[str, Any]) -> Layer:
    return ConvolutionalLayer(
        config.get('id'),
        config['input_shape'],
        config['kernel_size'],
        config['filters'],
        stride=config.get('stride', 1),
        padding=config.get('padding', Padding.VALID),
        activation=config.get('activation', ActivationType.RELU)
    )


def _build_pooling(config: Dict[str, Any]) -> Layer:
    raise UnsupportedOperationError("Pooling layer not implemented yet")


_LAYER_BUILDERS: Dict[LayerType, Callable[[Dict[str, Any]], Layer]] = {
    LayerType.INPUT: _build_input,
    LayerType.DENSE: _build_dense,
    LayerType.CONVOLUTIONAL: _build_convolutional,
    LayerType.POOLING: _build_pooling,
}


def create_layer(layer_type: Union[str, LayerType], **config) -> Layer:
    """
    Build a layer of the given type.

    Args:
        layer_type: LayerType or its string value
        **config: Constructor arguments. Dense: input_size, output_size,
            activation (default sigmoid). Convolutional: input_shape,
            kernel_size, filters, stride, padding, activation (default
            relu). Input: input_shape. All accept an optional id.

    Returns:
        Layer: The new, uninitialized layer

    Raises:
        UnsupportedOperationError: For unknown or unimplemented layer types
        ValidationError: If a required argument is missing
    """
    if not isinstance(layer_type, LayerType):
        try:
            layer_type = LayerType(str(layer_type).lower())
        except ValueError:
            raise UnsupportedOperationError(f"Unknown layer type: {layer_type!r}") from None
    try:
        return _LAYER_BUILDERS[layer_type](config)
    except (KeyError, TypeError) as e:
        raise ValidationError(
            f"Invalid configuration for {layer_type.value} layer: {e}"
        ) from e


def layer_from_json(config: Dict[str, Any]) -> Layer:
    """Rebuild a layer (and its weights, when present) from ``to_json`` output."""
    if not isinstance(config, dict) or 'type' not in config:
        raise ValidationError("Layer configuration must be a dict with a 'type'")
    options = {k: v for k, v in config.items() if k not in ('type', 'weights', 'output_shape')}
    if config['type'] == LayerType.DENSE.value:
        options.pop('input_shape', None)
    layer = create_layer(config['type'], **options)
    if config.get('weights') is not None:
        layer.from_json(config)
    return layer
