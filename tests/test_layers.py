"""
test_layers.py
~~~~~~~~~~~~~~

Unit tests for input, dense and convolutional layers and the layer factory.

Gradients are checked against central differences of the scalar
L = sum(output * upstream), whose gradient with respect to the output is
``upstream``.
"""

import numpy as np
import pytest

from neuralnet.activations import ActivationType
from neuralnet.errors import (
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
    layer_from_json,
)
from neuralnet.optimizers import SGDOptimizer

STEP = 1e-6


@pytest.fixture(autouse=True)
def seed_random():
    np.random.seed(1234)


def probe_loss(layer, inputs, upstream) -> float:
    return float(np.sum(layer.forward(inputs) * upstream))


def numerical_input_gradient(layer, inputs, upstream) -> np.ndarray:
    gradient = np.zeros_like(inputs)
    for index in np.ndindex(inputs.shape):
        plus = inputs.copy()
        minus = inputs.copy()
        plus[index] += STEP
        minus[index] -= STEP
        gradient[index] = (
            probe_loss(layer, plus, upstream) - probe_loss(layer, minus, upstream)
        ) / (2 * STEP)
    return gradient


def numerical_parameter_gradient(layer, parameter: np.ndarray, inputs, upstream) -> np.ndarray:
    """Central differences with respect to a parameter array, edited in place."""
    gradient = np.zeros_like(parameter)
    for index in np.ndindex(parameter.shape):
        original = parameter[index]
        parameter[index] = original + STEP
        plus = probe_loss(layer, inputs, upstream)
        parameter[index] = original - STEP
        minus = probe_loss(layer, inputs, upstream)
        parameter[index] = original
        gradient[index] = (plus - minus) / (2 * STEP)
    return gradient


@pytest.mark.unit
class TestInputLayer:
    """Test the pass-through input layer."""

    def test_forward_passes_values_through(self):
        """Test that forward returns its input unchanged."""
        layer = InputLayer('input', (3,))
        inputs = np.array([[1.0, 2.0, 3.0]])
        np.testing.assert_array_equal(layer.forward(inputs), inputs)

    def test_wrong_width_raises(self):
        """Test that a batch of the wrong width is rejected."""
        layer = InputLayer('input', (3,))
        with pytest.raises(ShapeMismatchError):
            layer.forward(np.ones((1, 4)))

    def test_backward_returns_gradient(self):
        """Test that backward passes the gradient through."""
        layer = InputLayer('input', (2,))
        layer.forward(np.ones((2, 2)))
        gradient = np.array([[0.1, 0.2], [0.3, 0.4]])
        np.testing.assert_array_equal(layer.backward(gradient, 0.1), gradient)

    def test_has_no_weights(self):
        """Test that an input layer rejects parameters."""
        layer = InputLayer('input', (2,))
        assert layer.get_weights() == {}
        layer.set_weights({})
        with pytest.raises(ValidationError):
            layer.set_weights({'weights': [[1.0]]})


@pytest.mark.unit
class TestBackwardBeforeForward:
    """Test that backward without a cached forward pass fails."""

    @pytest.mark.parametrize("layer", [
        InputLayer('input', (4,)),
        DenseLayer('dense', 4, 2),
        ConvolutionalLayer('conv', (2, 2, 1), 2, 1),
    ], ids=['input', 'dense', 'convolutional'])
    def test_backward_before_forward_raises_state_error(self, layer):
        """Test that every layer type raises StateError."""
        layer.initialize()
        with pytest.raises(StateError) as exc_info:
            layer.backward(np.zeros((1, layer.output_size)), 0.1)
        assert "forward" in str(exc_info.value)


@pytest.mark.unit
class TestDenseLayer:
    """Test the fully connected layer."""

    def test_linear_layer_computes_input_dot_weights(self):
        """Test that a linear layer with zero biases computes X . W."""
        layer = DenseLayer('dense', 3, 2, ActivationType.LINEAR)
        weights = [[1.0, -1.0], [0.5, 2.0], [0.0, 1.0]]
        layer.set_weights({'weights': weights, 'biases': [[0.0, 0.0]]})

        inputs = np.array([[1.0, 2.0, 3.0], [-1.0, 0.0, 1.0]])
        np.testing.assert_allclose(layer.forward(inputs), inputs @ np.array(weights))

    def test_biases_are_added(self):
        """Test that biases are added to every row."""
        layer = DenseLayer('dense', 2, 2, None)
        layer.set_weights({'weights': [[1.0, 0.0], [0.0, 1.0]], 'biases': [[0.5, -0.5]]})
        np.testing.assert_allclose(layer.forward([[1.0, 1.0]]), [[1.5, 0.5]])

    def test_xavier_initialization(self):
        """Test weight shapes, bounds and zero biases after initialize."""
        layer = DenseLayer('dense', 30, 20)
        layer.initialize()
        limit = np.sqrt(2.0 / 50)
        assert layer.weights.shape == (30, 20)
        assert np.all(np.abs(layer.weights.data) <= limit)
        assert layer.biases.to_array() == [[0.0] * 20]
        assert layer.parameter_count() == 30 * 20 + 20

    def test_initialize_is_idempotent(self):
        """Test that a second initialize keeps the weights."""
        layer = DenseLayer('dense', 3, 3)
        layer.initialize()
        weights = layer.weights.clone()
        layer.initialize()
        assert layer.weights == weights

    def test_input_gradient_matches_numerical(self):
        """Test dLoss/dInput against central differences."""
        layer = DenseLayer('dense', 4, 3, ActivationType.TANH)
        inputs = np.random.uniform(-1, 1, (2, 4))
        upstream = np.random.uniform(-1, 1, (2, 3))

        expected = numerical_input_gradient(layer, inputs, upstream)
        layer.forward(inputs)
        actual = layer.backward(upstream, 0.1)

        np.testing.assert_allclose(actual, expected, atol=1e-6)

    def test_parameter_update_matches_numerical_gradient(self):
        """Test that an SGD step with lr=1 subtracts the true gradient."""
        layer = DenseLayer('dense', 3, 2, ActivationType.SIGMOID)
        layer.initialize()
        inputs = np.random.uniform(-1, 1, (2, 3))
        upstream = np.random.uniform(-1, 1, (2, 2))

        weights_gradient = numerical_parameter_gradient(layer, layer.weights.data, inputs, upstream)
        biases_gradient = numerical_parameter_gradient(layer, layer.biases.data, inputs, upstream)

        old_weights = layer.weights.to_numpy()
        old_biases = layer.biases.to_numpy()
        layer.forward(inputs)
        layer.backward(upstream, 1.0, SGDOptimizer(1.0))

        np.testing.assert_allclose(old_weights - layer.weights.data, weights_gradient, atol=1e-6)
        np.testing.assert_allclose(old_biases - layer.biases.data, biases_gradient, atol=1e-6)

    def test_input_gradient_uses_weights_before_update(self):
        """Test that the returned gradient is g . W with the pre-update W."""
        layer = DenseLayer('dense', 2, 2, ActivationType.LINEAR)
        layer.set_weights({'weights': [[1.0, 2.0], [3.0, 4.0]], 'biases': [[0.0, 0.0]]})
        layer.forward([[1.0, 1.0]])
        gradient = layer.backward([[1.0, 0.0]], 0.5)
        np.testing.assert_allclose(gradient, [[1.0, 3.0]])

    def test_wrong_gradient_shape_raises(self):
        """Test that a misshapen output gradient is rejected."""
        layer = DenseLayer('dense', 2, 2)
        layer.forward([[1.0, 1.0]])
        with pytest.raises(ShapeMismatchError):
            layer.backward([[1.0, 0.0, 0.0]], 0.1)

    def test_set_weights_validates_shapes(self):
        """Test that weights of the wrong shape are rejected."""
        layer = DenseLayer('dense', 2, 3)
        with pytest.raises(ValidationError):
            layer.set_weights({'weights': [[1.0, 2.0]], 'biases': [[0.0, 0.0, 0.0]]})
        with pytest.raises(ValidationError):
            layer.set_weights({'weights': [[1.0] * 3] * 2})

    @pytest.mark.parametrize("value", [5, None, [1.0, 2.0]])
    def test_set_weights_rejects_malformed_values(self, value):
        """Test that weights that are not a 2D array raise ValidationError."""
        layer = DenseLayer('dense', 2, 2)
        with pytest.raises(ValidationError):
            layer.set_weights({'weights': value, 'biases': [[0.0, 0.0]]})

    def test_get_weights_before_initialize_raises(self):
        """Test that an uninitialized layer has no weights to return."""
        with pytest.raises(StateError):
            DenseLayer('dense', 2, 2).get_weights()


@pytest.mark.unit
class TestConvolutionalLayer:
    """Test the 2D convolution layer."""

    def test_valid_padding_output_shape(self):
        """Test that a 3x3 kernel over 5x5x1 with valid padding gives 3x3."""
        layer = ConvolutionalLayer('conv', (5, 5, 1), kernel_size=3, filters=2)
        assert layer.output_shape == (3, 3, 2)
        output = layer.forward(np.random.uniform(0, 1, (4, 25)))
        assert output.shape == (4, 3 * 3 * 2)

    @pytest.mark.parametrize("kernel,stride,expected", [
        (3, 1, 5),
        (3, 2, 3),
        (4, 1, 5),
        (5, 3, 2),
    ])
    def test_same_padding_output_shape(self, kernel, stride, expected):
        """Test that same padding gives ceil(input / stride)."""
        layer = ConvolutionalLayer('conv', (5, 5), kernel, 1, stride=stride, padding='same')
        assert layer.output_shape[:2] == (expected, expected)
        assert layer.pad_top == (kernel - 1) // 2

    def test_valid_padding_kernel_larger_than_input(self):
        """Test that a kernel larger than the input is rejected."""
        with pytest.raises(ValidationError):
            ConvolutionalLayer('conv', (2, 2, 1), kernel_size=3, filters=1)

    def test_invalid_padding(self):
        """Test that unknown padding modes are rejected."""
        with pytest.raises(ValidationError):
            ConvolutionalLayer('conv', (4, 4, 1), 3, 1, padding='full')

    def test_forward_matches_manual_convolution(self):
        """Test a single-filter convolution against hand-computed values."""
        layer = ConvolutionalLayer('conv', (3, 3, 1), 2, 1, activation=ActivationType.LINEAR)
        layer.set_weights({'kernel_0': [[1.0, 0.0], [0.0, -1.0]], 'biases': [[0.5]]})

        image = np.arange(9, dtype=float).reshape(1, 9)
        # Each output is x[i, j] - x[i + 1, j + 1] + 0.5 = -4 + 0.5
        np.testing.assert_allclose(layer.forward(image), [[-3.5, -3.5, -3.5, -3.5]])

    def test_relu_is_default_activation(self):
        """Test that convolutions default to ReLU."""
        layer = ConvolutionalLayer('conv', (3, 3), 2, 1)
        assert layer.activation.type is ActivationType.RELU

    @pytest.mark.parametrize("input_shape,kernel,filters,stride,padding", [
        ((5, 5, 1), 3, 2, 1, Padding.VALID),
        ((5, 4, 2), 3, 2, 1, Padding.SAME),
        ((5, 5, 2), 3, 2, 2, Padding.SAME),
        ((4, 4, 1), 4, 1, 1, Padding.SAME),
    ], ids=['valid', 'same', 'same-stride-2', 'same-even-kernel'])
    def test_input_gradient_matches_numerical(self, input_shape, kernel, filters, stride, padding):
        """Test dLoss/dInput against central differences."""
        layer = ConvolutionalLayer(
            'conv', input_shape, kernel, filters,
            stride=stride, padding=padding, activation=ActivationType.TANH
        )
        inputs = np.random.uniform(-1, 1, (2, layer.input_size))
        upstream = np.random.uniform(-1, 1, (2, layer.output_size))

        expected = numerical_input_gradient(layer, inputs, upstream)
        layer.forward(inputs)
        actual = layer.backward(upstream, 0.1)

        np.testing.assert_allclose(actual, expected, atol=1e-6)

    @pytest.mark.parametrize("padding", [Padding.VALID, Padding.SAME])
    def test_parameter_update_matches_numerical_gradient(self, padding):
        """Test that an SGD step with lr=1 subtracts the true gradient."""
        layer = ConvolutionalLayer(
            'conv', (4, 4, 2), 3, 2, padding=padding, activation=ActivationType.TANH
        )
        layer.initialize()
        inputs = np.random.uniform(-1, 1, (1, layer.input_size))
        upstream = np.random.uniform(-1, 1, (1, layer.output_size))

        kernel_gradients = [
            numerical_parameter_gradient(layer, kernel.data, inputs, upstream)
            for kernel in layer.kernels
        ]
        bias_gradient = numerical_parameter_gradient(layer, layer.biases.data, inputs, upstream)

        old_kernels = [kernel.to_numpy() for kernel in layer.kernels]
        old_biases = layer.biases.to_numpy()
        layer.forward(inputs)
        layer.backward(upstream, 1.0, SGDOptimizer(1.0))

        for old, kernel, expected in zip(old_kernels, layer.kernels, kernel_gradients):
            np.testing.assert_allclose(old - kernel.data, expected, atol=1e-6)
        np.testing.assert_allclose(old_biases - layer.biases.data, bias_gradient, atol=1e-6)

    def test_parameter_gradients_are_averaged_over_batch(self):
        """Test that a duplicated sample moves parameters like a single one."""
        single = ConvolutionalLayer('conv', (3, 3, 1), 2, 2, activation=ActivationType.LINEAR)
        single.initialize()
        double = layer_from_json(single.to_json())

        sample = np.random.uniform(-1, 1, (1, 9))
        upstream = np.random.uniform(-1, 1, (1, single.output_size))

        single.forward(sample)
        single.backward(upstream, 0.1)
        double.forward(np.vstack([sample, sample]))
        double.backward(np.vstack([upstream, upstream]), 0.1)

        for a, b in zip(single.kernels, double.kernels):
            np.testing.assert_allclose(a.data, b.data)
        np.testing.assert_allclose(single.biases.data, double.biases.data)

    def test_weights_round_trip(self):
        """Test that get_weights/set_weights reproduce the same output."""
        layer = ConvolutionalLayer('conv', (4, 4, 1), 3, 3, padding='same')
        inputs = np.random.uniform(0, 1, (1, 16))
        output = layer.forward(inputs)

        weights = layer.get_weights()
        assert sorted(weights) == ['biases', 'kernel_0', 'kernel_1', 'kernel_2']

        restored = ConvolutionalLayer('conv', (4, 4, 1), 3, 3, padding='same')
        restored.set_weights(weights)
        np.testing.assert_array_equal(restored.forward(inputs), output)

    def test_set_weights_missing_kernel(self):
        """Test that a missing kernel is rejected."""
        layer = ConvolutionalLayer('conv', (3, 3, 1), 2, 2)
        with pytest.raises(ValidationError) as exc_info:
            layer.set_weights({'kernel_0': [[0.0, 0.0], [0.0, 0.0]], 'biases': [[0.0, 0.0]]})
        assert 'kernel_1' in str(exc_info.value)


@pytest.mark.unit
class TestLayerFactory:
    """Test create_layer and layer_from_json."""

    def test_create_dense_defaults_to_sigmoid(self):
        """Test the factory's default dense activation."""
        layer = create_layer(LayerType.DENSE, id='d', input_size=3, output_size=2)
        assert isinstance(layer, DenseLayer)
        assert layer.id == 'd'
        assert layer.activation.type is ActivationType.SIGMOID

    def test_create_by_name(self):
        """Test that layer types may be given as strings."""
        layer = create_layer('convolutional', input_shape=[4, 4, 1], kernel_size=3, filters=2)
        assert isinstance(layer, ConvolutionalLayer)
        assert layer.id.startswith('convolutional_')

    def test_pooling_is_unsupported(self):
        """Test that pooling layers are not available yet."""
        with pytest.raises(UnsupportedOperationError):
            create_layer(LayerType.POOLING, pool_size=2)

    def test_unknown_type(self):
        """Test that unknown layer types are rejected."""
        with pytest.raises(UnsupportedOperationError):
            create_layer('recurrent', units=4)

    def test_missing_argument(self):
        """Test that missing constructor arguments raise ValidationError."""
        with pytest.raises(ValidationError):
            create_layer('dense', input_size=3)
        with pytest.raises(ValidationError):
            create_layer('convolutional', input_shape=[4, 4], kernel_size=3)

    def test_layer_from_json_restores_weights(self):
        """Test that to_json/layer_from_json reproduce the layer exactly."""
        layer = DenseLayer('dense', 3, 2, ActivationType.TANH)
        inputs = np.random.uniform(-1, 1, (2, 3))
        output = layer.forward(inputs)

        restored = layer_from_json(layer.to_json())

        assert restored.id == 'dense'
        assert restored.activation.type is ActivationType.TANH
        np.testing.assert_array_equal(restored.forward(inputs), output)
