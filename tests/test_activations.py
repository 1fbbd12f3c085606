"""
test_activations.py
~~~~~~~~~~~~~~~~~~~

Unit tests for activation functions and the activation registry.
"""

import numpy as np
import pytest

from neuralnet.activations import ActivationType, Sigmoid, get_activation
from neuralnet.errors import UnsupportedOperationError

STEP = 1e-5
SAMPLE_POINTS = [-5.0, -1.3, -0.2, 0.0, 0.4, 1.7, 6.0]


def numerical_derivative(func, x: float) -> float:
    return (func(x + STEP) - func(x - STEP)) / (2 * STEP)


@pytest.mark.unit
class TestScalarActivations:
    """Test scalar forward/backward pairs."""

    @pytest.mark.parametrize("activation_type", [ActivationType.SIGMOID, ActivationType.TANH])
    @pytest.mark.parametrize("x", SAMPLE_POINTS)
    def test_derivative_matches_numerical(self, activation_type, x):
        """Test that backward agrees with a central difference within 1e-4."""
        activation = get_activation(activation_type)
        assert abs(activation.backward(x) - numerical_derivative(activation.forward, x)) < 1e-4

    def test_sigmoid_is_stable_for_large_inputs(self):
        """Test that extreme inputs saturate without overflow."""
        sigmoid = get_activation('sigmoid')
        assert sigmoid.forward(1000.0) == 1.0
        assert sigmoid.forward(-1000.0) == 0.0

    def test_relu_derivative_at_zero_is_zero(self):
        """Test the ReLU derivative convention at 0."""
        relu = get_activation(ActivationType.RELU)
        assert relu.forward(-2.0) == 0.0
        assert relu.forward(3.0) == 3.0
        assert relu.backward(0.0) == 0.0
        assert relu.backward(0.1) == 1.0

    def test_linear_is_identity(self):
        """Test that linear passes values through with derivative 1."""
        linear = get_activation(ActivationType.LINEAR)
        assert linear.forward(-3.5) == -3.5
        assert linear.backward(123.0) == 1.0


@pytest.mark.unit
class TestMatrixActivations:
    """Test the vectorized forms."""

    @pytest.mark.parametrize("activation_type", [
        ActivationType.SIGMOID,
        ActivationType.RELU,
        ActivationType.TANH,
        ActivationType.LINEAR,
    ])
    def test_matrix_form_matches_scalar_form(self, activation_type):
        """Test that forward_matrix applies forward to every element."""
        activation = get_activation(activation_type)
        x = np.array([SAMPLE_POINTS, [v / 2 for v in SAMPLE_POINTS]])
        expected = np.vectorize(activation.forward)(x)
        np.testing.assert_allclose(activation.forward_matrix(x), expected, atol=1e-12)

        expected_derivative = np.vectorize(activation.backward)(x)
        np.testing.assert_allclose(activation.backward_matrix(x), expected_derivative, atol=1e-12)

    @pytest.mark.parametrize("activation_type", [
        ActivationType.SIGMOID,
        ActivationType.RELU,
        ActivationType.TANH,
        ActivationType.LINEAR,
    ])
    def test_derivative_from_output(self, activation_type):
        """Test that the output-based derivative equals the input-based one."""
        activation = get_activation(activation_type)
        x = np.array([[-2.0, -0.5, 0.3, 1.5]])
        np.testing.assert_allclose(
            activation.derivative_from_output(activation.forward_matrix(x)),
            activation.backward_matrix(x),
            atol=1e-12
        )


@pytest.mark.unit
class TestSoftmax:
    """Test the row-wise softmax."""

    def test_rows_sum_to_one(self):
        """Test that every row is a probability distribution."""
        softmax = get_activation(ActivationType.SOFTMAX)
        x = np.array([[1.0, 2.0, 3.0], [-5.0, 0.0, 5.0], [0.0, 0.0, 0.0]])
        y = softmax.forward_matrix(x)
        np.testing.assert_allclose(y.sum(axis=1), 1.0, atol=1e-9)
        assert np.all((y >= 0.0) & (y <= 1.0))

    def test_large_inputs_do_not_overflow(self):
        """Test that the max shift keeps large logits finite."""
        softmax = get_activation(ActivationType.SOFTMAX)
        y = softmax.forward_vector(np.array([1000.0, 1001.0, 1002.0]))
        assert np.all(np.isfinite(y))
        assert abs(y.sum() - 1.0) < 1e-9

    def test_uniform_inputs_give_uniform_output(self):
        """Test that equal logits give equal probabilities."""
        softmax = get_activation(ActivationType.SOFTMAX)
        y = softmax.forward_vector(np.array([2.0, 2.0, 2.0, 2.0]))
        np.testing.assert_allclose(y, 0.25)

    def test_scalar_forms_are_unsupported(self):
        """Test that the per-element API raises UnsupportedOperationError."""
        softmax = get_activation(ActivationType.SOFTMAX)
        with pytest.raises(UnsupportedOperationError):
            softmax.forward(1.0)
        with pytest.raises(UnsupportedOperationError):
            softmax.backward(1.0)

    def test_backward_is_jacobian_diagonal(self):
        """Test that backward_vector returns s * (1 - s)."""
        softmax = get_activation(ActivationType.SOFTMAX)
        x = np.array([0.5, -1.0, 2.0])
        s = softmax.forward_vector(x)
        np.testing.assert_allclose(softmax.backward_vector(x), s * (1 - s))


@pytest.mark.unit
class TestRegistry:
    """Test get_activation lookups."""

    def test_same_instance_is_shared(self):
        """Test that lookups return one shared instance per type."""
        assert get_activation('relu') is get_activation(ActivationType.RELU)

    def test_lookup_is_case_insensitive(self):
        """Test that names are matched case-insensitively."""
        assert get_activation('SIGMOID').type is ActivationType.SIGMOID

    def test_instance_is_returned_unchanged(self):
        """Test that passing an Activation returns it as is."""
        sigmoid = Sigmoid()
        assert get_activation(sigmoid) is sigmoid

    def test_unknown_activation_raises(self):
        """Test that unknown names raise UnsupportedOperationError."""
        with pytest.raises(UnsupportedOperationError) as exc_info:
            get_activation('swish')
        assert "swish" in str(exc_info.value)
