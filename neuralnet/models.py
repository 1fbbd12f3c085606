"""
models.py
~~~~~~~~~

Models compose layers into a network and run training and evaluation.

A model moves through three states: uninitialized (layers are being
added), initialized (parameters allocated or loaded) and trained. The
training loop processes one sample at a time: forward through every layer,
loss and arg-max correctness for the metrics, then the loss gradient flows
backward through the layers in reverse order.
"""

import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, Union

import numpy as np

from neuralnet.activations import ActivationType
from neuralnet.errors import ShapeMismatchError, StateError, ValidationError
from neuralnet.layers import (
    ConvolutionalLayer,
    DenseLayer,
    Layer,
    LayerType,
    Padding,
    create_layer,
    layer_from_json,
)
from neuralnet.losses import LossType, get_loss
from neuralnet.optimizers import Optimizer, SGDOptimizer, create_optimizer

logger = logging.getLogger(__name__)

EpochCallback = Callable[[Dict[str, Any]], None]


class ModelState(str, Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZED = 'initialized'
    TRAINED = 'trained'


def _as_samples(data, name: str) -> np.ndarray:
    """
    Normalize a dataset to shape (samples, batch, features).

    A 2D array is treated as one sample per row.
    """
    try:
        array = np.asarray(data, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a numeric array: {e}") from e
    if array.ndim == 2:
        array = array[:, np.newaxis, :]
    if array.ndim != 3:
        raise ValidationError(
            f"{name} must have shape (samples, features) or "
            f"(samples, batch, features), got {array.shape}"
        )
    if array.shape[0] == 0:
        raise ValidationError(f"{name} must contain at least one sample")
    return array


def _is_prediction_correct(output: np.ndarray, target: np.ndarray) -> bool:
    """True when every row's arg-max matches the target row's arg-max."""
    return bool(np.all(np.argmax(output, axis=1) == np.argmax(target, axis=1)))


class BaseModel:
    """
    Ordered stack of layers with a shared optimizer and a loss function.

    Args:
        model_id: Unique identifier (generated when omitted)
        name: Human readable name
        optimizer: Optimizer shared by all layers (SGD with lr=0.01 when
            omitted)
        loss: LossType to train with. When omitted it is detected from the
            output layer (cross-entropy after softmax, MSE otherwise) and
            frozen when the model is initialized.
    """

    model_type = 'base'

    def __init__(
        self,
        model_id: Optional[str] = None,
        name: Optional[str] = None,
        optimizer: Optional[Optimizer] = None,
        loss: Union[str, LossType, None] = None
    ):
        self.id = model_id or uuid.uuid4().hex
        self.name = name or f"Model_{self.id}"
        self.layer_instances: List[Layer] = []
        self.optimizer = optimizer
        self.state = ModelState.UNINITIALIZED
        self._loss_type: Optional[LossType] = None
        if loss is not None:
            self.set_loss(loss)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    @property
    def layers(self) -> List[str]:
        """Ordered layer ids."""
        return [layer.id for layer in self.layer_instances]

    @property
    def is_initialized(self) -> bool:
        return self.state is not ModelState.UNINITIALIZED

    def add(self, layer: Layer) -> Layer:
        """
        Append a layer.

        Raises:
            StateError: If the model is already initialized
            ValidationError: If the layer id is already used
            ShapeMismatchError: If the layer cannot consume the previous
                layer's output
        """
        if self.is_initialized:
            raise StateError(
                f"Cannot add layers to model '{self.id}' after initialization"
            )
        if layer.id in self.layers:
            raise ValidationError(f"Duplicate layer id '{layer.id}'")
        if self.layer_instances:
            previous = self.layer_instances[-1]
            if previous.output_size != layer.input_size:
                raise ShapeMismatchError(
                    f"Layer '{layer.id}' expects {layer.input_size} inputs but "
                    f"'{previous.id}' produces {previous.output_size}"
                )
        self.layer_instances.append(layer)
        return layer

    def set_optimizer(self, optimizer: Optimizer) -> None:
        self.optimizer = optimizer

    def set_loss(self, loss: Union[str, LossType]) -> None:
        """
        Choose the loss function explicitly.

        Raises:
            StateError: Once the model is initialized the loss is fixed
        """
        if self.is_initialized:
            raise StateError(
                f"Loss of model '{self.id}' is fixed once it is initialized"
            )
        get_loss(loss)
        self._loss_type = LossType(loss.value if isinstance(loss, LossType) else str(loss).lower())

    @property
    def loss_type(self) -> LossType:
        """Explicit loss, or the one detected from the current output layer."""
        if self._loss_type is not None:
            return self._loss_type
        return self._detect_loss()

    def _detect_loss(self) -> LossType:
        if self.layer_instances:
            activation = self.layer_instances[-1].activation
            if activation is not None and activation.type is ActivationType.SOFTMAX:
                return LossType.CROSS_ENTROPY
        return LossType.MSE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Initialize every layer once. Further calls are no-ops."""
        if self.is_initialized:
            return
        if not self.layer_instances:
            raise StateError(f"Model '{self.id}' has no layers")
        for layer in self.layer_instances:
            layer.initialize()
        self._loss_type = self.loss_type
        self.state = ModelState.INITIALIZED
        logger.debug(
            f"Initialized model '{self.id}' with {len(self.layer_instances)} "
            f"layer(s), loss={self._loss_type.value}"
        )

    def _forward(self, batch: np.ndarray) -> np.ndarray:
        output = batch
        for layer in self.layer_instances:
            output = layer.forward(output)
        return output

    def predict(self, inputs) -> np.ndarray:
        """
        Run a forward pass.

        Args:
            inputs: Array-like of shape (batch_size, features) or a single
                flat sample

        Returns:
            np.ndarray: Output of the last layer, (batch_size, outputs)
        """
        self.initialize()
        batch = np.asarray(inputs, dtype=np.float64)
        if batch.ndim == 1:
            batch = batch.reshape(1, -1)
        return self._forward(batch)

    def train(
        self,
        inputs,
        targets,
        epochs: int,
        batch_size: int = 1,
        callback: Optional[EpochCallback] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> Dict[str, List[float]]:
        """
        Train the model sample by sample.

        Args:
            inputs: Samples, shape (samples, features) or
                (samples, batch, features)
            targets: One-hot targets with matching leading dimensions
            epochs: Number of passes over the data
            batch_size: Accepted for API compatibility; samples are still
                processed one at a time
            callback: Called after each epoch with a dict holding epoch,
                total_epochs, accuracy, loss, correct, total and
                elapsed_time
            yield_func: Called after each sample so a cooperative scheduler
                can run other tasks

        Returns:
            dict: Per-epoch history {'accuracy': [...], 'loss': [...]}

        Raises:
            ValidationError: If the data or the hyper-parameters are invalid
        """
        for value, label in ((epochs, 'epochs'), (batch_size, 'batch_size')):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise ValidationError(f"{label} must be a positive integer, got {value!r}")

        samples = _as_samples(inputs, 'inputs')
        expected = _as_samples(targets, 'targets')
        if samples.shape[:2] != expected.shape[:2]:
            raise ValidationError(
                f"inputs {samples.shape} and targets {expected.shape} do not "
                f"describe the same samples"
            )

        self.initialize()
        if self.optimizer is None:
            self.optimizer = SGDOptimizer(0.01)
        loss_fn, gradient_fn = get_loss(self._loss_type)

        history: Dict[str, List[float]] = {'accuracy': [], 'loss': []}
        total = samples.shape[0]
        start_time = time.time()

        for epoch in range(epochs):
            total_loss = 0.0
            correct = 0

            for sample, target in zip(samples, expected):
                output = self._forward(sample)
                total_loss += loss_fn(output, target)
                if _is_prediction_correct(output, target):
                    correct += 1

                gradient = gradient_fn(output, target)
                for layer in reversed(self.layer_instances):
                    gradient = layer.backward(
                        gradient, self.optimizer.learning_rate, self.optimizer
                    )

                if yield_func is not None:
                    yield_func()

            accuracy = correct / total
            average_loss = total_loss / total
            history['accuracy'].append(accuracy)
            history['loss'].append(average_loss)
            self.state = ModelState.TRAINED

            logger.info(
                f"Model '{self.id}' epoch {epoch + 1}/{epochs} - "
                f"loss: {average_loss:.4f} - accuracy: {accuracy:.2%}"
            )

            if callback is not None:
                callback({
                    'epoch': epoch + 1,
                    'total_epochs': epochs,
                    'accuracy': accuracy,
                    'loss': average_loss,
                    'correct': correct,
                    'total': total,
                    'elapsed_time': time.time() - start_time,
                })

        return history

    def evaluate(self, inputs, targets) -> Dict[str, float]:
        """
        Compute accuracy and average loss without updating any parameter.

        Returns:
            dict: {'accuracy': float, 'loss': float}
        """
        samples = _as_samples(inputs, 'inputs')
        expected = _as_samples(targets, 'targets')
        if samples.shape[:2] != expected.shape[:2]:
            raise ValidationError(
                f"inputs {samples.shape} and targets {expected.shape} do not "
                f"describe the same samples"
            )

        self.initialize()
        loss_fn, _ = get_loss(self._loss_type)

        total_loss = 0.0
        correct = 0
        for sample, target in zip(samples, expected):
            output = self._forward(sample)
            total_loss += loss_fn(output, target)
            if _is_prediction_correct(output, target):
                correct += 1

        total = samples.shape[0]
        return {'accuracy': correct / total, 'loss': total_loss / total}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> Dict[str, Any]:
        """
        Serialize the model to a plain, JSON-compatible dict.

        Returns:
            dict: id, name, model_type, layers (ordered ids), layersData
            (one {id, type, weights} entry per layer), architecture (one
            layer configuration per layer), optimizer and loss
        """
        self.initialize()
        layers_data = [
            {
                'id': layer.id,
                'type': layer.type.value,
                'weights': layer.get_weights(),
            }
            for layer in self.layer_instances
        ]
        return {
            'id': self.id,
            'name': self.name,
            'model_type': self.model_type,
            'layers': self.layers,
            'layersData': layers_data,
            'architecture': [layer.get_config() for layer in self.layer_instances],
            'optimizer': self.optimizer.to_json() if self.optimizer else None,
            'loss': self._loss_type.value,
        }

    def load(self, model_data: Dict[str, Any]) -> None:
        """
        Load weights produced by ``save`` into this model's layers.

        Every layer must find an entry with its id and type in
        ``layersData``; nothing is applied unless every entry is valid.

        Raises:
            ValidationError: If layersData is missing or malformed, or if
                the entries do not match the model's layers
        """
        if not isinstance(model_data, dict):
            raise ValidationError("Invalid model data: expected a dict")
        layers_data = model_data.get('layersData')
        if not isinstance(layers_data, list):
            raise ValidationError("Invalid model data: missing layer information")

        entries: Dict[str, Dict[str, Any]] = {}
        for entry in layers_data:
            if not isinstance(entry, dict) or 'id' not in entry or not isinstance(entry.get('weights'), dict):
                raise ValidationError(f"Invalid layer entry in model data: {entry!r}")
            entries[entry['id']] = entry

        unknown = set(entries) - set(self.layers)
        if len(entries) != len(self.layer_instances) or unknown:
            raise ValidationError(
                f"Model data describes layers {sorted(entries)} but model "
                f"'{self.id}' has {self.layers}"
            )

        for layer in self.layer_instances:
            entry = entries[layer.id]
            if entry.get('type', layer.type.value) != layer.type.value:
                raise ValidationError(
                    f"Layer '{layer.id}' is {layer.type.value} but model data "
                    f"has type {entry.get('type')!r}"
                )
            # Validate on a scratch copy so a bad entry leaves the model untouched
            layer_from_json(layer.get_config()).set_weights(entry['weights'])

        for layer in self.layer_instances:
            layer.set_weights(entries[layer.id]['weights'])

        if model_data.get('optimizer'):
            self.optimizer = create_optimizer(model_data['optimizer'])
        if self._loss_type is None and model_data.get('loss'):
            self.set_loss(model_data['loss'])
        self._loss_type = self.loss_type
        self.state = ModelState.INITIALIZED
        logger.info(f"Loaded weights for model '{self.id}' ({len(self.layer_instances)} layers)")

    def summary(self) -> List[Dict[str, Any]]:
        """Per-layer overview: id, type, shapes, activation and parameters."""
        return [
            {
                'id': layer.id,
                'type': layer.type.value,
                'input_shape': list(layer.input_shape),
                'output_shape': list(layer.output_shape),
                'activation': layer.activation.name if layer.activation else None,
                'parameters': layer.parameter_count(),
            }
            for layer in self.layer_instances
        ]

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(id={self.id!r}, layers={self.layers}, "
            f"state={self.state.value})"
        )


class SequentialModel(BaseModel):
    """Model built by appending layers of any type, one after another."""

    model_type = 'sequential'

    def add_layer(self, layer_type: Union[str, LayerType], **config) -> Layer:
        """
        Create a layer with the layer factory and append it.

        Example:
            >>> model = SequentialModel('m1', 'demo')
            >>> model.add_layer(LayerType.DENSE, id='out', input_size=2,
            ...                 output_size=2, activation='softmax')
        """
        return self.add(create_layer(layer_type, **config))


class ConvolutionalModel(BaseModel):
    """Model for image data: convolutional layers followed by dense layers."""

    model_type = 'convolutional'

    def add_convolutional_layer(
        self,
        input_shape,
        kernel_size,
        filters: int,
        stride=1,
        padding: Union[str, Padding] = Padding.VALID,
        activation: Union[str, ActivationType, None] = ActivationType.RELU
    ) -> Layer:
        layer = ConvolutionalLayer(
            f"conv_{len(self.layer_instances) + 1}",
            input_shape,
            kernel_size,
            filters,
            stride=stride,
            padding=padding,
            activation=activation
        )
        return self.add(layer)

    def add_dense_layer(
        self,
        output_size: int,
        activation: Union[str, ActivationType, None] = ActivationType.RELU,
        input_size: Optional[int] = None
    ) -> Layer:
        """
        Append a dense layer; input_size defaults to the previous layer's
        flattened output size.
        """
        if input_size is None:
            if not self.layer_instances:
                raise ValidationError("input_size is required for the first layer")
            input_size = self.layer_instances[-1].output_size
        layer = DenseLayer(
            f"dense_{len(self.layer_instances) + 1}",
            input_size,
            output_size,
            activation
        )
        return self.add(layer)


MODEL_CLASSES: Dict[str, Type[BaseModel]] = {
    SequentialModel.model_type: SequentialModel,
    ConvolutionalModel.model_type: ConvolutionalModel,
}


def model_from_data(model_data: Dict[str, Any]) -> BaseModel:
    """
    Rebuild a model, layers and weights, from ``save`` output.

    Raises:
        ValidationError: If the model type is unknown or the architecture
            is missing or malformed
    """
    if not isinstance(model_data, dict):
        raise ValidationError("Invalid model data: expected a dict")
    model_type = model_data.get('model_type', SequentialModel.model_type)
    model_class = MODEL_CLASSES.get(model_type)
    if model_class is None:
        raise ValidationError(f"Unsupported model type: {model_type!r}")

    architecture = model_data.get('architecture')
    if not isinstance(architecture, list) or not architecture:
        raise ValidationError("Invalid model data: missing architecture")

    model = model_class(model_data.get('id'), model_data.get('name'))
    for config in architecture:
        model.add(layer_from_json(config))
    model.load(model_data)
    return model
