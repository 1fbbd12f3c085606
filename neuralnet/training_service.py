"""
training_service.py
~~~~~~~~~~~~~~~~~~~

Background training runs and image classification on saved models.

A training run goes pending -> in_progress -> completed | failed. Runs are
spawned as gevent greenlets; the model yields to the event loop after every
sample so HTTP requests stay responsive while training. Progress is kept in
memory for live status queries and written to the database so it survives
the in-memory job.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

import gevent
import numpy as np

from neuralnet import __version__
from neuralnet.activations import ActivationType
from neuralnet.errors import ModelNotFoundError, StateError, ValidationError
from neuralnet.image_processing import images_to_dataset, load_image, render_prediction
from neuralnet.layers import LayerType, Padding
from neuralnet.model_persistence import ModelDatabase, TrainingStatus
from neuralnet.models import (
    BaseModel,
    ConvolutionalModel,
    SequentialModel,
    model_from_data,
)
from neuralnet.optimizers import SGDOptimizer

logger = logging.getLogger(__name__)

EmitFunc = Callable[[str, Dict[str, Any]], Any]

ARCHITECTURES = ('sequential', 'convolutional')
DEFAULT_IMAGE_SIZE = 32
MAX_IMAGE_SIZE = 128
MAX_HIDDEN_SIZE = 1024


def _yield_to_other_tasks() -> None:
    gevent.sleep(0)


def _check_positive(value: Any, name: str, integer: bool = True) -> None:
    types = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, types) or value <= 0:
        kind = 'integer' if integer else 'number'
        raise ValidationError(f"{name} must be a positive {kind}, got {value!r}")


def _check_at_most(value: int, limit: int, name: str) -> None:
    if value > limit:
        raise ValidationError(f"{name} must be at most {limit}, got {value}")


def build_model(
    model_id: str,
    architecture: str,
    image_size: int,
    hidden_size: int,
    num_classes: int,
    learning_rate: float
) -> BaseModel:
    """
    Build an untrained classifier for square grayscale images.

    Args:
        model_id: Id of the new model
        architecture: 'sequential' (dense hidden layer) or 'convolutional'
            (3x3 'same' convolution followed by a dense hidden layer)
        image_size: Side length of the input images
        hidden_size: Units in the hidden dense layer
        num_classes: Units in the softmax output layer
        learning_rate: SGD learning rate

    Returns:
        BaseModel: Model with a cross-entropy loss and an SGD optimizer
    """
    input_size = image_size * image_size
    name = f"Model_{model_id}"

    if architecture == 'sequential':
        model = SequentialModel(model_id, name)
        model.add_layer(
            LayerType.DENSE,
            id='hidden',
            input_size=input_size,
            output_size=hidden_size,
            activation=ActivationType.RELU
        )
        model.add_layer(
            LayerType.DENSE,
            id='output',
            input_size=hidden_size,
            output_size=num_classes,
            activation=ActivationType.SOFTMAX
        )
    elif architecture == 'convolutional':
        model = ConvolutionalModel(model_id, name)
        model.add_convolutional_layer(
            (image_size, image_size, 1),
            kernel_size=3,
            filters=4,
            padding=Padding.SAME
        )
        model.add_dense_layer(hidden_size, ActivationType.RELU)
        model.add_dense_layer(num_classes, ActivationType.SOFTMAX)
    else:
        raise ValidationError(
            f"Unsupported architecture {architecture!r}; use one of {list(ARCHITECTURES)}"
        )

    model.set_optimizer(SGDOptimizer(learning_rate))
    return model


class TrainingService:
    """
    Starts training runs in the background and reports their status.

    Args:
        database: ModelDatabase for training records and trained models
        spawn: Starts a background task, ``spawn(func, *args)``
            (gevent.spawn by default)
        emit: Publishes progress events, ``emit(event, payload)``
            (e.g. SocketIO.emit); optional
        yield_func: Called after every training sample (gevent.sleep(0)
            by default)
    """

    def __init__(
        self,
        database: ModelDatabase,
        spawn: Optional[Callable[..., Any]] = None,
        emit: Optional[EmitFunc] = None,
        yield_func: Optional[Callable[[], None]] = None
    ):
        self.database = database
        self._spawn = spawn or gevent.spawn
        self._emit = emit
        self._yield = yield_func or _yield_to_other_tasks
        # Training runs tracked in memory: {training_id: status_info}
        self.active_trainings: Dict[str, Dict[str, Any]] = {}

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        if self._emit is None:
            return
        self._emit(event, payload)
        # Let gevent send the message immediately
        self._yield()

    def start_training(
        self,
        image_paths: Sequence[str],
        labels: Sequence[str],
        epochs: int = 10,
        batch_size: int = 32,
        learning_rate: float = 0.01,
        image_size: int = DEFAULT_IMAGE_SIZE,
        hidden_size: int = 64,
        architecture: str = 'sequential'
    ) -> str:
        """
        Validate a training request, record it and start it in the background.

        Returns:
            str: The training id

        Raises:
            ValidationError: If the request is invalid
        """
        if len(image_paths) != len(labels):
            raise ValidationError("The number of images and labels must match")
        if not image_paths:
            raise ValidationError("At least one image is required for training")
        _check_positive(epochs, 'epochs')
        _check_positive(batch_size, 'batch_size')
        _check_positive(learning_rate, 'learning_rate', integer=False)
        _check_positive(image_size, 'image_size')
        _check_positive(hidden_size, 'hidden_size')
        _check_at_most(image_size, MAX_IMAGE_SIZE, 'image_size')
        _check_at_most(hidden_size, MAX_HIDDEN_SIZE, 'hidden_size')
        if architecture not in ARCHITECTURES:
            raise ValidationError(
                f"Unsupported architecture {architecture!r}; use one of {list(ARCHITECTURES)}"
            )

        # Classes in order of first appearance
        classes = list(dict.fromkeys(labels))
        training_id = str(uuid.uuid4())
        configuration = {
            'epochs': epochs,
            'batch_size': batch_size,
            'learning_rate': learning_rate,
            'optimizer': SGDOptimizer.name,
            'image_size': image_size,
            'hidden_size': hidden_size,
            'architecture': architecture,
            'classes': classes,
            'images': len(image_paths),
        }

        self.database.create_training(training_id, configuration)
        self.active_trainings[training_id] = {
            'training_id': training_id,
            'status': TrainingStatus.PENDING.value,
            'progress': 0,
            'epochs': epochs,
            'model_id': None,
            'results': {'accuracy': [], 'loss': []},
        }

        logger.info(
            f"Created training {training_id}: {len(image_paths)} image(s), "
            f"{len(classes)} class(es), epochs={epochs}, lr={learning_rate}, "
            f"architecture={architecture}"
        )

        self._spawn(
            self.run_training,
            training_id,
            list(image_paths),
            list(labels),
            classes,
            configuration
        )
        return training_id

    def run_training(
        self,
        training_id: str,
        image_paths: List[str],
        labels: List[str],
        classes: List[str],
        configuration: Dict[str, Any]
    ) -> None:
        """
        Background task that preprocesses the images, trains and saves a model.

        Sends progress updates through ``emit`` as training progresses. Any
        exception marks the run as failed.
        """
        job = self.active_trainings.setdefault(training_id, {
            'training_id': training_id,
            'results': {'accuracy': [], 'loss': []},
        })
        model_id = f"model_{training_id}"

        def on_epoch_complete(data: Dict[str, Any]) -> None:
            """Called after each training epoch to record and send progress."""
            progress = round(data['epoch'] / data['total_epochs'] * 100, 2)

            job['progress'] = progress
            job['results']['accuracy'].append(data['accuracy'])
            job['results']['loss'].append(data['loss'])

            self.database.update_training_status(
                training_id, TrainingStatus.IN_PROGRESS, progress
            )
            self.database.append_epoch_result(training_id, {
                'epoch': data['epoch'],
                'accuracy': data['accuracy'],
                'loss': data['loss'],
                'elapsed_time': data['elapsed_time'],
            })

            self._publish('training_update', {
                'training_id': training_id,
                'model_id': model_id,
                'epoch': data['epoch'],
                'total_epochs': data['total_epochs'],
                'accuracy': data['accuracy'],
                'loss': data['loss'],
                'elapsed_time': data['elapsed_time'],
                'progress': progress,
                'correct': data['correct'],
                'total': data['total']
            })

        try:
            logger.info(f"Starting training {training_id}")
            job['status'] = TrainingStatus.IN_PROGRESS.value
            job['progress'] = 0
            self.database.update_training_status(
                training_id, TrainingStatus.IN_PROGRESS, 0
            )

            image_size = configuration['image_size']
            inputs, targets = images_to_dataset(
                image_paths, labels, classes, image_size
            )

            model = build_model(
                model_id,
                configuration['architecture'],
                image_size,
                configuration['hidden_size'],
                len(classes),
                configuration['learning_rate']
            )

            start_time = time.time()
            history = model.train(
                inputs,
                targets,
                configuration['epochs'],
                configuration['batch_size'],
                callback=on_epoch_complete,
                yield_func=self._yield
            )
            training_time = time.time() - start_time

            accuracy = history['accuracy'][-1]
            loss = history['loss'][-1]
            self.database.save_model(
                model.save(),
                trained=True,
                accuracy=accuracy,
                loss=loss,
                metadata={
                    'classes': classes,
                    'image_size': image_size,
                    'grayscale': True,
                    'training_id': training_id,
                    'epochs': configuration['epochs'],
                    'training_time': training_time,
                    'version': __version__,
                }
            )

            self.database.update_training_status(
                training_id, TrainingStatus.COMPLETED, 100, model_id=model_id
            )
            job.update({
                'status': TrainingStatus.COMPLETED.value,
                'progress': 100,
                'model_id': model_id,
                'accuracy': accuracy,
                'loss': loss,
            })

            logger.info(
                f"Training {training_id} completed: accuracy {accuracy:.2%}, "
                f"loss {loss:.4f}, model {model_id}"
            )

            self._publish('training_complete', {
                'training_id': training_id,
                'model_id': model_id,
                'status': TrainingStatus.COMPLETED.value,
                'accuracy': float(accuracy),
                'loss': float(loss),
                'progress': 100
            })

        except Exception as e:
            logger.exception(f"Training {training_id} failed: {e}")

            job['status'] = TrainingStatus.FAILED.value
            job['error'] = str(e)
            self.database.update_training_status(
                training_id, TrainingStatus.FAILED, error=str(e)
            )

            self._publish('training_error', {
                'training_id': training_id,
                'status': TrainingStatus.FAILED.value,
                'error': str(e)
            })

    def get_training_status(self, training_id: str) -> Optional[Dict[str, Any]]:
        """
        Status of a training run: in-memory job first, then the database.

        Returns:
            dict: training_id, status, progress, model_id, results
            ({'accuracy': [...], 'loss': [...]}) and error, or None if the
            run is unknown
        """
        job = self.active_trainings.get(training_id)
        if job is not None:
            return {
                'training_id': training_id,
                'status': job.get('status'),
                'progress': job.get('progress', 0),
                'model_id': job.get('model_id'),
                'results': {
                    'accuracy': list(job['results']['accuracy']),
                    'loss': list(job['results']['loss']),
                },
                'error': job.get('error'),
            }

        record = self.database.get_training(training_id)
        if record is None:
            return None

        epochs = record['results'].get('epochs', [])
        return {
            'training_id': training_id,
            'status': record['status'],
            'progress': record['progress'],
            'model_id': record['model_id'],
            'results': {
                'accuracy': [epoch['accuracy'] for epoch in epochs],
                'loss': [epoch['loss'] for epoch in epochs],
            },
            'error': record['error'],
        }

    def active_count(self) -> int:
        """Number of runs that are pending or in progress."""
        active_statuses = (TrainingStatus.PENDING.value, TrainingStatus.IN_PROGRESS.value)
        return sum(
            1 for job in self.active_trainings.values()
            if job.get('status') in active_statuses
        )

    def cleanup_finished_trainings(self) -> int:
        """
        Remove completed or failed runs from memory.

        Their status remains available from the database.
        """
        finished_statuses = {TrainingStatus.COMPLETED.value, TrainingStatus.FAILED.value}
        finished = [
            training_id for training_id, job in self.active_trainings.items()
            if job.get('status') in finished_statuses
        ]
        for training_id in finished:
            del self.active_trainings[training_id]

        if finished:
            logger.info(f"Cleaned up {len(finished)} finished training run(s)")
        return len(finished)


class ClassificationService:
    """
    Classifies images with a saved model.

    The most recently saved model is loaded on first use unless a model id
    is given.
    """

    def __init__(self, database: ModelDatabase, top_n: int = 3):
        self.database = database
        self.top_n = top_n
        self.model: Optional[BaseModel] = None
        self.model_id: Optional[str] = None
        self.classes: List[str] = []
        self.image_size = DEFAULT_IMAGE_SIZE
        self.grayscale = True
        self.last_updated: Optional[str] = None

    @property
    def is_model_loaded(self) -> bool:
        return self.model is not None

    def load_model(self, model_id: Optional[str] = None) -> BaseModel:
        """
        Load a model and the classes it was trained on.

        Args:
            model_id: Model to load; the newest saved model when omitted

        Raises:
            ModelNotFoundError: If the model (or any model) does not exist
        """
        if model_id is None:
            model_id = self._latest_model_id()

        model_data = self.database.load_model_data(model_id)
        if model_data is None:
            raise ModelNotFoundError(f"Model not found: {model_id}")
        info = self.database.get_model_metadata(model_id) or {}
        metadata = info.get('metadata') or {}

        model = model_from_data(model_data)
        output_size = model.layer_instances[-1].output_size

        self.model = model
        self.model_id = model_id
        self.classes = metadata.get('classes') or [f"class_{i}" for i in range(output_size)]
        self.image_size = metadata.get('image_size', DEFAULT_IMAGE_SIZE)
        self.grayscale = metadata.get('grayscale', True)
        self.last_updated = info.get('updated_at')

        logger.info(f"Loaded model {model_id} with classes {self.classes}")
        return model

    def _latest_model_id(self) -> str:
        saved = self.database.list_models()
        if not saved:
            raise ModelNotFoundError("No model available for classification")
        return saved[0]['model_id']

    def _class_name(self, index: int) -> str:
        if index < len(self.classes):
            return self.classes[index]
        return f"class_{index}"

    def classify_image(
        self,
        source,
        model_id: Optional[str] = None,
        include_image: bool = False
    ) -> Dict[str, Any]:
        """
        Classify one image.

        Args:
            source: Image file path or binary file object
            model_id: Model to use; the newest saved model when omitted, so
                a model trained after the last request is picked up
            include_image: Add the preprocessed image, titled with the
                prediction, as a base64 PNG under 'image'

        Returns:
            dict: classification, confidence, processing_time (seconds),
            top_predictions ([{'class', 'probability'}]) and model_id

        Raises:
            ModelNotFoundError: If no model is available
            ValidationError: If the image cannot be read
        """
        if model_id is None:
            model_id = self._latest_model_id()
        if self.model is None or model_id != self.model_id:
            self.load_model(model_id)
        if self.model is None:
            raise StateError("No model loaded")

        start_time = time.time()
        inputs = load_image(source, self.image_size, self.grayscale)
        output = self.model.predict(inputs)[0]

        ranking = np.argsort(output)[::-1]
        best = int(ranking[0])
        top_predictions = [
            {'class': self._class_name(int(i)), 'probability': float(output[i])}
            for i in ranking[:self.top_n]
        ]
        processing_time = time.time() - start_time

        logger.debug(
            f"Classified image as {self._class_name(best)} "
            f"({float(output[best]):.2%}) in {processing_time:.3f}s"
        )

        result = {
            'classification': self._class_name(best),
            'confidence': float(output[best]),
            'processing_time': processing_time,
            'top_predictions': top_predictions,
            'model_id': self.model_id,
        }
        if include_image:
            result['image'] = render_prediction(
                inputs[0], self.image_size, result['classification']
            )
        return result

    def status(self) -> Dict[str, Any]:
        return {
            'is_active': True,
            'model_loaded': self.is_model_loaded,
            'model_id': self.model_id,
            'last_updated': self.last_updated,
            'version': __version__,
            'supported_classes': list(self.classes),
        }
