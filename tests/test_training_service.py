"""
test_training_service.py
~~~~~~~~~~~~~~~~~~~~~~~~

Tests for background training runs and image classification.

Training runs are executed synchronously by passing a spawn function that
calls the task directly.
"""

import base64

import pytest
from PIL import Image

from neuralnet.errors import ModelNotFoundError, ValidationError
from neuralnet.model_persistence import ModelDatabase, TrainingStatus
from neuralnet.models import ConvolutionalModel, SequentialModel
from neuralnet.training_service import (
    MAX_HIDDEN_SIZE,
    MAX_IMAGE_SIZE,
    ClassificationService,
    TrainingService,
    build_model,
)


def run_now(func, *args):
    return func(*args)


@pytest.fixture
def database(tmp_path):
    return ModelDatabase(str(tmp_path / "models" / "networks.db"))


@pytest.fixture
def events():
    """Events published by the training service, as (name, payload)."""
    return []


@pytest.fixture
def service(database, events):
    return TrainingService(
        database,
        spawn=run_now,
        emit=lambda event, payload: events.append((event, payload)),
        yield_func=lambda: None
    )


@pytest.fixture
def labelled_images(tmp_path):
    """Four 6x6 images: two light, two dark."""
    paths = []
    labels = []
    for i, (color, label) in enumerate([
        ((250, 250, 250), 'light'),
        ((10, 10, 10), 'dark'),
        ((230, 240, 220), 'light'),
        ((30, 20, 25), 'dark'),
    ]):
        path = tmp_path / f"image_{i}.png"
        Image.new('RGB', (6, 6), color).save(path)
        paths.append(str(path))
        labels.append(label)
    return paths, labels


@pytest.mark.unit
class TestBuildModel:
    """Test the classifier factory."""

    def test_sequential(self):
        model = build_model('m', 'sequential', 4, 8, 3, 0.05)
        assert isinstance(model, SequentialModel)
        assert model.layers == ['hidden', 'output']
        assert model.layer_instances[0].input_size == 16
        assert model.layer_instances[-1].output_size == 3
        assert model.optimizer.learning_rate == 0.05

    def test_convolutional(self):
        model = build_model('m', 'convolutional', 4, 8, 2, 0.01)
        assert isinstance(model, ConvolutionalModel)
        assert model.layers == ['conv_1', 'dense_2', 'dense_3']
        assert model.layer_instances[1].input_size == 4 * 4 * 4

    def test_unknown_architecture(self):
        with pytest.raises(ValidationError):
            build_model('m', 'recurrent', 4, 8, 2, 0.01)


@pytest.mark.integration
class TestTrainingService:
    """Test training runs end to end with a synchronous spawn."""

    def test_training_completes(self, service, database, events, labelled_images):
        """Test that a run trains, saves a model and reports completion."""
        paths, labels = labelled_images

        training_id = service.start_training(
            paths, labels, epochs=3, batch_size=2, learning_rate=0.1,
            image_size=4, hidden_size=8
        )
        status = service.get_training_status(training_id)

        assert status['status'] == TrainingStatus.COMPLETED.value
        assert status['progress'] == 100
        assert status['model_id'] == f"model_{training_id}"
        assert len(status['results']['accuracy']) == 3
        assert status['error'] is None

        metadata = database.get_model_metadata(status['model_id'])
        assert metadata['trained'] is True
        assert metadata['metadata']['classes'] == ['light', 'dark']
        assert metadata['metadata']['image_size'] == 4
        assert metadata['metadata']['training_id'] == training_id

        record = database.get_training(training_id)
        assert record['status'] == 'completed'
        assert len(record['results']['epochs']) == 3

    def test_events_are_published(self, service, events, labelled_images):
        """Test one training_update per epoch and a final training_complete."""
        paths, labels = labelled_images

        training_id = service.start_training(paths, labels, epochs=2, image_size=4, hidden_size=4)

        names = [name for name, _ in events]
        assert names == ['training_update', 'training_update', 'training_complete']
        update = events[0][1]
        assert update['training_id'] == training_id
        assert update['epoch'] == 1
        assert update['total_epochs'] == 2
        assert update['progress'] == 50
        assert update['total'] == 4
        assert events[-1][1]['model_id'] == f"model_{training_id}"

    def test_convolutional_training(self, service, labelled_images):
        """Test that the convolutional architecture trains as well."""
        paths, labels = labelled_images

        training_id = service.start_training(
            paths, labels, epochs=1, image_size=4, hidden_size=4,
            architecture='convolutional'
        )

        assert service.get_training_status(training_id)['status'] == 'completed'

    def test_unreadable_image_fails_run(self, service, database, events, labelled_images, tmp_path):
        """Test that a failing run is marked failed and reports the error."""
        paths, labels = labelled_images
        broken = tmp_path / "broken.png"
        broken.write_bytes(b"garbage")

        training_id = service.start_training(paths + [str(broken)], labels + ['dark'], epochs=1)

        status = service.get_training_status(training_id)
        assert status['status'] == TrainingStatus.FAILED.value
        assert 'broken.png' in status['error']
        assert database.get_training(training_id)['status'] == 'failed'
        assert events[-1][0] == 'training_error'
        assert service.active_count() == 0

    @pytest.mark.parametrize("overrides", [
        {'epochs': 0},
        {'batch_size': -1},
        {'learning_rate': 0},
        {'image_size': 2.5},
        {'image_size': MAX_IMAGE_SIZE + 1},
        {'hidden_size': MAX_HIDDEN_SIZE + 1},
        {'architecture': 'recurrent'},
    ])
    def test_invalid_parameters(self, service, labelled_images, overrides):
        """Test that invalid training parameters are rejected up front."""
        paths, labels = labelled_images
        with pytest.raises(ValidationError):
            service.start_training(paths, labels, **overrides)
        assert service.active_trainings == {}

    def test_mismatched_labels(self, service, labelled_images):
        paths, labels = labelled_images
        with pytest.raises(ValidationError):
            service.start_training(paths, labels[:-1])

    def test_no_images(self, service):
        with pytest.raises(ValidationError):
            service.start_training([], [])

    def test_unknown_training(self, service):
        """Test that an unknown id gives None."""
        assert service.get_training_status("missing") is None

    def test_status_survives_cleanup(self, service, labelled_images):
        """Test that finished runs are read from the database after cleanup."""
        paths, labels = labelled_images
        training_id = service.start_training(paths, labels, epochs=2, image_size=4, hidden_size=4)
        before = service.get_training_status(training_id)

        assert service.cleanup_finished_trainings() == 1
        assert training_id not in service.active_trainings

        after = service.get_training_status(training_id)
        assert after['status'] == 'completed'
        assert after['model_id'] == before['model_id']
        assert after['results']['accuracy'] == pytest.approx(before['results']['accuracy'])

    def test_pending_runs_are_active(self, database, labelled_images):
        """Test that a spawned but not yet started run counts as active."""
        paths, labels = labelled_images
        deferred = []
        service = TrainingService(
            database,
            spawn=lambda func, *args: deferred.append((func, args)),
            yield_func=lambda: None
        )

        training_id = service.start_training(paths, labels, epochs=1, image_size=4)

        assert service.active_count() == 1
        assert service.get_training_status(training_id)['status'] == 'pending'
        assert database.get_training(training_id)['status'] == 'pending'

        func, args = deferred[0]
        func(*args)
        assert service.active_count() == 0


@pytest.mark.integration
class TestClassificationService:
    """Test classifying images with saved models."""

    def test_no_model_available(self, database, labelled_images):
        """Test that classification without any model raises ModelNotFoundError."""
        paths, _ = labelled_images
        with pytest.raises(ModelNotFoundError):
            ClassificationService(database).classify_image(paths[0])

    def test_unknown_model(self, database):
        with pytest.raises(ModelNotFoundError):
            ClassificationService(database).load_model("missing")

    def test_classify_with_latest_model(self, service, database, labelled_images):
        """Test classification output with the newest trained model."""
        paths, labels = labelled_images
        training_id = service.start_training(
            paths, labels, epochs=5, learning_rate=0.1, image_size=4, hidden_size=8
        )
        classification = ClassificationService(database)

        result = classification.classify_image(paths[0])

        assert result['model_id'] == f"model_{training_id}"
        assert result['classification'] in ('light', 'dark')
        assert 0.0 <= result['confidence'] <= 1.0
        assert result['processing_time'] >= 0
        predictions = result['top_predictions']
        assert len(predictions) == 2
        assert predictions[0]['class'] == result['classification']
        assert predictions[0]['probability'] == result['confidence']
        assert predictions[0]['probability'] >= predictions[1]['probability']
        assert sum(p['probability'] for p in predictions) == pytest.approx(1.0)

    def test_newer_model_is_picked_up(self, service, database, labelled_images):
        """Test that a model trained after the last request is used next."""
        paths, labels = labelled_images
        first = service.start_training(paths, labels, epochs=1, image_size=4, hidden_size=4)
        classification = ClassificationService(database)
        assert classification.classify_image(paths[0])['model_id'] == f"model_{first}"

        second = service.start_training(paths, labels, epochs=1, image_size=4, hidden_size=4)

        assert classification.classify_image(paths[0])['model_id'] == f"model_{second}"
        assert classification.classify_image(paths[0], model_id=f"model_{first}")['model_id'] == f"model_{first}"

    def test_include_image(self, service, database, labelled_images):
        """Test that the rendered prediction is returned on request."""
        paths, labels = labelled_images
        service.start_training(paths, labels, epochs=1, image_size=4, hidden_size=4)
        classification = ClassificationService(database)

        assert 'image' not in classification.classify_image(paths[0])
        result = classification.classify_image(paths[0], include_image=True)

        assert base64.b64decode(result['image']).startswith(b'\x89PNG')

    def test_status_reports_loaded_model(self, service, database, labelled_images):
        paths, labels = labelled_images
        service.start_training(paths, labels, epochs=1, image_size=4, hidden_size=4)
        classification = ClassificationService(database)

        assert classification.status()['model_loaded'] is False
        classification.load_model()

        status = classification.status()
        assert status['model_loaded'] is True
        assert status['supported_classes'] == ['light', 'dark']
        assert status['is_active'] is True
