"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for image classification.

This module provides endpoints for:
- Classifying uploaded images with the latest (or a chosen) trained model
- Training models on uploaded, labelled images with real-time progress
  updates via WebSockets
- Listing, inspecting and deleting saved models

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for model persistence
"""

import os
import sys
import uuid
import logging
from typing import Any, Callable, Dict, List, Optional

import gevent
from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from neuralnet import __version__
from neuralnet.errors import ModelNotFoundError, ValidationError
from neuralnet.image_processing import allowed_file
from neuralnet.model_persistence import (
    DEFAULT_DB_PATH,
    ModelDatabase,
    delete_model,
    delete_old_models,
    get_model_metadata,
    list_saved_models,
)
from neuralnet.training_service import ClassificationService, TrainingService

MAX_FILE_SIZE = 5 * 1024 * 1024
MAX_FILES = 50

logger = logging.getLogger(__name__)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('neuralnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


# ============================================================================
# FLASK APP SETUP
# ============================================================================

def _default_config() -> Dict[str, Any]:
    return {
        'MODEL_DB_PATH': os.getenv('MODEL_DB_PATH', DEFAULT_DB_PATH),
        'UPLOAD_FOLDER': os.getenv('UPLOAD_FOLDER', 'uploads'),
        'MAX_CONTENT_LENGTH': MAX_FILES * MAX_FILE_SIZE,
        'SOCKETIO_ASYNC_MODE': 'gevent',
        'CLEANUP_DAYS': 2,
        # Starts background training runs; defaults to socketio.start_background_task
        'TRAINING_SPAWN': None,
    }


def create_app(config: Optional[Dict[str, Any]] = None) -> Flask:
    """
    Create the Flask application.

    Args:
        config: Overrides for the default configuration (MODEL_DB_PATH,
            UPLOAD_FOLDER, SOCKETIO_ASYNC_MODE, TRAINING_SPAWN, ...)

    Returns:
        Flask: The application; its SocketIO server is available as
        ``app.extensions['socketio']``
    """
    app = Flask(__name__)
    app.config.update(_default_config())
    if config:
        app.config.update(config)

    CORS(app, resources={r"/*": {"origins": "*"}})

    is_production = os.getenv('FLASK_ENV') == 'production'

    # SocketIO enables real-time communication (WebSockets) for training updates
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=app.config['SOCKETIO_ASYNC_MODE'],
        logger=not is_production,
        engineio_logger=not is_production,
        ping_timeout=60,
        ping_interval=25
    )

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    database = ModelDatabase(app.config['MODEL_DB_PATH'])
    spawn = app.config['TRAINING_SPAWN'] or socketio.start_background_task

    app.extensions['neuralnet'] = {
        'database': database,
        'training': TrainingService(database, spawn=spawn, emit=socketio.emit),
        'classification': ClassificationService(database),
    }

    _register_routes(app)
    logger.info(
        f"Created app with database {app.config['MODEL_DB_PATH']} and upload "
        f"folder {app.config['UPLOAD_FOLDER']}"
    )
    return app


def _training_service() -> TrainingService:
    return current_app.extensions['neuralnet']['training']


def _classification_service() -> ClassificationService:
    return current_app.extensions['neuralnet']['classification']


def _db_path() -> str:
    return current_app.config['MODEL_DB_PATH']


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _form_number(name: str, default, cast: Callable[[str], Any]):
    """Read an optional numeric form field."""
    raw = request.form.get(name)
    if raw is None or raw == '':
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from None


def _save_uploads(files) -> List[str]:
    """Store uploaded files under unique names and return their paths."""
    upload_folder = current_app.config['UPLOAD_FOLDER']
    paths = []
    for file in files:
        filename = f"{uuid.uuid4().hex}_{secure_filename(file.filename)}"
        path = os.path.join(upload_folder, filename)
        file.save(path)
        paths.append(path)
    return paths


# ============================================================================
# API ENDPOINTS
# ============================================================================

def _register_routes(app: Flask) -> None:

    @app.errorhandler(RequestEntityTooLarge)
    def request_too_large(e):
        return jsonify({
            'error': f'Upload too large: at most {MAX_FILES} files of '
                     f'{MAX_FILE_SIZE // (1024 * 1024)} MB'
        }), 413

    @app.route('/api/status', methods=['GET'])
    def get_status():
        """
        Return server status and statistics.

        Training jobs counts only runs that are pending or in progress.
        """
        return jsonify({
            'status': 'online',
            'version': __version__,
            'saved_models': len(list_saved_models(db_path=_db_path())),
            'training_jobs': _training_service().active_count()
        }), 200

    @app.route('/api/images/classify', methods=['POST'])
    def classify_image():
        """
        Classify an uploaded image.

        Form data:
            image: Image file
            model_id: Optional model to use (latest model by default)
            include_image: "true" to add the preprocessed image with its
                prediction as a base64 PNG ("image")

        Returns:
            JSON with classification, confidence, processing_time and
            top_predictions
        """
        file = request.files.get('image')
        if file is None or not file.filename:
            return jsonify({'error': 'No image provided'}), 400
        if not allowed_file(file.filename):
            return jsonify({'error': f'Unsupported file type: {file.filename}'}), 400

        model_id = request.form.get('model_id') or None
        include_image = request.form.get('include_image', '').lower() in ('1', 'true', 'yes')

        try:
            result = _classification_service().classify_image(
                file.stream, model_id, include_image=include_image
            )
        except ValidationError as e:
            return jsonify({'error': str(e)}), 400
        except ModelNotFoundError as e:
            logger.warning(f"Classification requested without a model: {e}")
            return jsonify({'error': str(e)}), 404
        except Exception as e:
            logger.exception(f"Error classifying image: {e}")
            return jsonify({'error': f'Failed to classify image: {str(e)}'}), 500

        logger.info(
            f"Classified {file.filename} as {result['classification']} "
            f"({result['confidence']:.2%})"
        )
        return jsonify(result), 200

    @app.route('/api/images/status', methods=['GET'])
    def get_classification_status():
        """Return the state of the classification service."""
        return jsonify(_classification_service().status()), 200

    @app.route('/api/training/train', methods=['POST'])
    def train_model():
        """
        Start training a model on uploaded images in the background.

        Form data:
            images[]: Image files
            labels[]: One label per image
            epochs, batch_size, learning_rate, image_size, hidden_size,
            architecture: Optional training parameters

        Returns:
            JSON with training_id and status (202)
        """
        files = request.files.getlist('images[]') or request.files.getlist('images')
        labels = request.form.getlist('labels[]') or request.form.getlist('labels')

        if not files:
            return jsonify({'error': 'No images provided'}), 400
        if len(files) > MAX_FILES:
            return jsonify({'error': f'At most {MAX_FILES} images per request'}), 400
        if len(files) != len(labels):
            return jsonify({
                'error': f'Got {len(files)} images but {len(labels)} labels'
            }), 400
        invalid = [f.filename for f in files if not f.filename or not allowed_file(f.filename)]
        if invalid:
            return jsonify({'error': f'Unsupported file type(s): {invalid}'}), 400

        try:
            options = {
                'epochs': _form_number('epochs', 10, int),
                'batch_size': _form_number('batch_size', 32, int),
                'learning_rate': _form_number('learning_rate', 0.01, float),
                'image_size': _form_number('image_size', 32, int),
                'hidden_size': _form_number('hidden_size', 64, int),
                'architecture': request.form.get('architecture', 'sequential'),
            }
            image_paths = _save_uploads(files)
            training_id = _training_service().start_training(
                image_paths, labels, **options
            )
        except ValidationError as e:
            logger.warning(f"Invalid training request: {e}")
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logger.exception(f"Error starting training: {e}")
            return jsonify({'error': f'Failed to start training: {str(e)}'}), 500

        return jsonify({
            'training_id': training_id,
            'status': 'training_started',
            'images': len(image_paths),
            'classes': list(dict.fromkeys(labels))
        }), 202

    @app.route('/api/training/status/<training_id>', methods=['GET'])
    def get_training_status(training_id: str):
        """Get the current status of a training run."""
        status = _training_service().get_training_status(training_id)
        if status is None:
            logger.warning(f"Status requested for non-existent training: {training_id}")
            return jsonify({'error': 'Training not found'}), 404
        return jsonify(status), 200

    @app.route('/api/models', methods=['GET'])
    def list_models():
        """List all saved models, newest first."""
        return jsonify({'models': list_saved_models(db_path=_db_path())}), 200

    @app.route('/api/models/<model_id>', methods=['GET'])
    def get_model(model_id: str):
        """Return a saved model's metadata."""
        metadata = get_model_metadata(model_id, db_path=_db_path())
        if metadata is None:
            return jsonify({'error': 'Model not found'}), 404
        return jsonify(metadata), 200

    @app.route('/api/models/<model_id>', methods=['DELETE'])
    def delete_model_endpoint(model_id: str):
        """Delete a saved model."""
        if not delete_model(model_id, db_path=_db_path()):
            logger.warning(f"Delete attempted for non-existent model: {model_id}")
            return jsonify({'error': 'Model not found'}), 404

        classification = _classification_service()
        if classification.model_id == model_id:
            current_app.extensions['neuralnet']['classification'] = ClassificationService(
                classification.database
            )

        logger.info(f"Deleted model {model_id}")
        return jsonify({'model_id': model_id, 'deleted': True}), 200

    @app.route('/api/models/cleanup', methods=['POST'])
    def cleanup_old_models_endpoint():
        """
        Manually trigger cleanup of models older than specified days.

        Request body (optional):
            {'days': 2}  # defaults to CLEANUP_DAYS

        Returns:
            JSON with deleted_count, days, and message
        """
        data = request.get_json(silent=True) or {}
        days = data.get('days', current_app.config['CLEANUP_DAYS'])

        if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
            return jsonify({'error': 'days must be a non-negative number'}), 400

        try:
            deleted_count = delete_old_models(days=int(days), db_path=_db_path())
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logger.exception(f"Error during manual cleanup: {e}")
            return jsonify({'error': 'Internal server error'}), 500

        if deleted_count == -1:
            return jsonify({'error': 'Error occurred during cleanup'}), 500

        logger.info(f"Manual cleanup: deleted {deleted_count} model(s) older than {days} day(s)")
        return jsonify({
            'deleted_count': deleted_count,
            'days': days,
            'message': f'Successfully deleted {deleted_count} model(s) older than {days} day(s)'
        }), 200


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def cleanup_old_models_task(app: Flask, interval: float = 86400) -> None:
    """
    Background task that runs immediately, then every ``interval`` seconds to:
    - Delete models older than CLEANUP_DAYS days from the database
    - Remove completed/failed training runs from memory
    """
    days = app.config['CLEANUP_DAYS']
    training = app.extensions['neuralnet']['training']

    while True:
        try:
            deleted_count = delete_old_models(days=days, db_path=app.config['MODEL_DB_PATH'])
            if deleted_count >= 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} model(s)")
            else:
                logger.error("Cleanup returned error code")

            training.cleanup_finished_trainings()

            logger.info(f"Next cleanup scheduled in {interval / 3600:.0f} hours")
            gevent.sleep(interval)

        except Exception as e:
            logger.exception(f"Error during model cleanup: {e}")
            gevent.sleep(3600)


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    configure_logging()
    app = create_app()
    socketio = app.extensions['socketio']

    port = int(os.getenv('PORT', 8000))
    is_production = os.getenv('FLASK_ENV') == 'production'

    if is_production:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    gevent.spawn(cleanup_old_models_task, app)

    # Start the server with WebSocket support
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
