"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for trained models and training runs.

Models are stored as the JSON document produced by ``BaseModel.save()``
together with queryable metadata (architecture, accuracy, loss). Training
runs keep their status, progress, configuration and per-epoch results so a
run can be inspected after the in-memory job is gone.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Generator, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = 'models/networks.db'


class TrainingStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ModelEncoder(json.JSONEncoder):
    """JSON encoder that also handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _dumps(value: Any) -> str:
    return json.dumps(value, cls=ModelEncoder)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class ModelDatabase:
    """
    Manages the SQLite database for model and training persistence.

    The database stores:
    - Models: the serialized model document plus architecture, training
      status, accuracy, loss and free-form metadata
    - Trainings: status and progress of every training run with its
      configuration and per-epoch results
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back on any exception.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    architecture TEXT NOT NULL,
                    model_data TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    loss REAL,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS trainings (
                    training_id TEXT PRIMARY KEY,
                    model_id TEXT,
                    status TEXT NOT NULL,
                    progress REAL NOT NULL DEFAULT 0,
                    configuration TEXT,
                    results TEXT,
                    error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_models_created_at
                ON models(created_at DESC)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trainings_status
                ON trainings(status)
            ''')

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def save_model(
        self,
        model_data: Dict[str, Any],
        trained: bool = True,
        accuracy: Optional[float] = None,
        loss: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Save (or replace) a model document.

        Args:
            model_data: Output of ``BaseModel.save()``
            trained: Whether the model has been trained
            accuracy: Training accuracy (0.0 to 1.0)
            loss: Final training loss
            metadata: Extra JSON-compatible information (classes, image
                size, training id...)

        Returns:
            bool: True if successful

        Raises:
            ValueError: If the document has no id or accuracy is out of range
        """
        if not isinstance(model_data, dict) or not model_data.get('id'):
            raise ValueError("Model data must be a dict with a non-empty 'id'")
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        model_id = model_data['id']
        architecture = [
            {'id': layer.get('id'), 'type': layer.get('type')}
            for layer in model_data.get('architecture', [])
        ]

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO models
                (model_id, name, architecture, model_data, trained,
                 accuracy, loss, metadata, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(model_id) DO UPDATE SET
                    name = excluded.name,
                    architecture = excluded.architecture,
                    model_data = excluded.model_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    loss = excluded.loss,
                    metadata = excluded.metadata,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                model_id,
                model_data.get('name') or model_id,
                _dumps(architecture),
                _dumps(model_data),
                1 if trained else 0,
                accuracy,
                loss,
                _dumps(metadata or {})
            ))

        logger.info(
            f"Saved model '{model_id}' with {len(architecture)} layer(s), "
            f"trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_model_data(self, model_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a model document.

        Returns:
            The ``save()`` document or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT model_data FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Model '{model_id}' not found")
                return None

            logger.info(f"Loaded model '{model_id}'")
            return json.loads(row['model_data'])

    @staticmethod
    def _metadata_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'model_id': row['model_id'],
            'name': row['name'],
            'architecture': json.loads(row['architecture']),
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'loss': row['loss'],
            'metadata': _loads(row['metadata'], {}),
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def list_models(self) -> List[Dict[str, Any]]:
        """
        List all models with metadata, newest first.

        Returns:
            List of model metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, name, architecture, trained, accuracy, loss,
                       metadata, created_at, updated_at
                FROM models
                ORDER BY created_at DESC, rowid DESC
            ''')
            models = [self._metadata_from_row(row) for row in cursor.fetchall()]

            logger.debug(f"Listed {len(models)} models")
            return models

    def get_model_metadata(self, model_id: str) -> Optional[Dict[str, Any]]:
        """
        Get model metadata without loading the model document.

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, name, architecture, trained, accuracy, loss,
                       metadata, created_at, updated_at
                FROM models
                WHERE model_id = ?
            ''', (model_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Metadata for model '{model_id}' not found")
                return None
            return self._metadata_from_row(row)

    def delete_model(self, model_id: str) -> bool:
        """
        Delete a model.

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM models WHERE model_id = ?',
                (model_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted model '{model_id}'")
            else:
                logger.warning(f"Could not delete model '{model_id}': not found")
            return deleted

    def delete_old_models(self, days: int) -> int:
        """
        Delete models created more than ``days`` days ago.

        Returns:
            int: Number of deleted models

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM models WHERE created_at < datetime('now', ?)",
                (f'-{int(days)} days',)
            )
            deleted_count = cursor.rowcount

        logger.info(f"Deleted {deleted_count} model(s) older than {days} day(s)")
        return deleted_count

    # ------------------------------------------------------------------
    # Trainings
    # ------------------------------------------------------------------

    def create_training(
        self,
        training_id: str,
        configuration: Dict[str, Any],
        model_id: Optional[str] = None
    ) -> bool:
        """Record a new training run with status 'pending'."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO trainings
                (training_id, model_id, status, progress, configuration, results)
                VALUES (?, ?, ?, 0, ?, ?)
            ''', (
                training_id,
                model_id,
                TrainingStatus.PENDING.value,
                _dumps(configuration),
                _dumps({'epochs': []})
            ))

        logger.info(f"Created training record '{training_id}'")
        return True

    def update_training_status(
        self,
        training_id: str,
        status: str,
        progress: Optional[float] = None,
        error: Optional[str] = None,
        model_id: Optional[str] = None
    ) -> bool:
        """
        Update status (and optionally progress, error and model id).

        Returns:
            bool: True if the training exists

        Raises:
            ValueError: If the status is unknown
        """
        status = TrainingStatus(status).value

        assignments = ['status = ?', 'updated_at = CURRENT_TIMESTAMP']
        params: List[Any] = [status]
        if progress is not None:
            assignments.append('progress = ?')
            params.append(float(progress))
        if error is not None:
            assignments.append('error = ?')
            params.append(error)
        if model_id is not None:
            assignments.append('model_id = ?')
            params.append(model_id)
        params.append(training_id)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE trainings SET {', '.join(assignments)} WHERE training_id = ?",
                params
            )
            updated = cursor.rowcount > 0

        if not updated:
            logger.warning(f"Training '{training_id}' not found")
        return updated

    def append_epoch_result(self, training_id: str, epoch_result: Dict[str, Any]) -> bool:
        """
        Append one epoch's metrics to a training's results.

        Returns:
            bool: True if the training exists
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT results FROM trainings WHERE training_id = ?',
                (training_id,)
            )
            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Training '{training_id}' not found")
                return False

            results = _loads(row['results'], {'epochs': []})
            results.setdefault('epochs', []).append(epoch_result)
            cursor.execute('''
                UPDATE trainings
                SET results = ?, updated_at = CURRENT_TIMESTAMP
                WHERE training_id = ?
            ''', (_dumps(results), training_id))
        return True

    @staticmethod
    def _training_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'training_id': row['training_id'],
            'model_id': row['model_id'],
            'status': row['status'],
            'progress': row['progress'],
            'configuration': _loads(row['configuration'], {}),
            'results': _loads(row['results'], {'epochs': []}),
            'error': row['error'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def get_training(self, training_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT * FROM trainings WHERE training_id = ?',
                (training_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._training_from_row(row)

    def list_trainings(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List training runs, newest first, optionally filtered by status."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if status is None:
                cursor.execute(
                    'SELECT * FROM trainings ORDER BY created_at DESC, rowid DESC'
                )
            else:
                cursor.execute(
                    'SELECT * FROM trainings WHERE status = ? '
                    'ORDER BY created_at DESC, rowid DESC',
                    (TrainingStatus(status).value,)
                )
            return [self._training_from_row(row) for row in cursor.fetchall()]


# Global database instance
_db = None


def _get_db(db_path: Optional[str] = None) -> ModelDatabase:
    """
    Get the database for a path.

    The default path shares one global instance; other paths get a fresh
    instance.
    """
    global _db
    if db_path is not None and db_path != DEFAULT_DB_PATH:
        return ModelDatabase(db_path=db_path)
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_model_id(model_id: Any) -> bool:
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False
    return True


def save_model(
    model_data: Dict[str, Any],
    db_path: Optional[str] = None,
    trained: bool = True,
    accuracy: Optional[float] = None,
    loss: Optional[float] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Save a model document to the SQLite database.

    Args:
        model_data: Output of ``BaseModel.save()``
        db_path: Database file (the default database when omitted)
        trained: Whether the model has been trained
        accuracy: Training accuracy (0.0 to 1.0)
        loss: Final training loss
        metadata: Extra information stored alongside the model

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> save_model(model.save(), accuracy=0.92)
        True
    """
    try:
        return _get_db(db_path).save_model(
            model_data, trained, accuracy, loss, metadata
        )
    except ValueError as e:
        logger.error(f"Validation error saving model: {e}")
        return False
    except (TypeError, OverflowError) as e:
        logger.error(f"Serialization error saving model: {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving model: {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error saving model: {e}")
        return False


def load_model_data(model_id: str, db_path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Load a model document from the SQLite database.

    Returns:
        The model document or None if not found

    Example:
        >>> data = load_model_data("my_model")
        >>> if data:
        ...     model = model_from_data(data)
    """
    if not _valid_model_id(model_id):
        return None

    try:
        return _get_db(db_path).load_model_data(model_id)
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error loading model '{model_id}': {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading model '{model_id}': {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error loading model '{model_id}': {e}")
        return None


def list_saved_models(db_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    List all saved models with their metadata, newest first.

    Example:
        >>> for info in list_saved_models():
        ...     print(f"{info['model_id']}: {info['accuracy']}")
    """
    try:
        return _get_db(db_path).list_models()
    except sqlite3.Error as e:
        logger.error(f"Database error listing models: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing models: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error listing models: {e}")
        return []


def delete_model(model_id: str, db_path: Optional[str] = None) -> bool:
    """
    Delete a saved model.

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not _valid_model_id(model_id):
        return False

    try:
        return _get_db(db_path).delete_model(model_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting model '{model_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error deleting model '{model_id}': {e}")
        return False


def get_model_metadata(model_id: str, db_path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a model without loading its document.

    Returns:
        dict: Model metadata or None if not found
    """
    if not _valid_model_id(model_id):
        return None

    try:
        return _get_db(db_path).get_model_metadata(model_id)
    except sqlite3.Error as e:
        logger.error(f"Database error getting metadata for '{model_id}': {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error getting metadata for '{model_id}': {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error getting metadata for '{model_id}': {e}")
        return None


def delete_old_models(days: int = 2, db_path: Optional[str] = None) -> int:
    """
    Delete models older than ``days`` days.

    Returns:
        int: Number of deleted models, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    try:
        return _get_db(db_path).delete_old_models(days)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting old models: {e}")
        return -1
