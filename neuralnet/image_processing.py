"""
image_processing.py
~~~~~~~~~~~~~~~~~~~

Turns image files into model inputs and predictions back into images.

Images are resized to a square, converted to RGB and normalized to [0, 1].
Grayscale inputs are the mean of the three channels. Every image becomes one
row of shape (1, size * size * channels), which is the layout both dense and
convolutional (channel-last) models expect.
"""

import base64
import logging
from io import BytesIO
from typing import BinaryIO, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from neuralnet.errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'bmp', 'webp'}


def allowed_file(filename: str) -> bool:
    """True when the filename carries one of the accepted image extensions."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def load_image(
    source: Union[str, BinaryIO],
    image_size: int,
    grayscale: bool = True
) -> np.ndarray:
    """
    Load and normalize one image.

    Args:
        source: File path or binary file object
        image_size: Width and height the image is resized to
        grayscale: Average R, G and B into a single channel

    Returns:
        np.ndarray: Shape (1, image_size * image_size * channels), values
        in [0, 1]

    Raises:
        ValidationError: If the image cannot be read
    """
    if isinstance(image_size, bool) or not isinstance(image_size, int) or image_size < 1:
        raise ValidationError(f"image_size must be a positive integer, got {image_size!r}")

    try:
        with Image.open(source) as image:
            rgb = image.convert('RGB').resize((image_size, image_size))
            pixels = np.asarray(rgb, dtype=np.float64) / 255.0
    except (FileNotFoundError, UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not read image {source!r}: {e}") from e

    if grayscale:
        pixels = pixels.mean(axis=2)
    return pixels.reshape(1, -1)


def one_hot(index: int, num_classes: int) -> np.ndarray:
    """One-hot row vector of shape (1, num_classes)."""
    if not 0 <= index < num_classes:
        raise ValidationError(f"Class index {index} out of range for {num_classes} classes")
    vector = np.zeros((1, num_classes))
    vector[0, index] = 1.0
    return vector


def images_to_dataset(
    image_paths: Sequence[str],
    labels: Sequence[str],
    classes: Sequence[str],
    image_size: int,
    grayscale: bool = True
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build training arrays from labelled image files.

    Returns:
        tuple: (inputs, targets) with shapes (samples, 1, features) and
        (samples, 1, num_classes)

    Raises:
        ValidationError: On a length mismatch, an unknown label or an
            unreadable image
    """
    if len(image_paths) != len(labels):
        raise ValidationError(
            f"Got {len(image_paths)} images but {len(labels)} labels"
        )
    class_index = {name: i for i, name in enumerate(classes)}

    inputs: List[np.ndarray] = []
    targets: List[np.ndarray] = []
    for path, label in zip(image_paths, labels):
        if label not in class_index:
            raise ValidationError(f"Unknown label {label!r}")
        inputs.append(load_image(path, image_size, grayscale))
        targets.append(one_hot(class_index[label], len(classes)))

    logger.debug(f"Preprocessed {len(inputs)} image(s) at {image_size}x{image_size}")
    return np.stack(inputs), np.stack(targets)


def render_prediction(
    image_row: np.ndarray,
    image_size: int,
    predicted: str,
    actual: Optional[str] = None
) -> str:
    """
    Create a base64-encoded PNG of a preprocessed image with its prediction.

    Args:
        image_row: Flattened grayscale or RGB image in [0, 1]
        image_size: Side length of the square image
        predicted: Predicted class name
        actual: Correct class name, when known

    Returns:
        Base64-encoded PNG image string
    """
    pixels = np.asarray(image_row, dtype=np.float64).reshape(image_size, image_size, -1)
    if pixels.shape[2] == 1:
        pixels = pixels[:, :, 0]

    title = f"Predicted: {predicted}"
    if actual is not None:
        title += f" | Actual: {actual}"

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray' if pixels.ndim == 2 else None, vmin=0.0, vmax=1.0)
    plt.title(title)
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64
