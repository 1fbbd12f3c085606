#!/usr/bin/env python3
"""
Validate the neural network on synthetic classification data.

This script builds a dense classifier, trains it on generated data where
each class lights up its own block of input features, and reports accuracy,
a confusion matrix and per-class precision/recall/F1 on a held-out set.

Usage:
    python scripts/validate_network.py

The script will:
1. Generate training and test data
2. Build and train a three-layer softmax classifier
3. Evaluate it and print a confusion matrix
4. Save the training history to results/validation_results.json
"""

import json
import os
import sys
import time
from typing import Tuple

import numpy as np

from neuralnet.activations import ActivationType
from neuralnet.layers import LayerType
from neuralnet.models import SequentialModel
from neuralnet.optimizers import SGDOptimizer

CLASSES = [
    "airplane", "automobile", "bird", "cat", "deer",
    "dog", "frog", "horse", "ship", "truck",
]

INPUT_SIZE = 1024  # 32x32 grayscale image
HIDDEN_SIZE = 128
TRAIN_SAMPLES = 1000
TEST_SAMPLES = 200
EPOCHS = 20
BATCH_SIZE = 32
SIGNAL_WIDTH = 10


def generate_synthetic_data(
    num_samples: int,
    num_classes: int,
    input_size: int,
    rng: np.random.Generator
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Generate noisy samples with a stronger signal for the correct class.

    Parameters:
    -----------
    num_samples : int
        Number of samples to generate
    num_classes : int
        Number of classes
    input_size : int
        Features per sample
    rng : np.random.Generator
        Random source

    Returns:
    --------
    tuple
        (inputs, targets) with shapes (samples, 1, input_size) and
        (samples, 1, num_classes)
    """
    labels = rng.integers(0, num_classes, size=num_samples)
    inputs = rng.random((num_samples, input_size)) * 0.5

    for i, label in enumerate(labels):
        start = label * SIGNAL_WIDTH
        block = slice(start, min(start + SIGNAL_WIDTH, input_size))
        inputs[i, block] += 0.5 + rng.random(block.stop - block.start) * 0.5

    targets = np.eye(num_classes)[labels]
    return inputs[:, np.newaxis, :], targets[:, np.newaxis, :]


def create_classification_model(
    input_size: int,
    hidden_size: int,
    num_classes: int
) -> SequentialModel:
    """Build the dense relu -> relu -> softmax classifier."""
    model = SequentialModel('validation_model', 'Validation classifier')
    model.add_layer(
        LayerType.DENSE,
        id='dense_1',
        input_size=input_size,
        output_size=hidden_size,
        activation=ActivationType.RELU
    )
    model.add_layer(
        LayerType.DENSE,
        id='dense_2',
        input_size=hidden_size,
        output_size=hidden_size // 2,
        activation=ActivationType.RELU
    )
    model.add_layer(
        LayerType.DENSE,
        id='output',
        input_size=hidden_size // 2,
        output_size=num_classes,
        activation=ActivationType.SOFTMAX
    )
    model.set_optimizer(SGDOptimizer(0.01))
    return model


def confusion_matrix(
    model: SequentialModel,
    inputs: np.ndarray,
    targets: np.ndarray
) -> np.ndarray:
    """
    Count (actual, predicted) class pairs.

    Returns:
    --------
    np.ndarray
        Shape (num_classes, num_classes); rows are actual classes
    """
    num_classes = targets.shape[-1]
    matrix = np.zeros((num_classes, num_classes), dtype=int)
    for sample, target in zip(inputs, targets):
        predicted = int(np.argmax(model.predict(sample)[0]))
        actual = int(np.argmax(target[0]))
        matrix[actual, predicted] += 1
    return matrix


def print_report(matrix: np.ndarray) -> float:
    """Print accuracy, the confusion matrix and per-class metrics."""
    correct = int(np.trace(matrix))
    total = int(matrix.sum())
    accuracy = correct / total

    print(f"\n🎯 Accuracy: {accuracy:.2%} ({correct} of {total} correct)")

    print("\n📊 Confusion matrix (rows: actual, columns: predicted)")
    print("      " + "".join(name[:5].ljust(7) for name in CLASSES))
    for i, name in enumerate(CLASSES):
        print(name[:5].ljust(5) + "".join(f"{count:6d} " for count in matrix[i]))

    print("\n📈 Per-class metrics:")
    for i, name in enumerate(CLASSES):
        true_positives = matrix[i, i]
        total_actual = matrix[i].sum()
        total_predicted = matrix[:, i].sum()
        precision = true_positives / total_predicted if total_predicted else 0.0
        recall = true_positives / total_actual if total_actual else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        print(
            f"   {name.ljust(10)}: precision={precision:.2%}, "
            f"recall={recall:.2%}, F1={f1:.2%}"
        )

    return accuracy


def main():
    """Main validation function."""
    print("=" * 60)
    print("Neural Network Validation")
    print("Synthetic data → dense softmax classifier")
    print("=" * 60)

    rng = np.random.default_rng(42)
    np.random.seed(42)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    results_dir = os.path.join(os.path.dirname(script_dir), 'results')
    results_path = os.path.join(results_dir, 'validation_results.json')

    try:
        print("\n🧪 Generating synthetic data...")
        train_inputs, train_targets = generate_synthetic_data(
            TRAIN_SAMPLES, len(CLASSES), INPUT_SIZE, rng
        )
        test_inputs, test_targets = generate_synthetic_data(
            TEST_SAMPLES, len(CLASSES), INPUT_SIZE, rng
        )

        print("🏗️  Building classification model...")
        model = create_classification_model(INPUT_SIZE, HIDDEN_SIZE, len(CLASSES))

        print(f"🏋️  Training for {EPOCHS} epochs...")
        start_time = time.time()
        history = model.train(train_inputs, train_targets, EPOCHS, BATCH_SIZE)
        training_time = time.time() - start_time

        print(f"\n✅ Training completed in {training_time:.2f} seconds")
        print(f"   - Final loss: {history['loss'][-1]:.4f}")
        print(f"   - Final accuracy: {history['accuracy'][-1]:.2%}")

        print("\n🔍 Evaluating on test data...")
        test_accuracy = print_report(confusion_matrix(model, test_inputs, test_targets))

        os.makedirs(results_dir, exist_ok=True)
        with open(results_path, 'w') as f:
            json.dump({
                'training_time': training_time,
                'epochs': EPOCHS,
                'final_loss': history['loss'][-1],
                'final_accuracy': history['accuracy'][-1],
                'test_accuracy': test_accuracy,
                'loss_history': history['loss'],
                'accuracy_history': history['accuracy'],
            }, f, indent=2)

        print("\n" + "=" * 60)
        print("✅ VALIDATION COMPLETE!")
        print("=" * 60)
        print(f"\n📁 Results saved to {results_path}")

    except Exception as e:
        print(f"\n❌ Error during validation: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
