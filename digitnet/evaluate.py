"""
Evaluation utilities for the trained digit classifier.

A held-out batch is drawn from the test split, the model predicts a class
distribution for every image, and both the one-hot labels and the predictions
are decoded to class indices. From those pairs we derive per-class accuracy and
a confusion matrix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import torch
from sklearn.metrics import confusion_matrix
from torch.utils.data import DataLoader, TensorDataset

from .data import NUM_CLASSES, BatchSource, reshape_images, scratch_tensors
from .errors import InvalidLabel, ShapeMismatch
from .model import DigitClassifier

logger = logging.getLogger(__name__)

CLASS_NAMES: List[str] = [str(digit) for digit in range(NUM_CLASSES)]
DEFAULT_SAMPLE_COUNT = 500


def decode_one_hot(labels: torch.Tensor) -> torch.Tensor:
    """
    Decode one-hot label rows to class indices.

    Raises:
        InvalidLabel: If any row is not exactly one 1 with zeros elsewhere.
    """
    if labels.dim() != 2:
        raise ShapeMismatch(f"Expected one-hot rows of rank 2, got shape {tuple(labels.shape)}")
    is_binary = ((labels == 0) | (labels == 1)).all(dim=-1)
    has_single_hot = (labels == 1).sum(dim=-1) == 1
    invalid = ~(is_binary & has_single_hot)
    if invalid.any():
        bad_rows = invalid.nonzero().flatten().tolist()
        raise InvalidLabel(f"Rows {bad_rows[:10]} are not valid one-hot vectors")
    return labels.argmax(dim=-1)


def decode_predictions(probs: torch.Tensor) -> torch.Tensor:
    """Most probable class per row; ties resolve to the lowest class index."""
    if probs.dim() != 2:
        raise ShapeMismatch(f"Expected class scores of rank 2, got shape {tuple(probs.shape)}")
    return probs.argmax(dim=-1)


def predict(model: DigitClassifier, images: torch.Tensor, batch_size: Optional[int] = None) -> torch.Tensor:
    """Class probabilities for `(N, 28, 28, 1)` images, computed without gradients."""
    device = next(model.parameters()).device
    loader = DataLoader(
        TensorDataset(images.to(torch.float32)),
        batch_size=batch_size or max(images.shape[0], 1),
        shuffle=False,
    )
    model.eval()
    outputs = []
    with torch.inference_mode():
        for (inputs,) in loader:
            outputs.append(model(inputs.to(device)).cpu())
    return torch.cat(outputs) if outputs else torch.empty(0, NUM_CLASSES)


@dataclass
class PredictionResult:
    """Predicted and true class indices, aligned by sample."""

    predicted: torch.Tensor
    true: torch.Tensor

    def __post_init__(self) -> None:
        if self.predicted.shape != self.true.shape:
            raise ShapeMismatch(
                f"Predicted classes {tuple(self.predicted.shape)} do not align with "
                f"true classes {tuple(self.true.shape)}"
            )

    def __len__(self) -> int:
        return self.true.shape[0]


@dataclass
class ConfusionStatistics:
    """
    Confusion matrix with rows indexed by true class and columns by predicted class.

    `per_class_accuracy[i]` is `matrix[i, i] / class_counts[i]`, or 0.0 when
    class `i` does not occur in the evaluated batch.
    """

    matrix: np.ndarray
    class_counts: np.ndarray
    per_class_accuracy: np.ndarray

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    @property
    def overall_accuracy(self) -> float:
        return float(np.trace(self.matrix) / self.total) if self.total else 0.0


def confusion_statistics(result: PredictionResult, num_classes: int = NUM_CLASSES) -> ConfusionStatistics:
    matrix = confusion_matrix(
        result.true.cpu().numpy(),
        result.predicted.cpu().numpy(),
        labels=list(range(num_classes)),
    ).astype(np.int64)
    counts = matrix.sum(axis=1)
    correct = np.diag(matrix)
    per_class = np.divide(
        correct,
        counts,
        out=np.zeros(num_classes, dtype=np.float64),
        where=counts > 0,
    )
    return ConfusionStatistics(matrix=matrix, class_counts=counts, per_class_accuracy=per_class)


def evaluate(model: DigitClassifier, source: BatchSource, sample_count: int = DEFAULT_SAMPLE_COUNT) -> PredictionResult:
    """
    Predict a fresh held-out batch and decode labels and predictions.

    Args:
        model: Trained classifier.
        source: Loaded batch source; the batch comes from its test split.
        sample_count: Number of held-out samples to draw.

    Returns:
        Predicted and true class indices for every drawn sample.
    """
    batch = source.next_test_batch(sample_count)
    true = decode_one_hot(batch.labels)
    with scratch_tensors() as scope:
        scope.append(reshape_images(batch.images))
        # The scope now holds the only reference to the drawn pixels.
        del batch
        probs = predict(model, scope[0])
    result = PredictionResult(predicted=decode_predictions(probs), true=true)
    logger.info("Evaluated %d held-out samples", len(result))
    return result
