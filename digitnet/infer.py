"""Single-example inference."""

from __future__ import annotations

from typing import Tuple

import torch
from torch import nn

from .data import IMAGE_CHANNELS, IMAGE_HEIGHT, IMAGE_PIXELS, IMAGE_WIDTH, BatchSource, image_at
from .errors import ShapeMismatch
from .evaluate import decode_one_hot, predict


def classify(model: nn.Module, image: torch.Tensor) -> int:
    """
    Predict the digit shown in one image.

    Args:
        model: Trained classifier.
        image: One sample shaped `(28, 28, 1)`, `(28, 28)` or `(784,)` with
            intensities in [0, 1].

    Returns:
        The predicted class index in `[0, 9]`.
    """
    if image.numel() != IMAGE_PIXELS or image.dim() > 3:
        raise ShapeMismatch(f"Expected a single {IMAGE_HEIGHT}x{IMAGE_WIDTH} image, got shape {tuple(image.shape)}")
    probs = predict(model, image.reshape(1, IMAGE_HEIGHT, IMAGE_WIDTH, IMAGE_CHANNELS), batch_size=1)
    return int(probs.argmax(dim=-1)[0].item())


def get_single_example(source: BatchSource) -> Tuple[torch.Tensor, int]:
    """Draw one held-out image and its true class."""
    batch = source.next_test_batch(1)
    return image_at(batch, 0), int(decode_one_hot(batch.labels)[0].item())
