"""Shared fixtures: synthetic MNIST-shaped data that trains in milliseconds on CPU."""

import pytest
import torch
from torch import nn

from digitnet.data import NUM_CLASSES, TensorBatchSource, one_hot


def make_source(train_count: int = 40, test_count: int = 30, seed: int = 0) -> TensorBatchSource:
    """Random pixels with labels cycling through every class."""
    generator = torch.Generator().manual_seed(seed)
    return TensorBatchSource(
        train_images=torch.rand(train_count, 784, generator=generator),
        train_labels=torch.arange(train_count) % NUM_CLASSES,
        test_images=torch.rand(test_count, 784, generator=generator),
        test_labels=torch.arange(test_count) % NUM_CLASSES,
        seed=seed,
    )


class ConstantModel(nn.Module):
    """Predicts the same class for every input."""

    def __init__(self, digit: int) -> None:
        super().__init__()
        self.digit = digit
        self.anchor = nn.Parameter(torch.zeros(1))

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        return one_hot(torch.full((inputs.shape[0],), self.digit)) + self.anchor


@pytest.fixture
def source():
    return make_source().load()


@pytest.fixture
def constant_model():
    return ConstantModel(3)
