"""Tests for single-example inference."""

import pytest
import torch

from digitnet.errors import ShapeMismatch
from digitnet.infer import classify, get_single_example
from digitnet.model import build_model


@pytest.mark.parametrize("shape", [(28, 28, 1), (28, 28), (784,)])
def test_classify_returns_a_digit(shape):
    prediction = classify(build_model(), torch.rand(*shape))
    assert isinstance(prediction, int)
    assert 0 <= prediction <= 9


def test_classify_constant_model(constant_model):
    assert classify(constant_model, torch.rand(28, 28, 1)) == 3


@pytest.mark.parametrize("shape", [(27, 27, 1), (2, 28, 28, 1)])
def test_classify_rejects_other_shapes(shape):
    with pytest.raises(ShapeMismatch):
        classify(build_model(), torch.rand(*shape))


def test_get_single_example(source):
    image, true_class = get_single_example(source)
    assert image.shape == (28, 28, 1)
    assert 0 <= true_class <= 9


def test_classify_accepts_double_precision_images():
    prediction = classify(build_model(), torch.rand(28, 28, 1, dtype=torch.float64))
    assert 0 <= prediction <= 9
