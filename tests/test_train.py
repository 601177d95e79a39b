"""Tests for fitting and the training orchestrator (no GPU required)."""

import math

import pytest
import torch

from digitnet.data import TensorBatchSource
from digitnet.errors import DataUnavailable, InsufficientData, ModelStateError
from digitnet.model import DigitClassifier, build_model
from digitnet.train import (
    PrintProgress,
    TrainingCallback,
    TrainingConfig,
    TrainingHistory,
    fit,
    train,
    train_in_background,
)
from tests.conftest import make_source


class Recorder(TrainingCallback):
    def __init__(self):
        self.batches = []
        self.epochs = []

    def on_batch_end(self, batch, logs):
        self.batches.append((batch, dict(logs)))

    def on_epoch_end(self, epoch, logs):
        self.epochs.append((epoch, dict(logs)))


@pytest.fixture
def two_class_source():
    """Four samples of two classes with random pixels."""
    generator = torch.Generator().manual_seed(7)
    labels = torch.tensor([0, 1, 0, 1])
    return TensorBatchSource(
        torch.rand(4, 784, generator=generator),
        labels,
        torch.rand(4, 784, generator=generator),
        labels.flip(0),
        seed=7,
    ).load()


@pytest.fixture
def tiny_config():
    return TrainingConfig(batch_size=2, train_size=4, validation_size=4, epochs=1, seed=0)


def _snapshot(model):
    return {name: param.detach().clone() for name, param in model.named_parameters()}


class TestTrain:
    def test_single_epoch_produces_finite_metrics(self, two_class_source, tiny_config):
        history = train(build_model(), two_class_source, tiny_config)
        assert isinstance(history, TrainingHistory)
        assert len(history.epochs) == 1
        final = history.final
        for key in ("loss", "acc", "val_loss", "val_acc"):
            assert math.isfinite(final[key])
        assert 0.0 <= final["acc"] <= 1.0
        assert 0.0 <= final["val_acc"] <= 1.0

    def test_training_updates_parameters(self, two_class_source, tiny_config):
        model = build_model()
        before = _snapshot(model)
        train(model, two_class_source, tiny_config)
        after = _snapshot(model)
        assert any(not torch.equal(before[name], after[name]) for name in before)

    def test_callbacks_run_per_batch_and_epoch(self, source):
        recorder = Recorder()
        config = TrainingConfig(batch_size=8, train_size=20, validation_size=10, epochs=2, seed=0)
        train(build_model(), source, config, callbacks=[recorder])
        # 20 samples in batches of 8 -> 3 steps per epoch
        assert [batch for batch, _ in recorder.batches] == [0, 1, 2] * 2
        assert [epoch for epoch, _ in recorder.epochs] == [1, 2]
        assert set(recorder.epochs[-1][1]) == {"loss", "acc", "val_loss", "val_acc"}
        assert set(recorder.batches[0][1]) == {"loss", "acc"}

    def test_insufficient_data_leaves_model_untouched(self, two_class_source):
        model = build_model()
        before = _snapshot(model)
        config = TrainingConfig(batch_size=2, train_size=5, validation_size=4, epochs=1)
        with pytest.raises(InsufficientData):
            train(model, two_class_source, config)
        after = _snapshot(model)
        assert all(torch.equal(before[name], after[name]) for name in before)

    def test_unloaded_source_is_unavailable(self, tiny_config):
        with pytest.raises(DataUnavailable):
            train(build_model(), make_source(), tiny_config)

    def test_default_config(self):
        config = TrainingConfig()
        assert (config.batch_size, config.train_size, config.validation_size, config.epochs) == (512, 5500, 1000, 30)
        assert config.shuffle


class TestFit:
    def test_uncompiled_model_is_rejected(self):
        with pytest.raises(ModelStateError):
            fit(DigitClassifier(), torch.rand(2, 28, 28, 1), torch.eye(10)[:2])

    def test_without_validation_data(self):
        history = fit(build_model(), torch.rand(3, 28, 28, 1), torch.eye(10)[:3], batch_size=2, epochs=2)
        assert [entry["epoch"] for entry in history.epochs] == [1, 2]
        assert "val_loss" not in history.final

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            fit(build_model(), torch.rand(2, 28, 28, 1), torch.eye(10)[:2], batch_size=0)


class TestProgress:
    def test_print_progress(self, capsys):
        PrintProgress(epochs=30).on_epoch_end(3, {"loss": 0.5, "acc": 0.75, "val_loss": 0.6, "val_acc": 0.7})
        out = capsys.readouterr().out
        assert "Epoch 03/30" in out
        assert "acc: 75.00%" in out

    def test_train_in_background(self, two_class_source, tiny_config):
        future = train_in_background(build_model(), two_class_source, tiny_config)
        history = future.result(timeout=60)
        assert len(history.epochs) == 1


class TestFitBatching:
    def test_empty_training_set_is_rejected(self):
        with pytest.raises(ValueError):
            fit(build_model(), torch.rand(0, 28, 28, 1), torch.zeros(0, 10))

    def test_seeded_shuffling_is_reproducible(self):
        images = torch.rand(10, 28, 28, 1, generator=torch.Generator().manual_seed(1))
        labels = torch.eye(10)
        histories = []
        for _ in range(2):
            torch.manual_seed(0)
            histories.append(
                fit(
                    build_model(),
                    images,
                    labels,
                    batch_size=4,
                    epochs=2,
                    generator=torch.Generator().manual_seed(5),
                )
            )
        assert histories[0].epochs == histories[1].epochs

    def test_last_partial_batch_is_weighted_by_size(self):
        recorder = Recorder()
        history = fit(build_model(), torch.rand(5, 28, 28, 1), torch.eye(10)[:5], batch_size=4, shuffle=False, callbacks=[recorder])
        assert [batch for batch, _ in recorder.batches] == [0, 1]
        first, second = (logs["loss"] for _, logs in recorder.batches)
        assert history.final["loss"] == pytest.approx((4 * first + second) / 5)
