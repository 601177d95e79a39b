"""
Training for the digit classifier.

One large training batch is drawn from the train split and one validation
batch from the test split. Both are reshaped to `(N, 28, 28, 1)` and the model
is fitted for a fixed number of epochs with mini-batches, evaluating on the
validation batch after every epoch. Progress is reported to callbacks after
every mini-batch and every epoch.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import torch
from torch import nn
from torch.utils.data import DataLoader, TensorDataset

from .data import BatchSource, reshape_images, scratch_tensors
from .errors import ModelStateError, ShapeMismatch
from .model import METRICS, DigitClassifier

logger = logging.getLogger(__name__)

Logs = Dict[str, float]


@dataclass
class TrainingConfig:
    """Container for the most important training hyperparameters."""

    batch_size: int = 512
    train_size: int = 5500
    validation_size: int = 1000
    epochs: int = 30
    shuffle: bool = True
    seed: Optional[int] = 42


@dataclass
class TrainingHistory:
    """Per-epoch logs of a completed run."""

    epochs: List[Logs] = field(default_factory=list)

    @property
    def final(self) -> Logs:
        return self.epochs[-1] if self.epochs else {}


class TrainingCallback:
    """Observer notified at the end of every mini-batch and epoch. Hooks default to no-ops."""

    def on_batch_end(self, batch: int, logs: Logs) -> None:
        pass

    def on_epoch_end(self, epoch: int, logs: Logs) -> None:
        pass


class CallbackList(TrainingCallback):
    def __init__(self, callbacks: Iterable[TrainingCallback] = ()) -> None:
        self.callbacks = list(callbacks)

    def on_batch_end(self, batch: int, logs: Logs) -> None:
        for callback in self.callbacks:
            callback.on_batch_end(batch, logs)

    def on_epoch_end(self, epoch: int, logs: Logs) -> None:
        for callback in self.callbacks:
            callback.on_epoch_end(epoch, logs)


class PrintProgress(TrainingCallback):
    """Print one summary line per epoch."""

    def __init__(self, epochs: int) -> None:
        self.epochs = epochs

    def on_epoch_end(self, epoch: int, logs: Logs) -> None:
        print(
            f"Epoch {epoch:02d}/{self.epochs} "
            f"- loss: {logs['loss']:.4f} "
            f"- acc: {logs['acc']:.2%} "
            f"- val_loss: {logs['val_loss']:.4f} "
            f"- val_acc: {logs['val_acc']:.2%}"
        )


def get_device() -> torch.device:
    """Stick to CPU by default but allow CUDA if it is available."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


def _model_device(model: nn.Module) -> torch.device:
    return next(model.parameters()).device


def _check_pair(images: torch.Tensor, labels: torch.Tensor) -> None:
    if images.shape[0] != labels.shape[0]:
        raise ShapeMismatch(f"Got {images.shape[0]} images but {labels.shape[0]} labels")


def _score(model: DigitClassifier, images: torch.Tensor, labels: torch.Tensor, batch_size: int) -> Tuple[float, float]:
    """Sample-weighted loss and accuracy over `images` without touching the weights."""
    device = _model_device(model)
    loader = DataLoader(TensorDataset(images.to(torch.float32), labels), batch_size=batch_size, shuffle=False)
    model.eval()
    total_loss = 0.0
    total_correct = 0.0
    with torch.inference_mode():
        for inputs, targets in loader:
            inputs = inputs.to(device)
            targets = targets.to(device)
            probs = model(inputs)
            total_loss += model.loss_fn(probs, targets).item() * inputs.size(0)
            total_correct += METRICS["accuracy"](probs, targets).item() * inputs.size(0)
    count = max(len(loader.dataset), 1)
    return total_loss / count, total_correct / count


def fit(
    model: DigitClassifier,
    images: torch.Tensor,
    labels: torch.Tensor,
    validation_data: Optional[Tuple[torch.Tensor, torch.Tensor]] = None,
    batch_size: int = 32,
    epochs: int = 1,
    shuffle: bool = True,
    callbacks: Sequence[TrainingCallback] = (),
    generator: Optional[torch.Generator] = None,
) -> TrainingHistory:
    """
    Fit a compiled model to `(N, 28, 28, 1)` images and one-hot labels.

    Args:
        model: Compiled classifier. Its parameters are updated in place.
        images: Training images.
        labels: One-hot training labels aligned with `images`.
        validation_data: Optional `(images, labels)` scored after every epoch.
        batch_size: Samples per optimizer step.
        epochs: Number of passes over the training data.
        shuffle: Visit the samples in a fresh random order every epoch.
        callbacks: Observers notified after every batch and epoch.
        generator: Random generator used for shuffling.

    Returns:
        The per-epoch history. Epoch logs carry `loss` and `acc`, plus
        `val_loss` and `val_acc` when validation data is given.
    """
    if not model.compiled:
        raise ModelStateError("Model must be compiled before fitting")
    if batch_size < 1 or epochs < 1:
        raise ValueError("batch_size and epochs must be positive")
    _check_pair(images, labels)
    if images.shape[0] == 0:
        raise ValueError("fit needs at least one training sample")
    if validation_data is not None:
        _check_pair(*validation_data)

    device = _model_device(model)
    optimizer = model.optimizer
    callback = CallbackList(callbacks)
    history = TrainingHistory()
    train_loader = DataLoader(
        TensorDataset(images.to(torch.float32), labels),
        batch_size=batch_size,
        shuffle=shuffle,
        generator=generator,
    )
    sample_count = len(train_loader.dataset)

    for epoch in range(1, epochs + 1):
        model.train()
        running_loss = 0.0
        running_correct = 0.0
        for step, (inputs, targets) in enumerate(train_loader):
            inputs = inputs.to(device)
            targets = targets.to(device)

            optimizer.zero_grad()
            probs = model(inputs)
            loss = model.loss_fn(probs, targets)
            loss.backward()
            optimizer.step()

            batch_loss = loss.item()
            batch_acc = METRICS["accuracy"](probs.detach(), targets).item()
            running_loss += batch_loss * inputs.size(0)
            running_correct += batch_acc * inputs.size(0)
            callback.on_batch_end(step, {"loss": batch_loss, "acc": batch_acc})

        logs: Logs = {
            "loss": running_loss / sample_count,
            "acc": running_correct / sample_count,
        }
        if validation_data is not None:
            logs["val_loss"], logs["val_acc"] = _score(model, *validation_data, batch_size=batch_size)

        history.epochs.append({"epoch": epoch, **logs})
        logger.debug("Epoch %d/%d: %s", epoch, epochs, logs)
        callback.on_epoch_end(epoch, logs)

    return history


def _draw(next_batch: Callable, count: int) -> List[torch.Tensor]:
    batch = next_batch(count)
    return [reshape_images(batch.images), batch.labels]


def train(
    model: DigitClassifier,
    source: BatchSource,
    config: Optional[TrainingConfig] = None,
    callbacks: Sequence[TrainingCallback] = (),
) -> TrainingHistory:
    """
    Draw the training and validation batches and fit the model on them.

    Both batches live in a scratch scope and are released once fitting
    finishes or fails. A source that cannot supply the batches raises before
    any parameter is updated.
    """
    config = config or TrainingConfig()
    generator = torch.Generator()
    if config.seed is not None:
        generator.manual_seed(config.seed)
    else:
        generator.seed()

    logger.info(
        "Training on %d samples, validating on %d, %d epochs of batch size %d",
        config.train_size,
        config.validation_size,
        config.epochs,
        config.batch_size,
    )
    with scratch_tensors() as scope:
        scope.extend(_draw(source.next_train_batch, config.train_size))
        scope.extend(_draw(source.next_test_batch, config.validation_size))
        train_images, train_labels, val_images, val_labels = scope
        return fit(
            model,
            train_images,
            train_labels,
            validation_data=(val_images, val_labels),
            batch_size=config.batch_size,
            epochs=config.epochs,
            shuffle=config.shuffle,
            callbacks=callbacks,
            generator=generator,
        )


def train_in_background(
    model: DigitClassifier,
    source: BatchSource,
    config: Optional[TrainingConfig] = None,
    callbacks: Sequence[TrainingCallback] = (),
    executor: Optional[ThreadPoolExecutor] = None,
) -> "Future[TrainingHistory]":
    """
    Start `train` on a worker thread and return its future.

    Pass a shared single-worker executor to queue several runs; the model
    must not be evaluated until the future has resolved.
    """
    if executor is None:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="digitnet-train")
        future = executor.submit(train, model, source, config, callbacks)
        executor.shutdown(wait=False)
        return future
    return executor.submit(train, model, source, config, callbacks)
