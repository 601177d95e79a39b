"""
Batch sources for the digit classifier.

A source holds a train split and a test split in memory and hands out
fixed-size batches of flat image rows with one-hot labels. Each split's
indices are shuffled once when the source is loaded; every draw walks that
permutation from where the previous draw stopped and wraps around at the
end. Samples therefore repeat across draws, never within one draw, and a
fixed seed reproduces the same sequence of batches run after run.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import torch
import torch.nn.functional as F
from torchvision import datasets

from .errors import DataUnavailable, InsufficientData, ShapeMismatch

logger = logging.getLogger(__name__)

IMAGE_WIDTH = 28
IMAGE_HEIGHT = 28
IMAGE_CHANNELS = 1
IMAGE_PIXELS = IMAGE_WIDTH * IMAGE_HEIGHT * IMAGE_CHANNELS
NUM_CLASSES = 10

DEFAULT_DATA_DIR = Path("data")

SplitTensors = Tuple[torch.Tensor, torch.Tensor]


@dataclass
class Batch:
    """Flat image rows `(N, 784)` paired index-for-index with one-hot labels `(N, 10)`."""

    images: torch.Tensor
    labels: torch.Tensor

    def __post_init__(self) -> None:
        if self.images.shape[0] != self.labels.shape[0]:
            raise ShapeMismatch(
                f"Batch has {self.images.shape[0]} images but {self.labels.shape[0]} labels"
            )

    def __len__(self) -> int:
        return self.images.shape[0]


def one_hot(classes: torch.Tensor, num_classes: int = NUM_CLASSES) -> torch.Tensor:
    """Encode integer class indices as float32 one-hot rows."""
    return F.one_hot(classes.long(), num_classes).to(torch.float32)


def reshape_images(images: torch.Tensor) -> torch.Tensor:
    """
    Reshape flat pixel rows into the rank-4 layout the model expects.

    Args:
        images: Tensor whose first axis is the sample axis and whose remaining
            axes hold 784 pixels per sample.

    Returns:
        A `(N, 28, 28, 1)` tensor with the same row-major pixel order.
    """
    if images.dim() < 2 or images[0].numel() != IMAGE_PIXELS:
        raise ShapeMismatch(
            f"Expected {IMAGE_PIXELS} pixels per sample, got tensor of shape {tuple(images.shape)}"
        )
    return images.reshape(images.shape[0], IMAGE_HEIGHT, IMAGE_WIDTH, IMAGE_CHANNELS)


def image_at(batch: Batch, index: int) -> torch.Tensor:
    """Slice one sample out of a batch as a `(28, 28, 1)` image."""
    return batch.images[index].reshape(IMAGE_HEIGHT, IMAGE_WIDTH, IMAGE_CHANNELS)


@contextmanager
def scratch_tensors() -> Iterator[List[torch.Tensor]]:
    """
    Scope for tensors that only live for one computation.

    Tensors appended to the yielded list are released when the block exits,
    whether it returns normally or raises.
    """
    scope: List[torch.Tensor] = []
    try:
        yield scope
    finally:
        count = len(scope)
        scope.clear()
        logger.debug("Released %d scratch tensor(s)", count)


def _normalize_split(name: str, images: torch.Tensor, labels: torch.Tensor) -> SplitTensors:
    if images.shape[0] != labels.shape[0]:
        raise ShapeMismatch(
            f"{name} split has {images.shape[0]} images but {labels.shape[0]} labels"
        )
    if images.shape[0] and images[0].numel() != IMAGE_PIXELS:
        raise ShapeMismatch(
            f"{name} split images must hold {IMAGE_PIXELS} pixels each, got {tuple(images.shape)}"
        )
    flat = images.reshape(images.shape[0], IMAGE_PIXELS)
    if flat.dtype == torch.uint8:
        flat = flat.to(torch.float32) / 255.0
    else:
        flat = flat.to(torch.float32)

    if labels.dim() == 1:
        encoded = one_hot(labels)
    elif labels.dim() == 2 and labels.shape[1] == NUM_CLASSES:
        encoded = labels.to(torch.float32)
    else:
        raise ShapeMismatch(
            f"{name} split labels must be class indices or one-hot rows, got {tuple(labels.shape)}"
        )
    return flat, encoded


class _SplitCursor:
    """Sequential walk over a shuffled permutation of one split."""

    def __init__(self, name: str, images: torch.Tensor, labels: torch.Tensor, generator: torch.Generator) -> None:
        self.name = name
        self.images = images
        self.labels = labels
        self.order = torch.randperm(images.shape[0], generator=generator)
        self.position = 0

    def __len__(self) -> int:
        return self.images.shape[0]

    def draw(self, count: int) -> Batch:
        size = len(self)
        if count < 1 or count > size:
            raise InsufficientData(
                f"Requested {count} samples from the {self.name} split, which holds {size}"
            )
        positions = (self.position + torch.arange(count)) % size
        indices = self.order[positions]
        self.position = (self.position + count) % size
        return Batch(images=self.images[indices], labels=self.labels[indices])


class BatchSource:
    """
    Base class for in-memory train/test batch sources.

    Subclasses implement `_read_splits` and return `(images, labels)` for the
    train and test splits. Images may be flat or `(N, 28, 28)`, float in
    [0, 1] or raw bytes; labels may be class indices or one-hot rows.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self.seed = seed
        self._train: Optional[_SplitCursor] = None
        self._test: Optional[_SplitCursor] = None

    def _read_splits(self) -> Tuple[SplitTensors, SplitTensors]:
        raise NotImplementedError

    def load(self) -> "BatchSource":
        (train_images, train_labels), (test_images, test_labels) = self._read_splits()
        train_images, train_labels = _normalize_split("train", train_images, train_labels)
        test_images, test_labels = _normalize_split("test", test_images, test_labels)

        generator = torch.Generator()
        if self.seed is None:
            generator.seed()
        else:
            generator.manual_seed(self.seed)

        self._train = _SplitCursor("train", train_images, train_labels, generator)
        self._test = _SplitCursor("test", test_images, test_labels, generator)
        logger.info(
            "Loaded %d training and %d test samples", len(self._train), len(self._test)
        )
        return self

    @property
    def loaded(self) -> bool:
        return self._train is not None and self._test is not None

    @property
    def train_size(self) -> int:
        return len(self._cursor("train"))

    @property
    def test_size(self) -> int:
        return len(self._cursor("test"))

    def _cursor(self, split: str) -> _SplitCursor:
        cursor = self._train if split == "train" else self._test
        if cursor is None:
            raise DataUnavailable(f"Cannot draw from the {split} split before load() succeeds")
        return cursor

    def next_train_batch(self, count: int) -> Batch:
        return self._cursor("train").draw(count)

    def next_test_batch(self, count: int) -> Batch:
        return self._cursor("test").draw(count)


class TensorBatchSource(BatchSource):
    """Batch source over tensors already in memory (synthetic data, tests)."""

    def __init__(
        self,
        train_images: torch.Tensor,
        train_labels: torch.Tensor,
        test_images: torch.Tensor,
        test_labels: torch.Tensor,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__(seed=seed)
        self._splits = ((train_images, train_labels), (test_images, test_labels))

    def _read_splits(self) -> Tuple[SplitTensors, SplitTensors]:
        return self._splits


class MnistBatchSource(BatchSource):
    """Batch source backed by the torchvision MNIST train and test sets."""

    def __init__(self, data_dir: Path = DEFAULT_DATA_DIR, download: bool = True, seed: Optional[int] = None) -> None:
        super().__init__(seed=seed)
        self.data_dir = Path(data_dir)
        self.download = download

    def _read_splits(self) -> Tuple[SplitTensors, SplitTensors]:
        logger.info("Loading MNIST from %s (download=%s)", self.data_dir, self.download)
        try:
            train_set = datasets.MNIST(root=self.data_dir, train=True, download=self.download)
            test_set = datasets.MNIST(root=self.data_dir, train=False, download=self.download)
        except (RuntimeError, OSError) as exc:
            raise DataUnavailable(f"Could not load MNIST from {self.data_dir}: {exc}") from exc
        return (train_set.data, train_set.targets), (test_set.data, test_set.targets)
