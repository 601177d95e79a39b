"""
Convolutional network used for handwritten digit recognition.

Two convolution + max-pool stages extract spatial features while halving the
resolution each time; a single dense softmax layer maps the flattened features
to a probability distribution over the ten digits. The model takes
channels-last images `(batch, 28, 28, 1)` and is compiled with Adam and
categorical cross-entropy before it can be trained.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch
from torch import nn

from .data import IMAGE_CHANNELS, IMAGE_HEIGHT, IMAGE_WIDTH, NUM_CLASSES
from .errors import ModelStateError, ShapeMismatch

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 1e-3
EPSILON = 1e-7


def variance_scaling_(tensor: torch.Tensor, scale: float = 1.0) -> torch.Tensor:
    """Fill `tensor` from a truncated normal with variance `scale / fan_in`."""
    fan_in = tensor[0].numel()
    std = math.sqrt(scale / fan_in)
    with torch.no_grad():
        return nn.init.trunc_normal_(tensor, mean=0.0, std=std, a=-2.0 * std, b=2.0 * std)


def categorical_crossentropy(probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Mean cross-entropy between softmax outputs and one-hot targets."""
    clipped = probs.clamp(EPSILON, 1.0 - EPSILON)
    return -(targets * clipped.log()).sum(dim=-1).mean()


def accuracy(probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Fraction of rows whose most probable class matches the target class."""
    return (probs.argmax(dim=-1) == targets.argmax(dim=-1)).float().mean()


LOSSES = {"categorical_crossentropy": categorical_crossentropy}
METRICS = {"accuracy": accuracy}


class DigitClassifier(nn.Module):
    """
    conv(5x5, 8) -> maxpool(2) -> conv(5x5, 16) -> maxpool(2) -> flatten -> dense(10, softmax).

    Convolution and dense stages carry their activation so the network reads
    as six stages. Call `compile` once before training.
    """

    input_shape = (IMAGE_HEIGHT, IMAGE_WIDTH, IMAGE_CHANNELS)

    def __init__(self) -> None:
        super().__init__()

        self.layers = nn.Sequential(
            OrderedDict(
                [
                    (
                        "conv1",
                        nn.Sequential(
                            nn.Conv2d(in_channels=IMAGE_CHANNELS, out_channels=8, kernel_size=5, stride=1),
                            nn.ReLU(),
                        ),
                    ),
                    ("pool1", nn.MaxPool2d(kernel_size=2, stride=2)),
                    (
                        "conv2",
                        nn.Sequential(
                            nn.Conv2d(in_channels=8, out_channels=16, kernel_size=5, stride=1),
                            nn.ReLU(),
                        ),
                    ),
                    ("pool2", nn.MaxPool2d(kernel_size=2, stride=2)),
                    ("flatten", nn.Flatten()),
                    (
                        "dense",
                        # 16 feature maps of 4x4 remain after the second pool.
                        nn.Sequential(
                            nn.Linear(in_features=16 * 4 * 4, out_features=NUM_CLASSES),
                            nn.Softmax(dim=-1),
                        ),
                    ),
                ]
            )
        )
        self.reset_parameters()

        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.loss_name: Optional[str] = None
        self.metric_names: Tuple[str, ...] = ()

    def reset_parameters(self) -> None:
        for module in self.modules():
            if isinstance(module, (nn.Conv2d, nn.Linear)):
                variance_scaling_(module.weight)
                nn.init.zeros_(module.bias)

    @property
    def compiled(self) -> bool:
        return self.optimizer is not None

    def compile(
        self,
        optimizer: Optional[torch.optim.Optimizer] = None,
        loss: str = "categorical_crossentropy",
        metrics: Sequence[str] = ("accuracy",),
    ) -> "DigitClassifier":
        """
        Bind the optimizer, loss and tracked metrics.

        Args:
            optimizer: Optimizer over this model's parameters. Adam with the
                default learning rate when omitted.
            loss: Name of the loss function.
            metrics: Names of metrics reported during training.

        Raises:
            ModelStateError: If the model was already compiled.
        """
        if self.compiled:
            raise ModelStateError("Model is already compiled")
        if loss not in LOSSES:
            raise ValueError(f"Unknown loss {loss!r}; expected one of {sorted(LOSSES)}")
        unknown = [name for name in metrics if name not in METRICS]
        if unknown:
            raise ValueError(f"Unknown metrics {unknown}; expected names from {sorted(METRICS)}")

        if optimizer is None:
            optimizer = torch.optim.Adam(self.parameters(), lr=DEFAULT_LEARNING_RATE)
        self.optimizer = optimizer
        self.loss_name = loss
        self.metric_names = tuple(metrics)
        logger.debug("Compiled model with %s, loss=%s, metrics=%s", type(self.optimizer).__name__, loss, metrics)
        return self

    def loss_fn(self, probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        if self.loss_name is None:
            raise ModelStateError("Model must be compiled before computing the loss")
        return LOSSES[self.loss_name](probs, targets)

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        """
        Run a forward pass through the network.

        Args:
            inputs: A batch of images shaped `(batch_size, 28, 28, 1)`.

        Returns:
            Class probabilities of shape `(batch_size, 10)`.
        """
        if inputs.dim() != 4 or tuple(inputs.shape[1:]) != self.input_shape:
            raise ShapeMismatch(
                f"Expected input of shape (N, {IMAGE_HEIGHT}, {IMAGE_WIDTH}, {IMAGE_CHANNELS}), "
                f"got {tuple(inputs.shape)}"
            )
        # Conv layers want channels first.
        return self.layers(inputs.permute(0, 3, 1, 2))


@dataclass
class LayerSummary:
    name: str
    kind: str
    output_shape: Tuple[int, ...]
    params: int


def _stage_kind(stage: nn.Module) -> str:
    if isinstance(stage, nn.Sequential):
        return type(stage[0]).__name__
    return type(stage).__name__


def summarize(model: DigitClassifier) -> List[LayerSummary]:
    """
    Describe each stage of the network with its per-sample output shape.

    Shapes are reported channels-last, matching the input layout.
    """
    device = next(model.parameters()).device
    summaries: List[LayerSummary] = []
    with torch.no_grad():
        activations = torch.zeros(1, IMAGE_CHANNELS, IMAGE_HEIGHT, IMAGE_WIDTH, device=device)
        for name, stage in model.layers.named_children():
            activations = stage(activations)
            shape = tuple(activations.shape[1:])
            if len(shape) == 3:
                shape = (shape[1], shape[2], shape[0])
            params = sum(p.numel() for p in stage.parameters())
            summaries.append(LayerSummary(name=name, kind=_stage_kind(stage), output_shape=shape, params=params))
    return summaries


def build_model(device: Optional[torch.device] = None) -> DigitClassifier:
    """Create a freshly initialized, compiled classifier."""
    model = DigitClassifier()
    if device is not None:
        model.to(device)
    # The optimizer must see the parameters after they have moved.
    return model.compile()
