"""
Renderers for model summaries, training curves and evaluation results.

The pipeline only ever writes to a visualizer. `ConsoleVisualizer` prints
plain-text tables; `MatplotlibVisualizer` writes PNG files into a directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

# Use non-GUI backend for matplotlib (works without a display)
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import torch

from .evaluate import ConfusionStatistics
from .model import LayerSummary
from .train import TrainingCallback, TrainingHistory

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = Path("output")


class Visualizer(TrainingCallback):
    """Write-only sink for everything the pipeline wants to show. Every hook is optional."""

    def model_summary(self, layers: Sequence[LayerSummary]) -> None:
        pass

    def sample_images(self, images: torch.Tensor) -> None:
        pass

    def training_curves(self, history: TrainingHistory) -> None:
        pass

    def per_class_accuracy(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        pass

    def confusion_matrix(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        pass

    def single_prediction(self, image: torch.Tensor, prediction: int) -> None:
        pass


def _ascii_digit(image: torch.Tensor) -> List[str]:
    shades = " .:-=+*#%@"
    grid = image.reshape(28, 28).clamp(0.0, 1.0)
    return ["".join(shades[int(value * (len(shades) - 1))] for value in row.tolist()) for row in grid]


class ConsoleVisualizer(Visualizer):
    """Print every view to stdout."""

    def model_summary(self, layers: Sequence[LayerSummary]) -> None:
        print("\nModel Architecture:\n")
        print(f"{'Layer':<10}{'Type':<12}{'Output shape':<16}{'Params':>8}")
        for layer in layers:
            shape = "x".join(str(dim) for dim in layer.output_shape)
            print(f"{layer.name:<10}{layer.kind:<12}{shape:<16}{layer.params:>8}")
        print(f"{'Total':<38}{sum(layer.params for layer in layers):>8}")

    def sample_images(self, images: torch.Tensor, per_row: int = 10) -> None:
        print(f"\nInput Data Examples ({images.shape[0]} images)\n")
        digits = [_ascii_digit(image) for image in images]
        for start in range(0, len(digits), per_row):
            for lines in zip(*digits[start:start + per_row]):
                print(" ".join(lines))
            print()

    def per_class_accuracy(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        print("\nAccuracy:\n")
        print(f"{'Class':<8}{'Accuracy':>10}{'# Samples':>12}")
        for name, acc, count in zip(class_names, stats.per_class_accuracy, stats.class_counts):
            print(f"{name:<8}{acc:>10.4f}{int(count):>12}")
        print(f"Overall accuracy: {stats.overall_accuracy:.2%} on {stats.total} samples")

    def confusion_matrix(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        print("\nConfusion Matrix (rows: true, columns: predicted):\n")
        print("     " + "".join(f"{name:>5}" for name in class_names))
        for name, row in zip(class_names, stats.matrix):
            print(f"{name:>5}" + "".join(f"{int(count):>5}" for count in row))

    def single_prediction(self, image: torch.Tensor, prediction: int) -> None:
        print(f"\nPredicted value is {prediction}")
        for line in _ascii_digit(image):
            print(line)


class MatplotlibVisualizer(Visualizer):
    """Save each view as a PNG file inside `output_dir`."""

    def __init__(self, output_dir: Path = DEFAULT_OUTPUT_DIR) -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.epoch_logs: List[Dict[str, float]] = []

    def _save(self, fig: plt.Figure, name: str) -> Path:
        path = self.output_dir / name
        fig.savefig(path, bbox_inches="tight")
        plt.close(fig)
        logger.info("Wrote %s", path)
        return path

    def model_summary(self, layers: Sequence[LayerSummary]) -> None:
        rows = [[layer.name, layer.kind, "x".join(map(str, layer.output_shape)), str(layer.params)] for layer in layers]
        fig, ax = plt.subplots(figsize=(6, 0.4 * len(rows) + 1))
        ax.axis("off")
        ax.table(cellText=rows, colLabels=["Layer", "Type", "Output shape", "Params"], loc="center")
        ax.set_title("Model Architecture")
        self._save(fig, "model.png")

    def sample_images(self, images: torch.Tensor) -> None:
        count = images.shape[0]
        columns = min(count, 10)
        rows = max(1, -(-count // columns))
        fig, axes = plt.subplots(rows, columns, figsize=(columns, rows), squeeze=False)
        for index, ax in enumerate(axes.flat):
            ax.axis("off")
            if index < count:
                ax.imshow(images[index].reshape(28, 28).cpu().numpy(), cmap="gray")
        fig.suptitle("Input Data Examples")
        self._save(fig, "samples.png")

    def on_epoch_end(self, epoch: int, logs: Dict[str, float]) -> None:
        self.epoch_logs.append({"epoch": epoch, **logs})
        self._plot_curves(self.epoch_logs)

    def training_curves(self, history: TrainingHistory) -> None:
        self._plot_curves(history.epochs)

    def _plot_curves(self, entries: Sequence[Dict[str, float]]) -> None:
        epochs = [entry["epoch"] for entry in entries]
        fig, (loss_ax, acc_ax) = plt.subplots(1, 2, figsize=(10, 4))
        series: Dict[str, plt.Axes] = {"loss": loss_ax, "val_loss": loss_ax, "acc": acc_ax, "val_acc": acc_ax}
        for key, ax in series.items():
            values = [entry[key] for entry in entries if key in entry]
            if len(values) == len(epochs):
                ax.plot(epochs, values, label=key)
        for ax, title in ((loss_ax, "Loss"), (acc_ax, "Accuracy")):
            ax.set_title(title)
            ax.set_xlabel("epoch")
            ax.legend()
        fig.suptitle("Model Training")
        self._save(fig, "training.png")

    def per_class_accuracy(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        fig, ax = plt.subplots(figsize=(6, 4))
        ax.bar(class_names, stats.per_class_accuracy)
        ax.set_ylim(0.0, 1.0)
        ax.set_xlabel("class")
        ax.set_ylabel("accuracy")
        ax.set_title("Accuracy")
        self._save(fig, "accuracy.png")

    def confusion_matrix(self, stats: ConfusionStatistics, class_names: Sequence[str]) -> None:
        fig, ax = plt.subplots(figsize=(6, 6))
        ax.imshow(stats.matrix, cmap="Blues")
        ticks = np.arange(len(class_names))
        ax.set_xticks(ticks)
        ax.set_xticklabels(class_names)
        ax.set_yticks(ticks)
        ax.set_yticklabels(class_names)
        ax.set_xlabel("predicted")
        ax.set_ylabel("true")
        for (row, col), count in np.ndenumerate(stats.matrix):
            ax.text(col, row, str(count), ha="center", va="center", fontsize=7)
        ax.set_title("Confusion Matrix")
        self._save(fig, "confusion.png")

    def single_prediction(self, image: torch.Tensor, prediction: int) -> None:
        fig, ax = plt.subplots(figsize=(3, 3))
        ax.imshow(image.reshape(28, 28).cpu().numpy(), cmap="gray")
        ax.set_title(f"Predicted value is {prediction}")
        ax.axis("off")
        self._save(fig, "prediction.png")


VISUALIZERS = {"console": ConsoleVisualizer, "matplotlib": MatplotlibVisualizer}
