"""Tests for the console and matplotlib renderers."""

import torch

from digitnet.evaluate import CLASS_NAMES, PredictionResult, confusion_statistics
from digitnet.model import build_model, summarize
from digitnet.train import TrainingHistory
from digitnet.visualize import ConsoleVisualizer, MatplotlibVisualizer, Visualizer


def _stats():
    result = PredictionResult(predicted=torch.tensor([0, 1, 1, 7]), true=torch.tensor([0, 1, 2, 7]))
    return confusion_statistics(result)


def _history():
    return TrainingHistory(
        epochs=[
            {"epoch": 1, "loss": 2.0, "acc": 0.3, "val_loss": 2.1, "val_acc": 0.25},
            {"epoch": 2, "loss": 1.5, "acc": 0.5, "val_loss": 1.7, "val_acc": 0.45},
        ]
    )


def test_base_visualizer_ignores_everything():
    visualizer = Visualizer()
    visualizer.model_summary([])
    visualizer.on_epoch_end(1, {"loss": 1.0})
    visualizer.single_prediction(torch.zeros(28, 28, 1), 0)


def test_console_model_summary(capsys):
    ConsoleVisualizer().model_summary(summarize(build_model()))
    out = capsys.readouterr().out
    assert "conv1" in out
    assert "24x24x8" in out
    assert "5994" in out


def test_console_evaluation_tables(capsys):
    visualizer = ConsoleVisualizer()
    stats = _stats()
    visualizer.per_class_accuracy(stats, CLASS_NAMES)
    visualizer.confusion_matrix(stats, CLASS_NAMES)
    out = capsys.readouterr().out
    assert "Overall accuracy: 75.00% on 4 samples" in out
    assert "Confusion Matrix" in out


def test_console_single_prediction(capsys):
    ConsoleVisualizer().single_prediction(torch.rand(28, 28, 1), 7)
    lines = capsys.readouterr().out.splitlines()
    assert "Predicted value is 7" in lines
    assert sum(1 for line in lines if len(line) == 28) == 28


def test_matplotlib_writes_pngs(tmp_path):
    visualizer = MatplotlibVisualizer(tmp_path / "out")
    visualizer.model_summary(summarize(build_model()))
    visualizer.sample_images(torch.rand(20, 784))
    visualizer.training_curves(_history())
    stats = _stats()
    visualizer.per_class_accuracy(stats, CLASS_NAMES)
    visualizer.confusion_matrix(stats, CLASS_NAMES)
    visualizer.single_prediction(torch.rand(28, 28, 1), 3)

    written = sorted(path.name for path in (tmp_path / "out").iterdir())
    assert written == [
        "accuracy.png",
        "confusion.png",
        "model.png",
        "prediction.png",
        "samples.png",
        "training.png",
    ]


def test_console_sample_images_draws_every_digit(capsys):
    ConsoleVisualizer().sample_images(torch.rand(20, 784))
    lines = capsys.readouterr().out.splitlines()
    digit_rows = [line for line in lines if len(line) == 10 * 28 + 9]
    assert len(digit_rows) == 2 * 28


def test_matplotlib_redraws_curves_every_epoch(tmp_path):
    visualizer = MatplotlibVisualizer(tmp_path)
    visualizer.on_epoch_end(1, {"loss": 2.0, "acc": 0.3, "val_loss": 2.1, "val_acc": 0.25})
    assert (tmp_path / "training.png").exists()
    visualizer.on_epoch_end(2, {"loss": 1.5, "acc": 0.5, "val_loss": 1.7, "val_acc": 0.45})
    assert [entry["epoch"] for entry in visualizer.epoch_logs] == [1, 2]
