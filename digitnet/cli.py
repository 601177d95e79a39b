"""
End-to-end entry point: load MNIST, train the classifier, and report how it does.

Running `python -m digitnet.cli` downloads MNIST into `data/` when missing,
shows a few input examples, builds and trains the network, reports per-class
accuracy and a confusion matrix on held-out data, and finally classifies one
held-out digit.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import torch

from .data import DEFAULT_DATA_DIR, BatchSource, MnistBatchSource
from .errors import DigitNetError
from .evaluate import CLASS_NAMES, DEFAULT_SAMPLE_COUNT, ConfusionStatistics, confusion_statistics, evaluate
from .infer import classify, get_single_example
from .model import DigitClassifier, build_model, summarize
from .train import PrintProgress, TrainingConfig, TrainingHistory, get_device, train
from .visualize import DEFAULT_OUTPUT_DIR, VISUALIZERS, Visualizer

logger = logging.getLogger(__name__)

EXAMPLE_COUNT = 20


@dataclass
class PipelineConfig:
    """Runtime parameters for one end-to-end run."""

    data_dir: Path = DEFAULT_DATA_DIR
    download: bool = True
    eval_samples: int = DEFAULT_SAMPLE_COUNT
    output_dir: Path = DEFAULT_OUTPUT_DIR
    visualizer: str = "console"
    log_level: str = "INFO"
    training: TrainingConfig = field(default_factory=TrainingConfig)


@dataclass
class PipelineResult:
    model: DigitClassifier
    history: TrainingHistory
    accuracy: ConfusionStatistics
    confusion: ConfusionStatistics
    example_class: int
    example_prediction: int


def show_examples(source: BatchSource, visualizer: Visualizer, count: int = EXAMPLE_COUNT) -> None:
    examples = source.next_test_batch(count)
    visualizer.sample_images(examples.images)


def run_pipeline(config: PipelineConfig, source: BatchSource, visualizer: Visualizer) -> PipelineResult:
    """
    Run every stage in order against an already loaded source.

    Training finishes before evaluation starts, so the later stages always
    read the final weights. Any failure propagates and no result is returned.
    """
    if config.training.seed is not None:
        torch.manual_seed(config.training.seed)

    show_examples(source, visualizer)

    model = build_model(device=get_device())
    visualizer.model_summary(summarize(model))

    history = train(
        model,
        source,
        config.training,
        callbacks=[PrintProgress(config.training.epochs), visualizer],
    )
    visualizer.training_curves(history)

    # Accuracy and confusion each draw their own held-out batch.
    accuracy = confusion_statistics(evaluate(model, source, config.eval_samples))
    visualizer.per_class_accuracy(accuracy, CLASS_NAMES)
    confusion = confusion_statistics(evaluate(model, source, config.eval_samples))
    visualizer.confusion_matrix(confusion, CLASS_NAMES)

    image, true_class = get_single_example(source)
    prediction = classify(model, image)
    visualizer.single_prediction(image, prediction)
    logger.info("Single example: predicted %d, actual %d", prediction, true_class)

    return PipelineResult(
        model=model,
        history=history,
        accuracy=accuracy,
        confusion=confusion,
        example_class=true_class,
        example_prediction=prediction,
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: Optional[List[str]] = None) -> PipelineConfig:
    """Parse CLI arguments into a PipelineConfig instance."""
    parser = argparse.ArgumentParser(description="Train and evaluate the MNIST digit classifier.")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=PipelineConfig.data_dir,
        help="Directory where MNIST will be stored (default: %(default)s)",
    )
    parser.add_argument(
        "--no-download",
        action="store_true",
        help="Fail instead of downloading MNIST when it is missing.",
    )
    parser.add_argument("--epochs", type=int, default=TrainingConfig.epochs)
    parser.add_argument("--batch-size", type=int, default=TrainingConfig.batch_size)
    parser.add_argument("--train-size", type=int, default=TrainingConfig.train_size)
    parser.add_argument("--validation-size", type=int, default=TrainingConfig.validation_size)
    parser.add_argument(
        "--eval-samples",
        type=int,
        default=PipelineConfig.eval_samples,
        help="Held-out samples used for accuracy and the confusion matrix (default: %(default)s)",
    )
    parser.add_argument("--seed", type=int, default=TrainingConfig.seed)
    parser.add_argument(
        "--visualizer",
        choices=sorted(VISUALIZERS),
        default=PipelineConfig.visualizer,
        help="Where to render results (default: %(default)s)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=PipelineConfig.output_dir,
        help="Directory for rendered PNG files with --visualizer matplotlib (default: %(default)s)",
    )
    parser.add_argument("--log-level", default=PipelineConfig.log_level)

    args = parser.parse_args(argv)
    return PipelineConfig(
        data_dir=args.data_dir,
        download=not args.no_download,
        eval_samples=args.eval_samples,
        output_dir=args.output_dir,
        visualizer=args.visualizer,
        log_level=args.log_level,
        training=TrainingConfig(
            batch_size=args.batch_size,
            train_size=args.train_size,
            validation_size=args.validation_size,
            epochs=args.epochs,
            seed=args.seed,
        ),
    )


def make_visualizer(config: PipelineConfig) -> Visualizer:
    if config.visualizer == "matplotlib":
        return VISUALIZERS["matplotlib"](config.output_dir)
    return VISUALIZERS[config.visualizer]()


def main(argv: Optional[List[str]] = None) -> int:
    config = parse_args(argv)
    configure_logging(config.log_level)

    try:
        source = MnistBatchSource(config.data_dir, download=config.download, seed=config.training.seed).load()
        result = run_pipeline(config, source, make_visualizer(config))
    except DigitNetError as exc:
        logger.error("Run aborted: %s", exc)
        print(f"Run failed: {exc}", file=sys.stderr)
        return 1

    print(
        f"\nFinished: held-out accuracy {result.accuracy.overall_accuracy:.2%}, "
        f"example digit {result.example_class} predicted as {result.example_prediction}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
