"""
Small convolutional digit classifier trained and evaluated on MNIST.

The pipeline runs in one process: draw batches, build and train the network,
report per-class accuracy and a confusion matrix, then classify a single
held-out example.
"""

__version__ = "0.1.0"
