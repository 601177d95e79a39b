"""Exceptions raised by the digitnet pipeline."""

from __future__ import annotations


class DigitNetError(Exception):
    """Base class for every error raised by this package."""


class DataUnavailable(DigitNetError):
    """The backing dataset could not be fetched or decoded, or was never loaded."""


class InsufficientData(DigitNetError):
    """A batch draw asked for more samples than the split can supply."""


class ShapeMismatch(DigitNetError, ValueError):
    """A tensor does not have the rank or dimensions a stage expects."""


class InvalidLabel(DigitNetError, ValueError):
    """A label row is not a valid one-hot vector."""


class ModelStateError(DigitNetError, RuntimeError):
    """The model is in the wrong lifecycle state for the requested operation."""
