# hintflow/errors.py
"""Exception types raised by hintflow layers and tensor utilities."""
from __future__ import annotations


class HintFlowError(Exception):
    """Base class for all hintflow errors."""


class ConfigurationError(HintFlowError, ValueError):
    """Layer hyperparameters are inconsistent (channel count, spatial rank, permute mode)."""


class ShapeError(HintFlowError, ValueError):
    """An array has the wrong rank or an axis size that cannot be split/squeezed."""


class UnsupportedPatternError(HintFlowError, ValueError):
    """Unknown squeeze pattern, or a pattern not defined for the given spatial rank."""
