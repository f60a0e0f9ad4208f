"""
Exceptions raised by the numeric core.

Degenerate reference embeddings and per-frame localization failures are
not exceptions: they are reported as tracking outcomes (see
``lafam.tracker.TrackStatus``).
"""


class LafamError(Exception):
    """Base class for all errors raised by lafam."""


class ShapeMismatch(LafamError, ValueError):
    """Channel count or spatial dimensions do not match what is required."""


class ChannelCountMismatch(ShapeMismatch):
    """An operation that needs exactly three channels got something else."""


class UnsupportedInterpolation(LafamError, ValueError):
    """Unknown resize mode."""


class NonFiniteValues(LafamError, ValueError):
    """A buffer contains NaN or infinite values."""


class ConfigError(LafamError, ValueError):
    """Invalid tracking/pipeline configuration or palette data."""
