"""
Exceptions raised by the stitching pipeline.

Every failure aborts the run; there is no partial-success mode.
"""


class StitchingError(Exception):
    """Base class for all pipeline failures."""
    pass


class ConfigurationError(StitchingError, ValueError):
    """Unknown algorithm, model or projection name, or a malformed option."""
    pass


class InsufficientImagesError(StitchingError):
    """Fewer than two usable images were supplied."""

    def __init__(self, count: int):
        super().__init__(f"Need at least 2 images, got {count}")
        self.count = count


class ImageLoadError(StitchingError, IOError):
    """An input image could not be decoded."""

    def __init__(self, path: str):
        super().__init__(f"Failed to read: {path}")
        self.path = path


class OutputError(StitchingError, IOError):
    """A camera record or output image could not be written."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to write {path}: {reason}")
        self.path = path


class EstimationError(StitchingError):
    """The match graph is too sparse to produce a connected camera estimate."""
    pass


class AdjustmentError(StitchingError):
    """Bundle adjustment did not converge or hit a degenerate system."""
    pass


class WarpError(StitchingError):
    """An image could not be projected onto the output surface or placed on the canvas."""
    pass
