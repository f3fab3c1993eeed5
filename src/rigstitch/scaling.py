"""
Resolution regimes of the pipeline.

Three scale factors are derived from megapixel budgets: work (feature
extraction), seam (auxiliary warp pass) and compose (final output). Each one
is fixed from the first image it is computed for and reused for every later
image, whatever its native resolution.
"""

import math
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np


def compute_scale(area: float, megapix: float) -> float:
    """
    Downscale factor that fits an image of `area` pixels into `megapix`.

    A non-positive budget means "no downscale". The result is never above 1.
    """
    if megapix <= 0 or area <= 0:
        return 1.0
    return min(1.0, math.sqrt(megapix * 1e6 / area))


def median_focal(focals: Sequence[float]) -> float:
    """Median of the camera focals; mean of the two middle values for even counts."""
    if len(focals) == 0:
        raise ValueError("Cannot take the median of no focals")
    ordered = sorted(float(f) for f in focals)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) * 0.5


def scale_size(size: Tuple[int, int], scale: float) -> Tuple[int, int]:
    """Scale a (width, height) size, rounding to whole pixels."""
    width, height = size
    return int(round(width * scale)), int(round(height * scale))


class ScaleManager:
    """
    Holds the work, seam and compose scales once they have been fixed.

    Each fix_* call computes its scale from the given full-resolution size
    only the first time; later calls return the stored value.
    """

    def __init__(self, work_megapix: float, seam_megapix: float, compose_megapix: float):
        self.work_megapix = work_megapix
        self.seam_megapix = seam_megapix
        self.compose_megapix = compose_megapix

        self._work_scale: Optional[float] = None
        self._seam_scale: Optional[float] = None
        self._compose_scale: Optional[float] = None

    @staticmethod
    def _area(size: Tuple[int, int]) -> float:
        return float(size[0]) * float(size[1])

    def fix_work_scale(self, full_size: Tuple[int, int]) -> float:
        if self._work_scale is None:
            self._work_scale = compute_scale(self._area(full_size), self.work_megapix)
        return self._work_scale

    def fix_seam_scale(self, full_size: Tuple[int, int]) -> float:
        if self._seam_scale is None:
            self._seam_scale = compute_scale(self._area(full_size), self.seam_megapix)
        return self._seam_scale

    def fix_compose_scale(self, full_size: Tuple[int, int]) -> float:
        if self._compose_scale is None:
            self._compose_scale = compute_scale(self._area(full_size), self.compose_megapix)
        return self._compose_scale

    @staticmethod
    def _require(value: Optional[float], name: str) -> float:
        if value is None:
            raise RuntimeError(f"{name} scale has not been fixed yet")
        return value

    @property
    def work_scale(self) -> float:
        return self._require(self._work_scale, 'Work')

    @property
    def seam_scale(self) -> float:
        return self._require(self._seam_scale, 'Seam')

    @property
    def compose_scale(self) -> float:
        return self._require(self._compose_scale, 'Compose')

    @property
    def seam_work_aspect(self) -> float:
        """Ratio that maps work-scale geometry into the seam regime."""
        return self.seam_scale / self.work_scale

    @property
    def compose_work_aspect(self) -> float:
        """Ratio that maps work-scale geometry into the compose regime."""
        return self.compose_scale / self.work_scale


def resize(image: np.ndarray, scale: float) -> np.ndarray:
    """Resize by a uniform factor with linear interpolation."""
    size = scale_size((image.shape[1], image.shape[0]), scale)
    return cv2.resize(image, size, interpolation=cv2.INTER_LINEAR)
