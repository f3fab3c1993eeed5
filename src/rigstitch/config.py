"""
Immutable run configuration.

A StitchConfig is built once before the run and passed by reference through
every stage. Unknown names are rejected here, before any image is touched.
"""

from dataclasses import dataclass

import numpy as np

from . import constants
from .errors import ConfigurationError

FEATURES_TYPES = ('sift', 'orb', 'superpoint')
MATCHER_TYPES = ('homography', 'affine')
ESTIMATOR_TYPES = ('homography', 'affine')
BA_COST_FUNCS = ('reproj', 'ray', 'affine', 'no')
WAVE_CORRECT_KINDS = ('horiz', 'vert')
WARP_TYPES = ('plane', 'affine', 'cylindrical', 'spherical')

# Refinement mask character -> position in the 3x3 intrinsic matrix
REFINE_MASK_POSITIONS = ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2))


def parse_refinement_mask(mask: str) -> np.ndarray:
    """
    Convert a 5-character refinement string into a 3x3 mask.

    Character k set to 'x' marks REFINE_MASK_POSITIONS[k] as refinable;
    any other character keeps that entry fixed.

    Args:
        mask: String such as 'xxxxx' or 'x_x_x'.

    Returns:
        (3, 3) uint8 array with 1 at refinable positions.

    Raises:
        ConfigurationError: If the string is not exactly 5 characters.
    """
    if len(mask) != len(REFINE_MASK_POSITIONS):
        raise ConfigurationError(
            f"Incorrect refinement mask length: '{mask}' (expected 5 characters)")

    refine = np.zeros((3, 3), dtype=np.uint8)
    for char, (row, col) in zip(mask, REFINE_MASK_POSITIONS):
        if char == 'x':
            refine[row, col] = 1
    return refine


def _check_choice(option: str, value: str, allowed) -> None:
    if value not in allowed:
        raise ConfigurationError(
            f"Unknown {option}: '{value}' (expected one of {', '.join(allowed)})")


@dataclass(frozen=True)
class StitchConfig:
    """Every tunable of a stitching run, validated on construction."""

    features_type: str = constants.FEATURES_TYPE
    n_features: int = constants.N_FEATURES
    matcher_type: str = constants.MATCHER_TYPE
    range_width: int = constants.RANGE_WIDTH
    try_gpu: bool = constants.TRY_GPU
    estimator_type: str = constants.ESTIMATOR_TYPE
    ba_cost_func: str = constants.BA_COST_FUNC
    ba_refine_mask: str = constants.BA_REFINE_MASK
    conf_thresh: float = constants.BA_CONF_THRESH
    do_wave_correct: bool = constants.DO_WAVE_CORRECT
    wave_correct: str = constants.WAVE_CORRECT
    warp_type: str = constants.WARP_TYPE
    match_conf: float = constants.MATCH_CONF
    work_megapix: float = constants.WORK_MEGAPIX
    seam_megapix: float = constants.SEAM_MEGAPIX
    compose_megapix: float = constants.COMPOSE_MEGAPIX
    output_dir: str = constants.OUTPUT_DIR
    save_masks: bool = constants.SAVE_MASKS

    def __post_init__(self):
        _check_choice('2D features type', self.features_type, FEATURES_TYPES)
        _check_choice('matcher type', self.matcher_type, MATCHER_TYPES)
        _check_choice('estimator type', self.estimator_type, ESTIMATOR_TYPES)
        _check_choice('bundle adjustment cost function', self.ba_cost_func, BA_COST_FUNCS)
        _check_choice('wave correct kind', self.wave_correct, WAVE_CORRECT_KINDS)
        _check_choice('warp type', self.warp_type, WARP_TYPES)

        if self.n_features < 0:
            raise ConfigurationError(f"Feature count must be 0 or positive, got {self.n_features}")
        if self.range_width == 0 or self.range_width < -1:
            raise ConfigurationError(
                f"Range width must be -1 or positive, got {self.range_width}")
        if not 0 < self.match_conf < 1:
            raise ConfigurationError(f"Match confidence must be in (0, 1), got {self.match_conf}")
        if self.conf_thresh <= 0:
            raise ConfigurationError(f"Confidence threshold must be positive, got {self.conf_thresh}")

        # Fails eagerly on a malformed mask
        parse_refinement_mask(self.ba_refine_mask)

    @property
    def refinement_mask(self) -> np.ndarray:
        """3x3 uint8 mask derived from ba_refine_mask."""
        return parse_refinement_mask(self.ba_refine_mask)

    @property
    def matcher_strategy(self) -> str:
        """Resolved matching strategy: 'affine', 'range' or 'exhaustive'."""
        if self.matcher_type == 'affine':
            return 'affine'
        if self.range_width > 0:
            return 'range'
        return 'exhaustive'
