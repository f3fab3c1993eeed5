"""
Stitching stages, one module per stage:
- Feature extraction (SIFT, ORB, optional SuperPoint)
- Pairwise matching with robust homography / affine verification
- Initial camera estimation over the maximum spanning tree
- Bundle adjustment (reprojection, ray or affine cost)
- Wave correction
- Rotation warpers (plane, affine, cylindrical, spherical)
- Per-camera canvas compositing
"""

from .bundle_adjustment import BundleAdjusterBase, create_bundle_adjuster
from .compositor import Canvas, composite_per_camera, result_roi
from .feature_extractor import FeatureSet, FeaturesFinder, create_features_finder
from .feature_matcher import FeaturesMatcher, PairwiseMatch, create_matcher
from .pose_estimator import Estimator, create_estimator
from .robust_estimator import RobustEstimator
from .warpers import RotationWarper, WarperCreator, WarpResult
from .wave_correction import wave_correct, wave_correction_matrix

__all__ = [
    'BundleAdjusterBase',
    'Canvas',
    'Estimator',
    'FeatureSet',
    'FeaturesFinder',
    'FeaturesMatcher',
    'PairwiseMatch',
    'RobustEstimator',
    'RotationWarper',
    'WarpResult',
    'WarperCreator',
    'composite_per_camera',
    'create_bundle_adjuster',
    'create_estimator',
    'create_features_finder',
    'create_matcher',
    'result_roi',
    'wave_correct',
    'wave_correction_matrix',
]
