"""
Robust fitting of pairwise geometric models from matched points.

Wraps OpenCV's RANSAC / MAGSAC++ homography fitting and its partial-affine
(similarity) fitting, and scores the result the way the pairwise matcher
needs it.
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from .. import constants

METHOD_FLAGS = {
    'ransac': cv2.RANSAC,
    'magsac': cv2.USAC_MAGSAC,
}


class RobustEstimator:
    """
    Estimates a homography or a 4-DOF partial affine transform between two
    matched point sets while rejecting outliers.
    """

    def __init__(self,
                 model: str = 'homography',
                 method: str = constants.ROBUST_METHOD,
                 threshold: float = constants.ROBUST_THRESHOLD,
                 confidence: float = constants.ROBUST_CONFIDENCE,
                 max_iters: int = constants.ROBUST_MAX_ITERS):
        """
        Initialize the estimator.

        Args:
            model: Transformation type ('homography' or 'affine').
            method: Robust scheme for homographies ('ransac' or 'magsac').
            threshold: Inlier threshold in pixels.
            confidence: Required confidence level (0-1).
            max_iters: Maximum number of iterations.
        """
        if model not in ('homography', 'affine'):
            raise ValueError(f"Unknown model: {model}")
        if method not in METHOD_FLAGS:
            raise ValueError(f"Unknown method: {method}")

        self.model = model
        self.method = method
        self.method_flag = METHOD_FLAGS[method]
        self.threshold = threshold
        self.confidence = confidence
        self.max_iters = max_iters

    def estimate(self,
                 src_pts: np.ndarray,
                 dst_pts: np.ndarray) -> Tuple[Optional[np.ndarray], np.ndarray]:
        """
        Estimate the transformation mapping src_pts onto dst_pts.

        Args:
            src_pts: (N, 2) array of points from the first image.
            dst_pts: (N, 2) array of corresponding points in the second image.

        Returns:
            Tuple of:
                - 3x3 float64 transformation, or None when fitting fails
                - (N,) boolean inlier mask
        """
        if len(src_pts) != len(dst_pts):
            raise ValueError("src_pts and dst_pts must have the same length")

        n_points = len(src_pts)
        min_points = 4 if self.model == 'homography' else 2
        if n_points < min_points:
            return None, np.zeros(n_points, dtype=bool)

        src = np.asarray(src_pts, dtype=np.float32).reshape(-1, 1, 2)
        dst = np.asarray(dst_pts, dtype=np.float32).reshape(-1, 1, 2)

        try:
            if self.model == 'homography':
                M, inlier_mask = cv2.findHomography(
                    src, dst,
                    method=self.method_flag,
                    ransacReprojThreshold=self.threshold,
                    maxIters=self.max_iters,
                    confidence=self.confidence
                )
            else:
                M, inlier_mask = cv2.estimateAffinePartial2D(
                    src, dst,
                    method=cv2.RANSAC,
                    ransacReprojThreshold=self.threshold,
                    maxIters=self.max_iters,
                    confidence=self.confidence
                )
                if M is not None:
                    M = np.vstack([M, [0.0, 0.0, 1.0]])
        except cv2.error as e:
            print(f"[Robust Estimator] Error during estimation: {e}")
            return None, np.zeros(n_points, dtype=bool)

        if M is None or inlier_mask is None:
            return None, np.zeros(n_points, dtype=bool)

        return M.astype(np.float64), inlier_mask.ravel().astype(bool)

    def refine(self,
               src_pts: np.ndarray,
               dst_pts: np.ndarray,
               inlier_mask: np.ndarray) -> Optional[np.ndarray]:
        """
        Re-fit the model on inliers only.

        Returns:
            Refined 3x3 transformation, or None if the refit fails.
        """
        M, _ = self.estimate(src_pts[inlier_mask], dst_pts[inlier_mask])
        return M


def match_confidence(num_inliers: int,
                     num_matches: int,
                     cap: float = constants.MATCH_CONFIDENCE_CAP) -> float:
    """
    Pair confidence from inlier and match counts.

    Confidences above `cap` come from near-identical images and are reset to 0.
    """
    confidence = num_inliers / (8.0 + 0.3 * num_matches)
    return 0.0 if confidence > cap else confidence
