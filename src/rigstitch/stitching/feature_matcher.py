"""
Pairwise feature matching with geometric verification.

Descriptors are matched with a two-nearest-neighbour ratio test in both
directions, then a homography (or a partial affine transform) is fitted
robustly to the surviving matches. Every attempted pair is returned, in both
directions, including pairs whose confidence is too low to be used later:
filtering happens downstream.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Type

import cv2
import numpy as np

from .. import constants
from ..errors import ConfigurationError
from .feature_extractor import FeatureSet
from .robust_estimator import RobustEstimator, match_confidence


@dataclass
class PairwiseMatch:
    """Geometric matches from image src_img_idx to image dst_img_idx."""

    src_img_idx: int
    dst_img_idx: int
    matches: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.int32))  # [src_kp, dst_kp]
    inliers_mask: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    H: Optional[np.ndarray] = None  # maps src points onto dst points
    confidence: float = 0.0

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers_mask))

    @property
    def pair(self) -> Tuple[int, int]:
        return self.src_img_idx, self.dst_img_idx

    def inlier_matches(self) -> np.ndarray:
        return self.matches[self.inliers_mask]

    def inverse(self) -> 'PairwiseMatch':
        """Same match seen from the other image."""
        return PairwiseMatch(
            src_img_idx=self.dst_img_idx,
            dst_img_idx=self.src_img_idx,
            matches=self.matches[:, ::-1].copy(),
            inliers_mask=self.inliers_mask.copy(),
            H=np.linalg.inv(self.H) if self.H is not None else None,
            confidence=self.confidence,
        )


class FeaturesMatcher:
    """
    Best-of-two-nearest matcher over all image pairs.

    Args:
        match_conf: Ratio-test confidence; a match is kept when its distance
            is below (1 - match_conf) times the second-best distance.
    """

    model = 'homography'
    center_points = True
    refine_homography = True

    def __init__(self,
                 match_conf: float = constants.MATCH_CONF,
                 min_matches: int = constants.MATCH_MIN_MATCHES,
                 min_inliers: int = constants.MATCH_MIN_INLIERS):
        self.match_conf = match_conf
        self.min_matches = min_matches
        self.min_inliers = min_inliers
        self.estimator = RobustEstimator(model=self.model)
        self._matchers: Dict[int, cv2.DescriptorMatcher] = {}

    def _matcher_for(self, norm_type: int) -> cv2.DescriptorMatcher:
        if norm_type not in self._matchers:
            self._matchers[norm_type] = cv2.BFMatcher(norm_type)
        return self._matchers[norm_type]

    def _ratio_matches(self, features1: FeatureSet, features2: FeatureSet) -> np.ndarray:
        """Symmetric ratio-test matches as an (M, 2) array of [idx1, idx2]."""
        if len(features1) < 2 or len(features2) < 2:
            return np.zeros((0, 2), dtype=np.int32)

        matcher = self._matcher_for(features1.norm_type)
        ratio = 1.0 - self.match_conf

        pairs = []
        seen = set()
        for knn in matcher.knnMatch(features1.descriptors, features2.descriptors, k=2):
            if len(knn) < 2:
                continue
            m0, m1 = knn
            if m0.distance < ratio * m1.distance:
                pairs.append((m0.queryIdx, m0.trainIdx))
                seen.add((m0.queryIdx, m0.trainIdx))

        for knn in matcher.knnMatch(features2.descriptors, features1.descriptors, k=2):
            if len(knn) < 2:
                continue
            m0, m1 = knn
            if m0.distance < ratio * m1.distance and (m0.trainIdx, m0.queryIdx) not in seen:
                pairs.append((m0.trainIdx, m0.queryIdx))

        return np.array(pairs, dtype=np.int32).reshape(-1, 2)

    def _points(self, features: FeatureSet, indices: np.ndarray) -> np.ndarray:
        pts = features.keypoints[indices].astype(np.float64)
        if self.center_points:
            width, height = features.img_size
            pts = pts - np.array([width * 0.5, height * 0.5])
        return pts

    def match(self, features1: FeatureSet, features2: FeatureSet) -> PairwiseMatch:
        """
        Match two feature sets and verify them geometrically.

        Returns:
            PairwiseMatch from features1 to features2. H is None when there
            are too few matches or the fitted model is degenerate.
        """
        result = PairwiseMatch(src_img_idx=features1.img_idx, dst_img_idx=features2.img_idx)
        matches = self._ratio_matches(features1, features2)
        result.matches = matches
        result.inliers_mask = np.zeros(len(matches), dtype=bool)
        if len(matches) < self.min_matches:
            return result

        src_pts = self._points(features1, matches[:, 0])
        dst_pts = self._points(features2, matches[:, 1])

        H, inliers = self.estimator.estimate(src_pts, dst_pts)
        if H is None or abs(np.linalg.det(H)) < np.finfo(np.float64).eps:
            return result

        result.H = H
        result.inliers_mask = inliers
        result.confidence = match_confidence(result.num_inliers, len(matches))

        if result.num_inliers < self.min_inliers:
            return result

        if self.refine_homography:
            refined = self.estimator.refine(src_pts, dst_pts, inliers)
            if refined is not None:
                result.H = refined

        return result

    def candidate_pairs(self, num_images: int) -> List[Tuple[int, int]]:
        """Pairs (i, j), i < j, that are worth matching."""
        return [(i, j) for i in range(num_images) for j in range(i + 1, num_images)]

    def __call__(self, features: Sequence[FeatureSet]) -> List[PairwiseMatch]:
        """
        Match every candidate pair.

        Returns:
            Matches for both directions of every candidate pair, ordered by
            (src_img_idx, dst_img_idx).
        """
        pairwise = []
        for i, j in self.candidate_pairs(len(features)):
            result = self.match(features[i], features[j])
            pairwise.append(result)
            pairwise.append(result.inverse())

        pairwise.sort(key=lambda m: m.pair)
        verified = sum(1 for m in pairwise if m.H is not None) // 2
        print(f"[Matcher] {verified} of {len(pairwise) // 2} pairs verified ({self.__class__.__name__})")
        return pairwise

    def collect_garbage(self) -> None:
        """Drop cached descriptor matchers."""
        self._matchers.clear()


class BestOf2NearestMatcher(FeaturesMatcher):
    """Exhaustive all-pairs matching with homography verification."""
    pass


class BestOf2NearestRangeMatcher(FeaturesMatcher):
    """Matches each image only with the next range_width - 1 images."""

    def __init__(self, range_width: int, **kwargs):
        super().__init__(**kwargs)
        if range_width <= 0:
            raise ConfigurationError(f"Range width must be positive, got {range_width}")
        self.range_width = range_width

    def candidate_pairs(self, num_images: int) -> List[Tuple[int, int]]:
        return [(i, j)
                for i in range(num_images - 1)
                for j in range(i + 1, min(num_images, i + self.range_width))]


class AffineBestOf2NearestMatcher(FeaturesMatcher):
    """
    Matching for purely affine camera motion (scans, flatbed rigs).

    Fits a 4-DOF similarity in raw pixel coordinates instead of a homography.
    """

    model = 'affine'
    center_points = False
    refine_homography = False


MATCHERS: Dict[str, Type[FeaturesMatcher]] = {
    'exhaustive': BestOf2NearestMatcher,
    'range': BestOf2NearestRangeMatcher,
    'affine': AffineBestOf2NearestMatcher,
}


def create_matcher(strategy: str,
                   match_conf: float = constants.MATCH_CONF,
                   range_width: int = constants.RANGE_WIDTH) -> FeaturesMatcher:
    """Build the matcher for a resolved strategy name."""
    matcher_cls = MATCHERS.get(strategy)
    if matcher_cls is None:
        raise ConfigurationError(f"Unknown matcher strategy: '{strategy}'")
    if matcher_cls is BestOf2NearestRangeMatcher:
        return matcher_cls(range_width, match_conf=match_conf)
    return matcher_cls(match_conf=match_conf)
