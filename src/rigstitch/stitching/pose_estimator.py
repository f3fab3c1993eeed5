"""
Initial camera estimation from pairwise matches.

Both estimators build the maximum spanning tree of the match graph (edge
weight = inlier count) and propagate transforms breadth-first from the tree
centre, so the centre camera becomes the reference frame.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple, Type

import numpy as np

from ..camera import CameraParams, normalize_rotations
from ..errors import ConfigurationError, EstimationError
from ..scaling import median_focal
from .feature_extractor import FeatureSet
from .feature_matcher import PairwiseMatch

Edge = Tuple[int, int]


def focals_from_homography(H: np.ndarray) -> Tuple[Optional[float], Optional[float]]:
    """
    Recover the focal lengths of both cameras of a rotation-only homography.

    The homography must be expressed in image-centred coordinates.

    Returns:
        (f0, f1): focal of the source and destination camera, each None when
        the homography does not constrain it.
    """
    h = np.asarray(H, dtype=np.float64).ravel()

    with np.errstate(divide='ignore', invalid='ignore'):
        d1 = h[6] * h[7]
        d2 = (h[7] - h[6]) * (h[7] + h[6])
        v1 = -(h[0] * h[1] + h[3] * h[4]) / d1
        v2 = (h[0] * h[0] + h[3] * h[3] - h[1] * h[1] - h[4] * h[4]) / d2
        f1 = _pick_focal(v1, v2, d1, d2)

        d1 = h[0] * h[3] + h[1] * h[4]
        d2 = h[0] * h[0] + h[1] * h[1] - h[3] * h[3] - h[4] * h[4]
        v1 = -h[2] * h[5] / d1
        v2 = (h[5] * h[5] - h[2] * h[2]) / d2
        f0 = _pick_focal(v1, v2, d1, d2)

    return f0, f1


def _pick_focal(v1: float, v2: float, d1: float, d2: float) -> Optional[float]:
    if v1 < v2:
        v1, v2 = v2, v1
    if v1 > 0 and v2 > 0:
        f = np.sqrt(v1 if abs(d1) > abs(d2) else v2)
    elif v1 > 0:
        f = np.sqrt(v1)
    else:
        return None
    return float(f) if np.isfinite(f) and f > 0 else None


def estimate_focal(features: Sequence[FeatureSet],
                   pairwise_matches: Sequence[PairwiseMatch]) -> List[float]:
    """
    One shared focal estimate for all cameras.

    Uses the median of per-homography estimates when at least N-1 of them
    are available, otherwise falls back to the mean of (width + height).
    """
    num_images = len(features)
    all_focals = []
    for m in pairwise_matches:
        if m.H is None:
            continue
        f0, f1 = focals_from_homography(m.H)
        if f0 is not None and f1 is not None:
            all_focals.append(np.sqrt(f0 * f1))

    if len(all_focals) >= num_images - 1 and all_focals:
        return [median_focal(all_focals)] * num_images

    print("[Estimator] Can't estimate focal length, will use naive approach")
    focals_sum = sum(f.img_size[0] + f.img_size[1] for f in features)
    return [float(focals_sum) / num_images] * num_images


class _DisjointSets:
    def __init__(self, count: int):
        self.parent = list(range(count))

    def find(self, item: int) -> int:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: int, b: int) -> bool:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        self.parent[rb] = ra
        return True


def find_max_spanning_tree(num_images: int,
                           pairwise_matches: Sequence[PairwiseMatch]) -> Tuple[Dict[int, List[int]], List[int]]:
    """
    Maximum spanning tree of the match graph.

    Args:
        num_images: Number of cameras.
        pairwise_matches: Matches with a verified transform (H is not None)
            become edges weighted by their inlier count.

    Returns:
        (adjacency, centers): tree adjacency lists and the vertices with the
        smallest eccentricity, ascending.

    Raises:
        EstimationError: If the verified matches do not connect every image.
    """
    edges = [(m.num_inliers, m.src_img_idx, m.dst_img_idx)
             for m in pairwise_matches if m.H is not None]
    edges.sort(key=lambda e: e[0], reverse=True)

    sets = _DisjointSets(num_images)
    adjacency: Dict[int, List[int]] = {i: [] for i in range(num_images)}
    tree_edges = 0
    for _, i, j in edges:
        if sets.union(i, j):
            adjacency[i].append(j)
            adjacency[j].append(i)
            tree_edges += 1

    if tree_edges != num_images - 1:
        root = sets.find(0)
        stray = [i + 1 for i in range(num_images) if sets.find(i) != root]
        raise EstimationError(
            f"Match graph is not connected; images {stray} share no verified matches with image 1")

    eccentricity = [max(_bfs_depths(adjacency, v).values()) for v in range(num_images)]
    best = min(eccentricity)
    centers = [v for v in range(num_images) if eccentricity[v] == best]
    return adjacency, centers


def _bfs_depths(adjacency: Dict[int, List[int]], start: int) -> Dict[int, int]:
    depths = {start: 0}
    queue = deque([start])
    while queue:
        v = queue.popleft()
        for u in adjacency[v]:
            if u not in depths:
                depths[u] = depths[v] + 1
                queue.append(u)
    return depths


def walk_breadth_first(adjacency: Dict[int, List[int]], start: int) -> List[Edge]:
    """Tree edges (from, to) in breadth-first order from start."""
    order = []
    visited = {start}
    queue = deque([start])
    while queue:
        v = queue.popleft()
        for u in adjacency[v]:
            if u not in visited:
                visited.add(u)
                order.append((v, u))
                queue.append(u)
    return order


class Estimator(ABC):
    """Produces an initial CameraParams for every image."""

    name = 'base'

    def __call__(self,
                 features: Sequence[FeatureSet],
                 pairwise_matches: Sequence[PairwiseMatch]) -> List[CameraParams]:
        """
        Estimate initial cameras.

        Raises:
            EstimationError: When the match graph cannot produce a connected estimate.
        """
        if len(features) < 2:
            raise EstimationError(f"Need at least 2 images to estimate cameras, got {len(features)}")
        cameras = self.estimate(features, pairwise_matches)
        print(f"[Estimator] Initial cameras estimated ({self.name})")
        return cameras

    @abstractmethod
    def estimate(self,
                 features: Sequence[FeatureSet],
                 pairwise_matches: Sequence[PairwiseMatch]) -> List[CameraParams]:
        pass


class HomographyBasedEstimator(Estimator):
    """
    Rotation-only camera model: a shared focal estimated from homographies
    and rotations chained along the spanning tree.
    """

    name = 'homography'

    def estimate(self,
                 features: Sequence[FeatureSet],
                 pairwise_matches: Sequence[PairwiseMatch]) -> List[CameraParams]:
        num_images = len(features)
        by_pair = {m.pair: m for m in pairwise_matches}

        focals = estimate_focal(features, pairwise_matches)
        cameras = [CameraParams(focal=f, R=np.eye(3)) for f in focals]

        adjacency, centers = find_max_spanning_tree(num_images, pairwise_matches)
        for src, dst in walk_breadth_first(adjacency, centers[0]):
            K_from = np.diag([cameras[src].focal, cameras[src].focal * cameras[src].aspect, 1.0])
            K_to = np.diag([cameras[dst].focal, cameras[dst].focal * cameras[dst].aspect, 1.0])
            H = by_pair[(src, dst)].H
            R = np.linalg.inv(K_from) @ np.linalg.inv(H) @ K_to
            cameras[dst].R = np.asarray(cameras[src].R, dtype=np.float64) @ R

        for cam, feat in zip(cameras, features):
            cam.ppx += 0.5 * feat.img_size[0]
            cam.ppy += 0.5 * feat.img_size[1]

        return normalize_rotations(cameras)


class AffineBasedEstimator(Estimator):
    """
    Planar-motion model: R holds the affine transform from each image into
    the centre image's pixel frame, with focal 1 and a zero principal point.
    """

    name = 'affine'

    def estimate(self,
                 features: Sequence[FeatureSet],
                 pairwise_matches: Sequence[PairwiseMatch]) -> List[CameraParams]:
        num_images = len(features)
        by_pair = {m.pair: m for m in pairwise_matches}
        transforms = [np.eye(3) for _ in range(num_images)]

        adjacency, centers = find_max_spanning_tree(num_images, pairwise_matches)
        for src, dst in walk_breadth_first(adjacency, centers[0]):
            transforms[dst] = transforms[src] @ np.linalg.inv(by_pair[(src, dst)].H)

        cameras = [CameraParams(focal=1.0, R=A) for A in transforms]
        return normalize_rotations(cameras, orthonormalize=False)


ESTIMATORS: Dict[str, Type[Estimator]] = {
    'homography': HomographyBasedEstimator,
    'affine': AffineBasedEstimator,
}


def create_estimator(name: str) -> Estimator:
    estimator_cls = ESTIMATORS.get(name)
    if estimator_cls is None:
        raise ConfigurationError(f"Unknown estimator type: '{name}'")
    return estimator_cls()
