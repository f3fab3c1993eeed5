import numpy as np
import pytest

from rigstitch.errors import ConfigurationError, EstimationError
from rigstitch.stitching.pose_estimator import (AffineBasedEstimator, HomographyBasedEstimator,
                                                create_estimator, estimate_focal, find_max_spanning_tree,
                                                focals_from_homography, walk_breadth_first)
from synthetic import VIEW_SIZE, blank_features, rotation, rotation_only_homography, synthetic_matches


def K_centered(focal):
    return np.diag([focal, focal, 1.0])


def test_focals_from_rotation_homography():
    R = rotation((0.05, 0.15, 0.0))
    H = rotation_only_homography(K_centered(480.0), np.eye(3), K_centered(520.0), R)
    f0, f1 = focals_from_homography(H)
    assert f0 == pytest.approx(480.0, rel=1e-6)
    assert f1 == pytest.approx(520.0, rel=1e-6)


def test_focals_are_scale_invariant():
    R = rotation((-0.1, 0.2, 0.05))
    H = rotation_only_homography(K_centered(300.0), np.eye(3), K_centered(300.0), R)
    f0, f1 = focals_from_homography(H * 7.5)
    assert f0 == pytest.approx(300.0, rel=1e-6)
    assert f1 == pytest.approx(300.0, rel=1e-6)


def test_identity_homography_gives_no_focal():
    assert focals_from_homography(np.eye(3)) == (None, None)


def test_naive_focal_fallback():
    features = blank_features(3)
    pairwise = synthetic_matches(3, {(0, 1): 30, (1, 2): 30})
    focals = estimate_focal(features, pairwise)
    assert focals == [float(VIEW_SIZE[0] + VIEW_SIZE[1])] * 3


def test_focal_is_median_of_homography_estimates():
    truth = rotation_rig()
    pair_focal = {frozenset((0, 1)): 400.0, frozenset((1, 2)): 500.0}

    def H_of(i, j):
        K = K_centered(pair_focal[frozenset((i, j))])
        return rotation_only_homography(K, truth[i], K, truth[j])

    pairwise = synthetic_matches(3, {(0, 1): 30, (1, 2): 30}, H_of=H_of)
    focals = estimate_focal(blank_features(3), pairwise)
    assert focals == pytest.approx([450.0] * 3, rel=1e-6)


def test_spanning_tree_keeps_strongest_edges():
    pairwise = synthetic_matches(3, {(0, 1): 30, (1, 2): 25, (0, 2): 5})
    adjacency, centers = find_max_spanning_tree(3, pairwise)
    assert sorted(adjacency[1]) == [0, 2]
    assert adjacency[0] == [1]
    assert adjacency[2] == [1]
    assert centers == [1]


def test_spanning_tree_requires_connected_graph():
    pairwise = synthetic_matches(4, {(0, 1): 30, (2, 3): 30})
    with pytest.raises(EstimationError) as excinfo:
        find_max_spanning_tree(4, pairwise)
    assert '[3, 4]' in str(excinfo.value)


def test_breadth_first_walk():
    adjacency = {0: [1], 1: [0, 2, 3], 2: [1], 3: [1, 4], 4: [3]}
    assert walk_breadth_first(adjacency, 1) == [(1, 0), (1, 2), (1, 3), (3, 4)]


def rotation_rig():
    return [rotation((0.06, -0.2, 0.0)), rotation((0.0, 0.0, 0.0)), rotation((-0.04, 0.18, 0.02))]


def test_homography_estimator_recovers_rig():
    focal = 450.0
    truth = rotation_rig()
    K = K_centered(focal)

    def H_of(i, j):
        return rotation_only_homography(K, truth[i], K, truth[j])

    pairwise = synthetic_matches(3, {(0, 1): 40, (1, 2): 35, (0, 2): 10}, H_of=H_of)
    cameras = HomographyBasedEstimator()(blank_features(3), pairwise)

    assert len(cameras) == 3
    for cam in cameras:
        assert cam.focal == pytest.approx(focal, rel=1e-4)
        assert cam.ppx == VIEW_SIZE[0] * 0.5
        assert cam.ppy == VIEW_SIZE[1] * 0.5
        assert cam.R.dtype == np.float32
        np.testing.assert_allclose(cam.R @ cam.R.T, np.eye(3), atol=1e-5)

    # Image 1 is the tree centre and becomes the reference frame
    np.testing.assert_allclose(cameras[1].R, np.eye(3), atol=1e-6)
    for i in range(3):
        for j in range(3):
            expected = truth[i].T @ truth[j]
            actual = cameras[i].R.T.astype(np.float64) @ cameras[j].R.astype(np.float64)
            np.testing.assert_allclose(actual, expected, atol=1e-4)


def test_affine_estimator_chains_transforms():
    A01 = np.array([[1.0, -0.05, 30.0], [0.05, 1.0, -4.0], [0.0, 0.0, 1.0]])
    A12 = np.array([[0.98, 0.02, 25.0], [-0.02, 0.98, 3.0], [0.0, 0.0, 1.0]])
    transforms = {(0, 1): A01, (1, 2): A12}

    def H_of(i, j):
        if (i, j) in transforms:
            return transforms[(i, j)]
        return np.linalg.inv(transforms[(j, i)])

    pairwise = synthetic_matches(3, {(0, 1): 40, (1, 2): 30}, H_of=H_of)
    cameras = AffineBasedEstimator()(blank_features(3), pairwise)

    for cam in cameras:
        assert cam.focal == 1.0
        assert cam.ppx == 0.0
    np.testing.assert_allclose(cameras[1].R, np.eye(3), atol=1e-6)
    np.testing.assert_allclose(cameras[0].R, A01, atol=1e-5)
    np.testing.assert_allclose(cameras[2].R, np.linalg.inv(A12), atol=1e-5)


def test_estimator_needs_two_images():
    with pytest.raises(EstimationError):
        HomographyBasedEstimator()(blank_features(1), [])


def test_disconnected_rig_fails():
    pairwise = synthetic_matches(3, {(0, 1): 40})
    with pytest.raises(EstimationError):
        HomographyBasedEstimator()(blank_features(3), pairwise)


def test_create_estimator():
    assert isinstance(create_estimator('homography'), HomographyBasedEstimator)
    assert isinstance(create_estimator('affine'), AffineBasedEstimator)
    with pytest.raises(ConfigurationError):
        create_estimator('projective')
