"""
Bundle Adjustment for global refinement of camera parameters.

Jointly optimizes every camera against the inlier matches of all image pairs
whose confidence exceeds a threshold, using Levenberg-Marquardt. The refined
rig is then re-expressed relative to the spanning-tree centre camera.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, Type

import cv2
import numpy as np
from scipy.optimize import least_squares

from .. import constants
from ..camera import CameraParams, nearest_rotation, normalize_rotations
from ..errors import AdjustmentError, ConfigurationError
from .feature_extractor import FeatureSet
from .feature_matcher import PairwiseMatch
from .pose_estimator import find_max_spanning_tree

# (i, j, points in image i, matching points in image j)
Observation = Tuple[int, int, np.ndarray, np.ndarray]


def _rvec(R: np.ndarray) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(nearest_rotation(R))
    return rvec.ravel()


def _rotation(rvec: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return R


def _homogeneous(points: np.ndarray) -> np.ndarray:
    return np.hstack([points, np.ones((len(points), 1))])


class BundleAdjusterBase(ABC):
    """
    Shared machinery: observation gathering, parameter masking, the solver
    call and the final normalisation.

    Subclasses define the per-camera parameter vector and the residual.
    """

    name = 'base'
    num_params_per_camera = 0

    def __init__(self,
                 conf_thresh: float = constants.BA_CONF_THRESH,
                 refinement_mask: Optional[np.ndarray] = None,
                 max_iterations: int = constants.BUNDLE_ADJUSTMENT_MAX_ITERS,
                 ftol: float = constants.BUNDLE_ADJUSTMENT_FTOL,
                 xtol: float = constants.BUNDLE_ADJUSTMENT_XTOL,
                 gtol: float = constants.BUNDLE_ADJUSTMENT_GTOL):
        """
        Initialize the adjuster.

        Args:
            conf_thresh: Pairs with confidence at or below this are ignored.
            refinement_mask: 3x3 mask of refinable intrinsic entries
                (all refinable when None).
            max_iterations: Maximum solver iterations.
            ftol: Function tolerance for convergence.
            xtol: Parameter tolerance for convergence.
            gtol: Gradient tolerance for convergence.
        """
        self.conf_thresh = conf_thresh
        self.refinement_mask = (np.ones((3, 3), dtype=np.uint8) if refinement_mask is None
                                else np.asarray(refinement_mask, dtype=np.uint8))
        self.max_iterations = max_iterations
        self.ftol = ftol
        self.xtol = xtol
        self.gtol = gtol

    @abstractmethod
    def set_up_initial_params(self, cameras: Sequence[CameraParams]) -> np.ndarray:
        """(N, P) parameter array from the current cameras."""
        pass

    @abstractmethod
    def obtain_refined_cameras(self, params: np.ndarray, cameras: Sequence[CameraParams]) -> List[CameraParams]:
        """Cameras rebuilt from an (N, P) parameter array."""
        pass

    @abstractmethod
    def edge_residuals(self, params: np.ndarray, cameras: Sequence[CameraParams], obs: Observation) -> np.ndarray:
        """Flat residual vector of one image pair."""
        pass

    def free_params(self) -> np.ndarray:
        """(P,) boolean mask of refinable per-camera parameters."""
        return np.ones(self.num_params_per_camera, dtype=bool)

    def residual_dim(self) -> int:
        return 2

    def gather_observations(self,
                            features: Sequence[FeatureSet],
                            pairwise_matches: Sequence[PairwiseMatch]) -> List[Observation]:
        """Inlier correspondences of every pair i < j above the confidence threshold."""
        observations = []
        for m in pairwise_matches:
            i, j = m.pair
            if i >= j or m.confidence <= self.conf_thresh:
                continue
            inliers = m.inlier_matches()
            if len(inliers) == 0:
                continue
            pts_i = features[i].keypoints[inliers[:, 0]].astype(np.float64)
            pts_j = features[j].keypoints[inliers[:, 1]].astype(np.float64)
            observations.append((i, j, pts_i, pts_j))
        return observations

    def __call__(self,
                 features: Sequence[FeatureSet],
                 pairwise_matches: Sequence[PairwiseMatch],
                 cameras: List[CameraParams]) -> List[CameraParams]:
        """
        Refine the cameras.

        Returns:
            Refined cameras, one per image.

        Raises:
            AdjustmentError: If no pair is usable, the system is
                under-determined, or the solver fails to converge.
        """
        n_cams = len(cameras)
        observations = self.gather_observations(features, pairwise_matches)
        if not observations:
            raise AdjustmentError(
                f"No image pairs exceed the confidence threshold {self.conf_thresh}")

        params0 = self.set_up_initial_params(cameras)
        free = np.tile(self.free_params(), n_cams)
        x0 = params0.ravel()[free]

        n_residuals = sum(len(obs[2]) for obs in observations) * self.residual_dim()
        if n_residuals < len(x0):
            raise AdjustmentError(
                f"Not enough matches to refine {len(x0)} parameters ({n_residuals} residuals)")

        def residuals(x):
            full = params0.ravel().copy()
            full[free] = x
            params = full.reshape(n_cams, self.num_params_per_camera)
            return np.concatenate([self.edge_residuals(params, cameras, obs) for obs in observations])

        print(f"[Bundle Adjustment] Optimizing {n_residuals // self.residual_dim()} observations "
              f"across {n_cams} cameras ({self.name})...")

        try:
            result = least_squares(
                residuals,
                x0,
                method='lm',  # Levenberg-Marquardt
                max_nfev=self.max_iterations * (len(x0) + 1),
                ftol=self.ftol,
                xtol=self.xtol,
                gtol=self.gtol
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            raise AdjustmentError(f"Camera parameters adjusting failed: {e}") from e

        if result.status <= 0 or not np.all(np.isfinite(result.x)):
            raise AdjustmentError(f"Camera parameters adjusting failed: {result.message}")

        full = params0.ravel().copy()
        full[free] = result.x
        refined = self.obtain_refined_cameras(full.reshape(n_cams, self.num_params_per_camera), cameras)

        for idx, cam in enumerate(refined):
            if not np.isfinite(cam.focal) or cam.focal <= 0 or not np.all(np.isfinite(cam.R)):
                raise AdjustmentError(f"Camera parameters adjusting failed: camera #{idx + 1} degenerated")

        refined = self.normalize_to_center(refined, pairwise_matches)

        final_error = np.sqrt(np.mean(result.fun ** 2))
        print(f"[Bundle Adjustment] Optimization complete. Final RMS error: {final_error:.4f}")

        return refined

    def normalize_to_center(self,
                            cameras: List[CameraParams],
                            pairwise_matches: Sequence[PairwiseMatch]) -> List[CameraParams]:
        """Re-express every camera relative to the spanning-tree centre camera."""
        _, centers = find_max_spanning_tree(len(cameras), pairwise_matches)
        R_inv = np.linalg.inv(np.asarray(cameras[centers[0]].R, dtype=np.float64))
        for cam in cameras:
            cam.R = R_inv @ np.asarray(cam.R, dtype=np.float64)
        return normalize_rotations(cameras)


class NoBundleAdjuster(BundleAdjusterBase):
    """Adjustment disabled: cameras are returned untouched."""

    name = 'no'

    def set_up_initial_params(self, cameras):
        return np.zeros((len(cameras), 0))

    def obtain_refined_cameras(self, params, cameras):
        return list(cameras)

    def edge_residuals(self, params, cameras, obs):
        return np.zeros(0)

    def __call__(self, features, pairwise_matches, cameras):
        return cameras


class BundleAdjusterReproj(BundleAdjusterBase):
    """
    Minimizes reprojection error in pixels.

    Per camera: focal, ppx, ppy, aspect and a rotation vector. The
    refinement mask selects focal (0,0), ppx (0,2), aspect (1,1) and
    ppy (1,2); skew (0,1) is not part of this model.
    """

    name = 'reproj'
    num_params_per_camera = 7

    def free_params(self) -> np.ndarray:
        mask = self.refinement_mask
        return np.array([
            mask[0, 0], mask[0, 2], mask[1, 2], mask[1, 1], 1, 1, 1,
        ], dtype=bool)

    def set_up_initial_params(self, cameras):
        params = np.zeros((len(cameras), self.num_params_per_camera))
        for i, cam in enumerate(cameras):
            params[i, :4] = [cam.focal, cam.ppx, cam.ppy, cam.aspect]
            params[i, 4:] = _rvec(cam.R)
        return params

    def obtain_refined_cameras(self, params, cameras):
        refined = []
        for p, cam in zip(params, cameras):
            new_cam = cam.copy()
            new_cam.focal, new_cam.ppx, new_cam.ppy, new_cam.aspect = (float(v) for v in p[:4])
            new_cam.R = _rotation(p[4:])
            refined.append(new_cam)
        return refined

    @staticmethod
    def _K(p: np.ndarray) -> np.ndarray:
        focal, ppx, ppy, aspect = p[:4]
        return np.array([[focal, 0.0, ppx], [0.0, focal * aspect, ppy], [0.0, 0.0, 1.0]])

    def edge_residuals(self, params, cameras, obs):
        i, j, pts_i, pts_j = obs
        K1, K2 = self._K(params[i]), self._K(params[j])
        R1, R2 = _rotation(params[i, 4:]), _rotation(params[j, 4:])

        # Projects points of image j into image i
        H = K1 @ R1.T @ R2 @ np.linalg.inv(K2)
        proj = _homogeneous(pts_j) @ H.T
        proj = proj[:, :2] / proj[:, 2:3]
        return (pts_i - proj).ravel()


class BundleAdjusterRay(BundleAdjusterBase):
    """
    Minimizes the distance between the viewing rays of matched points,
    scaled back to pixels by the focal lengths.

    Per camera: focal and a rotation vector; the principal point is kept
    fixed. Only the focal bit (0,0) of the refinement mask applies.
    """

    name = 'ray'
    num_params_per_camera = 4

    def residual_dim(self) -> int:
        return 3

    def free_params(self) -> np.ndarray:
        return np.array([self.refinement_mask[0, 0], 1, 1, 1], dtype=bool)

    def set_up_initial_params(self, cameras):
        params = np.zeros((len(cameras), self.num_params_per_camera))
        for i, cam in enumerate(cameras):
            params[i, 0] = cam.focal
            params[i, 1:] = _rvec(cam.R)
        return params

    def obtain_refined_cameras(self, params, cameras):
        refined = []
        for p, cam in zip(params, cameras):
            new_cam = cam.copy()
            new_cam.focal = float(p[0])
            new_cam.R = _rotation(p[1:])
            refined.append(new_cam)
        return refined

    @staticmethod
    def _rays(focal: float, cam: CameraParams, rvec: np.ndarray, points: np.ndarray) -> np.ndarray:
        K_inv = np.linalg.inv(np.array([[focal, 0.0, cam.ppx], [0.0, focal, cam.ppy], [0.0, 0.0, 1.0]]))
        rays = _homogeneous(points) @ (_rotation(rvec) @ K_inv).T
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)

    def edge_residuals(self, params, cameras, obs):
        i, j, pts_i, pts_j = obs
        f1, f2 = params[i, 0], params[j, 0]
        rays_i = self._rays(f1, cameras[i], params[i, 1:], pts_i)
        rays_j = self._rays(f2, cameras[j], params[j, 1:], pts_j)
        return (np.sqrt(abs(f1 * f2)) * (rays_i - rays_j)).ravel()


class BundleAdjusterAffinePartial(BundleAdjusterBase):
    """
    Refines 4-DOF similarity transforms (a, b, tx, ty) of the affine model,
        [[a, -b, tx],
         [b,  a, ty]]
    minimizing the pixel error of matches mapped from image i into image j.
    The refinement mask does not apply.
    """

    name = 'affine'
    num_params_per_camera = 4

    def set_up_initial_params(self, cameras):
        params = np.zeros((len(cameras), self.num_params_per_camera))
        for i, cam in enumerate(cameras):
            R = np.asarray(cam.R, dtype=np.float64)
            params[i] = [R[0, 0], R[1, 0], R[0, 2], R[1, 2]]
        return params

    @staticmethod
    def _transform(p: np.ndarray) -> np.ndarray:
        a, b, tx, ty = p
        return np.array([[a, -b, tx], [b, a, ty], [0.0, 0.0, 1.0]])

    def obtain_refined_cameras(self, params, cameras):
        refined = []
        for p, cam in zip(params, cameras):
            new_cam = cam.copy()
            new_cam.R = self._transform(p).astype(np.float32)
            refined.append(new_cam)
        return refined

    def edge_residuals(self, params, cameras, obs):
        i, j, pts_i, pts_j = obs
        H = np.linalg.inv(self._transform(params[j])) @ self._transform(params[i])
        mapped = _homogeneous(pts_i) @ H[:2].T
        return (pts_j - mapped).ravel()

    def normalize_to_center(self, cameras, pairwise_matches):
        _, centers = find_max_spanning_tree(len(cameras), pairwise_matches)
        A_inv = np.linalg.inv(np.asarray(cameras[centers[0]].R, dtype=np.float64))
        for cam in cameras:
            cam.R = A_inv @ np.asarray(cam.R, dtype=np.float64)
        return normalize_rotations(cameras, orthonormalize=False)


BUNDLE_ADJUSTERS: Dict[str, Type[BundleAdjusterBase]] = {
    'reproj': BundleAdjusterReproj,
    'ray': BundleAdjusterRay,
    'affine': BundleAdjusterAffinePartial,
    'no': NoBundleAdjuster,
}


def create_bundle_adjuster(cost_func: str,
                           conf_thresh: float = constants.BA_CONF_THRESH,
                           refinement_mask: Optional[np.ndarray] = None) -> BundleAdjusterBase:
    adjuster_cls = BUNDLE_ADJUSTERS.get(cost_func)
    if adjuster_cls is None:
        raise ConfigurationError(f"Unknown bundle adjustment cost function: '{cost_func}'")
    return adjuster_cls(conf_thresh=conf_thresh, refinement_mask=refinement_mask)
