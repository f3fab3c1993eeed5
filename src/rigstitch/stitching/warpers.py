"""
Rotation warpers projecting camera images onto a shared output surface.

A warper is built for one global focal scale. It maps every output pixel
back into the source image and resamples with cv2.remap, returning the
warped buffer together with its top-left corner in the shared frame.
A warper is never rescaled: a new focal scale needs a new warper.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Type

import cv2
import numpy as np

from ..errors import ConfigurationError

Point = Tuple[int, int]
Size = Tuple[int, int]


@dataclass
class WarpResult:
    """Warped image and validity mask of one camera in one scale regime."""

    image: np.ndarray
    mask: np.ndarray
    corner: Point  # top-left (x, y) in the shared output frame
    size: Size  # (width, height)


class RotationWarper(ABC):
    """
    Base projector. Subclasses define the forward (image -> surface) and
    backward (surface -> image) mappings on arrays of coordinates.
    """

    name = 'base'

    def __init__(self, scale: float):
        """
        Args:
            scale: Global focal scale of the output surface (> 0).
        """
        if not scale > 0:
            raise ValueError(f"Warper scale must be positive, got {scale}")
        self._scale = float(scale)
        self.r_kinv = np.eye(3)
        self.k_rinv = np.eye(3)
        self.k = np.eye(3)
        self.t = np.zeros(3)

    @property
    def scale(self) -> float:
        return self._scale

    def set_camera_params(self, K: np.ndarray, R: np.ndarray, T: Optional[np.ndarray] = None) -> None:
        K = np.asarray(K, dtype=np.float64)
        R = np.asarray(R, dtype=np.float64)
        self.k = K
        self.r_kinv = R @ np.linalg.inv(K)
        self.k_rinv = K @ np.linalg.inv(R)
        self.t = np.zeros(3) if T is None else np.asarray(T, dtype=np.float64).ravel()

    @abstractmethod
    def map_forward(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        pass

    @abstractmethod
    def map_backward(self, u: np.ndarray, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        pass

    def _rotate(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        m = self.r_kinv
        x_ = m[0, 0] * x + m[0, 1] * y + m[0, 2]
        y_ = m[1, 0] * x + m[1, 1] * y + m[1, 2]
        z_ = m[2, 0] * x + m[2, 1] * y + m[2, 2]
        return x_, y_, z_

    def _unrotate(self, x_: np.ndarray, y_: np.ndarray, z_: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        m = self.k_rinv
        x = m[0, 0] * x_ + m[0, 1] * y_ + m[0, 2] * z_
        y = m[1, 0] * x_ + m[1, 1] * y_ + m[1, 2] * z_
        z = m[2, 0] * x_ + m[2, 1] * y_ + m[2, 2] * z_
        valid = z > 0
        with np.errstate(divide='ignore', invalid='ignore'):
            x = np.where(valid, x / z, -1.0)
            y = np.where(valid, y / z, -1.0)
        return x, y

    @staticmethod
    def _border_points(src_size: Size) -> Tuple[np.ndarray, np.ndarray]:
        width, height = src_size
        xs = np.arange(width, dtype=np.float64)
        ys = np.arange(height, dtype=np.float64)
        x = np.concatenate([xs, xs, np.zeros(height), np.full(height, width - 1.0)])
        y = np.concatenate([np.zeros(width), np.full(width, height - 1.0), ys, ys])
        return x, y

    def detect_result_roi(self, src_size: Size) -> Tuple[Point, Point]:
        """Inclusive (top-left, bottom-right) of the warped image, from its border."""
        u, v = self.map_forward(*self._border_points(src_size))
        return self._bounds(u, v)

    @staticmethod
    def _bounds(u: np.ndarray, v: np.ndarray) -> Tuple[Point, Point]:
        finite = np.isfinite(u) & np.isfinite(v)
        if not np.any(finite):
            raise ValueError("Image does not project onto the output surface")
        u, v = u[finite], v[finite]
        tl = (int(np.floor(u.min())), int(np.floor(v.min())))
        br = (int(np.floor(u.max())), int(np.floor(v.max())))
        return tl, br

    def warp_roi(self, src_size: Size, K: np.ndarray, R: np.ndarray) -> Tuple[Point, Size]:
        """Corner and size the warped image of a src_size image would have."""
        self.set_camera_params(K, R)
        tl, br = self.detect_result_roi(src_size)
        return tl, (br[0] - tl[0] + 1, br[1] - tl[1] + 1)

    def build_maps(self, src_size: Size, K: np.ndarray, R: np.ndarray) -> Tuple[Point, np.ndarray, np.ndarray]:
        """Backward maps for cv2.remap over the warped ROI."""
        self.set_camera_params(K, R)
        tl, br = self.detect_result_roi(src_size)
        us = np.arange(tl[0], br[0] + 1, dtype=np.float64)
        vs = np.arange(tl[1], br[1] + 1, dtype=np.float64)
        u, v = np.meshgrid(us, vs)
        x, y = self.map_backward(u, v)
        return tl, x.astype(np.float32), y.astype(np.float32)

    def warp(self,
             src: np.ndarray,
             K: np.ndarray,
             R: np.ndarray,
             interp_mode: int = cv2.INTER_LINEAR,
             border_mode: int = cv2.BORDER_REFLECT) -> Tuple[Point, np.ndarray]:
        """
        Project an image onto the output surface.

        Returns:
            (corner, warped): top-left corner of the warped image in the
            shared frame, and the warped image itself.
        """
        height, width = src.shape[:2]
        tl, xmap, ymap = self.build_maps((width, height), K, R)
        dst = cv2.remap(src, xmap, ymap, interp_mode, borderMode=border_mode)
        return tl, dst

    def warp_with_mask(self, image: np.ndarray, mask: np.ndarray, K: np.ndarray, R: np.ndarray) -> WarpResult:
        """
        Warp an image (linear, reflected border) and its mask (nearest,
        zero border) with the same camera.
        """
        corner, image_warped = self.warp(image, K, R, cv2.INTER_LINEAR, cv2.BORDER_REFLECT)
        _, mask_warped = self.warp(mask, K, R, cv2.INTER_NEAREST, cv2.BORDER_CONSTANT)
        height, width = image_warped.shape[:2]
        return WarpResult(image=image_warped, mask=mask_warped, corner=corner, size=(width, height))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(scale={self._scale:.4f})"


class PlaneWarper(RotationWarper):
    """Rectilinear projection onto the plane z = 1 of the reference camera."""

    name = 'plane'

    def map_forward(self, x, y):
        x_, y_, z_ = self._rotate(x, y)
        with np.errstate(divide='ignore', invalid='ignore'):
            x_ = self.t[0] + x_ / z_ * (1 - self.t[2])
            y_ = self.t[1] + y_ / z_ * (1 - self.t[2])
        return self.scale * x_, self.scale * y_

    def map_backward(self, u, v):
        u = u / self.scale - self.t[0]
        v = v / self.scale - self.t[1]
        return self._unrotate(u, v, np.full_like(u, 1 - self.t[2]))

    def detect_result_roi(self, src_size):
        width, height = src_size
        x = np.array([0.0, 0.0, width - 1.0, width - 1.0])
        y = np.array([0.0, height - 1.0, 0.0, height - 1.0])
        return self._bounds(*self.map_forward(x, y))


class AffineWarper(PlaneWarper):
    """
    Plane warper driven by an affine transform instead of a rotation: the
    translation column of the 3x3 transform becomes the plane offset.
    """

    name = 'affine'

    @staticmethod
    def split_transform(H: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        H = np.asarray(H, dtype=np.float64)
        R = H.copy()
        T = np.array([H[0, 2], H[1, 2], 0.0])
        R[0, 2] = 0.0
        R[1, 2] = 0.0
        return R, T

    def set_camera_params(self, K, R, T=None):
        R_lin, T_affine = self.split_transform(R)
        super().set_camera_params(K, R_lin, T_affine if T is None else T)


class CylindricalWarper(RotationWarper):
    """Projection onto a vertical cylinder of radius `scale`."""

    name = 'cylindrical'

    def map_forward(self, x, y):
        x_, y_, z_ = self._rotate(x, y)
        u = self.scale * np.arctan2(x_, z_)
        with np.errstate(divide='ignore', invalid='ignore'):
            v = self.scale * y_ / np.sqrt(x_ * x_ + z_ * z_)
        return u, v

    def map_backward(self, u, v):
        u = u / self.scale
        v = v / self.scale
        return self._unrotate(np.sin(u), v, np.cos(u))


class SphericalWarper(RotationWarper):
    """Equirectangular projection onto a sphere of radius `scale`."""

    name = 'spherical'

    def map_forward(self, x, y):
        x_, y_, z_ = self._rotate(x, y)
        u = self.scale * np.arctan2(x_, z_)
        with np.errstate(divide='ignore', invalid='ignore'):
            w = y_ / np.sqrt(x_ * x_ + y_ * y_ + z_ * z_)
        w = np.where(np.isnan(w), 0.0, np.clip(w, -1.0, 1.0))
        v = self.scale * (np.pi - np.arccos(w))
        return u, v

    def map_backward(self, u, v):
        u = u / self.scale
        v = v / self.scale
        sinv = np.sin(np.pi - v)
        return self._unrotate(sinv * np.sin(u), np.cos(np.pi - v), sinv * np.cos(u))

    def detect_result_roi(self, src_size):
        (tl_u, tl_v), (br_u, br_v) = super().detect_result_roi(src_size)
        width, height = src_size

        # A pole inside the image covers every longitude
        for direction, v_pole in ((1.0, np.pi), (-1.0, 0.0)):
            ray = self.k_rinv[:, 1] * direction
            if ray[2] <= 0:
                continue
            px, py = ray[0] / ray[2], ray[1] / ray[2]
            if 0 < px < width and 0 < py < height:
                half_turn = int(np.floor(np.pi * self.scale))
                tl_u, br_u = min(tl_u, -half_turn), max(br_u, half_turn)
                tl_v = min(tl_v, int(np.floor(v_pole * self.scale)))
                br_v = max(br_v, int(np.floor(v_pole * self.scale)))

        return (tl_u, tl_v), (br_u, br_v)


WARPERS: Dict[str, Type[RotationWarper]] = {
    'plane': PlaneWarper,
    'affine': AffineWarper,
    'cylindrical': CylindricalWarper,
    'spherical': SphericalWarper,
}


class WarperCreator:
    """Remembers the projection model and builds warpers for a given scale."""

    def __init__(self, warp_type: str):
        warper_cls = WARPERS.get(warp_type)
        if warper_cls is None:
            raise ConfigurationError(f"Can't create the following warper '{warp_type}'")
        self.warp_type = warp_type
        self._warper_cls = warper_cls

    def create(self, scale: float) -> RotationWarper:
        return self._warper_cls(scale)
