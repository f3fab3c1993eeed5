"""
Camera parameters and their on-disk calibration records.
"""

import os
from dataclasses import dataclass, field
from typing import List

import cv2
import numpy as np

from . import constants
from .errors import OutputError


def _identity_rotation() -> np.ndarray:
    return np.eye(3, dtype=np.float32)


def _zero_translation() -> np.ndarray:
    return np.zeros((3, 1), dtype=np.float64)


@dataclass
class CameraParams:
    """
    Intrinsic and extrinsic parameters of one camera.

    For the homography model R is a rotation (kept orthonormal); for the
    affine model R holds the image-to-reference affine transform with
    focal 1 and a zero principal point.
    """

    focal: float = 1.0
    aspect: float = 1.0
    ppx: float = 0.0
    ppy: float = 0.0
    R: np.ndarray = field(default_factory=_identity_rotation)
    t: np.ndarray = field(default_factory=_zero_translation)

    def K(self) -> np.ndarray:
        """Intrinsic matrix built from focal, aspect and principal point."""
        return np.array([
            [self.focal, 0.0, self.ppx],
            [0.0, self.focal * self.aspect, self.ppy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    def copy(self) -> 'CameraParams':
        return CameraParams(
            focal=float(self.focal),
            aspect=float(self.aspect),
            ppx=float(self.ppx),
            ppy=float(self.ppy),
            R=self.R.copy(),
            t=self.t.copy(),
        )

    def scaled(self, factor: float) -> 'CameraParams':
        """Copy with focal and principal point rescaled to another resolution."""
        cam = self.copy()
        cam.focal *= factor
        cam.ppx *= factor
        cam.ppy *= factor
        return cam


def nearest_rotation(matrix: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto the closest proper rotation.

    Args:
        matrix: Approximately orthonormal 3x3 matrix.

    Returns:
        Orthonormal matrix with determinant +1 (float64).
    """
    u, _, vt = np.linalg.svd(np.asarray(matrix, dtype=np.float64))
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation = -rotation
    return rotation


def normalize_rotations(cameras: List[CameraParams], orthonormalize: bool = True) -> List[CameraParams]:
    """Snap every R to a rotation (optionally) and to the stored precision."""
    for cam in cameras:
        R = nearest_rotation(cam.R) if orthonormalize else cam.R
        cam.R = np.asarray(R, dtype=constants.ROTATION_DTYPE)
    return cameras


def camera_filename(index: int) -> str:
    """Calibration file name for a 0-based camera index."""
    return constants.CAMERA_FILE_TEMPLATE.format(index=index + 1)


def save_camera_params(path: str, camera: CameraParams) -> None:
    """
    Write one calibration record as YAML.

    Raises:
        OutputError: If the file cannot be opened for writing.
    """
    try:
        fs = cv2.FileStorage(path, cv2.FILE_STORAGE_WRITE)
    except cv2.error as e:
        raise OutputError(path, str(e)) from e
    if not fs.isOpened():
        raise OutputError(path, "cannot open for writing")
    try:
        fs.write('K', camera.K())
        fs.write('R', np.asarray(camera.R, dtype=np.float32))
        fs.write('t', np.asarray(camera.t, dtype=np.float64))
        fs.write('ppx', float(camera.ppx))
        fs.write('ppy', float(camera.ppy))
        fs.write('focal', float(camera.focal))
        fs.write('aspect', float(camera.aspect))
    finally:
        fs.release()


def load_camera_params(path: str) -> CameraParams:
    """
    Read a calibration record written by save_camera_params.

    Raises:
        IOError: If the file cannot be opened, lacks a rotation or has no
            positive focal length.
    """
    if not os.path.isfile(path):
        raise IOError(f"No calibration record at {path}")
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise IOError(f"Cannot open {path} for reading")
    try:
        R = fs.getNode('R').mat()
        t = fs.getNode('t').mat()
        if R is None:
            raise IOError(f"Calibration record {path} has no rotation")
        focal = fs.getNode('focal').real()
        aspect = fs.getNode('aspect').real()
        if not focal > 0 or not aspect > 0:
            raise IOError(f"Calibration record {path} needs a positive focal and aspect")
        return CameraParams(
            focal=focal,
            aspect=aspect,
            ppx=fs.getNode('ppx').real(),
            ppy=fs.getNode('ppy').real(),
            R=R.astype(np.float32),
            t=t.astype(np.float64) if t is not None else _zero_translation(),
        )
    finally:
        fs.release()


def save_rig(directory: str, cameras: List[CameraParams]) -> List[str]:
    """Write one record per camera, named by 1-based index. Returns the paths."""
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        raise OutputError(directory, e.strerror or str(e)) from e
    paths = []
    for i, cam in enumerate(cameras):
        path = os.path.join(directory, camera_filename(i))
        save_camera_params(path, cam)
        paths.append(path)
    return paths


def load_rig(directory: str, count: int) -> List[CameraParams]:
    """Read back the records written by save_rig."""
    return [load_camera_params(os.path.join(directory, camera_filename(i)))
            for i in range(count)]
