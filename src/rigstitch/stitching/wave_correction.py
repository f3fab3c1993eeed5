"""
Wave correction: one global rotation that straightens the rig.

Panoramas built from chained rotations drift so that the horizon "waves".
The correction finds the rig's common up vector and rotates every camera by
the same matrix so that this vector becomes the canonical y axis.
"""

from typing import List

import numpy as np

from ..camera import CameraParams, normalize_rotations
from ..errors import ConfigurationError

WAVE_CORRECT_HORIZ = 'horiz'
WAVE_CORRECT_VERT = 'vert'


def wave_correction_matrix(rmats: List[np.ndarray], kind: str = WAVE_CORRECT_HORIZ) -> np.ndarray:
    """
    Shared correction rotation for a set of camera rotations.

    Args:
        rmats: Camera rotation matrices.
        kind: 'horiz' for side-by-side rigs, 'vert' for stacked rigs.

    Returns:
        3x3 rotation to left-multiply every camera rotation with. Identity
        for a single camera or when the rig gives no usable direction.
    """
    if kind not in (WAVE_CORRECT_HORIZ, WAVE_CORRECT_VERT):
        raise ConfigurationError(f"Unknown wave correct kind: '{kind}'")
    if len(rmats) <= 1:
        return np.eye(3)

    rmats = [np.asarray(R, dtype=np.float64) for R in rmats]

    moment = np.zeros((3, 3))
    for R in rmats:
        col = R[:, 0:1]
        moment += col @ col.T

    # eigh sorts eigenvalues ascending
    _, eigen_vecs = np.linalg.eigh(moment)
    if kind == WAVE_CORRECT_HORIZ:
        rg1 = eigen_vecs[:, 0]
    else:
        rg1 = eigen_vecs[:, 2]

    img_k = np.zeros(3)
    for R in rmats:
        img_k += R[:, 2]

    rg0 = np.cross(rg1, img_k)
    rg0_norm = np.linalg.norm(rg0)
    if rg0_norm <= np.finfo(np.float64).tiny:
        return np.eye(3)
    rg0 /= rg0_norm

    rg2 = np.cross(rg0, rg1)

    conf = 0.0
    if kind == WAVE_CORRECT_HORIZ:
        for R in rmats:
            conf += rg0 @ R[:, 0]
    else:
        for R in rmats:
            conf -= rg1 @ R[:, 0]
    if conf < 0:
        rg0 = -rg0
        rg1 = -rg1

    return np.vstack([rg0, rg1, rg2])


def wave_correct(cameras: List[CameraParams], kind: str = WAVE_CORRECT_HORIZ) -> List[CameraParams]:
    """Rotate every camera by the same wave-correction matrix."""
    correction = wave_correction_matrix([cam.R for cam in cameras], kind)
    for cam in cameras:
        cam.R = correction @ np.asarray(cam.R, dtype=np.float64)
    print(f"[Wave Correction] Applied {kind} correction to {len(cameras)} cameras")
    return normalize_rotations(cameras)
