import numpy as np
import pytest

from rigstitch.camera import CameraParams
from rigstitch.errors import ConfigurationError
from rigstitch.stitching.wave_correction import wave_correct, wave_correction_matrix
from synthetic import rotation

YAWS = [-0.4, -0.1, 0.2, 0.5]


def tilted_rig(tilt=(0.12, 0.0, 0.08)):
    """Cameras panning about a tilted axis."""
    T = rotation(tilt)
    return [T @ rotation((0.0, yaw, 0.0)) for yaw in YAWS]


def test_single_camera_is_untouched():
    np.testing.assert_array_equal(wave_correction_matrix([rotation((0.1, 0.2, 0.3))]), np.eye(3))


def test_unknown_kind():
    with pytest.raises(ConfigurationError):
        wave_correction_matrix(tilted_rig(), 'diag')


def test_correction_is_a_rotation():
    for kind in ('horiz', 'vert'):
        C = wave_correction_matrix(tilted_rig(), kind)
        np.testing.assert_allclose(C @ C.T, np.eye(3), atol=1e-9)
        assert np.linalg.det(C) == pytest.approx(1.0)


def test_horizontal_correction_levels_the_rig():
    rmats = tilted_rig()
    # The tilt puts the camera x axes out of the horizontal plane
    assert max(abs(R[1, 0]) for R in rmats) > 0.05

    C = wave_correction_matrix(rmats, 'horiz')
    for R in rmats:
        corrected = C @ R
        assert abs(corrected[1, 0]) < 1e-9


def test_level_rig_keeps_relative_rotations():
    rmats = tilted_rig()
    cams = [CameraParams(R=R.astype(np.float32)) for R in rmats]
    corrected = wave_correct(cams, 'horiz')

    for i in range(len(rmats)):
        R = corrected[i].R.astype(np.float64)
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-5)
        assert corrected[i].R.dtype == np.float32
        for j in range(len(rmats)):
            relative_before = rmats[i].T @ rmats[j]
            relative_after = R.T @ corrected[j].R.astype(np.float64)
            np.testing.assert_allclose(relative_after, relative_before, atol=1e-5)


def test_same_correction_for_every_camera():
    rmats = tilted_rig()
    C = wave_correction_matrix(rmats, 'vert')
    cams = wave_correct([CameraParams(R=R.astype(np.float32)) for R in rmats], 'vert')
    for R, cam in zip(rmats, cams):
        np.testing.assert_allclose(cam.R, C @ R, atol=1e-5)
