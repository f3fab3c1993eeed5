import pytest

from synthetic import RIG_ANGLES, make_scene, render_views, rotation


@pytest.fixture(scope='session')
def rig_rotations():
    return [rotation(a) for a in RIG_ANGLES]


@pytest.fixture(scope='session')
def rig_images(rig_rotations):
    return render_views(make_scene(), rig_rotations)
