import dataclasses
import itertools

import numpy as np
import pytest

from rigstitch.config import REFINE_MASK_POSITIONS, StitchConfig, parse_refinement_mask
from rigstitch.errors import ConfigurationError, StitchingError


def test_refinement_mask_positions():
    for chars in itertools.product('x_', repeat=5):
        mask_str = ''.join(chars)
        mask = parse_refinement_mask(mask_str)

        expected = np.zeros((3, 3), dtype=np.uint8)
        for char, (row, col) in zip(mask_str, REFINE_MASK_POSITIONS):
            if char == 'x':
                expected[row, col] = 1
        np.testing.assert_array_equal(mask, expected)


def test_refinement_mask_only_x_refines():
    mask = parse_refinement_mask('xX_ox')
    assert mask[0, 0] == 1
    assert mask[0, 1] == 0
    assert mask[0, 2] == 0
    assert mask[1, 1] == 0
    assert mask[1, 2] == 1
    assert mask.sum() == 2


def test_refinement_mask_never_touches_other_entries():
    mask = parse_refinement_mask('xxxxx')
    assert mask[1, 0] == 0
    assert mask[2].sum() == 0
    assert mask.sum() == 5


@pytest.mark.parametrize("bad", ['', 'xxxx', 'xxxxxx'])
def test_refinement_mask_length(bad):
    with pytest.raises(ConfigurationError):
        parse_refinement_mask(bad)


def test_defaults():
    config = StitchConfig()
    assert config.features_type == 'sift'
    assert config.matcher_type == 'homography'
    assert config.estimator_type == 'homography'
    assert config.ba_cost_func == 'ray'
    assert config.warp_type == 'plane'
    assert config.conf_thresh == pytest.approx(0.75)
    assert config.match_conf == pytest.approx(0.3)
    assert config.work_megapix == pytest.approx(0.6)
    assert config.seam_megapix == pytest.approx(0.1)
    assert config.compose_megapix < 0
    assert config.refinement_mask.sum() == 5


@pytest.mark.parametrize("kwargs", [
    {'features_type': 'surf'},
    {'matcher_type': 'flann'},
    {'estimator_type': 'projective'},
    {'ba_cost_func': 'huber'},
    {'wave_correct': 'diag'},
    {'warp_type': 'fisheye'},
    {'ba_refine_mask': 'xx'},
    {'range_width': 0},
    {'range_width': -2},
    {'match_conf': 0.0},
    {'conf_thresh': 0.0},
    {'n_features': -5},
])
def test_invalid_options_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        StitchConfig(**kwargs)


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        StitchConfig(warp_type='fisheye')
    assert issubclass(ConfigurationError, StitchingError)


def test_config_is_immutable():
    config = StitchConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.warp_type = 'spherical'


@pytest.mark.parametrize("kwargs,strategy", [
    ({}, 'exhaustive'),
    ({'range_width': 3}, 'range'),
    ({'matcher_type': 'affine'}, 'affine'),
    ({'matcher_type': 'affine', 'range_width': 3}, 'affine'),
])
def test_matcher_strategy(kwargs, strategy):
    assert StitchConfig(**kwargs).matcher_strategy == strategy
