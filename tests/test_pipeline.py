import os
from itertools import combinations

import cv2
import numpy as np
import pytest

from rigstitch.camera import load_rig
from rigstitch.config import StitchConfig
from rigstitch.errors import ConfigurationError, InsufficientImagesError, OutputError, WarpError
from rigstitch.main import main
from rigstitch.pipeline import (PipelineStage, StitchingPipeline, load_images, read_image, run, stitch_images,
                               write_outputs)
from rigstitch.stitching.compositor import Canvas, result_roi
from rigstitch.stitching.warpers import RotationWarper
from synthetic import FOCAL, RIG_ANGLES, crop_views, make_scene, render_views, rotation

# Compose below full resolution to exercise the rescaled compose regime
COMPOSE_MEGAPIX = 0.03
COMPOSE_SCALE = np.sqrt(COMPOSE_MEGAPIX * 1e6 / (320 * 240))


def rig_config(output_dir, **kwargs):
    return StitchConfig(work_megapix=-1, n_features=200, output_dir=str(output_dir), **kwargs)


def write_rig(directory, images):
    paths = []
    for i, image in enumerate(images):
        path = os.path.join(str(directory), f'view{i + 1}.png')
        cv2.imwrite(path, image)
        paths.append(path)
    return paths


def rotation_angle_deg(R):
    cos = np.clip((np.trace(R) - 1.0) * 0.5, -1.0, 1.0)
    return np.degrees(np.arccos(cos))


@pytest.fixture(scope='module')
def stitched(tmp_path_factory):
    rotations = [rotation(a) for a in RIG_ANGLES]
    images = render_views(make_scene(), rotations)
    output_dir = tmp_path_factory.mktemp('rig')
    pipeline = StitchingPipeline(rig_config(output_dir, compose_megapix=COMPOSE_MEGAPIX))
    result = pipeline(images, persist_dir=str(output_dir))
    return pipeline, result, rotations, output_dir


def test_focal_close_to_ground_truth(stitched):
    _, result, _, _ = stitched
    for cam in result.cameras:
        assert cam.focal == pytest.approx(FOCAL, rel=0.1)


def test_relative_rotations_close_to_ground_truth(stitched):
    _, result, rotations, _ = stitched
    for i in range(3):
        for j in range(3):
            estimated = result.cameras[i].R.T.astype(np.float64) @ result.cameras[j].R.astype(np.float64)
            error = estimated @ (rotations[i].T @ rotations[j]).T
            assert rotation_angle_deg(error) < 1.0


def test_rotations_stay_orthonormal(stitched):
    _, result, _, _ = stitched
    for cam in result.cameras:
        R = cam.R.astype(np.float64)
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-5)
        assert np.linalg.det(R) == pytest.approx(1.0, abs=1e-5)


def test_camera_records_round_trip(stitched):
    _, result, _, output_dir = stitched
    assert [os.path.basename(p) for p in result.camera_files] == ['cam1.yml', 'cam2.yml', 'cam3.yml']

    loaded = load_rig(str(output_dir), 3)
    for cam, restored in zip(result.cameras, loaded):
        np.testing.assert_allclose(restored.K(), cam.K(), rtol=1e-6)
        np.testing.assert_allclose(restored.R, cam.R, atol=1e-6)
        np.testing.assert_allclose(restored.t, cam.t)


def test_compose_regime_is_rescaled(stitched):
    _, result, _, _ = stitched
    for cam, compose_cam in zip(result.cameras, result.compose_cameras):
        assert compose_cam.focal == pytest.approx(cam.focal * COMPOSE_SCALE, rel=1e-6)
        assert compose_cam.ppx == pytest.approx(cam.ppx * COMPOSE_SCALE, rel=1e-6)
        np.testing.assert_array_equal(compose_cam.R, cam.R)


def test_outputs_share_one_canvas(stitched):
    _, result, _, _ = stitched
    assert result.canvas == result_roi(result.compose_corners, result.compose_sizes)

    _, _, width, height = result.canvas
    assert len(result.outputs) == 3
    for output, mask in zip(result.outputs, result.masks):
        assert output.shape == (height, width, 3)
        assert output.dtype == np.int16
        assert mask.shape == (height, width)
        assert mask.any()
        assert not output[mask == 0].any()


def test_seam_pass_uses_high_precision_buffers(stitched):
    _, result, _, _ = stitched
    assert len(result.seam_warps) == 3
    for warp in result.seam_warps:
        assert warp.image.dtype == np.float32
        assert warp.mask.dtype == np.uint8
        assert warp.size == (warp.image.shape[1], warp.image.shape[0])


def test_pipeline_reaches_done(stitched):
    pipeline, _, _, _ = stitched
    assert pipeline.stage == PipelineStage.DONE


def test_single_image_is_rejected(rig_images):
    with pytest.raises(InsufficientImagesError) as excinfo:
        stitch_images(rig_images[:1])
    assert excinfo.value.count == 1


def test_no_files_written_without_enough_images(tmp_path):
    output_dir = tmp_path / 'out'
    with pytest.raises(InsufficientImagesError):
        run([], rig_config(output_dir))
    assert not output_dir.exists()


def test_unreadable_images_are_skipped(tmp_path, rig_images):
    paths = write_rig(tmp_path, rig_images[:1]) + [str(tmp_path / 'missing.png')]
    assert len(load_images(paths)) == 1

    output_dir = tmp_path / 'out'
    with pytest.raises(InsufficientImagesError) as excinfo:
        run(paths, rig_config(output_dir))
    assert excinfo.value.count == 1
    assert not output_dir.exists()


def test_strict_loading_raises(tmp_path):
    with pytest.raises(IOError):
        load_images([str(tmp_path / 'missing.png')], strict=True)
    with pytest.raises(IOError):
        read_image(str(tmp_path / 'missing.png'))


def test_configuration_errors_precede_processing():
    with pytest.raises(ConfigurationError):
        stitch_images([], StitchConfig(warp_type='fisheye'))


def test_cli_needs_two_images(tmp_path, rig_images):
    paths = write_rig(tmp_path, rig_images[:1])
    output_dir = tmp_path / 'out'
    assert main(paths + ['--output_dir', str(output_dir)]) == 3
    assert main([]) == 3
    assert not output_dir.exists()


def test_cli_rejects_bad_refinement_mask(tmp_path):
    assert main(['a.png', 'b.png', '--ba_refine_mask', 'xx', '--output_dir', str(tmp_path)]) == 2


def test_cli_rejects_unknown_choice():
    with pytest.raises(SystemExit) as excinfo:
        main(['a.png', 'b.png', '--warp', 'fisheye'])
    assert excinfo.value.code == 2


def test_cli_reports_estimation_failure(tmp_path):
    rng = np.random.default_rng(11)
    noise = [rng.integers(0, 256, size=(240, 320, 3), dtype=np.uint8) for _ in range(2)]
    paths = write_rig(tmp_path, noise)
    output_dir = tmp_path / 'out'

    assert main(paths + ['--output_dir', str(output_dir), '--work_megapix', '-1']) == 1
    assert not output_dir.exists()


def test_cli_writes_every_output(tmp_path, rig_images):
    paths = write_rig(tmp_path, rig_images)
    output_dir = tmp_path / 'out'
    argv = paths + ['--output_dir', str(output_dir), '--work_megapix', '-1',
                    '--n_features', '200', '--save_masks']
    assert main(argv) == 0

    written = sorted(os.listdir(str(output_dir)))
    for n in (1, 2, 3):
        assert f'cam{n}.yml' in written
        assert f'cam{n}_warped.jpg' in written
        assert f'cam{n}_warped_mask.png' in written

    first = cv2.imread(str(output_dir / 'cam1_warped.jpg'))
    third = cv2.imread(str(output_dir / 'cam3_warped.jpg'))
    assert first is not None and first.dtype == np.uint8
    assert first.shape == third.shape


def overlap_differences(result, min_pixels=500):
    """Median absolute difference of every camera pair over their shared canvas pixels."""
    diffs = {}
    for i, j in combinations(range(len(result.outputs)), 2):
        both = (result.masks[i] != 0) & (result.masks[j] != 0)
        if both.sum() < min_pixels:
            continue
        a = result.outputs[i][both].astype(np.int32)
        b = result.outputs[j][both].astype(np.int32)
        diffs[(i, j)] = float(np.median(np.abs(a - b)))
    return diffs


@pytest.mark.parametrize("warp_type", ['plane', 'cylindrical', 'spherical'])
def test_canvases_agree_where_cameras_overlap(rig_images, warp_type):
    config = StitchConfig(work_megapix=-1, n_features=200, warp_type=warp_type)
    result = stitch_images(rig_images, config)

    diffs = overlap_differences(result)
    assert (0, 1) in diffs and (1, 2) in diffs
    for pair, diff in diffs.items():
        assert diff < 12, f"{warp_type} canvases of cameras {pair} disagree: {diff}"


def test_affine_rig_at_reduced_scales():
    offsets = [(0, 200), (260, 210), (520, 220)]
    images = crop_views(make_scene(), offsets)
    config = StitchConfig(features_type='sift', n_features=200,
                          matcher_type='affine', estimator_type='affine',
                          ba_cost_func='affine', warp_type='affine',
                          work_megapix=0.05, seam_megapix=0.05, compose_megapix=0.1)
    pipeline = StitchingPipeline(config)
    result = pipeline(images)

    assert pipeline.scales.work_scale < 1.0
    compose_scale = pipeline.scales.compose_scale
    assert compose_scale < 0.9

    # Translations are in work-scale pixels; the compose canvas must still follow the offsets
    corners = result.compose_corners
    for (x0, y0), (x1, y1), c0, c1 in zip(offsets, offsets[1:], corners, corners[1:]):
        assert c1[0] - c0[0] == pytest.approx((x1 - x0) * compose_scale, abs=3)
        assert c1[1] - c0[1] == pytest.approx((y1 - y0) * compose_scale, abs=3)

    diffs = overlap_differences(result)
    assert (0, 1) in diffs and (1, 2) in diffs
    for pair, diff in diffs.items():
        assert diff < 12, f"affine canvases of cameras {pair} disagree: {diff}"


def test_output_directory_blocked_by_file(stitched, tmp_path):
    _, result, _, _ = stitched
    blocker = tmp_path / 'out'
    blocker.write_text('not a directory')

    with pytest.raises(OutputError):
        write_outputs(result, str(blocker))


def test_seam_warp_failures_are_wrapped(stitched, rig_images, monkeypatch):
    _, result, _, _ = stitched
    pipeline = StitchingPipeline(rig_config('.'))
    _, seam_images, _ = pipeline.extract(rig_images)

    def broken(self, image, mask, K, R):
        raise ValueError("Image does not project onto the output surface")

    monkeypatch.setattr(RotationWarper, 'warp_with_mask', broken)
    with pytest.raises(WarpError) as excinfo:
        pipeline.warp_seam_pass(seam_images, result.cameras, result.warped_image_scale)
    assert 'image #1' in str(excinfo.value)


def test_composite_failures_are_wrapped(stitched, rig_images, monkeypatch):
    _, result, _, _ = stitched
    pipeline = StitchingPipeline(rig_config('.'))
    _, _, full_sizes = pipeline.extract(rig_images)

    def broken(self, image, mask, corner):
        raise ValueError("outside canvas")

    monkeypatch.setattr(Canvas, 'feed', broken)
    with pytest.raises(WarpError):
        pipeline.compose(rig_images, result.cameras, full_sizes, result.warped_image_scale)
    assert pipeline.stage == PipelineStage.COMPOSITE


def test_cli_reports_unwritable_output(tmp_path, rig_images):
    paths = write_rig(tmp_path, rig_images)
    blocker = tmp_path / 'out'
    blocker.write_text('not a directory')
    argv = paths + ['--output_dir', str(blocker), '--work_megapix', '-1', '--n_features', '200']

    assert main(argv) == 1
    assert blocker.read_text() == 'not a directory'
