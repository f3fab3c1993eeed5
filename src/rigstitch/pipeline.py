"""
End-to-end stitching run.

Stages run strictly in sequence:

    INIT -> EXTRACT -> MATCH -> ESTIMATE -> ADJUST -> WAVE_CORRECT
         -> PERSIST_PARAMS -> WARP_SEAM_PASS -> WARP_COMPOSE_PASS
         -> COMPOSITE -> DONE

Any failure raises a StitchingError and halts the run. The camera list is
handed from stage to stage; each stage returns the collection the next one
consumes.
"""

import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from . import constants
from .camera import CameraParams, save_rig
from .config import StitchConfig
from .errors import ImageLoadError, InsufficientImagesError, OutputError, WarpError
from .scaling import ScaleManager, median_focal, resize, scale_size
from .stitching.bundle_adjustment import create_bundle_adjuster
from .stitching.compositor import Canvas, Rect, result_roi
from .stitching.feature_extractor import FeatureSet, create_features_finder
from .stitching.feature_matcher import PairwiseMatch, create_matcher
from .stitching.pose_estimator import create_estimator
from .stitching.warpers import RotationWarper, WarperCreator, WarpResult
from .stitching.wave_correction import wave_correct

Point = Tuple[int, int]
Size = Tuple[int, int]


class PipelineStage(Enum):
    INIT = auto()
    EXTRACT = auto()
    MATCH = auto()
    ESTIMATE = auto()
    ADJUST = auto()
    WAVE_CORRECT = auto()
    PERSIST_PARAMS = auto()
    WARP_SEAM_PASS = auto()
    WARP_COMPOSE_PASS = auto()
    COMPOSITE = auto()
    DONE = auto()


def _full_mask(image: np.ndarray) -> np.ndarray:
    return np.full(image.shape[:2], 255, dtype=np.uint8)


class SeamPassContext:
    """
    Auxiliary warp at seam scale.

    Owns a warper built for warped_image_scale * seam_work_aspect; cameras
    are rescaled from work scale on the fly.
    """

    def __init__(self, warper: RotationWarper, seam_work_aspect: float):
        self.warper = warper
        self.seam_work_aspect = seam_work_aspect

    @classmethod
    def create(cls, creator: WarperCreator, warped_image_scale: float, seam_work_aspect: float) -> 'SeamPassContext':
        return cls(creator.create(warped_image_scale * seam_work_aspect), seam_work_aspect)

    def warp(self, image: np.ndarray, camera: CameraParams) -> WarpResult:
        K = camera.scaled(self.seam_work_aspect).K()
        result = self.warper.warp_with_mask(image, _full_mask(image), K, camera.R)
        result.image = result.image.astype(np.float32)
        return result


class ComposePassContext:
    """
    Final warp at compose scale.

    Built once, from the first compose image: fixes the compose scale,
    rescales every camera from work scale and lays out every corner and
    size before any image is warped.
    """

    def __init__(self,
                 warper: RotationWarper,
                 compose_scale: float,
                 cameras: List[CameraParams],
                 corners: List[Point],
                 sizes: List[Size]):
        self.warper = warper
        self.compose_scale = compose_scale
        self.cameras = cameras
        self.corners = corners
        self.sizes = sizes
        self.roi = result_roi(corners, sizes)

    @property
    def needs_resize(self) -> bool:
        return abs(self.compose_scale - 1) > constants.COMPOSE_RESIZE_TOLERANCE

    @classmethod
    def create(cls,
               creator: WarperCreator,
               warped_image_scale: float,
               cameras: Sequence[CameraParams],
               full_sizes: Sequence[Size],
               scales: ScaleManager) -> 'ComposePassContext':
        compose_scale = scales.fix_compose_scale(full_sizes[0])
        compose_work_aspect = scales.compose_work_aspect
        warper = creator.create(warped_image_scale * compose_work_aspect)

        compose_cameras = [cam.scaled(compose_work_aspect) for cam in cameras]
        corners = []
        sizes = []
        for cam, full_size in zip(compose_cameras, full_sizes):
            size = full_size
            if abs(compose_scale - 1) > constants.COMPOSE_RESIZE_TOLERANCE:
                size = scale_size(full_size, compose_scale)
            corner, warped_size = warper.warp_roi(size, cam.K(), cam.R)
            corners.append(corner)
            sizes.append(warped_size)

        return cls(warper, compose_scale, compose_cameras, corners, sizes)

    def warp(self, full_image: np.ndarray, img_idx: int) -> WarpResult:
        image = resize(full_image, self.compose_scale) if self.needs_resize else full_image
        camera = self.cameras[img_idx]
        result = self.warper.warp_with_mask(image, _full_mask(image), camera.K(), camera.R)
        result.image = result.image.astype(np.int16)
        return result

    def composite(self, result: WarpResult) -> Tuple[np.ndarray, np.ndarray]:
        channels = 1 if result.image.ndim == 2 else result.image.shape[2]
        canvas = Canvas(self.roi, channels=channels, dtype=result.image.dtype)
        canvas.feed(result.image, result.mask, result.corner)
        return canvas.image, canvas.mask


@dataclass
class StitchResult:
    """Everything a run produced, in the coordinate frames it was produced in."""

    cameras: List[CameraParams]  # calibrated, work scale, as persisted
    warped_image_scale: float
    seam_warps: List[WarpResult]
    compose_cameras: List[CameraParams]
    compose_corners: List[Point]
    compose_sizes: List[Size]
    canvas: Rect
    outputs: List[np.ndarray] = field(default_factory=list)
    masks: List[np.ndarray] = field(default_factory=list)
    camera_files: List[str] = field(default_factory=list)


class StitchingPipeline:
    """
    Runs every stage for one configuration.

    All strategy objects are created in the constructor, so configuration
    errors surface before any image is processed.
    """

    def __init__(self, config: Optional[StitchConfig] = None):
        self.config = config or StitchConfig()
        cfg = self.config

        self.finder = create_features_finder(cfg.features_type, try_gpu=cfg.try_gpu, n_features=cfg.n_features)
        self.matcher = create_matcher(cfg.matcher_strategy,
                                      match_conf=cfg.match_conf,
                                      range_width=cfg.range_width)
        self.estimator = create_estimator(cfg.estimator_type)
        self.adjuster = create_bundle_adjuster(cfg.ba_cost_func,
                                               conf_thresh=cfg.conf_thresh,
                                               refinement_mask=cfg.refinement_mask)
        self.warper_creator = WarperCreator(cfg.warp_type)
        self.scales = ScaleManager(cfg.work_megapix, cfg.seam_megapix, cfg.compose_megapix)
        self.stage = PipelineStage.INIT
        self._stage_start = time.time()

    def _enter(self, stage: PipelineStage) -> None:
        self.stage = stage
        self._stage_start = time.time()

    def _elapsed(self) -> float:
        return time.time() - self._stage_start

    def extract(self, images: Sequence[np.ndarray]) -> Tuple[List[FeatureSet], List[np.ndarray], List[Size]]:
        """Features at work scale, seam-scale copies and full sizes of every image."""
        self._enter(PipelineStage.EXTRACT)
        print("[Features] Finding features...")

        features = []
        seam_images = []
        full_sizes = []
        for i, full_img in enumerate(images):
            full_size = (full_img.shape[1], full_img.shape[0])
            full_sizes.append(full_size)

            work_scale = self.scales.fix_work_scale(full_size)
            self.scales.fix_seam_scale(full_size)
            img = full_img if work_scale == 1.0 else resize(full_img, work_scale)

            feats = self.finder.find(img, i)
            features.append(feats)
            print(f"[Features] Features in image #{i + 1}: {len(feats)}")

            seam_images.append(resize(full_img, self.scales.seam_scale))

        self.finder.collect_garbage()
        print(f"[Features] Finding features, time: {self._elapsed():.3f} sec")
        return features, seam_images, full_sizes

    def match(self, features: Sequence[FeatureSet]) -> List[PairwiseMatch]:
        self._enter(PipelineStage.MATCH)
        print("[Matcher] Pairwise matching...")
        pairwise = self.matcher(features)
        self.matcher.collect_garbage()
        print(f"[Matcher] Pairwise matching, time: {self._elapsed():.3f} sec")
        return pairwise

    def estimate(self, features: Sequence[FeatureSet], pairwise: Sequence[PairwiseMatch]) -> List[CameraParams]:
        self._enter(PipelineStage.ESTIMATE)
        return self.estimator(features, pairwise)

    def adjust(self,
               features: Sequence[FeatureSet],
               pairwise: Sequence[PairwiseMatch],
               cameras: List[CameraParams]) -> List[CameraParams]:
        self._enter(PipelineStage.ADJUST)
        cameras = self.adjuster(features, pairwise, cameras)
        print(f"[Bundle Adjustment] Time: {self._elapsed():.3f} sec")
        return cameras

    def straighten(self, cameras: List[CameraParams]) -> List[CameraParams]:
        self._enter(PipelineStage.WAVE_CORRECT)
        if not self.config.do_wave_correct:
            return cameras
        if self.config.estimator_type == 'affine':
            print("[Wave Correction] Skipped: affine cameras carry no rotation")
            return cameras
        return wave_correct(cameras, self.config.wave_correct)

    def persist(self, cameras: Sequence[CameraParams], directory: Optional[str]) -> List[str]:
        self._enter(PipelineStage.PERSIST_PARAMS)
        if directory is None:
            return []
        paths = save_rig(directory, list(cameras))
        for path in paths:
            print(f"[Pipeline] Wrote {path}")
        return paths

    def warp_seam_pass(self,
                       seam_images: Sequence[np.ndarray],
                       cameras: Sequence[CameraParams],
                       warped_image_scale: float) -> List[WarpResult]:
        self._enter(PipelineStage.WARP_SEAM_PASS)
        print("[Warper] Warping images (auxiliary)...")
        context = SeamPassContext.create(self.warper_creator, warped_image_scale, self.scales.seam_work_aspect)
        results = []
        for img_idx, (img, cam) in enumerate(zip(seam_images, cameras)):
            try:
                results.append(context.warp(img, cam))
            except (ValueError, cv2.error) as e:
                raise WarpError(f"Warping image #{img_idx + 1} failed: {e}") from e
        print(f"[Warper] Warping images, time: {self._elapsed():.3f} sec")
        return results

    def compose(self,
                images: Sequence[np.ndarray],
                cameras: Sequence[CameraParams],
                full_sizes: Sequence[Size],
                warped_image_scale: float) -> Tuple[ComposePassContext, List[np.ndarray], List[np.ndarray]]:
        """Warp every full image at compose scale and place it on its own canvas."""
        self._enter(PipelineStage.WARP_COMPOSE_PASS)
        print("[Compose] Compositing...")

        context = None
        outputs = []
        masks = []
        for img_idx, full_img in enumerate(images):
            if context is None:
                try:
                    context = ComposePassContext.create(
                        self.warper_creator, warped_image_scale, cameras, full_sizes, self.scales)
                except ValueError as e:
                    raise WarpError(f"Laying out the compose canvas failed: {e}") from e
                print(f"[Compose] Compose scale {context.compose_scale:.4f}, canvas {context.roi}")

            try:
                self.stage = PipelineStage.WARP_COMPOSE_PASS
                result = context.warp(full_img, img_idx)

                self.stage = PipelineStage.COMPOSITE
                output, mask = context.composite(result)
            except (ValueError, cv2.error) as e:
                raise WarpError(f"Compositing image #{img_idx + 1} failed: {e}") from e
            outputs.append(output)
            masks.append(mask)
            print(f"[Compose] Composited image #{img_idx + 1}")

        print(f"[Compose] Compositing, time: {self._elapsed():.3f} sec")
        return context, outputs, masks

    def __call__(self, images: Sequence[np.ndarray], persist_dir: Optional[str] = None) -> StitchResult:
        """
        Run every stage on in-memory images.

        Args:
            images: Decoded images, in camera order.
            persist_dir: Where to write camera records; nothing is written
                when None.

        Raises:
            InsufficientImagesError: For fewer than two images.
            StitchingError: When any stage fails.
        """
        if len(images) < 2:
            raise InsufficientImagesError(len(images))

        run_start = time.time()
        features, seam_images, full_sizes = self.extract(images)
        pairwise = self.match(features)
        cameras = self.estimate(features, pairwise)
        cameras = self.adjust(features, pairwise, cameras)

        warped_image_scale = median_focal([cam.focal for cam in cameras])

        cameras = self.straighten(cameras)
        camera_files = self.persist(cameras, persist_dir)

        seam_warps = self.warp_seam_pass(seam_images, cameras, warped_image_scale)
        del seam_images

        context, outputs, masks = self.compose(images, cameras, full_sizes, warped_image_scale)

        self._enter(PipelineStage.DONE)
        print(f"[Pipeline] Finished, total time: {time.time() - run_start:.3f} sec")

        return StitchResult(
            cameras=cameras,
            warped_image_scale=warped_image_scale,
            seam_warps=seam_warps,
            compose_cameras=context.cameras,
            compose_corners=context.corners,
            compose_sizes=context.sizes,
            canvas=context.roi,
            outputs=outputs,
            masks=masks,
            camera_files=camera_files,
        )


def stitch_images(images: Sequence[np.ndarray],
                  config: Optional[StitchConfig] = None,
                  persist_dir: Optional[str] = None) -> StitchResult:
    """Stitch in-memory images; camera records are written only with persist_dir."""
    return StitchingPipeline(config)(images, persist_dir=persist_dir)


def read_image(path: str) -> np.ndarray:
    """
    Raises:
        ImageLoadError: If the file cannot be decoded.
    """
    image = cv2.imread(path)
    if image is None:
        raise ImageLoadError(path)
    return image


def load_images(paths: Sequence[str], strict: bool = False) -> List[np.ndarray]:
    """
    Decode every path in order.

    Args:
        paths: Image paths.
        strict: Raise on the first unreadable image instead of skipping it.
    """
    images = []
    for path in paths:
        try:
            images.append(read_image(path))
        except ImageLoadError:
            if strict:
                raise
            print(f"[Pipeline] Skipping unreadable image: {path}")
    return images


def _write_image(path: str, image: np.ndarray) -> None:
    try:
        ok = cv2.imwrite(path, image)
    except cv2.error as e:
        raise OutputError(path, str(e)) from e
    if not ok:
        raise OutputError(path, "image could not be encoded")


def write_outputs(result: StitchResult, directory: str, save_masks: bool = False) -> List[str]:
    """
    Write each canvas as an 8-bit image (and optionally its mask).

    Raises:
        OutputError: If the directory cannot be created or a file cannot
            be encoded.
    """
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        raise OutputError(directory, e.strerror or str(e)) from e
    paths = []
    for i, output in enumerate(result.outputs):
        path = os.path.join(directory, constants.WARPED_IMAGE_TEMPLATE.format(index=i + 1))
        _write_image(path, np.clip(output, 0, 255).astype(np.uint8))
        paths.append(path)
        print(f"[Pipeline] Wrote {path}")
        if save_masks:
            mask_path = os.path.join(directory, constants.WARPED_MASK_TEMPLATE.format(index=i + 1))
            _write_image(mask_path, result.masks[i])
            paths.append(mask_path)
            print(f"[Pipeline] Wrote {mask_path}")
    return paths


def run(paths: Sequence[str], config: Optional[StitchConfig] = None) -> StitchResult:
    """
    Load images from disk, stitch them and write every output file.

    Unreadable images are skipped; the run still needs two usable images.
    """
    config = config or StitchConfig()
    pipeline = StitchingPipeline(config)

    images = load_images(paths)
    if len(images) < 2:
        raise InsufficientImagesError(len(images))

    result = pipeline(images, persist_dir=config.output_dir)
    write_outputs(result, config.output_dir, save_masks=config.save_masks)
    return result
