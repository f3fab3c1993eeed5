"""
Feature extractors producing keypoints and descriptors at work scale.

SIFT and ORB come from OpenCV. SuperPoint is available when the optional
LightGlue package (and torch) is installed; it is the only extractor that
honours the GPU hint.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Tuple, Type

import cv2
import numpy as np

from .. import constants
from ..errors import ConfigurationError

_IMPORT_ERROR = None
try:
    import torch
    from lightglue import SuperPoint
    SUPERPOINT_AVAILABLE = True
except ImportError as e:
    torch = None
    SuperPoint = None
    SUPERPOINT_AVAILABLE = False
    _IMPORT_ERROR = str(e)


@dataclass
class FeatureSet:
    """Keypoints and descriptors of one image; never mutated after extraction."""

    img_idx: int
    img_size: Tuple[int, int]  # (width, height) of the work-scale image
    keypoints: np.ndarray  # (N, 2) float32 (x, y)
    descriptors: np.ndarray  # (N, D) float32 or uint8 for binary descriptors
    scores: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))

    def __len__(self) -> int:
        return len(self.keypoints)

    @property
    def norm_type(self) -> int:
        """Descriptor distance to match with (Hamming for binary descriptors)."""
        return cv2.NORM_HAMMING if self.descriptors.dtype == np.uint8 else cv2.NORM_L2


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


class FeaturesFinder(ABC):
    """
    Base class for descriptor algorithms.

    The underlying detector is created lazily and dropped by
    collect_garbage(), which the pipeline calls once all images are done.
    """

    name = 'base'
    descriptor_size = 128
    descriptor_dtype = np.float32

    def __init__(self, try_gpu: bool = False):
        self.try_gpu = try_gpu
        self._detector = None

    @abstractmethod
    def _create_detector(self):
        """Build the underlying detector object."""
        pass

    def _detect(self, gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        kps, desc = self.detector.detectAndCompute(gray, None)
        keypoints = np.float32([kp.pt for kp in kps]).reshape(-1, 2)
        scores = np.float32([kp.response for kp in kps])
        if desc is None:
            desc = np.zeros((0, self.descriptor_size), dtype=self.descriptor_dtype)
        return keypoints, desc, scores

    @property
    def detector(self):
        if self._detector is None:
            self._detector = self._create_detector()
        return self._detector

    def find(self, image: np.ndarray, img_idx: int) -> FeatureSet:
        """
        Extract features from a work-scale image.

        Args:
            image: BGR or grayscale image.
            img_idx: Index of the image in the input sequence.

        Returns:
            FeatureSet tagged with img_idx.
        """
        keypoints, descriptors, scores = self._detect(_to_gray(image))
        height, width = image.shape[:2]
        return FeatureSet(
            img_idx=img_idx,
            img_size=(width, height),
            keypoints=keypoints.astype(np.float32),
            descriptors=descriptors,
            scores=scores.astype(np.float32),
        )

    def collect_garbage(self) -> None:
        """Release the detector and any scratch memory it holds."""
        self._detector = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"


class SiftFeaturesFinder(FeaturesFinder):
    name = 'sift'

    def __init__(self, try_gpu: bool = False, n_features: int = constants.SIFT_N_FEATURES):
        super().__init__(try_gpu)
        self.n_features = n_features

    def _create_detector(self):
        return cv2.SIFT_create(nfeatures=self.n_features)


class OrbFeaturesFinder(FeaturesFinder):
    name = 'orb'
    descriptor_size = 32
    descriptor_dtype = np.uint8

    def __init__(self, try_gpu: bool = False, n_features: int = constants.ORB_N_FEATURES):
        super().__init__(try_gpu)
        self.n_features = n_features

    def _create_detector(self):
        return cv2.ORB_create(nfeatures=self.n_features)


class SuperPointFeaturesFinder(FeaturesFinder):
    """
    SuperPoint keypoints and descriptors through LightGlue's implementation.

    Runs on CUDA when try_gpu is set and a device is present, CPU otherwise.
    Descriptors are L2-normalised float32 vectors of length 256.
    """

    name = 'superpoint'
    descriptor_size = 256

    def __init__(self, try_gpu: bool = False, n_features: int = constants.SUPERPOINT_N_FEATURES):
        if not SUPERPOINT_AVAILABLE:
            error_msg = ("SuperPoint requires the 'learned' extra. Install with: "
                         "pip install 'lightglue @ git+https://github.com/cvg/LightGlue.git'")
            if _IMPORT_ERROR:
                error_msg += f"\nImport error: {_IMPORT_ERROR}"
            raise ConfigurationError(error_msg)
        super().__init__(try_gpu)
        self.n_features = n_features
        self.device = 'cuda' if try_gpu and torch.cuda.is_available() else 'cpu'

    def _create_detector(self):
        model = SuperPoint(max_num_keypoints=self.n_features).to(self.device).eval()
        print(f"[SuperPoint] Initialized on device: {self.device} (max_features={self.n_features})")
        return model

    def _detect(self, gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        img_tensor = torch.from_numpy(gray).float().unsqueeze(0).unsqueeze(0) / 255.0
        img_tensor = img_tensor.to(self.device)

        with torch.no_grad():
            features = self.detector({'image': img_tensor})
            keypoints = features['keypoints'][0].cpu().numpy()  # (N, 2)
            descriptors = features['descriptors'][0].cpu().numpy()  # (N, 256)
            scores = features['keypoint_scores'][0].cpu().numpy()  # (N,)

        descriptors = descriptors / (np.linalg.norm(descriptors, axis=1, keepdims=True) + 1e-8)
        return keypoints, descriptors.astype(np.float32), scores

    def collect_garbage(self) -> None:
        super().collect_garbage()
        if self.device == 'cuda':
            torch.cuda.empty_cache()


FEATURES_FINDERS: Dict[str, Type[FeaturesFinder]] = {
    'sift': SiftFeaturesFinder,
    'orb': OrbFeaturesFinder,
    'superpoint': SuperPointFeaturesFinder,
}


def create_features_finder(name: str, try_gpu: bool = False, n_features: int = 0) -> FeaturesFinder:
    """
    Build the extractor registered under `name`.

    Args:
        name: Algorithm name.
        try_gpu: Best-effort acceleration hint.
        n_features: Keypoint cap; 0 keeps the algorithm default.

    Raises:
        ConfigurationError: For an unknown or unavailable algorithm.
    """
    finder_cls = FEATURES_FINDERS.get(name)
    if finder_cls is None:
        raise ConfigurationError(f"Unknown 2D features type: '{name}'")
    if n_features > 0:
        return finder_cls(try_gpu=try_gpu, n_features=n_features)
    return finder_cls(try_gpu=try_gpu)
