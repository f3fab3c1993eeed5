"""
Multi-camera rig calibration and registration.
"""

from .camera import CameraParams, load_camera_params, load_rig, save_camera_params, save_rig
from .config import StitchConfig
from .errors import (AdjustmentError, ConfigurationError, EstimationError, ImageLoadError,
                     InsufficientImagesError, OutputError, StitchingError, WarpError)
from .pipeline import PipelineStage, StitchingPipeline, StitchResult, run, stitch_images

__version__ = '0.1.0'

__all__ = [
    'AdjustmentError',
    'CameraParams',
    'ConfigurationError',
    'EstimationError',
    'ImageLoadError',
    'InsufficientImagesError',
    'OutputError',
    'PipelineStage',
    'StitchConfig',
    'StitchResult',
    'StitchingError',
    'StitchingPipeline',
    'WarpError',
    'load_camera_params',
    'load_rig',
    'run',
    'save_camera_params',
    'save_rig',
    'stitch_images',
]
