"""
Canvas compositing of warped images.

Every camera gets its own canvas-sized buffer. All canvases share the
bounding rectangle of the whole rig, so the outputs overlay one another
pixel for pixel. Nothing is blended.
"""

from typing import List, Sequence, Tuple

import numpy as np

Point = Tuple[int, int]
Size = Tuple[int, int]
Rect = Tuple[int, int, int, int]  # x, y, width, height


def result_roi(corners: Sequence[Point], sizes: Sequence[Size]) -> Rect:
    """
    Smallest rectangle covering every (corner, corner + size) box.

    Args:
        corners: Top-left (x, y) of each warped image.
        sizes: (width, height) of each warped image, same scale regime.

    Returns:
        (x, y, width, height) of the canvas.
    """
    if len(corners) == 0 or len(corners) != len(sizes):
        raise ValueError("Need one size per corner and at least one of each")

    tl_x = min(c[0] for c in corners)
    tl_y = min(c[1] for c in corners)
    br_x = max(c[0] + s[0] for c, s in zip(corners, sizes))
    br_y = max(c[1] + s[1] for c, s in zip(corners, sizes))
    return tl_x, tl_y, br_x - tl_x, br_y - tl_y


class Canvas:
    """Zero-initialized image and mask covering one canvas rectangle."""

    def __init__(self, roi: Rect, channels: int = 3, dtype=np.int16):
        self.roi = roi
        _, _, width, height = roi
        shape = (height, width) if channels == 1 else (height, width, channels)
        self.image = np.zeros(shape, dtype=dtype)
        self.mask = np.zeros((height, width), dtype=np.uint8)

    def feed(self, image: np.ndarray, mask: np.ndarray, corner: Point) -> None:
        """
        Copy an image's valid pixels onto the canvas.

        Pixels are copied where mask is non-zero; the mask is OR-ed into
        the canvas mask.
        """
        x = corner[0] - self.roi[0]
        y = corner[1] - self.roi[1]
        height, width = mask.shape[:2]
        if x < 0 or y < 0 or x + width > self.roi[2] or y + height > self.roi[3]:
            raise ValueError(f"Image at {corner} of size {(width, height)} is outside canvas {self.roi}")

        dst = self.image[y:y + height, x:x + width]
        valid = mask != 0
        dst[valid] = image[valid]
        self.mask[y:y + height, x:x + width] |= mask


def composite_per_camera(images: Sequence[np.ndarray],
                         masks: Sequence[np.ndarray],
                         corners: Sequence[Point],
                         roi: Rect) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """
    Place each warped image on its own canvas.

    Returns:
        (outputs, output_masks), one canvas image and mask per camera.
    """
    outputs = []
    output_masks = []
    for image, mask, corner in zip(images, masks, corners):
        channels = 1 if image.ndim == 2 else image.shape[2]
        canvas = Canvas(roi, channels=channels, dtype=image.dtype)
        canvas.feed(image, mask, corner)
        outputs.append(canvas.image)
        output_masks.append(canvas.mask)
    return outputs, output_masks
