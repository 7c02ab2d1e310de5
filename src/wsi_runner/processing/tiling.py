"""
Patch Tiling and Stitching
==========================

High-resolution models see a slide one fixed-size patch at a time. This
module cuts a pyramid level into a regular grid of patches, optionally
skipping background with a tissue mask, and recomposes per-patch network
outputs into a single result.

Classes
-------
Patch
    One extracted tile with its grid and pixel position
PatchGenerator
    Grid iteration over one pyramid level
HeatmapStitcher
    Per-patch class vectors -> patch-grid tensor
LabelStitcher
    Per-patch label maps -> level-sized label pyramid

Notes
-----
Patch positions are kept in level pixels (``x``, ``y``) and in level-0
pixels (``x0``, ``y0``). With ``overlap > 0`` the grid step shrinks to
``patch * (1 - overlap)`` and later patches overwrite earlier ones in the
label stitcher.

Examples
--------
>>> gen = PatchGenerator(pyramid, patch_size=(256, 256), level=1)
>>> stitcher = HeatmapStitcher(gen.grid_shape, nb_classes=2, step=gen.step_level0)
>>> for patch in gen:
...     stitcher.add(patch, network.process(patch.array)[0][0])
>>> heatmap = stitcher.result()
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from wsi_runner.core.image_io import ArrayPyramid, ImagePayload, TensorPayload
from wsi_runner.processing.resize import resize_image

logger = logging.getLogger(__name__)

DEFAULT_MASK_THRESHOLD = 0.5


@dataclass
class Patch:
    array: np.ndarray
    row: int
    col: int
    x: int
    y: int
    x0: int
    y0: int
    level: int
    downsample: float


class PatchGenerator:
    """
    Regular grid of patches over one pyramid level.

    Parameters
    ----------
    pyramid : object
        Any pyramid (``level_dimensions``, ``level_downsamples``,
        ``read_region``)
    patch_size : tuple of int
        ``(height, width)`` of each patch in level pixels
    level : int, default=0
        Pyramid level to tile
    overlap : float, default=0.0
        Fraction of a patch shared with its neighbour, in ``[0, 1)``
    mask : ImagePayload, optional
        Tissue mask covering the whole slide; patches whose tissue fraction
        is below ``mask_threshold`` are skipped
    mask_threshold : float, default=0.5
        Minimum tissue fraction to keep a patch

    Attributes
    ----------
    grid_shape : tuple of int
        ``(rows, cols)`` of the full grid, skipped patches included
    step_level0 : tuple of float
        Grid step in level-0 pixels, ``(x, y)``
    """

    def __init__(
        self,
        pyramid,
        patch_size: Tuple[int, int],
        level: int = 0,
        overlap: float = 0.0,
        mask: Optional[ImagePayload] = None,
        mask_threshold: float = DEFAULT_MASK_THRESHOLD,
    ):
        if not 0.0 <= overlap < 1.0:
            raise ValueError(f"overlap must be in [0, 1), got {overlap}")
        self.pyramid = pyramid
        self.patch_h, self.patch_w = int(patch_size[0]), int(patch_size[1])
        self.level = level
        self.overlap = overlap
        self.mask = mask
        self.mask_threshold = mask_threshold
        self.downsample = float(pyramid.level_downsamples[level])
        self.level_w, self.level_h = pyramid.level_dimensions[level]
        self.step_x = max(1, int(round(self.patch_w * (1.0 - overlap))))
        self.step_y = max(1, int(round(self.patch_h * (1.0 - overlap))))
        rows = max(1, int(np.ceil(max(self.level_h - self.patch_h, 0) / self.step_y)) + 1)
        cols = max(1, int(np.ceil(max(self.level_w - self.patch_w, 0) / self.step_x)) + 1)
        self.grid_shape = (rows, cols)
        self.step_level0 = (self.step_x * self.downsample, self.step_y * self.downsample)
        self.skipped = 0

    def __len__(self) -> int:
        return self.grid_shape[0] * self.grid_shape[1]

    def _tissue_fraction(self, x0: float, y0: float) -> float:
        sx, sy = self.mask.spacing
        m = self.mask.array
        mx0, my0 = int(x0 / sx), int(y0 / sy)
        mx1 = int(np.ceil((x0 + self.patch_w * self.downsample) / sx))
        my1 = int(np.ceil((y0 + self.patch_h * self.downsample) / sy))
        region = m[my0:max(my1, my0 + 1), mx0:max(mx1, mx0 + 1)]
        if region.size == 0:
            return 0.0
        return float((region > 0).mean())

    def __iter__(self):
        self.skipped = 0
        rows, cols = self.grid_shape
        for row in range(rows):
            for col in range(cols):
                x, y = col * self.step_x, row * self.step_y
                x0, y0 = int(x * self.downsample), int(y * self.downsample)
                if self.mask is not None and self._tissue_fraction(x0, y0) < self.mask_threshold:
                    self.skipped += 1
                    continue
                array = self.pyramid.read_region(x0, y0, self.level, (self.patch_w, self.patch_h))
                yield Patch(array, row, col, x, y, x0, y0, self.level, self.downsample)


class HeatmapStitcher:
    """
    Collect one class-probability vector per patch into a grid tensor.

    Patches never visited (background) stay at zero.
    """

    def __init__(self, grid_shape: Tuple[int, int], nb_classes: int, step=(1.0, 1.0)):
        self.tensor = np.zeros(tuple(grid_shape) + (nb_classes,), dtype=np.float32)
        self.step = tuple(step)

    def add(self, patch: Patch, vector):
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.tensor.shape[2]:
            raise ValueError(
                f"Expected {self.tensor.shape[2]} class values per patch, got {vector.shape[0]}"
            )
        self.tensor[patch.row, patch.col] = vector

    def result(self) -> TensorPayload:
        return TensorPayload(self.tensor, spacing=self.step)


class LabelStitcher:
    """
    Place per-patch label maps into a canvas the size of the tiled level.

    Parameters
    ----------
    level_size : tuple of int
        ``(width, height)`` of the tiled level
    downsample : float
        Level downsample; becomes the spacing of the result
    n_levels : int, default=4
        Levels of the returned :class:`ArrayPyramid`
    """

    def __init__(self, level_size: Tuple[int, int], downsample: float = 1.0, n_levels: int = 4):
        w, h = level_size
        self.canvas = np.zeros((h, w), dtype=np.uint8)
        self.downsample = float(downsample)
        self.n_levels = n_levels

    def add(self, patch: Patch, labels: np.ndarray):
        labels = np.asarray(labels)
        ph, pw = patch.array.shape[:2]
        if labels.shape[:2] != (ph, pw):
            labels = resize_image(labels.astype(np.uint8), (pw, ph), nearest=True)
        h = min(ph, self.canvas.shape[0] - patch.y)
        w = min(pw, self.canvas.shape[1] - patch.x)
        if h > 0 and w > 0:
            self.canvas[patch.y:patch.y + h, patch.x:patch.x + w] = labels[:h, :w]

    def result(self) -> ArrayPyramid:
        return ArrayPyramid.from_array(
            self.canvas, n_levels=self.n_levels, nearest=True, spacing=(self.downsample, self.downsample)
        )
