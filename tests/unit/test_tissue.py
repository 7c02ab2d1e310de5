"""
Unit tests for model-free tissue segmentation.

Usage:
    pytest tests/unit/test_tissue.py -v
"""

import numpy as np

from conftest import make_slide
from wsi_runner.processing.tissue import TissueSegmentation, select_mask_level


def test_select_mask_level():
    dims = [(40000, 30000), (10000, 7500), (2500, 1875), (625, 468)]
    assert select_mask_level(dims) == 2
    assert select_mask_level(dims, max_size=500) == 3
    assert select_mask_level([(1024, 1024)]) == 0


class TestTissueSegmentation:
    """Thresholding and morphology."""

    def test_background_and_tissue(self):
        rgb = np.full((128, 128, 3), 240, dtype=np.uint8)
        rgb[32:96, 32:96] = (150, 60, 120)
        mask = TissueSegmentation().mask_from_rgb(rgb)
        assert mask.dtype == np.uint8
        assert mask[64, 64] == 1
        assert mask[5, 5] == 0

    def test_small_specks_removed(self):
        rgb = np.full((128, 128, 3), 255, dtype=np.uint8)
        rgb[10:14, 10:14] = (100, 20, 100)
        mask = TissueSegmentation(dilate=0, erode=0).mask_from_rgb(rgb)
        assert mask.sum() == 0

    def test_threshold(self):
        rgb = np.full((64, 64, 3), 200, dtype=np.uint8)
        assert TissueSegmentation(threshold=50).mask_from_rgb(rgb).all()
        assert not TissueSegmentation(threshold=150).mask_from_rgb(rgb).any()

    def test_run_spacing(self):
        slide = make_slide(size=256, n_levels=2)
        payload = TissueSegmentation().run(slide.pyramid)
        assert payload.array.shape == (256, 256)
        assert payload.spacing == (1.0, 1.0)
        assert payload.array[128, 128] == 1
        assert payload.array[0, 0] == 0
