"""
Unit tests for in-memory pyramids, payload containers and slide renderer
bookkeeping.

Usage:
    pytest tests/unit/test_image_io.py -v
"""

import numpy as np
import pytest

from wsi_runner.core.image_io import (
    ArrayPyramid,
    ImagePayload,
    TensorPayload,
    WholeSlideImage,
    payload_extension,
    read_payload,
    write_payload,
)
from wsi_runner.processing.detection import BoundingBoxSet
from wsi_runner.ui.renderers import SegmentationRenderer


class TestArrayPyramid:
    """Levels and region reads."""

    def test_levels(self):
        pyr = ArrayPyramid.from_array(np.zeros((100, 200, 3), np.uint8), n_levels=3, magnification=20)
        assert pyr.level_dimensions == [(200, 100), (100, 50), (50, 25)]
        assert pyr.level_downsamples == [1.0, 2.0, 4.0]
        assert pyr.magnification == 20

    def test_stops_at_one_pixel(self):
        pyr = ArrayPyramid.from_array(np.zeros((4, 4), np.uint8), n_levels=10)
        assert pyr.level_dimensions[-1] == (1, 1)

    def test_region_uses_level0_coordinates(self):
        base = np.arange(64 * 64, dtype=np.int32).reshape(64, 64)
        pyr = ArrayPyramid([base, base[::2, ::2]])
        region = pyr.read_region(32, 16, 1, (4, 2))
        np.testing.assert_array_equal(region, base[::2, ::2][8:10, 16:20])

    def test_region_padded(self):
        pyr = ArrayPyramid([np.ones((10, 10, 3), np.uint8)])
        region = pyr.read_region(8, 8, 0, (4, 4))
        assert region.shape == (4, 4, 3)
        assert region[:2, :2].all()
        assert region[2:].sum() == 0

    def test_empty(self):
        with pytest.raises(ValueError):
            ArrayPyramid([])


class TestPayloadFiles:
    """Container dispatch."""

    def test_extensions(self):
        assert payload_extension(ArrayPyramid([np.zeros((2, 2), np.uint8)])) == ".tiff"
        assert payload_extension(ImagePayload(np.zeros((2, 2), np.uint8), (1.0, 1.0))) == ".mhd"
        assert payload_extension(TensorPayload(np.zeros((2, 2, 1), np.float32), (1.0, 1.0))) == ".hdf5"
        assert payload_extension(BoundingBoxSet()) is None

    def test_unsupported_payload(self, tmp_path):
        with pytest.raises(TypeError):
            write_payload(tmp_path, "boxes", BoundingBoxSet())

    def test_unknown_extension(self, tmp_path):
        with pytest.raises(ValueError):
            read_payload(tmp_path / "x.png")

    def test_metaimage_rgb(self, tmp_path):
        rgb = np.random.default_rng(1).integers(0, 255, (5, 7, 3), dtype=np.uint8)
        path = write_payload(tmp_path, "img", ImagePayload(rgb, (0.5, 0.25)))
        loaded = read_payload(path)
        np.testing.assert_array_equal(loaded.array, rgb)
        assert loaded.spacing == (0.5, 0.25)

    def test_pyramid_spacing(self, tmp_path):
        pyr = ArrayPyramid.from_array(np.eye(64, dtype=np.uint8), n_levels=2, nearest=True, spacing=(4.0, 4.0))
        loaded = read_payload(write_payload(tmp_path, "seg", pyr))
        assert loaded.level_dimensions == [(64, 64), (32, 32)]
        assert loaded.spacing == pytest.approx((4.0, 4.0))


class TestWholeSlideImage:
    """Renderer registration."""

    def test_insert_once(self):
        image = WholeSlideImage("a.svs", pyramid=ArrayPyramid([np.zeros((8, 8, 3), np.uint8)]))
        first, second = SegmentationRenderer(), SegmentationRenderer()
        assert image.insert_renderer("seg", first)
        assert not image.insert_renderer("seg", second)
        assert image.renderers["seg"] is first
        assert image.renderer_types == {"seg": "SegmentationRenderer"}
        image.remove_renderer("seg")
        image.remove_renderer("seg")
        assert not image.has_renderer("seg")

    def test_has_pipeline(self):
        image = WholeSlideImage("a.svs", pyramid=ArrayPyramid([np.zeros((8, 8, 3), np.uint8)]))
        image.insert_renderer("seg/segmentation", SegmentationRenderer())
        assert image.has_pipeline("seg")
        assert not image.has_pipeline("se")
        assert not image.has_pipeline("seg/segmentation/x")
        image.insert_renderer("cls", SegmentationRenderer())
        assert image.has_pipeline("cls")

    def test_slide_properties(self):
        pyr = ArrayPyramid([np.zeros((6, 8, 3), np.uint8)], magnification=40)
        image = WholeSlideImage("a.svs", pyramid=pyr)
        assert image.full_size == (8, 6)
        assert image.magnification == 40
        assert image.get_thumbnail((4, 4)).size[0] <= 4
