"""
Unit tests for YOLO decoding, suppression and box accumulation.

Usage:
    pytest tests/unit/test_detection.py -v
"""

import numpy as np
import pytest

from conftest import ANCHORS_TEXT
from wsi_runner.models.model_util import AnchorTable
from wsi_runner.processing.detection import (
    BoundingBoxAccumulator,
    BoundingBoxSet,
    YoloDecoder,
    non_max_suppression,
)
from wsi_runner.processing.tiling import Patch


def yolo_layer(grid, nb_classes=1, hit=None):
    """Channel-last layer full of low logits; ``hit=(row, col, anchor)`` is a confident cell."""
    depth = 3 * (5 + nb_classes)
    out = np.full((1, grid, grid, depth), -10.0, dtype=np.float32)
    if hit is not None:
        row, col, anchor = hit
        base = anchor * (5 + nb_classes)
        out[0, row, col, base:base + 4] = 0.0
        out[0, row, col, base + 4] = 10.0
        out[0, row, col, base + 5] = 10.0
    return out


@pytest.fixture
def decoder():
    return YoloDecoder(AnchorTable.from_text(ANCHORS_TEXT), nb_classes=1, input_size=(64, 64), threshold=0.1)


class TestYoloDecoder:
    """Grid cells to boxes."""

    def test_single_confident_cell(self, decoder):
        boxes = decoder.decode([yolo_layer(2, hit=(0, 1, 0)), yolo_layer(4)])
        assert len(boxes) == 1
        # centre (48, 16), anchor 10 x 14
        np.testing.assert_allclose(boxes.boxes[0], [43, 9, 53, 23], atol=1e-3)
        assert boxes.scores[0] > 0.99
        assert boxes.labels[0] == 0

    def test_channel_first_layout(self, decoder):
        nchw = yolo_layer(2, hit=(1, 0, 2)).transpose(0, 3, 1, 2)
        boxes = decoder.decode([nchw, yolo_layer(4)])
        assert len(boxes) == 1
        # anchor 37 x 58 centred at (16, 48)
        np.testing.assert_allclose(boxes.boxes[0], [-2.5, 19, 34.5, 77], atol=1e-3)

    def test_second_layer_uses_second_anchor_row(self, decoder):
        boxes = decoder.decode([yolo_layer(2), yolo_layer(4, hit=(0, 0, 0))])
        width = boxes.boxes[0, 2] - boxes.boxes[0, 0]
        assert width == pytest.approx(81, abs=1e-3)

    def test_layer_count_mismatch(self, decoder):
        with pytest.raises(ValueError):
            decoder.decode([yolo_layer(2)])

    def test_wrong_depth(self, decoder):
        with pytest.raises(ValueError):
            decoder.decode_layer(np.zeros((1, 2, 2, 7), np.float32), decoder.anchors.layers[0])


def test_non_max_suppression():
    boxes = BoundingBoxSet(
        np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60]], dtype=np.float32),
        np.array([0.9, 0.8, 0.7], dtype=np.float32),
        np.array([0, 0, 1]),
    )
    kept = non_max_suppression(boxes, 0.5)
    np.testing.assert_allclose(kept.scores, [0.9, 0.7])
    assert list(kept.labels) == [0, 1]
    assert len(non_max_suppression(BoundingBoxSet(), 0.5)) == 0


class TestAccumulator:
    """Patch boxes to level-0 coordinates."""

    def test_scaled_and_offset(self):
        patch = Patch(np.zeros((32, 32, 3), np.uint8), 0, 0, 256, 128, 512, 256, 1, 2.0)
        acc = BoundingBoxAccumulator()
        acc.add(
            patch,
            BoundingBoxSet(np.array([[0, 0, 64, 64]], np.float32), np.array([0.5], np.float32), np.array([0])),
            input_size=(64, 64),
        )
        acc.add(patch, BoundingBoxSet())
        result = acc.result()
        assert len(result) == 1
        np.testing.assert_allclose(result.boxes[0], [512, 256, 576, 320])

    def test_empty(self):
        assert len(BoundingBoxAccumulator().result()) == 0
