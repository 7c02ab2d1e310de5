"""
Object Detection Post-processing
================================

Decoding of TinyYOLO-style network outputs into boxes, non-maximum
suppression and accumulation of per-patch detections in slide coordinates.

Classes
-------
BoundingBoxSet
    Boxes ``(x0, y0, x1, y1)`` with scores and class labels
YoloDecoder
    Raw output layers + anchor table -> boxes in network input pixels
BoundingBoxAccumulator
    Per-patch boxes -> one level-0 box set

Functions
---------
non_max_suppression
    IoU-based suppression through :func:`torchvision.ops.nms`

Notes
-----
Each output layer has ``3 * (5 + nb_classes)`` channels per grid cell:
``tx, ty, tw, th, objectness`` followed by class scores for each of the
three anchors of that layer. Layers are matched to anchor rows in file
order. Channel-first ``(1, C, gh, gw)`` and channel-last ``(1, gh, gw, C)``
layouts are both accepted.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import torch
from torchvision.ops import nms

from wsi_runner.models.model_util import ANCHORS_PER_LAYER, AnchorTable

logger = logging.getLogger(__name__)


def _empty(n=0):
    return np.zeros((n, 4), dtype=np.float32)


@dataclass
class BoundingBoxSet:
    boxes: np.ndarray = field(default_factory=_empty)
    scores: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))
    labels: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __len__(self) -> int:
        return int(self.boxes.shape[0])

    def select(self, keep) -> "BoundingBoxSet":
        return BoundingBoxSet(self.boxes[keep], self.scores[keep], self.labels[keep])


def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


class YoloDecoder:
    """
    Decode TinyYOLO output layers.

    Parameters
    ----------
    anchors : AnchorTable
        Two layers of three ``(width, height)`` anchors, in input pixels
    nb_classes : int
        Number of object classes
    input_size : tuple of int
        Network input ``(width, height)``
    threshold : float, default=0.1
        Minimum ``objectness * class score`` for a box to be kept
    """

    def __init__(self, anchors: AnchorTable, nb_classes: int, input_size, threshold: float = 0.1):
        self.anchors = anchors
        self.nb_classes = nb_classes
        self.input_w, self.input_h = input_size
        self.threshold = threshold

    def _to_cells(self, output: np.ndarray) -> np.ndarray:
        out = np.asarray(output, dtype=np.float32)
        if out.ndim == 4:
            out = out[0]
        depth = ANCHORS_PER_LAYER * (5 + self.nb_classes)
        if out.shape[-1] != depth and out.shape[0] == depth:
            out = out.transpose(1, 2, 0)
        if out.shape[-1] != depth:
            raise ValueError(f"Output layer depth {out.shape} does not match {depth} channels")
        gh, gw = out.shape[:2]
        return out.reshape(gh, gw, ANCHORS_PER_LAYER, 5 + self.nb_classes)

    def decode_layer(self, output: np.ndarray, layer_anchors) -> BoundingBoxSet:
        cells = self._to_cells(output)
        gh, gw = cells.shape[:2]
        cy, cx = np.meshgrid(np.arange(gh), np.arange(gw), indexing="ij")
        anchors = np.asarray(layer_anchors, dtype=np.float32)

        bx = (_sigmoid(cells[..., 0]) + cx[..., None]) / gw * self.input_w
        by = (_sigmoid(cells[..., 1]) + cy[..., None]) / gh * self.input_h
        bw = np.exp(cells[..., 2]) * anchors[:, 0]
        bh = np.exp(cells[..., 3]) * anchors[:, 1]
        objectness = _sigmoid(cells[..., 4])
        class_scores = _sigmoid(cells[..., 5:])
        labels = class_scores.argmax(axis=-1)
        scores = objectness * class_scores.max(axis=-1)

        keep = scores >= self.threshold
        boxes = np.stack([bx - bw / 2, by - bh / 2, bx + bw / 2, by + bh / 2], axis=-1)
        return BoundingBoxSet(
            boxes[keep].astype(np.float32),
            scores[keep].astype(np.float32),
            labels[keep].astype(np.int64),
        )

    def decode(self, outputs) -> BoundingBoxSet:
        if len(outputs) != len(self.anchors.layers):
            raise ValueError(
                f"Network returned {len(outputs)} output layers, anchor table has {len(self.anchors.layers)}"
            )
        parts = [self.decode_layer(o, a) for o, a in zip(outputs, self.anchors.layers)]
        return BoundingBoxSet(
            np.concatenate([p.boxes for p in parts]),
            np.concatenate([p.scores for p in parts]),
            np.concatenate([p.labels for p in parts]),
        )


def non_max_suppression(boxes: BoundingBoxSet, iou_threshold: float = 0.5) -> BoundingBoxSet:
    """Drop boxes overlapping a higher-scoring box by more than ``iou_threshold`` IoU."""
    if len(boxes) == 0:
        return boxes
    keep = nms(
        torch.from_numpy(boxes.boxes.astype(np.float32)),
        torch.from_numpy(boxes.scores.astype(np.float32)),
        float(iou_threshold),
    )
    return boxes.select(keep.numpy())


class BoundingBoxAccumulator:
    """Collect per-patch detections in level-0 coordinates."""

    def __init__(self):
        self._parts = []

    def add(self, patch, boxes: BoundingBoxSet, input_size=None):
        """
        Add boxes found in ``patch``.

        ``input_size`` is the network input ``(width, height)``; boxes are
        first scaled from it to the patch size when they differ.
        """
        if len(boxes) == 0:
            return
        b = boxes.boxes.astype(np.float64).copy()
        ph, pw = patch.array.shape[:2]
        if input_size is not None:
            b[:, [0, 2]] *= pw / input_size[0]
            b[:, [1, 3]] *= ph / input_size[1]
        b *= patch.downsample
        b[:, [0, 2]] += patch.x0
        b[:, [1, 3]] += patch.y0
        self._parts.append(BoundingBoxSet(b.astype(np.float32), boxes.scores, boxes.labels))

    def result(self) -> BoundingBoxSet:
        if not self._parts:
            return BoundingBoxSet()
        return BoundingBoxSet(
            np.concatenate([p.boxes for p in self._parts]),
            np.concatenate([p.scores for p in self._parts]),
            np.concatenate([p.labels for p in self._parts]),
        )
