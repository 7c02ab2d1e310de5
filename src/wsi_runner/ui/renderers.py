"""
Result Renderers
================

Display state attached to a slide for each pipeline output: colors,
opacities, names, and the payload being shown. Renderers are plain objects;
:meth:`Renderer.overlay` composes the payload over an RGB view of the slide
with numpy so results can be inspected or exported without a GUI.

Renderer state is persisted as ``attributes.txt`` lines::

    Attribute opacity 0.7
    Attribute label-colors 1 255,0,0 2 0,0,255

Classes
-------
Renderer
    Base class with the attribute table
ImagePyramidRenderer
    Plain RGB pyramid (the slide itself); has no attributes
SegmentationRenderer
    Label image with per-label colors
HeatmapRenderer
    Patch-grid class probabilities with per-channel colors
BoundingBoxRenderer
    Detected boxes with per-label colors

See Also
--------
wsi_runner.core.results : Writes and replays attribute lines
"""

import logging
from typing import Dict, List, Tuple
from urllib.parse import quote, unquote

import cv2
import numpy as np

from wsi_runner.core.errors import AttributeParseError
from wsi_runner.core.image_io import ArrayPyramid
from wsi_runner.processing.resize import resize_image

logger = logging.getLogger(__name__)

ATTRIBUTE_KEYWORD = "Attribute"


def _float(values: List[str]) -> float:
    if len(values) != 1:
        raise ValueError("expected one value")
    return float(values[0])


def _int(values: List[str]) -> int:
    if len(values) != 1:
        raise ValueError("expected one value")
    return int(values[0])


def _bool(values: List[str]) -> bool:
    return _int(values) == 1


def _color(text: str) -> Tuple[int, int, int]:
    rgb = tuple(int(v) for v in text.split(","))
    if len(rgb) != 3:
        raise ValueError(f"invalid color {text!r}")
    return rgb


def _label_colors(values: List[str]) -> Dict[int, Tuple[int, int, int]]:
    if not values or len(values) % 2:
        raise ValueError("expected <label> <r,g,b> pairs")
    return {int(values[i]): _color(values[i + 1]) for i in range(0, len(values), 2)}


def _label_names(values: List[str]) -> Dict[int, str]:
    if not values or len(values) % 2:
        raise ValueError("expected <label> <name> pairs")
    return {int(values[i]): unquote(values[i + 1]) for i in range(0, len(values), 2)}


def _fmt_names(mapping) -> str:
    # names are percent-encoded so multi-word names stay one token
    return _fmt_pairs({label: quote(str(name), safe="") for label, name in mapping.items()})


def _fmt_pairs(mapping) -> str:
    parts = []
    for key, value in sorted(mapping.items()):
        if isinstance(value, tuple):
            value = ",".join(str(v) for v in value)
        parts.append(f"{key} {value}")
    return " ".join(parts)


class Renderer:
    """
    Base renderer.

    Subclasses declare ``ATTRIBUTES``: attribute name -> (object attribute,
    parser of the value tokens, formatter of the value). Mapping-valued
    attributes merge, so later lines in a file override single labels.
    """

    ATTRIBUTES: Dict[str, tuple] = {}

    def __init__(self):
        self.payload = None

    def set_input(self, payload):
        self.payload = payload

    def get_attribute(self, name: str):
        return getattr(self, self.ATTRIBUTES[name][0])

    def set_attribute(self, name: str, values: List[str]):
        """
        Set attribute ``name`` from its value tokens.

        Raises
        ------
        AttributeParseError
            For an unknown name or unparsable values
        """
        if name not in self.ATTRIBUTES:
            raise AttributeParseError(f"{type(self).__name__} has no attribute {name!r}")
        field_name, parse, _ = self.ATTRIBUTES[name]
        try:
            value = parse(values)
        except (TypeError, ValueError) as e:
            raise AttributeParseError(f"Invalid value for attribute {name!r}: {' '.join(values)!r} ({e})") from e
        current = getattr(self, field_name)
        if isinstance(current, dict) and isinstance(value, dict):
            current.update(value)
        else:
            setattr(self, field_name, value)

    def attributes_to_string(self) -> str:
        lines = []
        for name, (field_name, _, fmt) in self.ATTRIBUTES.items():
            value = getattr(self, field_name)
            if isinstance(value, dict) and not value:
                continue
            lines.append(f"{ATTRIBUTE_KEYWORD} {name} {fmt(value)}")
        return "\n".join(lines) + ("\n" if lines else "")

    def render(self, size: Tuple[int, int]) -> np.ndarray:
        """RGBA float image of ``size=(w, h)`` covering the whole slide."""
        raise NotImplementedError

    def overlay(self, base: np.ndarray) -> np.ndarray:
        """Alpha-blend this renderer over an RGB view of the slide."""
        h, w = base.shape[:2]
        rgba = self.render((w, h))
        alpha = rgba[..., 3:4]
        out = base[..., :3].astype(np.float32) * (1.0 - alpha) + rgba[..., :3] * alpha
        return np.clip(out, 0, 255).astype(np.uint8)


def _label_image(payload, size) -> np.ndarray:
    if isinstance(payload, ArrayPyramid):
        # smallest level that is still at least as large as the view
        level = 0
        for i, (w, h) in enumerate(payload.level_dimensions):
            if w >= size[0] and h >= size[1]:
                level = i
        labels = payload.read_level(level)
    else:
        labels = payload.array
    if labels.ndim == 3:
        labels = labels[..., 0]
    return resize_image(labels.astype(np.uint8), size, nearest=True)


class ImagePyramidRenderer(Renderer):
    def render(self, size):
        pyr = self.payload
        rgb = resize_image(pyr.read_level(pyr.level_count - 1)[..., :3], size)
        alpha = np.ones(rgb.shape[:2] + (1,), dtype=np.float32)
        return np.concatenate([rgb.astype(np.float32), alpha], axis=2)


class SegmentationRenderer(Renderer):
    """
    Label image renderer.

    Parameters
    ----------
    colors : dict, optional
        Label -> RGB; label 0 is background and never drawn
    opacity : float, default=0.7
        Fill opacity
    border_opacity : float, default=1.0
        Opacity of the one-pixel label borders
    names : dict, optional
        Label -> display name
    """

    ATTRIBUTES = {
        "opacity": ("opacity", _float, str),
        "border-opacity": ("border_opacity", _float, str),
        "label-colors": ("colors", _label_colors, _fmt_pairs),
        "label-names": ("names", _label_names, _fmt_names),
    }

    def __init__(self, colors=None, opacity: float = 0.7, border_opacity: float = 1.0, names=None):
        super().__init__()
        self.colors = dict(colors or {})
        self.opacity = opacity
        self.border_opacity = border_opacity
        self.names = dict(names or {})

    def render(self, size):
        labels = _label_image(self.payload, size)
        rgba = np.zeros(labels.shape + (4,), dtype=np.float32)
        eroded = cv2.erode(labels, np.ones((3, 3), np.uint8))
        border = labels != eroded
        for label, color in self.colors.items():
            if label == 0:
                continue
            sel = labels == label
            rgba[sel, :3] = color
            rgba[sel, 3] = self.opacity
            rgba[sel & border, 3] = self.border_opacity
        return rgba


class HeatmapRenderer(Renderer):
    """Patch-grid probabilities; each cell takes the color of its strongest channel."""

    ATTRIBUTES = {
        "max-opacity": ("max_opacity", _float, str),
        "min-confidence": ("min_confidence", _float, str),
        "interpolation": ("interpolation", _bool, lambda v: str(int(v))),
        "channel-colors": ("colors", _label_colors, _fmt_pairs),
    }

    def __init__(self, colors=None, max_opacity: float = 0.6, min_confidence: float = 0.5, interpolation: bool = True):
        super().__init__()
        self.colors = dict(colors or {})
        self.max_opacity = max_opacity
        self.min_confidence = min_confidence
        self.interpolation = interpolation

    def render(self, size):
        tensor = np.asarray(self.payload.array, dtype=np.float32)
        if self.interpolation:
            tensor = cv2.resize(tensor, size, interpolation=cv2.INTER_LINEAR)
        else:
            tensor = cv2.resize(tensor, size, interpolation=cv2.INTER_NEAREST)
        if tensor.ndim == 2:
            tensor = tensor[..., None]
        rgba = np.zeros(tensor.shape[:2] + (4,), dtype=np.float32)
        channel = tensor.argmax(axis=2)
        confidence = tensor.max(axis=2)
        for ch, color in self.colors.items():
            if ch == 0:
                continue
            sel = (channel == ch) & (confidence >= self.min_confidence)
            rgba[sel, :3] = color
            rgba[sel, 3] = confidence[sel] * self.max_opacity
        return rgba


class BoundingBoxRenderer(Renderer):
    """Box outlines in level-0 coordinates; ``slide_size`` maps them onto a view."""

    ATTRIBUTES = {
        "label-colors": ("colors", _label_colors, _fmt_pairs),
        "border-size": ("border_size", _int, str),
    }

    def __init__(self, colors=None, border_size: int = 2, slide_size=(1, 1)):
        super().__init__()
        self.colors = dict(colors or {})
        self.border_size = border_size
        self.slide_size = slide_size

    def render(self, size):
        w, h = size
        canvas = np.zeros((h, w, 3), dtype=np.uint8)
        alpha = np.zeros((h, w), dtype=np.uint8)
        sx, sy = w / self.slide_size[0], h / self.slide_size[1]
        boxes = self.payload
        for (x0, y0, x1, y1), label in zip(boxes.boxes, boxes.labels):
            color = self.colors.get(int(label), (0, 255, 0))
            p0 = (int(x0 * sx), int(y0 * sy))
            p1 = (int(x1 * sx), int(y1 * sy))
            cv2.rectangle(canvas, p0, p1, tuple(int(c) for c in color), self.border_size)
            cv2.rectangle(alpha, p0, p1, 255, self.border_size)
        return np.concatenate([canvas.astype(np.float32), (alpha[..., None] / 255.0).astype(np.float32)], axis=2)


RENDERER_TYPES = {
    cls.__name__: cls
    for cls in (ImagePyramidRenderer, SegmentationRenderer, HeatmapRenderer, BoundingBoxRenderer)
}
