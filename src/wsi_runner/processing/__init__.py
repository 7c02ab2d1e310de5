"""
Slide Processing Stages
=======================

tiling
    Patch generation and stitching
tissue
    Model-free tissue segmentation
resize
    OpenCV resizing helpers
detection
    TinyYOLO decoding, NMS and box accumulation
"""

from .detection import BoundingBoxAccumulator, BoundingBoxSet, YoloDecoder, non_max_suppression
from .resize import resize_image
from .tiling import HeatmapStitcher, LabelStitcher, Patch, PatchGenerator
from .tissue import TissueSegmentation

__all__ = [
    "BoundingBoxAccumulator",
    "BoundingBoxSet",
    "YoloDecoder",
    "non_max_suppression",
    "resize_image",
    "HeatmapStitcher",
    "LabelStitcher",
    "Patch",
    "PatchGenerator",
    "TissueSegmentation",
]
