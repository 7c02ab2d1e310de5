"""
Image I/O Utilities
===================

This module provides access to multi-resolution (pyramidal) images and the
on-disk containers used to persist pipeline outputs.

Pyramids
--------
Two pyramid sources share one duck-typed interface (``level_count``,
``level_dimensions``, ``level_downsamples``, ``magnification``,
``read_level``, ``read_region``):

- :class:`OpenSlidePyramid` reads whole-slide files (.svs, .ndpi, .mrxs,
  .tiff, ...) through OpenSlide
- :class:`ArrayPyramid` holds levels in memory; used for stitched results,
  reloaded results and plain images

Payload Containers
------------------
Each payload kind has exactly one container:

- pyramid (:class:`ArrayPyramid`) -> ``.tiff`` (tifffile, one IFD per level)
- dense image (:class:`ImagePayload`) -> ``.mhd`` + ``.raw`` (MetaImage)
- tensor (:class:`TensorPayload`) -> ``.hdf5`` (h5py)

Classes
-------
OpenSlidePyramid
    OpenSlide-backed pyramid
ArrayPyramid
    In-memory pyramid
ImagePayload, TensorPayload
    Dense image and tensor outputs with pixel spacing
WholeSlideImage
    A slide in a project: pyramid, registered renderers, thumbnail

Functions
---------
write_payload, read_payload
    Dispatch on payload kind / file extension

See Also
--------
wsi_runner.core.results : Result directory layout and attribute files
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2
import h5py
import numpy as np
import tifffile
from PIL import Image

logger = logging.getLogger(__name__)

PYRAMID_EXTENSION = ".tiff"
IMAGE_EXTENSION = ".mhd"
TENSOR_EXTENSION = ".hdf5"


# ---------------------------------------------------------------------------
# Pyramids
# ---------------------------------------------------------------------------

class OpenSlidePyramid:
    """
    Whole-slide pyramid read through OpenSlide.

    Parameters
    ----------
    path : str or Path
        Slide file

    Notes
    -----
    Magnification comes from ``openslide.objective-power``; when absent it
    is estimated from ``openslide.mpp-x`` as ``10 / mpp`` (0.25 um/px ~ 40x).
    """

    def __init__(self, path):
        import openslide

        self.path = Path(path)
        self._slide = openslide.OpenSlide(str(self.path))
        self.properties = dict(self._slide.properties)
        self.level_count = self._slide.level_count
        self.level_dimensions = [tuple(d) for d in self._slide.level_dimensions]
        self.level_downsamples = [float(d) for d in self._slide.level_downsamples]

    @property
    def magnification(self) -> Optional[float]:
        objective = self.properties.get("openslide.objective-power")
        if objective:
            return float(objective)
        mpp = self.properties.get("openslide.mpp-x")
        if mpp and float(mpp) > 0:
            return round(10.0 / float(mpp))
        return None

    def read_region(self, x: int, y: int, level: int, size: Tuple[int, int]) -> np.ndarray:
        """Read ``size=(w, h)`` pixels of ``level`` at level-0 position ``(x, y)``."""
        region = self._slide.read_region((int(x), int(y)), level, (int(size[0]), int(size[1])))
        return np.asarray(region.convert("RGB"))

    def read_level(self, level: int) -> np.ndarray:
        return self.read_region(0, 0, level, self.level_dimensions[level])

    def get_thumbnail(self, size: Tuple[int, int]) -> Image.Image:
        return self._slide.get_thumbnail(size)

    def close(self):
        self._slide.close()


class ArrayPyramid:
    """
    In-memory pyramid built from a list of arrays, finest level first.

    Parameters
    ----------
    levels : list of np.ndarray
        ``(H, W)`` or ``(H, W, C)`` arrays
    magnification : float, optional
        Objective power of level 0
    spacing : tuple of float, default=(1.0, 1.0)
        Size of a level-0 pixel in the coordinates of the slide it overlays

    Examples
    --------
    >>> labels = np.zeros((4096, 4096), np.uint8)
    >>> pyr = ArrayPyramid.from_array(labels, n_levels=3, nearest=True)
    >>> pyr.level_dimensions
    [(4096, 4096), (2048, 2048), (1024, 1024)]
    """

    def __init__(self, levels: List[np.ndarray], magnification: Optional[float] = None, spacing=(1.0, 1.0)):
        if not levels:
            raise ValueError("ArrayPyramid needs at least one level")
        self.levels = [np.asarray(level) for level in levels]
        self.properties: Dict[str, str] = {}
        self._magnification = magnification
        self.spacing = tuple(spacing)

    @classmethod
    def from_array(cls, array: np.ndarray, n_levels: int = 4, factor: int = 2, nearest: bool = False, **kwargs):
        """Build ``n_levels`` levels by repeated downscaling with ``factor``."""
        interpolation = cv2.INTER_NEAREST if nearest else cv2.INTER_AREA
        levels = [np.asarray(array)]
        for _ in range(n_levels - 1):
            h, w = levels[-1].shape[:2]
            if h < factor or w < factor:
                break
            levels.append(cv2.resize(levels[-1], (w // factor, h // factor), interpolation=interpolation))
        return cls(levels, **kwargs)

    @property
    def level_count(self) -> int:
        return len(self.levels)

    @property
    def level_dimensions(self) -> List[Tuple[int, int]]:
        return [(lvl.shape[1], lvl.shape[0]) for lvl in self.levels]

    @property
    def level_downsamples(self) -> List[float]:
        w0 = self.levels[0].shape[1]
        return [w0 / lvl.shape[1] for lvl in self.levels]

    @property
    def magnification(self) -> Optional[float]:
        return self._magnification

    @property
    def dtype(self):
        return self.levels[0].dtype

    def read_level(self, level: int) -> np.ndarray:
        return self.levels[level]

    def read_region(self, x: int, y: int, level: int, size: Tuple[int, int]) -> np.ndarray:
        """Read ``size=(w, h)`` of ``level`` at level-0 ``(x, y)``, zero-padded past the border."""
        data = self.levels[level]
        ds = self.level_downsamples[level]
        lx, ly = int(round(x / ds)), int(round(y / ds))
        w, h = int(size[0]), int(size[1])
        out = np.zeros((h, w) + data.shape[2:], dtype=data.dtype)
        crop = data[ly:ly + h, lx:lx + w]
        out[:crop.shape[0], :crop.shape[1]] = crop
        return out

    def get_thumbnail(self, size: Tuple[int, int]) -> Image.Image:
        img = Image.fromarray(self.levels[-1])
        img.thumbnail(size)
        return img

    def close(self):
        pass


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

@dataclass
class ImagePayload:
    """Dense image output; ``spacing`` maps its pixels to level-0 pixels."""

    array: np.ndarray
    spacing: Tuple[float, float] = (1.0, 1.0)


@dataclass
class TensorPayload:
    """Tensor output (e.g. a patch-grid heatmap of shape ``(rows, cols, classes)``)."""

    array: np.ndarray
    spacing: Tuple[float, float] = (1.0, 1.0)


def write_pyramid_tiff(path, pyramid: ArrayPyramid, tile: int = 256):
    """
    Write a pyramid as a tiled TIFF, one IFD per level.

    Level 0 carries the spacing as its resolution; reduced levels are
    flagged with ``subfiletype=1`` (reduced-resolution image).
    """
    levels = pyramid.levels
    xres, yres = 1.0 / pyramid.spacing[0], 1.0 / pyramid.spacing[1]
    with tifffile.TiffWriter(str(path), bigtiff=True) as tif:
        opts = dict(tile=(tile, tile), compression="zlib", metadata=None)
        tif.write(levels[0], resolution=(xres, yres), **opts)
        for level in levels[1:]:
            tif.write(level, subfiletype=1, **opts)


def read_pyramid_tiff(path) -> ArrayPyramid:
    with tifffile.TiffFile(str(path)) as tif:
        levels = [page.asarray() for page in tif.pages]
        spacing = (1.0, 1.0)
        tags = tif.pages[0].tags
        res = tags.get("XResolution"), tags.get("YResolution")
        if all(res):
            spacing = tuple(float(t.value[1]) / float(t.value[0]) for t in res)
    return ArrayPyramid(levels, spacing=spacing)


_MET_TYPES = {
    np.dtype(np.uint8): "MET_UCHAR",
    np.dtype(np.int8): "MET_CHAR",
    np.dtype(np.uint16): "MET_USHORT",
    np.dtype(np.int16): "MET_SHORT",
    np.dtype(np.uint32): "MET_UINT",
    np.dtype(np.int32): "MET_INT",
    np.dtype(np.float32): "MET_FLOAT",
    np.dtype(np.float64): "MET_DOUBLE",
}


def write_metaimage(path, payload: ImagePayload):
    """Write a 2D image as a MetaImage header (``.mhd``) plus raw data (``.raw``)."""
    path = Path(path)
    array = np.ascontiguousarray(payload.array)
    if array.dtype not in _MET_TYPES:
        array = array.astype(np.float32)
    raw_path = path.with_suffix(".raw")
    h, w = array.shape[:2]
    channels = array.shape[2] if array.ndim == 3 else 1
    header = [
        "ObjectType = Image",
        "NDims = 2",
        "BinaryData = True",
        "BinaryDataByteOrderMSB = False",
        f"DimSize = {w} {h}",
        f"ElementSpacing = {payload.spacing[0]} {payload.spacing[1]}",
        f"ElementNumberOfChannels = {channels}",
        f"ElementType = {_MET_TYPES[array.dtype]}",
        f"ElementDataFile = {raw_path.name}",
    ]
    array.astype(array.dtype.newbyteorder("<")).tofile(raw_path)
    path.write_text("\n".join(header) + "\n")


def read_metaimage(path) -> ImagePayload:
    path = Path(path)
    header = {}
    for line in path.read_text().splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            header[key.strip()] = value.strip()
    w, h = (int(v) for v in header["DimSize"].split()[:2])
    channels = int(header.get("ElementNumberOfChannels", 1))
    dtype = {v: k for k, v in _MET_TYPES.items()}[header["ElementType"]].newbyteorder("<")
    data = np.fromfile(path.parent / header["ElementDataFile"], dtype=dtype)
    shape = (h, w, channels) if channels > 1 else (h, w)
    spacing = tuple(float(v) for v in header.get("ElementSpacing", "1 1").split()[:2])
    return ImagePayload(data.reshape(shape).astype(dtype.newbyteorder("=")), spacing)


def write_tensor_hdf5(path, name: str, payload: TensorPayload):
    with h5py.File(str(path), "w") as f:
        ds = f.create_dataset(name, data=payload.array, compression="gzip")
        ds.attrs["spacing"] = np.asarray(payload.spacing, dtype=np.float64)


def read_tensor_hdf5(path) -> TensorPayload:
    with h5py.File(str(path), "r") as f:
        name = next(iter(f.keys()))
        ds = f[name]
        spacing = tuple(ds.attrs.get("spacing", (1.0, 1.0)))
        return TensorPayload(ds[()], spacing)


def payload_extension(payload) -> Optional[str]:
    """Container extension for a payload, or ``None`` if it cannot be stored."""
    if isinstance(payload, ArrayPyramid):
        return PYRAMID_EXTENSION
    if isinstance(payload, ImagePayload):
        return IMAGE_EXTENSION
    if isinstance(payload, TensorPayload):
        return TENSOR_EXTENSION
    return None


def write_payload(folder: Path, name: str, payload) -> Path:
    """
    Write ``payload`` into ``folder`` as ``<name><ext>``.

    Raises
    ------
    TypeError
        If the payload kind has no container
    """
    ext = payload_extension(payload)
    if ext is None:
        raise TypeError(f"Unsupported data to export: {type(payload).__name__}")
    path = Path(folder) / f"{name}{ext}"
    if ext == PYRAMID_EXTENSION:
        write_pyramid_tiff(path, payload)
    elif ext == IMAGE_EXTENSION:
        write_metaimage(path, payload)
    else:
        write_tensor_hdf5(path, name, payload)
    return path


def read_payload(path):
    path = Path(path)
    ext = path.suffix.lower()
    if ext == PYRAMID_EXTENSION:
        return read_pyramid_tiff(path)
    if ext == IMAGE_EXTENSION:
        return read_metaimage(path)
    if ext == TENSOR_EXTENSION:
        return read_tensor_hdf5(path)
    raise ValueError(f"Unknown payload extension: {ext}")


# ---------------------------------------------------------------------------
# Whole-slide image
# ---------------------------------------------------------------------------

class WholeSlideImage:
    """
    One slide of a project with the renderers registered on it.

    Parameters
    ----------
    filename : str or Path
        Slide file
    pyramid : object, optional
        Pre-opened pyramid; an :class:`OpenSlidePyramid` is opened lazily
        from ``filename`` otherwise
    thumbnail : PIL.Image, optional
        Cached thumbnail (e.g. loaded from the project folder)

    Notes
    -----
    Renderers are keyed by name (a model name, ``"tissue"``, or
    ``"<pipeline>/<output>"`` for reloaded results). :meth:`has_pipeline` over
    these keys is the guard against running the same model twice on a slide.
    """

    def __init__(self, filename, pyramid=None, thumbnail: Optional[Image.Image] = None):
        self.filename = str(filename)
        self._pyramid = pyramid
        self._thumbnail = thumbnail
        self.renderers: Dict[str, object] = {}
        self.renderer_types: Dict[str, str] = {}
        self.tissue_mask = None

    @property
    def pyramid(self):
        if self._pyramid is None:
            self._pyramid = OpenSlidePyramid(self.filename)
        return self._pyramid

    @property
    def magnification(self) -> Optional[float]:
        return self.pyramid.magnification

    @property
    def full_size(self) -> Tuple[int, int]:
        return self.pyramid.level_dimensions[0]

    def has_renderer(self, name: str) -> bool:
        return name in self.renderers

    def has_pipeline(self, name: str) -> bool:
        """True if ``name`` ran on this slide or its stored results were reloaded."""
        prefix = name + "/"
        return name in self.renderers or any(key.startswith(prefix) for key in self.renderers)

    def insert_renderer(self, name: str, renderer) -> bool:
        """Register ``renderer`` under ``name``; returns False if the name is taken."""
        if name in self.renderers:
            return False
        self.renderers[name] = renderer
        self.renderer_types[name] = type(renderer).__name__
        return True

    def remove_renderer(self, name: str):
        self.renderers.pop(name, None)
        self.renderer_types.pop(name, None)

    def get_thumbnail(self, size=(512, 512)) -> Image.Image:
        if self._thumbnail is None:
            self._thumbnail = self.pyramid.get_thumbnail(size)
        return self._thumbnail

    def close(self):
        if self._pyramid is not None:
            self._pyramid.close()
