"""
Model Utilities for Whole-Slide Inference
==========================================

This module turns a model folder on disk into a typed, validated
configuration. It handles:

- **Metadata files**: ``<models_root>/<name>/<name>.txt`` with one
  ``key:value`` pair per line
- **Typed configuration**: one dataclass per problem type, built eagerly from
  the string map with every field error collected into a single report
- **Anchor tables**: ``<name>.anchors`` side files for TinyYOLO-style
  detectors (two output layers, three anchors each)
- **Model catalog entries**: :class:`RuntimeModel`, the read-only view of one
  model folder

Metadata Keys
-------------
Required for every model: ``problem``, ``resolution``, ``input_img_size_x``,
``input_img_size_y``, ``nb_channels``, ``nb_classes``. Classification and
segmentation models also need ``class_colors`` (``r,g,b;r,g,b;...``).

Optional: ``model_name``, ``name``, ``class_names``, ``magnification_level``,
``scale_factor`` (``num/den``), ``tissue_threshold`` (int or ``none``),
``mask_threshold`` (default 0.5), ``patch_overlap`` (default 0), ``IE``,
``cpu`` (0/1), ``input_node``, ``output_node``, ``interpolation``,
``pred_threshold`` (default 0.1), ``nms_threshold`` (default 0.5).

Examples
--------
>>> from wsi_runner.models.model_util import RuntimeModel
>>> model = RuntimeModel("~/fastpathology/data/Models", "tumor_seg")
>>> config = model.config()
>>> config.problem, config.resolution
(<ProblemType.SEGMENTATION: 'segmentation'>, <Resolution.HIGH: 'high'>)
>>> config.class_colors
[(0, 0, 0), (255, 0, 0)]
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from wsi_runner.core.backends import Backend, list_model_formats
from wsi_runner.core.errors import AnchorFileError, ConfigurationError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".txt"
ANCHORS_SUFFIX = ".anchors"

DEFAULT_MASK_THRESHOLD = 0.5
DEFAULT_PATCH_OVERLAP = 0.0
DEFAULT_PRED_THRESHOLD = 0.1
DEFAULT_NMS_THRESHOLD = 0.5

ANCHOR_LAYERS = 2
ANCHORS_PER_LAYER = 3


class ProblemType(Enum):
    CLASSIFICATION = "classification"
    SEGMENTATION = "segmentation"
    OBJECT_DETECTION = "object_detection"


class Resolution(Enum):
    LOW = "low"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_REQUIRED = object()


@dataclass
class FieldResult:
    """Outcome of parsing one metadata field: a value or an error message."""

    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ValidationReport:
    """All field errors found while building one model configuration."""

    model_name: str
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def take(self, key: str, result: FieldResult):
        if not result.ok:
            self.errors[key] = result.error
        return result.value

    def __str__(self) -> str:
        lines = [f"Invalid metadata for model {self.model_name!r}:"]
        lines += [f"  {k}: {v}" for k, v in self.errors.items()]
        return "\n".join(lines)


def _parse_field(
    metadata: Mapping[str, str],
    key: str,
    parse: Callable[[str], Any],
    default: Any = _REQUIRED,
) -> FieldResult:
    raw = metadata.get(key, "")
    raw = raw.strip() if isinstance(raw, str) else raw
    if raw == "" or raw is None:
        if default is _REQUIRED:
            return FieldResult(error="missing")
        return FieldResult(value=default)
    try:
        return FieldResult(value=parse(raw))
    except (TypeError, ValueError, ZeroDivisionError) as e:
        return FieldResult(error=f"cannot parse {raw!r}: {e}")


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError("must be a positive integer")
    return value


def _fraction(raw: str) -> float:
    value = float(raw)
    if not 0.0 <= value <= 1.0:
        raise ValueError("must be within [0, 1]")
    return value


def _flag(raw: str) -> bool:
    return int(raw) == 1


def parse_scale_factor(raw: str) -> float:
    """
    Parse an intensity scale written as ``numerator/denominator``.

    >>> parse_scale_factor("1/255")
    0.00392156862745098
    >>> parse_scale_factor("2")
    2.0
    """
    parts = raw.split("/")
    if len(parts) == 1:
        return float(parts[0])
    if len(parts) != 2:
        raise ValueError("expected numerator/denominator")
    return float(parts[0]) / float(parts[1])


def parse_class_colors(raw: str) -> List[Tuple[int, int, int]]:
    """
    Parse ``r,g,b;r,g,b;...`` into RGB tuples in 0-255.

    >>> parse_class_colors("0,0,0;255,0,0")
    [(0, 0, 0), (255, 0, 0)]
    """
    colors = []
    for chunk in raw.strip().strip(";").split(";"):
        rgb = [int(v) for v in chunk.split(",")]
        if len(rgb) != 3 or any(not 0 <= v <= 255 for v in rgb):
            raise ValueError(f"invalid color {chunk!r}")
        colors.append(tuple(rgb))
    return colors


def _tissue_threshold(raw: str):
    if raw.lower() == "none":
        return "none"
    return int(raw)


def _backend(raw: str) -> Optional[Backend]:
    if raw.lower() == "none":
        return None
    return Backend.from_name(raw)


# ---------------------------------------------------------------------------
# Typed configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelConfig:
    """
    Validated configuration shared by all problem types.

    ``tissue_threshold`` is ``None`` when unset (reuse an existing tissue
    mask if the image has one) and ``"none"`` when filtering is disabled.
    """

    name: str
    display_name: str
    problem: ProblemType
    resolution: Resolution
    input_width: int
    input_height: int
    channels: int
    nb_classes: int
    class_colors: List[Tuple[int, int, int]] = field(default_factory=list)
    class_names: List[str] = field(default_factory=list)
    magnification: Optional[float] = None
    scale_factor: float = 1.0
    tissue_threshold: Any = None
    mask_threshold: float = DEFAULT_MASK_THRESHOLD
    patch_overlap: float = DEFAULT_PATCH_OVERLAP
    inference_engine: Optional[Backend] = None
    cpu_only: bool = False
    input_node: str = ""
    output_node: str = ""

    @property
    def tissue_filter_disabled(self) -> bool:
        return self.tissue_threshold == "none"


@dataclass(frozen=True)
class ClassificationConfig(ModelConfig):
    interpolation: bool = True


@dataclass(frozen=True)
class SegmentationConfig(ModelConfig):
    pass


@dataclass(frozen=True)
class DetectionConfig(ModelConfig):
    pred_threshold: float = DEFAULT_PRED_THRESHOLD
    nms_threshold: float = DEFAULT_NMS_THRESHOLD


_CONFIG_TYPES = {
    ProblemType.CLASSIFICATION: ClassificationConfig,
    ProblemType.SEGMENTATION: SegmentationConfig,
    ProblemType.OBJECT_DETECTION: DetectionConfig,
}


def parse_model_config(metadata: Mapping[str, str], model_name: str) -> ModelConfig:
    """
    Build the typed configuration for a model, validating every field.

    All fields are parsed before anything is raised, so the resulting
    :class:`ConfigurationError` lists every problem at once.

    Parameters
    ----------
    metadata : mapping of str to str
        Raw ``key:value`` pairs from the metadata file
    model_name : str
        Model folder name, used when ``model_name`` is absent from metadata

    Returns
    -------
    ModelConfig
        A :class:`ClassificationConfig`, :class:`SegmentationConfig` or
        :class:`DetectionConfig`

    Raises
    ------
    ConfigurationError
        With ``.report`` holding a :class:`ValidationReport`
    """
    report = ValidationReport(model_name)
    take = report.take

    problem = take("problem", _parse_field(metadata, "problem", ProblemType))
    common = dict(
        name=metadata.get("model_name", "").strip() or model_name,
        display_name=metadata.get("name", "").strip() or model_name,
        problem=problem,
        resolution=take("resolution", _parse_field(metadata, "resolution", Resolution)),
        input_width=take("input_img_size_x", _parse_field(metadata, "input_img_size_x", _positive_int)),
        input_height=take("input_img_size_y", _parse_field(metadata, "input_img_size_y", _positive_int)),
        channels=take("nb_channels", _parse_field(metadata, "nb_channels", _positive_int)),
        nb_classes=take("nb_classes", _parse_field(metadata, "nb_classes", _positive_int)),
        class_names=take(
            "class_names",
            _parse_field(metadata, "class_names", lambda s: [n.strip() for n in s.split(";")], []),
        ),
        magnification=take("magnification_level", _parse_field(metadata, "magnification_level", float, None)),
        scale_factor=take("scale_factor", _parse_field(metadata, "scale_factor", parse_scale_factor, 1.0)),
        tissue_threshold=take("tissue_threshold", _parse_field(metadata, "tissue_threshold", _tissue_threshold, None)),
        mask_threshold=take(
            "mask_threshold", _parse_field(metadata, "mask_threshold", _fraction, DEFAULT_MASK_THRESHOLD)
        ),
        patch_overlap=take(
            "patch_overlap", _parse_field(metadata, "patch_overlap", _fraction, DEFAULT_PATCH_OVERLAP)
        ),
        inference_engine=take("IE", _parse_field(metadata, "IE", _backend, None)),
        cpu_only=take("cpu", _parse_field(metadata, "cpu", _flag, False)),
        input_node=metadata.get("input_node", "").strip(),
        output_node=metadata.get("output_node", "").strip(),
    )

    colors_required = problem in (ProblemType.CLASSIFICATION, ProblemType.SEGMENTATION)
    common["class_colors"] = take(
        "class_colors",
        _parse_field(metadata, "class_colors", parse_class_colors, _REQUIRED if colors_required else []),
    )
    nb_classes = common["nb_classes"]
    if colors_required and common["class_colors"] and nb_classes and len(common["class_colors"]) < nb_classes:
        report.errors["class_colors"] = (
            f"{len(common['class_colors'])} colors given for {nb_classes} classes"
        )

    extra = {}
    if problem is ProblemType.CLASSIFICATION:
        extra["interpolation"] = take("interpolation", _parse_field(metadata, "interpolation", _flag, True))
    elif problem is ProblemType.OBJECT_DETECTION:
        extra["pred_threshold"] = take(
            "pred_threshold", _parse_field(metadata, "pred_threshold", _fraction, DEFAULT_PRED_THRESHOLD)
        )
        extra["nms_threshold"] = take(
            "nms_threshold", _parse_field(metadata, "nms_threshold", _fraction, DEFAULT_NMS_THRESHOLD)
        )

    if not report.ok:
        raise ConfigurationError(str(report), report=report)

    return _CONFIG_TYPES[problem](**common, **extra)


# ---------------------------------------------------------------------------
# Metadata and anchor files
# ---------------------------------------------------------------------------

def parse_metadata_text(text: str) -> Dict[str, str]:
    """
    Parse ``key:value`` lines; blank lines and ``#`` comments are skipped.

    Only the first colon separates key and value, so values may contain
    colons (e.g. Windows paths).
    """
    metadata = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        metadata[key.strip()] = value.strip()
    return metadata


@dataclass(frozen=True)
class AnchorTable:
    """
    Anchor boxes of a TinyYOLO-style detector.

    Attributes
    ----------
    layers : tuple
        ``ANCHOR_LAYERS`` tuples of ``ANCHORS_PER_LAYER`` ``(width, height)``
        pairs, in file order
    """

    layers: Tuple[Tuple[Tuple[float, float], ...], ...]

    @classmethod
    def from_text(cls, text: str) -> "AnchorTable":
        """
        Parse anchor values separated by whitespace and/or commas.

        Exactly ``2 * 3`` pairs are required; shorter or longer files are
        rejected rather than padded or truncated.

        Raises
        ------
        AnchorFileError
            On a wrong count or a non-numeric value
        """
        tokens = [t for t in re.split(r"[\s,]+", text.strip()) if t]
        expected = ANCHOR_LAYERS * ANCHORS_PER_LAYER * 2
        if len(tokens) != expected:
            raise AnchorFileError(
                f"Expected {expected // 2} anchor pairs ({ANCHOR_LAYERS} layers x "
                f"{ANCHORS_PER_LAYER}), got {len(tokens) / 2:g}"
            )
        try:
            values = [float(t) for t in tokens]
        except ValueError as e:
            raise AnchorFileError(f"Non-numeric anchor value: {e}") from e
        pairs = list(zip(values[0::2], values[1::2]))
        layers = tuple(
            tuple(pairs[i * ANCHORS_PER_LAYER:(i + 1) * ANCHORS_PER_LAYER])
            for i in range(ANCHOR_LAYERS)
        )
        return cls(layers)

    @classmethod
    def from_file(cls, path) -> "AnchorTable":
        path = Path(path)
        if not path.is_file():
            raise AnchorFileError(f"Anchor file not found: {path}")
        logger.info("Current anchor file path: %s", path)
        return cls.from_text(path.read_text())


# ---------------------------------------------------------------------------
# Catalog entry
# ---------------------------------------------------------------------------

class RuntimeModel:
    """
    Read-only view of one model folder.

    Parameters
    ----------
    models_root : str or Path
        Folder holding one sub-folder per model
    name : str
        Model folder name; artifacts are ``<name>.<ext>`` inside it
    metadata : mapping, optional
        Pre-parsed metadata; read from ``<name>.txt`` when omitted

    Attributes
    ----------
    name : str
        Model folder name
    directory : Path
        Model folder
    metadata : mappingproxy
        Raw metadata, immutable; use :meth:`with_overrides` for changes

    Notes
    -----
    A missing metadata file is not fatal here: the model is listed with an
    empty map and fails validation when a run asks for its configuration.
    """

    def __init__(self, models_root, name: str, metadata: Optional[Mapping[str, str]] = None):
        self.models_root = Path(models_root).expanduser()
        self.name = name
        self.directory = self.models_root / name
        if metadata is None:
            metadata = self._read_metadata()
        self.metadata = MappingProxyType(dict(metadata))

    def _read_metadata(self) -> Dict[str, str]:
        path = self.directory / f"{self.name}{METADATA_SUFFIX}"
        if not path.is_file():
            logger.warning("No metadata file for model %s at %s", self.name, path)
            return {}
        return parse_metadata_text(path.read_text())

    def with_overrides(self, overrides: Mapping[str, str]) -> "RuntimeModel":
        """Return a copy of this model whose metadata is updated with ``overrides``."""
        merged = dict(self.metadata)
        merged.update({k: str(v) for k, v in overrides.items()})
        return RuntimeModel(self.models_root, self.name, merged)

    def config(self) -> ModelConfig:
        return parse_model_config(self.metadata, self.name)

    def formats(self) -> set:
        return list_model_formats(self.models_root, self.name)

    def artifact_path(self, fmt: str) -> Path:
        return self.directory / f"{self.name}.{fmt.lstrip('.')}"

    def anchors(self) -> AnchorTable:
        return AnchorTable.from_file(self.directory / f"{self.name}{ANCHORS_SUFFIX}")

    def __repr__(self) -> str:
        return f"RuntimeModel(name={self.name!r}, directory={str(self.directory)!r})"


def list_available_models(models_root) -> Dict[str, Dict[str, str]]:
    """
    Summarise every model folder under ``models_root``.

    Returns
    -------
    dict
        Model name to ``{"name", "problem", "resolution", "formats"}``
    """
    root = Path(models_root).expanduser()
    if not root.is_dir():
        return {}
    info = {}
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue
        model = RuntimeModel(root, entry.name)
        info[entry.name] = {
            "name": model.metadata.get("name", entry.name),
            "problem": model.metadata.get("problem", "?"),
            "resolution": model.metadata.get("resolution", "?"),
            "formats": ", ".join(sorted(model.formats())),
        }
    return info
