"""
Pipeline Assembler
==================

Builds the processing graph for one (model, slide) pair and hands it back as
a :class:`RunHandle`. The graph is

    source pyramid -> [tissue mask] -> network -> tail -> renderer

where the tail depends on the model's problem type and resolution regime.
Tails are looked up in :data:`STRATEGIES`, keyed by
``(ProblemType, Resolution)``; a missing key is a configuration error.

Resolution Regimes
------------------
Low resolution
    The whole slide is read at one pyramid level chosen by
    :func:`select_low_res_level` and resized to the network input.
High resolution
    The slide is tiled at the level given by :func:`compute_patch_level`
    and every patch goes through the network.

Registration
------------
Assembly registers exactly one renderer on the slide, keyed by the model
name, and only after every stage was constructed. Assembling a model whose
name is already registered, or whose stored results were reloaded under
``<model>/<output>``, returns a skipped handle and does nothing else.

Classes
-------
PipelineGraph
    Constructed stages of one run
RunHandle
    Executes or discards a graph
PipelineAssembler
    Turns a model and a slide into a RunHandle

Functions
---------
select_low_res_level
    Pyramid level for low-resolution models
compute_patch_level
    Pyramid level matching the model's magnification

Examples
--------
>>> assembler = PipelineAssembler(backends={"OpenVINO"})
>>> with assembler.assemble(model, slide) as handle:  # doctest: +SKIP
...     outputs = handle.execute(progress=True)
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np
from tqdm import tqdm

from wsi_runner.core.backends import Backend
from wsi_runner.core.engine_resolver import EngineSelection, select_engine
from wsi_runner.core.errors import ArithmeticDegenerateError, ConfigurationError, FormatMismatchError
from wsi_runner.core.image_io import ImagePayload
from wsi_runner.models.model_util import ModelConfig, ProblemType, Resolution, RuntimeModel
from wsi_runner.models.network import Network, configure_shapes
from wsi_runner.processing.detection import (
    BoundingBoxAccumulator,
    YoloDecoder,
    non_max_suppression,
)
from wsi_runner.processing.resize import resize_image
from wsi_runner.processing.tiling import HeatmapStitcher, LabelStitcher, PatchGenerator
from wsi_runner.processing.tissue import TissueSegmentation
from wsi_runner.ui.renderers import (
    BoundingBoxRenderer,
    HeatmapRenderer,
    Renderer,
    SegmentationRenderer,
)

logger = logging.getLogger(__name__)

HEATMAP_MAX_OPACITY = 0.6
SEGMENTATION_OPACITY = 0.7
SEGMENTATION_BORDER_OPACITY = 1.0
LOW_RES_SEGMENTATION_OPACITY = 0.4


def _round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


def select_low_res_level(level_dimensions, input_width: int, input_height: int) -> int:
    """
    Pick the pyramid level a low-resolution model reads the slide from.

    Levels are scanned finest to coarsest. The first level whose width is
    at most twice the input width, or whose height is at most twice the
    input height, stops the scan and the level before it is chosen. When no
    level is that small the coarsest level is chosen.

    Parameters
    ----------
    level_dimensions : sequence of (int, int)
        ``(width, height)`` per level, finest first
    input_width, input_height : int
        Network input size

    Returns
    -------
    int
        Level index

    Raises
    ------
    ArithmeticDegenerateError
        If level 0 is already too small (the chosen level would be -1)

    Examples
    --------
    >>> select_low_res_level([(8000, 6000), (2000, 1500), (500, 375)], 512, 512)
    1
    >>> select_low_res_level([(8000, 6000), (4000, 3000)], 256, 256)
    1
    """
    selected = len(level_dimensions) - 1
    for level, (w, h) in enumerate(level_dimensions):
        if w <= 2 * input_width or h <= 2 * input_height:
            selected = level - 1
            break
    if selected < 0:
        raise ArithmeticDegenerateError(
            f"Slide level 0 {tuple(level_dimensions[0])} is smaller than twice the model input "
            f"({input_width}x{input_height})"
        )
    logger.info("Low resolution level selected: %d %s", selected, tuple(level_dimensions[selected]))
    return selected


def compute_patch_level(
    image_magnification: Optional[float],
    model_magnification: Optional[float],
    level_downsample: Optional[float],
    level_count: Optional[int] = None,
) -> int:
    """
    Pyramid level whose magnification matches the model's.

    ``round(log(image_mag / model_mag) / log(round(level_downsample)))``,
    where ``level_downsample`` is the downsample between two adjacent levels.
    The result depends only on its arguments.

    Parameters
    ----------
    image_magnification : float or None
        Objective power of level 0; ``None`` when the slide does not say
    model_magnification : float or None
        ``magnification_level`` of the model; ``None`` when unset
    level_downsample : float or None
        Downsample of level 1 relative to level 0
    level_count : int, optional
        Number of levels; when given the result must be below it

    Returns
    -------
    int
        Level index; 0 with a warning when either magnification is unknown

    Raises
    ------
    ArithmeticDegenerateError
        Negative level, level beyond the pyramid, or a downsample that
        rounds to 1 or less

    Examples
    --------
    >>> compute_patch_level(40, 10, 4.0)
    1
    >>> compute_patch_level(40, 10, 2.0)
    2
    """
    if model_magnification is None:
        logger.warning("Magnification level was not provided in the model metadata; using level 0")
        return 0
    if image_magnification is None:
        logger.warning("Slide magnification is unknown; using level 0")
        return 0
    if image_magnification == model_magnification:
        return 0
    if level_downsample is None or round(level_downsample) <= 1:
        raise ArithmeticDegenerateError(
            f"Cannot derive a level from downsample {level_downsample} "
            f"({image_magnification}x slide, {model_magnification}x model)"
        )
    level = _round_half_away(
        math.log(image_magnification / model_magnification) / math.log(round(level_downsample))
    )
    if level < 0:
        raise ArithmeticDegenerateError(
            f"Model magnification {model_magnification}x is above the slide's {image_magnification}x"
        )
    if level_count is not None and level >= level_count:
        raise ArithmeticDegenerateError(f"Computed level {level} is beyond the pyramid ({level_count} levels)")
    return level


def _labels_from_output(output: np.ndarray, nb_classes: int) -> np.ndarray:
    """Argmax over the class axis of a segmentation output, batch dropped."""
    out = np.asarray(output)
    if out.ndim == 4:
        out = out[0]
    if out.ndim == 2:
        return (out > 0.5).astype(np.uint8)
    if out.shape[-1] == nb_classes:
        return out.argmax(axis=-1).astype(np.uint8)
    return out.argmax(axis=0).astype(np.uint8)


# ---------------------------------------------------------------------------
# Graph and handle
# ---------------------------------------------------------------------------

@dataclass
class BuildContext:
    """Everything a tail strategy needs to construct its stages."""

    model: RuntimeModel
    config: ModelConfig
    image: object
    selection: EngineSelection
    network: Network
    # called only by strategies that tile the slide
    mask_source: Callable[[], Optional[ImagePayload]]


@dataclass
class PipelineGraph:
    """
    Constructed stages of one run.

    ``stage(progress)`` executes source -> network -> tail and returns the
    payload; ``renderer`` is the sink it is connected to.
    """

    output_name: str
    stage: Callable[[bool], object]
    renderer: Renderer
    network: Network
    selection: EngineSelection


class RunHandle:
    """
    Owner of one assembled graph.

    Attributes
    ----------
    name : str
        Renderer key on the slide (the model name)
    status : str
        ``"ready"``, ``"skipped"``, ``"done"``, ``"failed"`` or ``"closed"``

    Notes
    -----
    Closing a handle before :meth:`execute` releases the network and never
    runs the sink; the renderer registered at assembly is removed so the
    slide's renderer set is left as it was.
    """

    def __init__(self, name: str, image, graph: Optional[PipelineGraph] = None, status: str = "ready"):
        self.name = name
        self.image = image
        self.graph = graph
        self.status = status
        self.outputs: Dict[str, object] = {}

    @property
    def renderer(self) -> Optional[Renderer]:
        return self.graph.renderer if self.graph else None

    def execute(self, progress: bool = False) -> Dict[str, object]:
        if self.status == "skipped":
            return {}
        if self.status != "ready":
            raise RuntimeError(f"Cannot execute a run in state {self.status!r}")
        try:
            payload = self.graph.stage(progress)
        except Exception:
            self.status = "failed"
            self.image.remove_renderer(self.name)
            raise
        finally:
            self.graph.network.close()
        self.graph.renderer.set_input(payload)
        self.outputs = {self.graph.output_name: payload}
        self.status = "done"
        return self.outputs

    def close(self):
        if self.graph is not None:
            self.graph.network.close()
        if self.status == "ready":
            self.image.remove_renderer(self.name)
            self.status = "closed"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# ---------------------------------------------------------------------------
# Tail strategies
# ---------------------------------------------------------------------------

def _patch_generator(ctx: BuildContext) -> PatchGenerator:
    pyramid = ctx.image.pyramid
    downsample = pyramid.level_downsamples[1] if pyramid.level_count > 1 else None
    level = compute_patch_level(
        ctx.image.magnification, ctx.config.magnification, downsample, pyramid.level_count
    )
    logger.info("Patch level %d for model %s", level, ctx.config.name)
    return PatchGenerator(
        pyramid,
        patch_size=(ctx.config.input_height, ctx.config.input_width),
        level=level,
        overlap=ctx.config.patch_overlap,
        mask=ctx.mask_source(),
        mask_threshold=ctx.config.mask_threshold,
    )


def _patches(gen: PatchGenerator, name: str, progress: bool):
    return tqdm(gen, total=len(gen), desc=name, unit="patch", disable=not progress)


def build_classification_high(ctx: BuildContext) -> PipelineGraph:
    config, network = ctx.config, ctx.network
    gen = _patch_generator(ctx)
    stitcher = HeatmapStitcher(gen.grid_shape, config.nb_classes, step=gen.step_level0)

    def stage(progress):
        for patch in _patches(gen, config.name, progress):
            stitcher.add(patch, network.process(patch.array)[0])
        return stitcher.result()

    renderer = HeatmapRenderer(
        colors=dict(enumerate(config.class_colors)),
        max_opacity=HEATMAP_MAX_OPACITY,
        interpolation=config.interpolation,
    )
    return PipelineGraph("heatmap", stage, renderer, network, ctx.selection)


def build_segmentation_high(ctx: BuildContext) -> PipelineGraph:
    config, network = ctx.config, ctx.network
    gen = _patch_generator(ctx)
    stitcher = LabelStitcher((gen.level_w, gen.level_h), gen.downsample)

    def stage(progress):
        for patch in _patches(gen, config.name, progress):
            stitcher.add(patch, _labels_from_output(network.process(patch.array)[0], config.nb_classes))
        return stitcher.result()

    renderer = SegmentationRenderer(
        colors=dict(enumerate(config.class_colors)),
        opacity=SEGMENTATION_OPACITY,
        border_opacity=SEGMENTATION_BORDER_OPACITY,
        names=dict(enumerate(config.class_names)),
    )
    return PipelineGraph("segmentation", stage, renderer, network, ctx.selection)


def build_segmentation_low(ctx: BuildContext) -> PipelineGraph:
    config, network = ctx.config, ctx.network
    pyramid = ctx.image.pyramid
    level = select_low_res_level(pyramid.level_dimensions, config.input_width, config.input_height)
    level_w, level_h = pyramid.level_dimensions[level]
    full_w, full_h = pyramid.level_dimensions[0]

    def stage(progress):
        image = resize_image(pyramid.read_level(level), (config.input_width, config.input_height))
        labels = _labels_from_output(network.process(image)[0], config.nb_classes)
        labels = resize_image(labels, (level_w, level_h), nearest=True)
        return ImagePayload(labels, spacing=(full_w / level_w, full_h / level_h))

    renderer = SegmentationRenderer(
        colors=dict(enumerate(config.class_colors)),
        opacity=LOW_RES_SEGMENTATION_OPACITY,
        border_opacity=SEGMENTATION_BORDER_OPACITY,
        names=dict(enumerate(config.class_names)),
    )
    return PipelineGraph("segmentation", stage, renderer, network, ctx.selection)


def build_detection_high(ctx: BuildContext) -> PipelineGraph:
    config, network = ctx.config, ctx.network
    if ctx.selection.backend is not Backend.OPENVINO:
        raise FormatMismatchError(
            f"Object detection post-processing is only available with OpenVINO, "
            f"not {ctx.selection.backend.value}"
        )
    decoder = YoloDecoder(
        ctx.model.anchors(),
        config.nb_classes,
        (config.input_width, config.input_height),
        threshold=config.pred_threshold,
    )
    gen = _patch_generator(ctx)
    accumulator = BoundingBoxAccumulator()
    input_size = (config.input_width, config.input_height)

    def stage(progress):
        for patch in _patches(gen, config.name, progress):
            boxes = decoder.decode(network.process(patch.array))
            accumulator.add(patch, non_max_suppression(boxes, config.nms_threshold), input_size)
        return accumulator.result()

    renderer = BoundingBoxRenderer(
        colors=dict(enumerate(config.class_colors)),
        slide_size=ctx.image.full_size,
    )
    return PipelineGraph("boxes", stage, renderer, network, ctx.selection)


STRATEGIES = {
    (ProblemType.CLASSIFICATION, Resolution.HIGH): build_classification_high,
    (ProblemType.SEGMENTATION, Resolution.HIGH): build_segmentation_high,
    (ProblemType.SEGMENTATION, Resolution.LOW): build_segmentation_low,
    (ProblemType.OBJECT_DETECTION, Resolution.HIGH): build_detection_high,
}


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class PipelineAssembler:
    """
    Build run handles for models on slides.

    Parameters
    ----------
    backends : set of str
        Installed backend identifiers, fixed for the assembler's lifetime
    runtime_factory : callable, optional
        Passed to every :class:`Network`; tests inject fakes here
    """

    def __init__(self, backends, runtime_factory: Optional[Callable] = None):
        self.backends = set(backends)
        self.runtime_factory = runtime_factory

    def _tissue_mask(self, config: ModelConfig, image) -> Optional[ImagePayload]:
        if config.tissue_filter_disabled:
            return None
        if config.tissue_threshold is None:
            if image.tissue_mask is not None:
                logger.info("Reusing the tissue mask stored on %s", image.filename)
            return image.tissue_mask
        return TissueSegmentation(threshold=config.tissue_threshold).run(image.pyramid)

    def _network(self, model: RuntimeModel, config: ModelConfig, selection: EngineSelection) -> Network:
        network = Network(self.runtime_factory)
        network.set_inference_engine(selection.backend, selection.device)
        configure_shapes(network, config, selection.format)
        network.set_scale_factor(config.scale_factor)
        return network

    def assemble(self, model: RuntimeModel, image, config: Optional[ModelConfig] = None) -> RunHandle:
        """
        Construct the graph for ``model`` on ``image``.

        Parameters
        ----------
        model : RuntimeModel
            Catalog entry
        image : WholeSlideImage
            Target slide; receives the renderer
        config : ModelConfig, optional
            Pre-built configuration (e.g. with advanced-mode overrides);
            built from ``model`` when omitted

        Returns
        -------
        RunHandle
            ``status == "skipped"`` when the model already ran on the slide
            or its results were reloaded (see :meth:`WholeSlideImage.has_pipeline`)

        Raises
        ------
        ConfigurationError, ResolutionError, FormatMismatchError,
        ArtifactIOError, ArithmeticDegenerateError, BackendUnavailableError
            Nothing is registered on the slide when any of these is raised
        """
        name = model.name
        if image.has_pipeline(name):
            logger.info("Model %s was already run on %s", name, image.filename)
            return RunHandle(name, image, status="skipped")

        config = config if config is not None else model.config()
        strategy = STRATEGIES.get((config.problem, config.resolution))
        if strategy is None:
            raise ConfigurationError(
                f"Unsupported combination for model {name!r}: "
                f"{config.problem.value} at {config.resolution.value} resolution"
            )

        selection = select_engine(config, model.formats(), self.backends)
        network = self._network(model, config, selection)
        ctx = BuildContext(
            model, config, image, selection, network, lambda: self._tissue_mask(config, image)
        )
        graph = strategy(ctx)
        network.load(model.artifact_path(selection.format))

        image.insert_renderer(name, graph.renderer)
        logger.info(
            "Assembled %s (%s, %s) on %s with %s/%s",
            name, config.problem.value, config.resolution.value,
            image.filename, selection.backend.value, selection.format,
        )
        return RunHandle(name, image, graph)
