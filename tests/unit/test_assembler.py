"""
Unit tests for level selection and pipeline assembly.

Usage:
    pytest tests/unit/test_assembler.py -v
"""

import numpy as np
import pytest

from conftest import (
    ANCHORS_TEXT,
    SEGMENTATION_META,
    FakeRuntimeFactory,
    classification_output,
    make_slide,
    segmentation_output,
    write_model,
)
from wsi_runner.core.assembler import (
    STRATEGIES,
    PipelineAssembler,
    compute_patch_level,
    select_low_res_level,
)
from wsi_runner.core.backends import Backend
from wsi_runner.core.errors import (
    ArithmeticDegenerateError,
    ConfigurationError,
    FormatMismatchError,
    ResolutionError,
)
from wsi_runner.core.image_io import ArrayPyramid, ImagePayload, TensorPayload
from wsi_runner.models.model_util import ProblemType, Resolution, RuntimeModel
from wsi_runner.processing.tissue import TissueSegmentation
from wsi_runner.ui.renderers import HeatmapRenderer, SegmentationRenderer


def pyramid_dims(width, height, n_levels, factor=2):
    return [(width // factor ** i, height // factor ** i) for i in range(n_levels)]


class TestSelectLowResLevel:
    """Low-resolution level choice."""

    def test_examples(self):
        assert select_low_res_level([(8000, 6000), (2000, 1500), (500, 375)], 512, 512) == 1
        assert select_low_res_level([(8000, 6000), (4000, 3000)], 256, 256) == 1

    def test_level_is_large_enough_or_coarsest(self):
        for width, height, n_levels, iw, ih in [
            (100000, 80000, 8, 1024, 1024),
            (40000, 30000, 4, 512, 256),
            (20000, 50000, 6, 256, 512),
            (5000, 5000, 2, 128, 128),
        ]:
            dims = pyramid_dims(width, height, n_levels)
            level = select_low_res_level(dims, iw, ih)
            w, h = dims[level]
            assert (w > 2 * iw and h > 2 * ih) or level == n_levels - 1

    def test_level_zero_too_small(self):
        with pytest.raises(ArithmeticDegenerateError):
            select_low_res_level([(600, 600), (300, 300)], 512, 512)


class TestComputePatchLevel:
    """Magnification matching."""

    def test_examples(self):
        assert compute_patch_level(40, 10, 4.0) == 1
        assert compute_patch_level(40, 10, 2.0) == 2
        assert compute_patch_level(40, 20, 2.0001) == 1
        assert compute_patch_level(20, 20, 2.0) == 0

    def test_idempotent(self):
        results = {compute_patch_level(40, 10, 2.0, 5) for _ in range(10)}
        assert results == {2}

    def test_unknown_magnification_defaults_to_zero(self, caplog):
        assert compute_patch_level(40, None, 2.0) == 0
        assert compute_patch_level(None, 10, 2.0) == 0
        assert "level 0" in caplog.text

    def test_degenerate_downsample(self):
        with pytest.raises(ArithmeticDegenerateError):
            compute_patch_level(40, 10, 1.2)
        with pytest.raises(ArithmeticDegenerateError):
            compute_patch_level(40, 10, None)

    def test_negative_level(self):
        with pytest.raises(ArithmeticDegenerateError):
            compute_patch_level(10, 40, 2.0)

    def test_beyond_pyramid(self):
        with pytest.raises(ArithmeticDegenerateError):
            compute_patch_level(40, 5, 2.0, level_count=3)


def test_strategy_table_keys():
    assert set(STRATEGIES) == {
        (ProblemType.CLASSIFICATION, Resolution.HIGH),
        (ProblemType.SEGMENTATION, Resolution.HIGH),
        (ProblemType.SEGMENTATION, Resolution.LOW),
        (ProblemType.OBJECT_DETECTION, Resolution.HIGH),
    }


def model_for(models_root, name="seg", formats=("onnx",), anchors=None, **extra):
    meta = dict(SEGMENTATION_META)
    meta.update(extra)
    write_model(models_root, name, meta, formats=formats, anchors=anchors)
    return RuntimeModel(models_root, name)


class TestAssemble:
    """Graph construction and execution with a fake runtime."""

    def test_segmentation_high(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output(label=1))
        handle = PipelineAssembler({"OpenVINO"}, factory).assemble(model_for(models_root), slide)
        assert slide.has_renderer("seg")
        outputs = handle.execute()
        result = outputs["segmentation"]
        assert isinstance(result, ArrayPyramid)
        # 40x slide, 20x model, downsample 2 -> level 1 (512 x 512)
        assert result.level_dimensions[0] == (512, 512)
        assert result.spacing == (2.0, 2.0)
        assert np.all(result.read_level(0) == 1)
        assert factory.sessions[0].calls == 4
        assert factory.opened[0]["backend"] is Backend.OPENVINO
        assert isinstance(slide.renderers["seg"], SegmentationRenderer)
        assert slide.renderers["seg"].payload is result
        assert slide.renderers["seg"].opacity == 0.7

    def test_idempotent_registration(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output())
        assembler = PipelineAssembler({"OpenVINO"}, factory)
        model = model_for(models_root)
        assembler.assemble(model, slide).execute()
        second = assembler.assemble(model, slide)
        assert second.status == "skipped"
        assert second.execute() == {}
        assert list(slide.renderers) == ["seg"]
        assert len(factory.sessions) == 1

    def test_no_engine_registers_nothing(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output())
        with pytest.raises(ResolutionError):
            PipelineAssembler({"TensorFlow"}, factory).assemble(model_for(models_root), slide)
        assert slide.renderers == {}
        assert factory.opened == []

    def test_unsupported_combination(self, models_root, slide):
        model = model_for(models_root, problem="classification", resolution="low")
        with pytest.raises(ConfigurationError):
            PipelineAssembler({"OpenVINO"}).assemble(model, slide)
        assert slide.renderers == {}

    def test_classification_high(self, models_root, slide):
        factory = FakeRuntimeFactory(classification_output((0.2, 0.8)))
        model = model_for(models_root, name="cls", problem="classification")
        outputs = PipelineAssembler({"OpenVINO"}, factory).assemble(model, slide).execute()
        heatmap = outputs["heatmap"]
        assert isinstance(heatmap, TensorPayload)
        assert heatmap.array.shape == (2, 2, 2)
        np.testing.assert_allclose(heatmap.array[0, 0], [0.2, 0.8])
        renderer = slide.renderers["cls"]
        assert isinstance(renderer, HeatmapRenderer)
        assert renderer.max_opacity == 0.6
        assert renderer.colors[1] == (255, 0, 0)

    def test_segmentation_low(self, models_root):
        slide = make_slide(size=1024, n_levels=4)
        factory = FakeRuntimeFactory(segmentation_output(label=1))
        model = model_for(
            models_root, resolution="low", input_img_size_x="64", input_img_size_y="64"
        )
        outputs = PipelineAssembler({"OpenVINO"}, factory).assemble(model, slide).execute()
        result = outputs["segmentation"]
        assert isinstance(result, ImagePayload)
        # levels 1024/512/256/128; 128 <= 2*64 -> level 2
        assert result.array.shape == (256, 256)
        assert result.spacing == (4.0, 4.0)
        assert slide.renderers["seg"].opacity == 0.4

    def test_tensorflow_shapes(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output())
        model = model_for(models_root, formats=("pb",), input_node="input_1", output_node="conv2d/Softmax")
        PipelineAssembler({"TensorFlowCPU", "TensorFlow"}, factory).assemble(model, slide)
        opened = factory.opened[0]
        assert opened["inputs"][0].name == "input_1"
        assert opened["inputs"][0].shape == (1, 256, 256, 3)
        assert opened["outputs"][0].shape == (1, 256, 256, 2)

    def test_detection_requires_openvino(self, models_root, slide):
        model = model_for(
            models_root, name="det", problem="object_detection", anchors=ANCHORS_TEXT
        )
        factory = FakeRuntimeFactory(segmentation_output())
        with pytest.raises(FormatMismatchError):
            PipelineAssembler({"TensorRT"}, factory).assemble(model, slide)
        assert slide.renderers == {}

    def test_detection_missing_anchors(self, models_root, slide):
        model = model_for(models_root, name="det", problem="object_detection")
        with pytest.raises(OSError):
            PipelineAssembler({"OpenVINO"}, FakeRuntimeFactory(segmentation_output())).assemble(model, slide)
        assert slide.renderers == {}

    def test_close_before_execute(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output())
        with PipelineAssembler({"OpenVINO"}, factory).assemble(model_for(models_root), slide) as handle:
            assert slide.has_renderer("seg")
        assert handle.status == "closed"
        assert not slide.has_renderer("seg")
        assert factory.sessions[0].calls == 0
        assert factory.sessions[0].closed

    def test_failed_execute_removes_renderer(self, models_root, slide):
        def boom(x):
            raise RuntimeError("device lost")

        handle = PipelineAssembler({"OpenVINO"}, FakeRuntimeFactory(boom)).assemble(model_for(models_root), slide)
        with pytest.raises(RuntimeError):
            handle.execute()
        assert handle.status == "failed"
        assert slide.renderers == {}

    def test_tissue_mask_skips_background(self, models_root, slide):
        factory = FakeRuntimeFactory(segmentation_output())
        model = model_for(models_root, tissue_threshold="50", mask_threshold="0.9")
        PipelineAssembler({"OpenVINO"}, factory).assemble(model, slide).execute()
        # tissue is the centre square of the slide; no level-1 patch is 90% tissue
        assert factory.sessions[0].calls < 4

    def test_stored_tissue_mask_reused(self, models_root, slide):
        mask = np.zeros((256, 256), dtype=np.uint8)
        mask[:128, :128] = 1
        slide.tissue_mask = ImagePayload(mask, spacing=(4.0, 4.0))
        factory = FakeRuntimeFactory(segmentation_output())
        PipelineAssembler({"OpenVINO"}, factory).assemble(model_for(models_root), slide).execute()
        assert factory.sessions[0].calls == 1

    def test_tissue_filter_disabled(self, models_root, slide):
        slide.tissue_mask = ImagePayload(np.zeros((256, 256), dtype=np.uint8), spacing=(4.0, 4.0))
        factory = FakeRuntimeFactory(segmentation_output())
        model = model_for(models_root, tissue_threshold="none")
        PipelineAssembler({"OpenVINO"}, factory).assemble(model, slide).execute()
        assert factory.sessions[0].calls == 4

    def test_reloaded_results_skip(self, models_root, slide):
        slide.insert_renderer("seg/segmentation", SegmentationRenderer())
        factory = FakeRuntimeFactory(segmentation_output())
        handle = PipelineAssembler({"OpenVINO"}, factory).assemble(model_for(models_root), slide)
        assert handle.status == "skipped"
        assert factory.opened == []
        assert list(slide.renderers) == ["seg/segmentation"]

    def test_multi_word_class_names(self, models_root, slide):
        model = model_for(models_root, class_names="background;tumour tissue")
        PipelineAssembler({"OpenVINO"}, FakeRuntimeFactory(segmentation_output())).assemble(model, slide)
        assert slide.renderers["seg"].names == {0: "background", 1: "tumour tissue"}


class TestTissueMaskOnDemand:
    """The tissue mask is only computed for strategies that tile the slide."""

    @pytest.fixture
    def tissue_calls(self, monkeypatch):
        calls = []
        original = TissueSegmentation.run

        def counting(self, pyramid):
            calls.append(pyramid)
            return original(self, pyramid)

        monkeypatch.setattr(TissueSegmentation, "run", counting)
        return calls

    def test_low_resolution_skips_mask(self, models_root, tissue_calls):
        slide = make_slide(size=1024, n_levels=4)
        model = model_for(
            models_root, resolution="low", input_img_size_x="64", input_img_size_y="64",
            tissue_threshold="50",
        )
        PipelineAssembler({"OpenVINO"}, FakeRuntimeFactory(segmentation_output())).assemble(model, slide).execute()
        assert tissue_calls == []

    def test_high_resolution_computes_mask(self, models_root, slide, tissue_calls):
        model = model_for(models_root, tissue_threshold="50")
        PipelineAssembler({"OpenVINO"}, FakeRuntimeFactory(segmentation_output())).assemble(model, slide).execute()
        assert len(tissue_calls) == 1
