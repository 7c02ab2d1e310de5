"""
Unit tests for backend discovery and model format inventory.

Usage:
    pytest tests/unit/test_backends.py -v
"""

import logging

import pytest

from wsi_runner.core.backends import Backend, discover_backends, list_model_formats


class TestDiscoverBackends:
    """Engine library scanning."""

    def test_linux_names(self, tmp_path):
        for name in ("libInferenceEngineOpenVINO.so", "libInferenceEngineTensorRT.so", "libFAST.so"):
            (tmp_path / name).write_bytes(b"")
        assert discover_backends(tmp_path, kernel="linux") == {"OpenVINO", "TensorRT"}

    def test_windows_names(self, tmp_path):
        for name in ("InferenceEngineTensorFlowCUDA.dll", "FAST.dll"):
            (tmp_path / name).write_bytes(b"")
        assert discover_backends(tmp_path, kernel="winnt") == {"TensorFlowCUDA"}

    def test_windows_library_ignored_on_linux(self, tmp_path):
        (tmp_path / "InferenceEngineOpenVINO.dll").write_bytes(b"")
        assert discover_backends(tmp_path, kernel="linux") == set()

    def test_case_sensitive(self, tmp_path):
        (tmp_path / "libinferenceengineOpenVINO.so").write_bytes(b"")
        assert discover_backends(tmp_path, kernel="linux") == set()

    def test_unsupported_kernel(self, tmp_path, caplog):
        (tmp_path / "libInferenceEngineOpenVINO.so").write_bytes(b"")
        with caplog.at_level(logging.WARNING):
            assert discover_backends(tmp_path, kernel="darwin") == set()
        assert "not supported" in caplog.text

    def test_missing_directory(self, tmp_path):
        assert discover_backends(tmp_path / "nope", kernel="linux") == set()


class TestBackend:
    """Closed backend set."""

    def test_from_name_variants(self):
        assert Backend.from_name("TensorFlowCPU") is Backend.TENSORFLOW
        assert Backend.from_name("OpenVINO") is Backend.OPENVINO

    def test_from_name_unknown(self):
        with pytest.raises(ValueError):
            Backend.from_name("ONNXRuntime")

    def test_formats(self):
        assert Backend.OPENVINO.preferred_format == "xml"
        assert Backend.TENSORRT.can_consume(".uff")
        assert not Backend.TENSORFLOW.can_consume("onnx")
        assert not Backend.TENSORRT.supports_cpu


def test_list_model_formats(tmp_path):
    folder = tmp_path / "tumor"
    folder.mkdir()
    for name in ("tumor.onnx", "tumor.xml", "tumor.bin", "tumor.txt", "other.pb"):
        (folder / name).write_bytes(b"")
    assert list_model_formats(tmp_path, "tumor") == {".onnx", ".xml", ".bin", ".txt"}


def test_list_model_formats_missing_model(tmp_path):
    assert list_model_formats(tmp_path, "missing") == set()
