"""
Unit tests for the command line entry point.

Usage:
    pytest tests/unit/test_run_app.py -v
"""

import argparse

import pytest

from conftest import SEGMENTATION_META, install_backends, write_model
from run_app import _parse_overrides, build_parser, main


def test_parse_overrides():
    assert _parse_overrides(["tissue_threshold=60", "IE=OpenVINO"]) == {
        "tissue_threshold": "60",
        "IE": "OpenVINO",
    }
    assert _parse_overrides(None) == {}
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_overrides(["nonsense"])


def test_run_arguments():
    args = build_parser().parse_args(["run", "a.svs", "seg", "tissue", "--advanced", "--set", "x=1", "-q"])
    assert args.processes == ["seg", "tissue"]
    assert args.advanced and args.quiet
    assert args.set == ["x=1"]


def test_backends_command(tmp_path, library_path, capsys):
    install_backends(library_path, "OpenVINO", "TensorRT")
    assert main(["--root", str(tmp_path), "--library-path", str(library_path), "backends"]) == 0
    out = capsys.readouterr().out
    assert "OpenVINO" in out and "TensorRT" in out


def test_models_command(tmp_path, models_root, library_path, capsys):
    write_model(models_root, "seg", SEGMENTATION_META)
    install_backends(library_path, "OpenVINO")
    assert main(["--root", str(tmp_path), "--library-path", str(library_path), "models"]) == 0
    out = capsys.readouterr().out
    assert "seg" in out
    assert "OpenVINO/onnx" in out
