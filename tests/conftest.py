"""
Shared fixtures: in-memory slides, model folders on disk and a fake runtime
factory so no inference backend has to be installed.
"""

import numpy as np
import pytest

from wsi_runner.core.image_io import ArrayPyramid, WholeSlideImage
from wsi_runner.models.network import RuntimeSession

SEGMENTATION_META = {
    "problem": "segmentation",
    "resolution": "high",
    "input_img_size_x": "256",
    "input_img_size_y": "256",
    "nb_channels": "3",
    "nb_classes": "2",
    "class_colors": "0,0,0;255,0,0",
    "class_names": "background;tumour",
    "magnification_level": "20",
    "scale_factor": "1/255",
}

ANCHORS_TEXT = "10,14, 23,27, 37,58\n81,82, 135,169, 344,319\n"


class FakeSession(RuntimeSession):
    def __init__(self, fn):
        self.fn = fn
        self.calls = 0
        self.closed = False

    def run(self, x):
        self.calls += 1
        return self.fn(x)

    def close(self):
        self.closed = True


class FakeRuntimeFactory:
    """Records every open and answers ``run`` with ``fn(x)``."""

    def __init__(self, fn):
        self.fn = fn
        self.sessions = []
        self.opened = []

    def __call__(self, backend, path, device, inputs, outputs):
        self.opened.append(
            dict(backend=backend, path=path, device=device, inputs=dict(inputs), outputs=dict(outputs))
        )
        session = FakeSession(self.fn)
        self.sessions.append(session)
        return session


def segmentation_output(label=1, nb_classes=2):
    def fn(x):
        h, w = x.shape[1:3]
        out = np.zeros((1, h, w, nb_classes), dtype=np.float32)
        out[..., label] = 1.0
        return [out]

    return fn


def classification_output(probabilities=(0.2, 0.8)):
    def fn(x):
        return [np.asarray([probabilities], dtype=np.float32)]

    return fn


def write_model(models_root, name, metadata, formats=("onnx",), anchors=None):
    """Create ``<models_root>/<name>/`` with metadata, dummy artifacts and anchors."""
    folder = models_root / name
    folder.mkdir(parents=True, exist_ok=True)
    (folder / f"{name}.txt").write_text("".join(f"{k}:{v}\n" for k, v in metadata.items()))
    for fmt in formats:
        (folder / f"{name}.{fmt}").write_bytes(b"\0")
    if anchors is not None:
        (folder / f"{name}.anchors").write_text(anchors)
    return folder


def make_slide(size=1024, n_levels=3, magnification=40, filename="slide.svs"):
    rgb = np.full((size, size, 3), 255, dtype=np.uint8)
    q = size // 4
    rgb[q:3 * q, q:3 * q] = (150, 60, 120)
    pyramid = ArrayPyramid.from_array(rgb, n_levels=n_levels, magnification=magnification)
    return WholeSlideImage(filename, pyramid=pyramid)


@pytest.fixture
def slide():
    return make_slide()


@pytest.fixture
def models_root(tmp_path):
    root = tmp_path / "data" / "Models"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def library_path(tmp_path):
    lib = tmp_path / "lib"
    lib.mkdir()
    return lib


def install_backends(library_path, *names):
    for name in names:
        (library_path / f"libInferenceEngine{name}.so").write_bytes(b"")
