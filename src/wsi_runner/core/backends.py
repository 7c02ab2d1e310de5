"""
Backend Registry
================

Discovery of installed inference backends and of the model formats that ship
with each model.

A backend is "installed" when its engine library is present in the library
directory. The naming convention is ``libInferenceEngine<Name>.so`` on Linux
and ``InferenceEngine<Name>.dll`` on Windows; ``<Name>`` is the identifier.
Presence of a library does not guarantee the runtime is usable; failures of
that kind surface later, when the network is loaded.

Classes
-------
Backend
    Closed set of supported backends with their format and shape rules

Functions
---------
discover_backends
    Scan a library directory for engine libraries
current_kernel
    Kernel family name of the running host
list_model_formats
    File extensions available for a model

See Also
--------
wsi_runner.core.engine_resolver : Picks one (backend, format) pair
"""

import logging
import platform
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

LINUX_PREFIX = "libInferenceEngine"
LINUX_SUFFIX = ".so"
WINDOWS_PREFIX = "InferenceEngine"
WINDOWS_SUFFIX = ".dll"


class Backend(Enum):
    """
    Supported inference backends.

    Each member carries the formats its runtime can consume, the format it
    prefers when pinned explicitly and whether it offers a CPU execution
    device. The shape declaration rules per member live in
    :data:`wsi_runner.models.network.SHAPE_STRATEGIES`.

    Examples
    --------
    >>> Backend.from_name("TensorFlowCUDA")
    <Backend.TENSORFLOW: 'TensorFlow'>
    >>> Backend.OPENVINO.preferred_format
    'xml'
    """

    TENSORRT = "TensorRT"
    OPENVINO = "OpenVINO"
    TENSORFLOW = "TensorFlow"

    @property
    def formats(self) -> tuple[str, ...]:
        return _FORMATS[self]

    @property
    def preferred_format(self) -> str:
        return self.formats[0]

    @property
    def supports_cpu(self) -> bool:
        return self is not Backend.TENSORRT

    def can_consume(self, fmt: str) -> bool:
        return fmt.lstrip(".") in self.formats

    @classmethod
    def from_name(cls, name: str) -> "Backend":
        """
        Map a discovered or user-supplied identifier to a backend family.

        Variants such as ``TensorFlowCPU`` or ``TensorFlowROCm`` map to
        :attr:`TENSORFLOW`.

        Raises
        ------
        ValueError
            If the name does not belong to any supported family
        """
        for member in cls:
            if name == member.value or name.startswith(member.value):
                return member
        raise ValueError(f"Unknown inference backend: {name!r}")


_FORMATS = {
    Backend.TENSORRT: ("onnx", "uff"),
    Backend.OPENVINO: ("xml", "onnx"),
    Backend.TENSORFLOW: ("pb",),
}


def current_kernel() -> str:
    """Return the kernel family of this host (``linux``, ``winnt``, ...)."""
    system = platform.system().lower()
    if system == "windows":
        return "winnt"
    return system


def discover_backends(library_path, kernel: str | None = None) -> set[str]:
    """
    Find installed backend identifiers in a library directory.

    Parameters
    ----------
    library_path : str or Path
        Directory holding the engine libraries
    kernel : str, optional
        Kernel family; defaults to :func:`current_kernel`. Only ``linux``,
        ``winnt`` and ``wince`` are supported.

    Returns
    -------
    set of str
        Backend identifiers, e.g. ``{"OpenVINO", "TensorFlow"}``. Empty when
        the kernel is unsupported or the directory does not exist.

    Examples
    --------
    >>> discover_backends("/opt/fast/lib", kernel="linux")  # doctest: +SKIP
    {'OpenVINO', 'TensorRT'}
    """
    kernel = kernel or current_kernel()
    if kernel == "linux":
        prefix, suffix = LINUX_PREFIX, LINUX_SUFFIX
    elif kernel in ("winnt", "wince"):
        prefix, suffix = WINDOWS_PREFIX, WINDOWS_SUFFIX
    else:
        logger.warning(
            "Kernel %r is not supported for backend discovery (supported: linux, winnt)",
            kernel,
        )
        return set()

    lib_dir = Path(library_path)
    if not lib_dir.is_dir():
        logger.warning("Library directory %s does not exist, no backends found", lib_dir)
        return set()

    found = set()
    for entry in lib_dir.iterdir():
        if not entry.is_file() or prefix not in entry.name:
            continue
        name = entry.name.split(prefix)[-1].split(suffix)[0]
        if name:
            found.add(name)
    logger.info("Inference backends found in %s: %s", lib_dir, ", ".join(sorted(found)) or "none")
    return found


def list_model_formats(models_root, model_name: str) -> set[str]:
    """
    List the file extensions shipped for a model.

    A file counts when its name contains the model name; the extension is
    whatever follows ``<model_name>.``, returned with a leading dot.

    Parameters
    ----------
    models_root : str or Path
        Folder holding one sub-folder per model
    model_name : str
        Model folder name

    Returns
    -------
    set of str
        E.g. ``{".onnx", ".xml", ".bin", ".txt"}``
    """
    model_dir = Path(models_root) / model_name
    if not model_dir.is_dir():
        return set()
    formats = set()
    for entry in model_dir.iterdir():
        if entry.is_file() and model_name in entry.name:
            formats.add("." + entry.name.split(model_name + ".")[-1])
    logger.debug("Model formats for %s: %s", model_name, sorted(formats))
    return formats
