"""
Engine Resolver
===============

Picks exactly one (backend, format) pair for a model from the backends
installed on the host and the formats shipped with the model.

The candidate list is fixed and ordered. Specialised accelerated runtimes come
before general ones, and the order (not the discovery order of backends or
files) breaks ties, so the same inputs always give the same answer:

1. TensorRT  + ``.onnx``
2. TensorRT  + ``.uff``
3. OpenVINO  + ``.onnx``
4. OpenVINO  + ``.xml`` (IR)
5. TensorFlow + ``.pb``

Two narrower rules apply on top of the priority search. A model flagged
``cpu=1`` is moved to a backend with a CPU execution device when one is
available, and a model pinning ``IE=<backend>`` skips the search entirely.

Classes
-------
EngineSelection
    Resolved (backend, format, device) triple

Functions
---------
resolve
    Priority search over installed backends and available formats
apply_cpu_only
    Restrict a selection to CPU-capable backends
select_engine
    Full selection for a typed model configuration

See Also
--------
wsi_runner.core.backends : Discovery of backends and formats
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from .backends import Backend
from .errors import ResolutionError

logger = logging.getLogger(__name__)

PRIORITY = (
    (Backend.TENSORRT, "onnx"),
    (Backend.TENSORRT, "uff"),
    (Backend.OPENVINO, "onnx"),
    (Backend.OPENVINO, "xml"),
    (Backend.TENSORFLOW, "pb"),
)

CPU_PRIORITY = (
    (Backend.TENSORFLOW, "pb"),
    (Backend.OPENVINO, "xml"),
)


@dataclass(frozen=True)
class EngineSelection:
    """
    Backend and artifact format chosen for one run.

    Attributes
    ----------
    backend : Backend
        Inference backend
    format : str
        Artifact extension without the leading dot (``onnx``, ``xml``, ...)
    device : str
        ``"ANY"`` to let the backend decide, ``"CPU"`` when forced
    """

    backend: Backend
    format: str
    device: str = "ANY"


def _normalise_formats(formats: Iterable[str]) -> set[str]:
    return {f.lstrip(".") for f in formats}


def _first_match(candidates, formats: set[str], backends: set[str]):
    for backend, fmt in candidates:
        if fmt in formats and backend.value in backends:
            return backend, fmt
    return None


def resolve(
    model_name: str,
    available_formats: Iterable[str],
    available_backends: Iterable[str],
) -> Optional[EngineSelection]:
    """
    Return the highest-priority (backend, format) pair present on both sides.

    Parameters
    ----------
    model_name : str
        Used for diagnostics only
    available_formats : iterable of str
        Extensions shipped with the model, with or without leading dot
    available_backends : iterable of str
        Installed backend identifiers

    Returns
    -------
    EngineSelection or None
        ``None`` when no candidate matches; the caller must abort the run
        instead of guessing a default.

    Examples
    --------
    >>> resolve("m", {".onnx", ".xml"}, {"OpenVINO"})
    EngineSelection(backend=<Backend.OPENVINO: 'OpenVINO'>, format='onnx', device='ANY')
    >>> resolve("m", {".pb"}, {"OpenVINO"}) is None
    True
    """
    formats = _normalise_formats(available_formats)
    backends = set(available_backends)
    match = _first_match(PRIORITY, formats, backends)
    if match is None:
        logger.warning(
            "No inference engine for model %s: formats %s, installed backends %s",
            model_name,
            sorted(formats) or "none",
            sorted(backends) or "none",
        )
        return None
    backend, fmt = match
    logger.info("%s selected (using %s) for model %s", backend.value, fmt, model_name)
    return EngineSelection(backend, fmt)


def apply_cpu_only(
    selection: EngineSelection,
    available_formats: Iterable[str],
    available_backends: Iterable[str],
) -> EngineSelection:
    """
    Move a selection onto a CPU execution device when possible.

    TensorFlow with a ``.pb`` artifact is tried first, then OpenVINO with an
    IR ``.xml`` artifact. When neither is available the original selection
    is returned unchanged and a warning is logged.
    """
    match = _first_match(
        CPU_PRIORITY,
        _normalise_formats(available_formats),
        set(available_backends),
    )
    if match is None:
        logger.warning("CPU only was selected, but no CPU-capable backend is available")
        return selection
    backend, fmt = match
    logger.info("GPU is disabled (with %s)", backend.value)
    return EngineSelection(backend, fmt, device="CPU")


def select_engine(
    config,
    available_formats: Iterable[str],
    available_backends: Iterable[str],
) -> EngineSelection:
    """
    Select the engine for a typed model configuration.

    Parameters
    ----------
    config : ModelConfig
        Uses ``name``, ``inference_engine`` (pinned backend or None) and
        ``cpu_only``
    available_formats : iterable of str
        Format inventory of the model
    available_backends : iterable of str
        Installed backend identifiers

    Returns
    -------
    EngineSelection

    Raises
    ------
    ResolutionError
        If nothing is pinned and no candidate pair matches
    """
    formats = _normalise_formats(available_formats)
    backends = set(available_backends)

    if config.inference_engine is not None:
        pinned = config.inference_engine
        if not any(name == pinned.value or name.startswith(pinned.value) for name in backends):
            logger.warning("Preselected backend %s was not found among installed backends", pinned.value)
        logger.info("Preselected IE was used: %s", pinned.value)
        selection = EngineSelection(pinned, pinned.preferred_format)
        if config.cpu_only and pinned.supports_cpu:
            selection = replace(selection, device="CPU")
        return selection

    selection = resolve(config.name, formats, backends)
    if selection is None:
        raise ResolutionError(
            f"Model {config.name!r} has no format supported by an installed backend "
            f"(formats: {sorted(formats) or 'none'}, backends: {sorted(backends) or 'none'})"
        )
    if config.cpu_only:
        selection = apply_cpu_only(selection, formats, backends)
    return selection
