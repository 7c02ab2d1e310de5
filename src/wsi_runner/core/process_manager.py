"""
Process Manager
===============

Entry point for running models on slides. A :class:`ProcessManager` is
constructed explicitly and passed to whoever needs it; it owns

- the model catalog of ``<root>/data/Models``
- the set of installed inference backends, discovered once at construction
- the advanced-mode switch that allows per-run metadata overrides

and it is the error boundary of a single run: :meth:`ProcessManager.run_process`
never raises for a failing model, it returns a failed :class:`RunOutcome`
and logs why.

Classes
-------
RunnerPaths
    Folders derived from the application root
ModelCatalog
    Thread-safe name -> RuntimeModel mapping
RunOutcome
    Result of one run
ProcessManager
    Catalog, backends and run orchestration

Notes
-----
Teardown is explicit: :meth:`ProcessManager.close` drops the catalog and the
backend set. The manager is also a context manager.

Examples
--------
>>> with ProcessManager() as manager:
...     outcome = manager.run_process(slide, "tumor_seg", progress=True)
...     if outcome.ok:
...         project.save_results(uid, "tumor_seg", outcome.outputs, outcome.renderers)

See Also
--------
wsi_runner.core.assembler : Graph construction
wsi_runner.core.tasks : Background execution
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from wsi_runner.core.assembler import LOW_RES_SEGMENTATION_OPACITY, PipelineAssembler
from wsi_runner.core.backends import discover_backends
from wsi_runner.core.engine_resolver import EngineSelection, select_engine
from wsi_runner.core.errors import ConfigurationError, RunnerError
from wsi_runner.models.model_util import RuntimeModel
from wsi_runner.processing.tissue import (
    DEFAULT_DILATE,
    DEFAULT_ERODE,
    DEFAULT_THRESHOLD,
    TissueSegmentation,
)
from wsi_runner.ui.renderers import SegmentationRenderer

logger = logging.getLogger(__name__)

DEFAULT_ROOT = Path.home() / "fastpathology"
MODELS_SUBDIR = Path("data") / "Models"
LIBRARY_SUBDIR = "lib"
LIBRARY_ENV = "FAST_LIBRARY_PATH"

TISSUE_PROCESS = "tissue"
TISSUE_COLOR = (0, 255, 0)


@dataclass
class RunnerPaths:
    root: Path
    library: Path

    @property
    def models(self) -> Path:
        return self.root / MODELS_SUBDIR

    @classmethod
    def resolve(cls, root=None, library_path=None) -> "RunnerPaths":
        """Library path: argument, else ``$FAST_LIBRARY_PATH``, else ``<root>/lib``."""
        root = Path(root).expanduser() if root is not None else DEFAULT_ROOT
        if library_path is None:
            library_path = os.environ.get(LIBRARY_ENV) or root / LIBRARY_SUBDIR
        return cls(root, Path(library_path).expanduser())


class ModelCatalog:
    """
    Models available under a models folder.

    All access goes through one lock, so runs started from worker threads
    can import models while others read the catalog.
    """

    def __init__(self, models_root):
        self.models_root = Path(models_root)
        self._lock = threading.Lock()
        self._models: Dict[str, RuntimeModel] = {}

    def load_all(self) -> List[str]:
        if not self.models_root.is_dir():
            logger.warning("Models folder %s does not exist", self.models_root)
            return []
        names = sorted(p.name for p in self.models_root.iterdir() if p.is_dir())
        for name in names:
            self.import_model(name)
        logger.info("Loaded %d models from %s", len(names), self.models_root)
        return names

    def import_model(self, name: str) -> RuntimeModel:
        """Load a model folder once; later calls return the loaded entry."""
        with self._lock:
            if name not in self._models:
                self._models[name] = RuntimeModel(self.models_root, name)
            return self._models[name]

    def get(self, name: str) -> RuntimeModel:
        with self._lock:
            return self._models[name]

    def names(self) -> List[str]:
        with self._lock:
            return list(self._models)

    def clear(self):
        with self._lock:
            self._models.clear()

    def __contains__(self, name) -> bool:
        with self._lock:
            return name in self._models

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)


@dataclass
class RunOutcome:
    """
    Result of :meth:`ProcessManager.run_process`.

    ``status`` is ``"done"``, ``"skipped"`` (already registered),
    ``"failed"`` (``error`` holds the message) or ``"submitted"``
    (background run; ``signals`` carries the task signals).
    """

    process_name: str
    status: str
    outputs: Dict[str, object] = field(default_factory=dict)
    renderers: Dict[str, object] = field(default_factory=dict)
    selection: Optional[EngineSelection] = None
    error: Optional[str] = None
    signals: object = None

    @property
    def ok(self) -> bool:
        return self.status in ("done", "skipped", "submitted")


class ProcessManager:
    """
    Model catalog, installed backends and run orchestration.

    Parameters
    ----------
    root : str or Path, optional
        Application root, default ``~/fastpathology``; models are read from
        ``<root>/data/Models``
    library_path : str or Path, optional
        Folder with the engine libraries (see :class:`RunnerPaths`)
    kernel : str, optional
        Kernel family for backend discovery; defaults to the host's
    runtime_factory : callable, optional
        Runtime factory handed to every network

    Attributes
    ----------
    paths : RunnerPaths
    backends : set of str
        Installed backends; changes only through :meth:`refresh_backends`
    catalog : ModelCatalog
    """

    def __init__(self, root=None, library_path=None, kernel: Optional[str] = None,
                 runtime_factory: Optional[Callable] = None):
        self.paths = RunnerPaths.resolve(root, library_path)
        self.kernel = kernel
        self.runtime_factory = runtime_factory
        self.backends = discover_backends(self.paths.library, kernel)
        self.catalog = ModelCatalog(self.paths.models)
        self.catalog.load_all()
        self._advanced_mode = False

    @property
    def advanced_mode(self) -> bool:
        return self._advanced_mode

    @advanced_mode.setter
    def advanced_mode(self, value: bool):
        self._advanced_mode = bool(value)

    def refresh_backends(self):
        self.backends = discover_backends(self.paths.library, self.kernel)
        return self.backends

    def assembler(self) -> PipelineAssembler:
        return PipelineAssembler(self.backends, self.runtime_factory)

    def _model(self, name: str, overrides: Optional[Mapping[str, str]]) -> RuntimeModel:
        if name not in self.catalog and not (self.paths.models / name).is_dir():
            raise ConfigurationError(f"Unknown model {name!r} (no folder in {self.paths.models})")
        model = self.catalog.import_model(name)
        if overrides:
            if self._advanced_mode:
                logger.info("Advanced mode: overriding %s for model %s", sorted(overrides), name)
                model = model.with_overrides(overrides)
            else:
                logger.warning("Metadata overrides for %s ignored outside advanced mode", name)
        return model

    def select_optimal_inference_engine(self, model_name: str) -> Optional[EngineSelection]:
        """Engine selection for a model, or ``None`` when it cannot be resolved."""
        try:
            model = self._model(model_name, None)
            return select_engine(model.config(), model.formats(), self.backends)
        except RunnerError as e:
            logger.warning("No inference engine for %s: %s", model_name, e)
            return None

    def _run_tissue(self, image, overrides) -> RunOutcome:
        if image.has_pipeline(TISSUE_PROCESS):
            return RunOutcome(TISSUE_PROCESS, "skipped")
        params = dict(threshold=DEFAULT_THRESHOLD, dilate=DEFAULT_DILATE, erode=DEFAULT_ERODE)
        if overrides and self._advanced_mode:
            params.update({k: int(v) for k, v in overrides.items() if k in params})
        mask = TissueSegmentation(**params).run(image.pyramid)
        renderer = SegmentationRenderer(colors={1: TISSUE_COLOR}, opacity=LOW_RES_SEGMENTATION_OPACITY)
        renderer.set_input(mask)
        image.tissue_mask = mask
        image.insert_renderer(TISSUE_PROCESS, renderer)
        return RunOutcome(TISSUE_PROCESS, "done", {TISSUE_PROCESS: mask}, {TISSUE_PROCESS: renderer})

    def _run_model(self, image, name, overrides, progress) -> RunOutcome:
        model = self._model(name, overrides)
        with self.assembler().assemble(model, image, model.config()) as handle:
            if handle.status == "skipped":
                return RunOutcome(name, "skipped")
            outputs = handle.execute(progress=progress)
            return RunOutcome(
                name,
                "done",
                outputs,
                {out: handle.renderer for out in outputs},
                handle.graph.selection,
            )

    def _run(self, image, process_name, overrides=None, progress=False) -> RunOutcome:
        try:
            if process_name == TISSUE_PROCESS:
                return self._run_tissue(image, overrides)
            return self._run_model(image, process_name, overrides, progress)
        except RunnerError as e:
            logger.error("Run of %s on %s failed: %s", process_name, image.filename, e)
            return RunOutcome(process_name, "failed", error=str(e))
        except Exception as e:
            logger.exception("Unexpected failure running %s on %s", process_name, image.filename)
            return RunOutcome(process_name, "failed", error=f"{type(e).__name__}: {e}")

    def run_process(self, image, process_name: str, overrides: Optional[Mapping[str, str]] = None,
                    background: bool = False, progress: bool = False,
                    on_finished: Optional[Callable] = None) -> RunOutcome:
        """
        Run a model (or the ``"tissue"`` process) on a slide.

        Parameters
        ----------
        image : WholeSlideImage
            Target slide
        process_name : str
            Model name in the catalog, or ``"tissue"``
        overrides : mapping, optional
            Metadata overrides; honoured only in advanced mode
        background : bool, default=False
            Submit to the Qt thread pool and return immediately
        progress : bool, default=False
            Show a tqdm progress bar over patches
        on_finished : callable, optional
            Receives the :class:`RunOutcome` of a background run

        Returns
        -------
        RunOutcome
        """
        if background:
            from wsi_runner.core.tasks import submit

            signals = submit(self._run, image, process_name, overrides, progress, on_finished=on_finished)
            return RunOutcome(process_name, "submitted", signals=signals)
        return self._run(image, process_name, overrides, progress)

    def close(self):
        self.catalog.clear()
        self.backends = set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
