"""
Result Store
============

Persistence of pipeline outputs and their renderer settings.

Layout::

    <results_root>/<image_id>/<pipeline>/<output>/
        <output>.tiff | <output>.mhd + <output>.raw | <output>.hdf5
        attributes.txt

The payload container is chosen by payload kind (see
:mod:`wsi_runner.core.image_io`). ``attributes.txt`` holds one
``Attribute <name> <values...>`` line per renderer setting.

Saving
------
Each output directory is written into a hidden staging directory next to
its final location and renamed into place once complete, so an interrupted
save never leaves a partial output directory behind.

Loading
-------
Every output directory is an independent result set. A set that fails
(missing ``attributes.txt``, malformed line, unreadable payload) is logged
and skipped; the others still load.

Classes
-------
LoadedResult
    One reloaded output with its renderer
ResultStore
    Save/load under a results root
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Tuple

from wsi_runner.core.errors import ArtifactIOError, AttributeParseError, RunnerError
from wsi_runner.core.image_io import (
    IMAGE_EXTENSION,
    PYRAMID_EXTENSION,
    TENSOR_EXTENSION,
    payload_extension,
    read_payload,
    write_payload,
)
from wsi_runner.ui.renderers import (
    ATTRIBUTE_KEYWORD,
    HeatmapRenderer,
    ImagePyramidRenderer,
    Renderer,
    SegmentationRenderer,
)

logger = logging.getLogger(__name__)

ATTRIBUTES_FILE = "attributes.txt"

RENDERER_FOR_EXTENSION = {
    PYRAMID_EXTENSION: SegmentationRenderer,
    IMAGE_EXTENSION: SegmentationRenderer,
    TENSOR_EXTENSION: HeatmapRenderer,
}


@dataclass
class LoadedResult:
    image_id: str
    pipeline: str
    output: str
    path: Path
    payload: object
    renderer: Renderer

    @property
    def key(self) -> str:
        return f"{self.pipeline}/{self.output}"


def apply_attributes(renderer: Renderer, text: str):
    """
    Replay ``attributes.txt`` content onto ``renderer``.

    Lines are applied in file order, so later lines override earlier ones.
    An empty line, or one whose first token is not ``Attribute``, ends
    parsing.

    Raises
    ------
    AttributeParseError
        On a line with fewer than three tokens, an unknown attribute name or
        an unparsable value
    """
    for number, line in enumerate(text.splitlines(), start=1):
        tokens = line.split()
        if not tokens or tokens[0] != ATTRIBUTE_KEYWORD:
            break
        if len(tokens) < 3:
            raise AttributeParseError(f"Line {number}: expected 'Attribute <name> <values>', got {line!r}")
        renderer.set_attribute(tokens[1], tokens[2:])


class ResultStore:
    """
    Results of a project, one folder per image.

    Parameters
    ----------
    root : str or Path
        The project's ``results`` folder

    Attributes
    ----------
    errors : list of (Path, str)
        Result sets that failed during the last :meth:`load`
    """

    def __init__(self, root):
        self.root = Path(root)
        self.errors: List[Tuple[Path, str]] = []

    def output_dir(self, image_id: str, pipeline_name: str, output_name: str) -> Path:
        return self.root / image_id / pipeline_name / output_name

    def save(
        self,
        image_id: str,
        pipeline_name: str,
        outputs: Mapping[str, object],
        renderers: Mapping[str, Renderer] = None,
    ) -> List[Path]:
        """
        Save every output of one pipeline run.

        Parameters
        ----------
        image_id : str
            Image uid in the project
        pipeline_name : str
            Pipeline (model) name
        outputs : mapping
            Output name -> payload
        renderers : mapping, optional
            Output name -> renderer whose attributes are stored with it

        Returns
        -------
        list of Path
            Output directories written; unsupported payloads are skipped
        """
        renderers = renderers or {}
        written = []
        for output_name, payload in outputs.items():
            if payload_extension(payload) is None:
                logger.warning(
                    "Unsupported data to export for %s/%s: %s",
                    pipeline_name, output_name, type(payload).__name__,
                )
                continue
            final = self.output_dir(image_id, pipeline_name, output_name)
            final.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{output_name}.", dir=final.parent))
            try:
                write_payload(staging, output_name, payload)
                renderer = renderers.get(output_name)
                attributes = ""
                if renderer is not None and not isinstance(renderer, ImagePyramidRenderer):
                    attributes = renderer.attributes_to_string()
                (staging / ATTRIBUTES_FILE).write_text(attributes)
                if final.exists():
                    shutil.rmtree(final)
                staging.rename(final)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            logger.info("Saved result %s", final)
            written.append(final)
        return written

    def _load_output(self, image_id: str, pipeline: str, folder: Path) -> LoadedResult:
        payload_files = [
            p for p in sorted(folder.iterdir())
            if p.is_file() and p.suffix.lower() in RENDERER_FOR_EXTENSION
        ]
        if not payload_files:
            raise ArtifactIOError(f"No result payload in {folder}")
        payload_path = payload_files[0]
        renderer = RENDERER_FOR_EXTENSION[payload_path.suffix.lower()]()

        attributes = folder / ATTRIBUTES_FILE
        if not attributes.is_file():
            raise ArtifactIOError(f"Missing {ATTRIBUTES_FILE} in {folder}")
        try:
            payload = read_payload(payload_path)
        except (OSError, ValueError, KeyError) as e:
            raise ArtifactIOError(f"Cannot read {payload_path}: {e}") from e
        try:
            text = attributes.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ArtifactIOError(f"Cannot read {attributes}: {e}") from e
        apply_attributes(renderer, text)
        renderer.set_input(payload)
        return LoadedResult(image_id, pipeline, folder.name, folder, payload, renderer)

    def load(self, image_id: str) -> List[LoadedResult]:
        """
        Load every stored result set of an image.

        Returns
        -------
        list of LoadedResult
            Sets that loaded; failures are logged and listed in
            :attr:`errors`
        """
        self.errors = []
        image_dir = self.root / image_id
        if not image_dir.is_dir():
            return []
        loaded = []
        for pipeline_dir in sorted(p for p in image_dir.iterdir() if p.is_dir()):
            for output_dir in sorted(p for p in pipeline_dir.iterdir() if p.is_dir()):
                if output_dir.name.startswith("."):
                    continue
                try:
                    loaded.append(self._load_output(image_id, pipeline_dir.name, output_dir))
                except RunnerError as e:
                    logger.error("Failed to load result %s: %s", output_dir, e)
                    self.errors.append((output_dir, str(e)))
        return loaded
