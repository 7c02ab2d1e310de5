"""
Project Management
==================

A project is a folder that groups slides with their stored results::

    <project>/
        project.txt        one "<uid>,<filepath>" line per slide
        pipelines/
        results/           see wsi_runner.core.results
        thumbnails/        <uid>.png

Slides are identified by a uid derived from their file name. A project
created without a folder lives in a temporary ``project_<8 digits>`` folder
that is deleted when the project is closed.

Functions
---------
read_project_file
    Load ``project.txt`` as a DataFrame
write_project_file
    Write the uid/path table to ``project.txt``

Classes
-------
Project
    Slides, manifest and result persistence

Examples
--------
>>> project = Project("/data/projects/breast")
>>> uid = project.include_image("/data/slides/A1.svs")
>>> project.save_project()
>>> project.load_results(uid)  # doctest: +SKIP
"""

import logging
import random
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd
from PIL import Image

from wsi_runner.core.image_io import WholeSlideImage
from wsi_runner.core.process_manager import TISSUE_PROCESS
from wsi_runner.core.results import LoadedResult, ResultStore

logger = logging.getLogger(__name__)

PROJECT_FILE = "project.txt"
SUBFOLDERS = ("pipelines", "results", "thumbnails")
MANIFEST_COLUMNS = ["uid", "path"]


def read_project_file(path: Path) -> pd.DataFrame:
    """
    Read ``project.txt``.

    The first comma on a line separates uid and path; any further commas
    belong to the path. Lines without a comma are skipped with a warning.

    Returns
    -------
    pd.DataFrame
        Columns ``uid`` and ``path``; empty when the file does not exist
    """
    path = Path(path)
    if not path.exists():
        return pd.DataFrame(columns=MANIFEST_COLUMNS)
    lines = pd.Series(path.read_text().splitlines(), dtype=object)
    lines = lines[lines.str.strip() != ""]
    valid = lines.str.contains(",", regex=False)
    for line in lines[~valid]:
        logger.warning("Skipping malformed line in %s: %r", path, line)
    lines = lines[valid]
    if lines.empty:
        return pd.DataFrame(columns=MANIFEST_COLUMNS)
    df = lines.str.split(",", n=1, expand=True)
    df.columns = MANIFEST_COLUMNS
    return df.reset_index(drop=True)


def write_project_file(path: Path, df: pd.DataFrame) -> None:
    lines = df["uid"].astype(str) + "," + df["path"].astype(str)
    Path(path).write_text("".join(line + "\n" for line in lines))


class Project:
    """
    Slides and results of one analysis project.

    Parameters
    ----------
    root_folder : str or Path, optional
        Project folder; a temporary folder is created when omitted

    Attributes
    ----------
    root : Path
        Project folder
    images : dict
        uid -> :class:`WholeSlideImage`, in inclusion order
    results : ResultStore
        Store over ``<root>/results``
    """

    def __init__(self, root_folder=None):
        self._temporary = root_folder is None
        if self._temporary:
            suffix = "".join(random.choice("0123456789") for _ in range(8))
            root_folder = Path(tempfile.gettempdir()) / f"project_{suffix}"
        self.root = Path(root_folder).expanduser()
        for name in SUBFOLDERS:
            (self.root / name).mkdir(parents=True, exist_ok=True)
        self.images: Dict[str, WholeSlideImage] = {}
        self.results = ResultStore(self.root / "results")
        logger.info("Project folder: %s", self.root)

    @property
    def uids(self) -> List[str]:
        return list(self.images)

    @property
    def thumbnails_folder(self) -> Path:
        return self.root / "thumbnails"

    def _unique_uid(self, stem: str) -> str:
        uid = stem
        while uid in self.images:
            uid = f"{stem}#{random.randrange(10000)}"
        return uid

    def include_image(self, path, pyramid=None) -> str:
        """
        Add a slide and return its uid.

        The uid is the file stem; when it is taken, ``#<n>`` with a random
        ``n`` below 10000 is appended until it is unique.
        """
        uid = self._unique_uid(Path(path).stem)
        self.images[uid] = WholeSlideImage(path, pyramid=pyramid)
        logger.info("Included %s as %s", path, uid)
        return uid

    def include_image_from_project(self, uid: str, path, pyramid=None) -> WholeSlideImage:
        thumbnail = None
        thumb_path = self.thumbnails_folder / f"{uid}.png"
        if thumb_path.is_file():
            with Image.open(thumb_path) as img:
                thumbnail = img.copy()
        image = WholeSlideImage(path, pyramid=pyramid, thumbnail=thumbnail)
        self.images[uid] = image
        return image

    def remove_image(self, uid: str):
        image = self.images.pop(uid)
        image.close()

    def get_image(self, key: Union[str, int]) -> WholeSlideImage:
        """Slide by uid (``KeyError``) or by inclusion index (``IndexError``)."""
        if isinstance(key, int):
            return list(self.images.values())[key]
        return self.images[key]

    def empty_project(self):
        for image in self.images.values():
            image.close()
        self.images.clear()

    def save_project(self, thumbnail_size=(512, 512)):
        df = pd.DataFrame(
            [(uid, image.filename) for uid, image in self.images.items()],
            columns=MANIFEST_COLUMNS,
        )
        write_project_file(self.root / PROJECT_FILE, df)
        for uid, image in self.images.items():
            thumb_path = self.thumbnails_folder / f"{uid}.png"
            if not thumb_path.exists():
                image.get_thumbnail(thumbnail_size).save(thumb_path)
        logger.info("Saved project with %d images to %s", len(df), self.root)

    def load_project(self) -> List[str]:
        """Include every slide listed in ``project.txt``; returns their uids."""
        df = read_project_file(self.root / PROJECT_FILE)
        for row in df.itertuples(index=False):
            self.include_image_from_project(row.uid, row.path)
        return list(df["uid"])

    def save_results(self, uid: str, pipeline_name: str, outputs, renderers=None):
        if uid not in self.images:
            raise KeyError(uid)
        return self.results.save(uid, pipeline_name, outputs, renderers)

    def load_results(self, uid: str) -> List[LoadedResult]:
        """
        Reload stored results of a slide and register their renderers.

        Renderers are registered under ``<pipeline>/<output>``; a key that
        is already registered is left as it is. A reloaded ``tissue`` mask
        becomes the slide's tissue mask again.
        """
        image = self.images[uid]
        loaded = self.results.load(uid)
        for result in loaded:
            image.insert_renderer(result.key, result.renderer)
            if result.pipeline == TISSUE_PROCESS and image.tissue_mask is None:
                image.tissue_mask = result.payload
        return loaded

    def close(self):
        self.empty_project()
        if self._temporary:
            shutil.rmtree(self.root, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
