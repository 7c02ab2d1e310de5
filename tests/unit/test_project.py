"""
Unit tests for project folders and the project.txt manifest.

Usage:
    pytest tests/unit/test_project.py -v
"""

import numpy as np
import pytest

from wsi_runner.core.image_io import ArrayPyramid
from wsi_runner.core.project import PROJECT_FILE, Project, read_project_file
from wsi_runner.ui.renderers import SegmentationRenderer


def small_pyramid():
    return ArrayPyramid.from_array(np.full((64, 64, 3), 200, dtype=np.uint8), n_levels=2)


class TestProjectFolder:
    """Folder layout."""

    def test_temporary_project(self):
        project = Project()
        root = project.root
        assert root.name.startswith("project_")
        assert len(root.name) == len("project_") + 8
        for name in ("pipelines", "results", "thumbnails"):
            assert (root / name).is_dir()
        project.close()
        assert not root.exists()

    def test_named_project_kept(self, tmp_path):
        with Project(tmp_path / "p") as project:
            pass
        assert project.root.is_dir()


class TestImages:
    """Inclusion and lookup."""

    def test_uid_is_stem(self, tmp_path):
        project = Project(tmp_path)
        assert project.include_image("/slides/A1.svs", pyramid=small_pyramid()) == "A1"

    def test_uid_collision(self, tmp_path):
        project = Project(tmp_path)
        first = project.include_image("/slides/A1.svs")
        second = project.include_image("/other/A1.tiff")
        assert first == "A1"
        assert second.startswith("A1#")
        assert 0 <= int(second.split("#")[1]) < 10000
        assert project.uids == [first, second]

    def test_get_image(self, tmp_path):
        project = Project(tmp_path)
        project.include_image("/slides/A1.svs")
        assert project.get_image(0) is project.get_image("A1")
        with pytest.raises(KeyError):
            project.get_image("B2")
        with pytest.raises(IndexError):
            project.get_image(3)

    def test_remove_and_empty(self, tmp_path):
        project = Project(tmp_path)
        project.include_image("/slides/A1.svs")
        project.include_image("/slides/A2.svs")
        project.remove_image("A1")
        assert project.uids == ["A2"]
        project.empty_project()
        assert project.uids == []


class TestManifest:
    """project.txt save/load."""

    def test_round_trip(self, tmp_path):
        project = Project(tmp_path)
        project.include_image("/slides/A1.svs", pyramid=small_pyramid())
        project.include_image("/slides/with,comma/B2.ndpi", pyramid=small_pyramid())
        project.save_project()
        assert (tmp_path / "thumbnails" / "A1.png").is_file()

        reloaded = Project(tmp_path)
        assert reloaded.load_project() == ["A1", "B2"]
        assert reloaded.get_image("B2").filename == "/slides/with,comma/B2.ndpi"
        assert reloaded.get_image("A1").get_thumbnail().size[0] > 0

    def test_first_comma_separates(self, tmp_path):
        (tmp_path / PROJECT_FILE).write_text("A1,/data/a,b/A1.svs\nB2,/data/B2.svs\n")
        df = read_project_file(tmp_path / PROJECT_FILE)
        assert list(df["uid"]) == ["A1", "B2"]
        assert list(df["path"]) == ["/data/a,b/A1.svs", "/data/B2.svs"]

    def test_missing_manifest(self, tmp_path):
        assert Project(tmp_path).load_project() == []


def test_results_registered_under_pipeline_and_output(tmp_path):
    project = Project(tmp_path)
    uid = project.include_image("/slides/A1.svs", pyramid=small_pyramid())
    labels = ArrayPyramid.from_array(np.ones((64, 64), dtype=np.uint8), n_levels=2, nearest=True)
    project.save_results(uid, "seg", {"segmentation": labels}, {"segmentation": SegmentationRenderer(opacity=0.3)})
    loaded = project.load_results(uid)
    assert [r.key for r in loaded] == ["seg/segmentation"]
    renderer = project.get_image(uid).renderers["seg/segmentation"]
    assert renderer.opacity == 0.3


def test_save_results_unknown_uid(tmp_path):
    with pytest.raises(KeyError):
        Project(tmp_path).save_results("nope", "seg", {})
