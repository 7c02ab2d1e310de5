"""
wsi_runner: Model Execution for Whole-Slide Images
==================================================

wsi_runner runs trained deep-learning models on whole-slide images (WSI).
For each (model, slide) pair it

1. picks an installed inference backend and a model file format it can
   consume,
2. assembles a processing graph suited to the model's problem type and
   resolution (tiling, optional tissue masking, inference, stitching or
   box decoding),
3. stores and reloads the outputs per slide, per model.

Quick Start
-----------
>>> from wsi_runner.core.process_manager import ProcessManager
>>> from wsi_runner.core.project import Project
>>>
>>> manager = ProcessManager(root="~/fastpathology")
>>> project = Project("~/projects/lung")
>>> uid = project.include_image("/data/slides/A1.svs")
>>> outcome = manager.run_process(project.get_image(uid), "tumor_seg", progress=True)
>>> if outcome.ok:
...     project.save_results(uid, "tumor_seg", outcome.outputs, outcome.renderers)

Main Modules
------------
core
    Backend discovery, engine resolution, assembly, results, projects
models
    Model metadata, typed configuration and network execution
processing
    Tiling, stitching, tissue segmentation, detection post-processing
ui
    Renderers: display state and numpy overlays of results

See Also
--------
apps.run_app : Command line entry point
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
