"""
Core Orchestration for wsi_runner
=================================

- **Backend registry** (``backends``): installed engines, model formats
- **Engine resolver** (``engine_resolver``): one (backend, format) per run
- **Pipeline assembler** (``assembler``): graph per (problem, resolution)
- **Result store** (``results``): payload and renderer persistence
- **Process manager** (``process_manager``): catalog and run error boundary
- **Project** (``project``): slides, manifest, thumbnails
- **Background tasks** (``tasks``): Qt thread pool wrapper
- **Image I/O** (``image_io``): pyramids and payload containers
- **Errors** (``errors``): exception hierarchy

Submodules are imported directly (``from wsi_runner.core.assembler import
PipelineAssembler``); this package does not re-export them because the
processing modules depend on ``image_io`` and ``errors`` from here.
"""

__all__ = []
