#!/usr/bin/env python
"""
wsi_runner command line entry point.

Lists installed backends and models, runs models on slides inside a project
and stores their results.

Examples
--------
    python apps/run_app.py backends
    python apps/run_app.py models
    python apps/run_app.py run slide.svs tumor_seg tissue --project ~/projects/lung
    python apps/run_app.py results ~/projects/lung
"""

import argparse
import logging
import sys

from wsi_runner.core.process_manager import ProcessManager
from wsi_runner.core.project import Project
from wsi_runner.models.model_util import list_available_models

logger = logging.getLogger("wsi_runner.app")


def _parse_overrides(items):
    overrides = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"Override must be key=value, got {item!r}")
        overrides[key] = value
    return overrides


def cmd_backends(args, manager):
    print(f"Library path: {manager.paths.library}")
    for name in sorted(manager.backends) or ["(none)"]:
        print(f"  {name}")
    return 0


def cmd_models(args, manager):
    models = list_available_models(manager.paths.models)
    if not models:
        print(f"No models in {manager.paths.models}")
        return 0
    for name, info in models.items():
        selection = manager.select_optimal_inference_engine(name)
        engine = f"{selection.backend.value}/{selection.format}" if selection else "-"
        print(f"{name:30s} {info['problem']:18s} {info['resolution']:5s} {engine:16s} {info['formats']}")
    return 0


def cmd_run(args, manager):
    manager.advanced_mode = args.advanced
    overrides = _parse_overrides(args.set)
    project = Project(args.project)
    failures = 0
    try:
        if args.project:
            project.load_project()
        uid = project.include_image(args.slide)
        image = project.get_image(uid)
        for name in args.processes:
            outcome = manager.run_process(image, name, overrides=overrides, progress=not args.quiet)
            if not outcome.ok:
                failures += 1
                print(f"{name}: failed ({outcome.error})")
                continue
            print(f"{name}: {outcome.status}")
            if outcome.status == "done" and outcome.outputs:
                project.save_results(uid, name, outcome.outputs, outcome.renderers)
        if args.project:
            project.save_project()
    finally:
        project.close()
    return 1 if failures else 0


def cmd_results(args, manager):
    project = Project(args.project)
    try:
        for uid in project.load_project():
            loaded = project.load_results(uid)
            print(f"{uid}: {', '.join(r.key for r in loaded) or '(no results)'}")
            for path, message in project.results.errors:
                print(f"  failed: {path} ({message})")
    finally:
        project.close()
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Run deep-learning models on whole-slide images")
    parser.add_argument("--root", default=None, help="Application root (default ~/fastpathology)")
    parser.add_argument("--library-path", default=None, help="Folder with the inference engine libraries")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("backends", help="List installed inference backends").set_defaults(func=cmd_backends)
    sub.add_parser("models", help="List models and their selected engine").set_defaults(func=cmd_models)

    run = sub.add_parser("run", help="Run models on a slide")
    run.add_argument("slide", help="Whole-slide image file")
    run.add_argument("processes", nargs="+", help="Model names, or 'tissue'")
    run.add_argument("--project", default=None, help="Project folder (temporary if omitted)")
    run.add_argument("--advanced", action="store_true", help="Allow metadata overrides")
    run.add_argument("--set", action="append", metavar="KEY=VALUE", help="Metadata override (advanced mode)")
    run.add_argument("-q", "--quiet", action="store_true", help="No progress bars")
    run.set_defaults(func=cmd_run)

    results = sub.add_parser("results", help="List stored results of a project")
    results.add_argument("project", help="Project folder")
    results.set_defaults(func=cmd_results)
    return parser


def main(argv=None):
    """
    Parse arguments and dispatch to a sub-command.

    Returns
    -------
    int
        Exit code (0 for success)
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with ProcessManager(root=args.root, library_path=args.library_path) as manager:
        return args.func(args, manager)


if __name__ == "__main__":
    sys.exit(main())
