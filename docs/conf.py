# Sphinx configuration for the wsi_runner API documentation.
#
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import sys
from pathlib import Path

# autodoc imports the package from the source tree
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wsi_runner import __version__  # noqa: E402

project = "wsi_runner"
copyright = "2025, wsi_runner developers"
author = "wsi_runner developers"
release = __version__

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",  # NumPy docstrings
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
]

templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "pydata_sphinx_theme"
html_theme_options = {
    "logo": {"text": "wsi_runner"},
    "show_nav_level": 2,
    "navigation_depth": 3,
}

# -- Napoleon ----------------------------------------------------------------

napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_rtype = True
napoleon_preprocess_types = True

# -- Autodoc -----------------------------------------------------------------

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "show-inheritance": True,
}
autodoc_typehints = "description"
autosummary_generate = True

# Optional runtimes are imported lazily; mock them for documentation builds
autodoc_mock_imports = ["openslide", "onnxruntime", "openvino", "tensorflow", "PySide6"]

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "pandas": ("https://pandas.pydata.org/docs/", None),
    "PIL": ("https://pillow.readthedocs.io/en/stable/", None),
    "torch": ("https://pytorch.org/docs/stable/", None),
    "h5py": ("https://docs.h5py.org/en/stable/", None),
}
