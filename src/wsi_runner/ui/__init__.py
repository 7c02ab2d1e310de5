"""
Result Display State
====================

Renderers hold how a result is shown (colors, opacities, names) and can
compose it over an RGB view of the slide with numpy. No widgets are built
here.

See Also
--------
wsi_runner.core.results : Persists renderer attributes
"""

__all__ = []
