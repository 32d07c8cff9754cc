"""
Template context and renderer for Blueprint arguments and artifacts.

::

    context = build_context(spec, config_maps=..., now=...)
    render("{{ .Object.Name }}", context)
"""

from kanopy.templates.context import TemplateContext, build_context
from kanopy.templates.renderer import Template, render, render_args

__all__ = ["Template", "TemplateContext", "build_context", "render", "render_args"]
