from flows.registry import FlowRegistry
from flows.render import render_message, extract_variables, missing_variables

__all__ = ["FlowRegistry", "render_message", "extract_variables", "missing_variables"]
