"""Registered functions exposed to the assistant and to workflows."""

from sashi.tools.base import FunctionDefinition, ai_function
from sashi.tools.registry import FunctionRegistry

__all__ = ["FunctionDefinition", "FunctionRegistry", "ai_function"]
