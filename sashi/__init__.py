"""Function-calling chat and workflow execution service."""

__version__ = "0.1.0"
