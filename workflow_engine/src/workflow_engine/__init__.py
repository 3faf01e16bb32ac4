"""Workflow execution engine: dependency-ordered task dispatch to AI model providers."""

__version__ = "0.1.0"
