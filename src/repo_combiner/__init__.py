"""Combine a remote repository into a single LLM-friendly document."""

__version__ = "1.3.6"
