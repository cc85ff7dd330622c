"""Imagine Studio — async media-generation job orchestration for the xAI API."""

__version__ = "1.0.0"
