"""Scopostay billing control plane (FastAPI)."""

__version__ = "0.4.0"
