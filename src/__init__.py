# src/__init__.py — v1
"""stagegate: quality-gated step orchestration for generative image pipelines."""

from stagegate.version import __version__

__all__ = ["__version__"]
