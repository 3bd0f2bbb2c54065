"""Switchback - one conversation loop over many LLM backends."""

__version__ = "0.1.0"

from switchback.config import Config

__all__ = ["Config", "__version__"]
