"""Tiered conversation context engine with world book sync."""

from .engine import build_controller, create_summarizer, create_worldbook

__version__ = "0.1.0"

__all__ = ["build_controller", "create_summarizer", "create_worldbook"]
