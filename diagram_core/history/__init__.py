"""Diagram version history (linear undo stack with redo tail)."""

from .version_history import DiagramVersionHistory, VersionResult, normalize_cursor

__all__ = ["DiagramVersionHistory", "VersionResult", "normalize_cursor"]
