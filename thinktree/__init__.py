"""Thinktree - interactive thinking sessions over a tree of thoughts."""

__version__ = "0.1.0"
