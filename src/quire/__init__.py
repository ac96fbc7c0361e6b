"""Quire - personal content site with a taxonomy-aware publishing pipeline."""

__version__ = "0.1.0"
