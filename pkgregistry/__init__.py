"""Minimal package registry: versioned zip archives with integrity tracking."""

__version__ = "1.0.0"
