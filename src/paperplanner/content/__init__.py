"""Bundled section registry content."""
