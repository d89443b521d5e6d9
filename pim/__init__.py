"""Supplier catalog ingestion and quality pipeline."""

__version__ = "0.3.0"
