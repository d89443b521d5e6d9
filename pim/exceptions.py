"""Errors raised by the catalog pipeline.

Only run-fatal conditions are exceptions. Per-record problems are counted and
logged by the importer and never leave the batch that produced them.
"""
from typing import Optional


class PimError(Exception):
    """Base class for catalog pipeline errors."""


class FeedParseError(PimError):
    """Feed is not valid JSON or lacks a usable ``products`` object."""


class UnsupportedFeedFormat(PimError):
    """Feed was declared in a format the importer does not read."""

    def __init__(self, fmt: str):
        self.format = fmt
        super().__init__(f"Unsupported feed format: {fmt or 'unknown'}")


class ImportRunError(PimError):
    """The import-run record itself could not be written."""

    def __init__(self, message: str, import_id: Optional[int] = None):
        self.import_id = import_id
        super().__init__(message)
