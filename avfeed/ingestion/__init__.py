"""
Document ingestion.
"""

from .driver import IngestionDriver, IngestionResult

__all__ = ["IngestionDriver", "IngestionResult"]
