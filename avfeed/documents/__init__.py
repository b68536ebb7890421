"""
Documents seeded into the feed container.
"""

from .models import Document
from .generator import DocumentGenerator

__all__ = [
    "Document",
    "DocumentGenerator",
]
