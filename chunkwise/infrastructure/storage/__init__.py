"""
Durable record storage for resumable uploads.
"""

from .records import BaseRecordStore, FileRecordStore, InMemoryRecordStore

__all__ = [
    "BaseRecordStore",
    "FileRecordStore",
    "InMemoryRecordStore",
]
