"""
Chunkwise - resumable chunked file uploads over HTTP.

This package splits a file into fixed-size chunks, sends them sequentially
with bounded retry and exponential backoff, records delivered chunks durably
so an interrupted transfer can be resumed, and finalizes the upload once
every chunk has arrived.
"""

__version__ = "0.1.0"

# Public API exports
from .core.domain.cancellation import CancellationToken
from .core.domain.events import Event, UploadEvents
from .core.domain.upload import PersistedRecord, UploadSnapshot, UploadStatus
from .core.exceptions import ChunkwiseError, UploadCanceled
from .application.startup import ApplicationStartup
from .infrastructure.clients.http import HttpUploadBackend
from .infrastructure.services.upload.session import UploadSession
from .infrastructure.sources import BytesSource, FileSource
from .infrastructure.storage.records import FileRecordStore, InMemoryRecordStore

__all__ = [
    "CancellationToken",
    "Event",
    "UploadEvents",
    "PersistedRecord",
    "UploadSnapshot",
    "UploadStatus",
    "ChunkwiseError",
    "UploadCanceled",
    "ApplicationStartup",
    "HttpUploadBackend",
    "UploadSession",
    "BytesSource",
    "FileSource",
    "FileRecordStore",
    "InMemoryRecordStore",
]
