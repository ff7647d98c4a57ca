"""
Domain models for the chunked upload engine.
"""

from .cancellation import CancellationToken
from .events import Event, EventPriority, UploadEvents
from .upload import (
    DEFAULT_CHUNK_SIZE, ChunkDescriptor, ChunkState, PersistedRecord,
    UploadSnapshot, UploadStatus, can_transition, partition, total_chunks,
    uploaded_bytes_for
)

__all__ = [
    "CancellationToken",
    "Event",
    "EventPriority",
    "UploadEvents",
    "DEFAULT_CHUNK_SIZE",
    "ChunkDescriptor",
    "ChunkState",
    "PersistedRecord",
    "UploadSnapshot",
    "UploadStatus",
    "can_transition",
    "partition",
    "total_chunks",
    "uploaded_bytes_for",
]
