"""
Upload services: chunk transport, progress tracking and the upload session.
"""

from .progress import ProgressTracker
from .session import UploadSession
from .transport import ChunkTransport, compute_backoff_delay

__all__ = [
    "ChunkTransport",
    "ProgressTracker",
    "UploadSession",
    "compute_backoff_delay",
]
