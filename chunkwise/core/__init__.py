"""
Core module containing the upload domain models, error taxonomy and service
interfaces, independent of HTTP and storage concerns.
"""

from .domain.cancellation import CancellationToken
from .domain.events import Event, EventPriority, UploadEvents
from .domain.upload import PersistedRecord, UploadSnapshot, UploadStatus
from .interfaces.messaging import IEventBus
from .interfaces.upload import IRecordStore, IUploadBackend, IUploadSession, IUploadSource

__all__ = [
    "CancellationToken",
    "Event",
    "EventPriority",
    "UploadEvents",
    "PersistedRecord",
    "UploadSnapshot",
    "UploadStatus",
    "IEventBus",
    "IRecordStore",
    "IUploadBackend",
    "IUploadSession",
    "IUploadSource",
]
