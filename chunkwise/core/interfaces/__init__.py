"""
Core interfaces defining the contracts between the upload session and its
collaborators.
"""

from .lifecycle import IComponent, IHealthCheckable, IStartable, IStoppable
from .messaging import IEventBus
from .upload import IRecordStore, IUploadBackend, IUploadSession, IUploadSource

__all__ = [
    "IComponent",
    "IHealthCheckable",
    "IStartable",
    "IStoppable",
    "IEventBus",
    "IRecordStore",
    "IUploadBackend",
    "IUploadSession",
    "IUploadSource",
]
