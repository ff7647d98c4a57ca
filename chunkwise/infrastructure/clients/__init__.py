"""
Network clients for the upload backend.
"""

from .http import HttpUploadBackend

__all__ = [
    "HttpUploadBackend",
]
