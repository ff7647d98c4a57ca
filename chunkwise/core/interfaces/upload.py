"""
Upload service interfaces.

This module defines the contracts between the upload session and its
collaborators: the durable record store, the HTTP backend that accepts
init/chunk/finalize requests, and the source the file bytes are read from.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.cancellation import CancellationToken
from ..domain.upload import ChunkState, PersistedRecord, UploadSnapshot


class IRecordStore(ABC):
    """
    Durable per-session record of delivered chunks.

    Implementations are best-effort: storage failures are logged and turned
    into no-ops (or an absent record) instead of failing the transfer.
    """

    @abstractmethod
    async def load(self, session_id: str) -> Optional[PersistedRecord]:
        """Load the record for ``session_id``, or None if absent or unreadable."""
        pass

    @abstractmethod
    async def save(self, record: PersistedRecord) -> None:
        """Store ``record``, replacing any previous record for its session."""
        pass

    @abstractmethod
    async def mark_chunk_uploaded(self, session_id: str, index: int) -> None:
        """
        Add ``index`` to the session's uploaded set.

        Idempotent; a session without a record is left untouched.
        """
        pass

    @abstractmethod
    async def clear(self, session_id: str) -> None:
        """Delete the record for ``session_id``."""
        pass

    @abstractmethod
    async def list_records(self) -> List[PersistedRecord]:
        """List every stored record."""
        pass

    @abstractmethod
    async def remember_last_session(self, session_id: str) -> None:
        """Remember the most recently initialized session id."""
        pass

    @abstractmethod
    async def last_session_id(self) -> Optional[str]:
        """Return the most recently initialized session id, if any."""
        pass


class IUploadBackend(ABC):
    """
    Server-side collaborator that receives chunks and assembles the file.

    Every call takes the run's cancellation token; implementations may use it
    to abort an in-flight request early.
    """

    @abstractmethod
    async def init_upload(self, filename: str, size: int,
                          token: Optional[CancellationToken] = None) -> str:
        """
        Allocate a fresh upload session.

        Returns:
            Server-assigned session id

        Raises:
            BackendResponseError: On a non-2xx response
        """
        pass

    @abstractmethod
    async def send_chunk(self, session_id: str, chunk_index: int, total_chunks: int,
                         data: bytes, token: Optional[CancellationToken] = None) -> None:
        """
        Deliver one chunk.

        Raises:
            BackendResponseError: On a non-2xx response
        """
        pass

    @abstractmethod
    async def finalize_upload(self, session_id: str,
                              token: Optional[CancellationToken] = None) -> None:
        """
        Ask the server to assemble every received chunk.

        Raises:
            BackendResponseError: On a non-2xx response
        """
        pass


class IUploadSource(ABC):
    """Random-access source of the bytes being uploaded."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def size(self) -> int:
        pass

    @abstractmethod
    async def read(self, start: int, end: int) -> bytes:
        """Read the half-open byte range ``[start, end)``."""
        pass


class IUploadSession(ABC):
    """Interface for a resumable chunked upload session."""

    @abstractmethod
    async def start(self, source: IUploadSource,
                    resume_session_id: Optional[str] = None) -> UploadSnapshot:
        """
        Run a transfer to completion, failure or cancellation.

        Returns:
            The final snapshot of the session
        """
        pass

    @abstractmethod
    def cancel(self) -> bool:
        """Signal cancellation of the running transfer."""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Cancel any running transfer, clear its durable record and return to idle."""
        pass

    @abstractmethod
    def snapshot(self) -> UploadSnapshot:
        """Get the caller-visible state of the session."""
        pass

    @abstractmethod
    def chunk_states(self) -> List[ChunkState]:
        """Get per-chunk bookkeeping for the current run."""
        pass
