"""
Upload domain models.

This module defines the upload state machine, chunk partitioning arithmetic,
the durable chunk-completion record and the read-only snapshot handed to
callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB


class UploadStatus(str, Enum):
    """Upload session status."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    CANCELED = "canceled"


TERMINAL_STATES: FrozenSet[UploadStatus] = frozenset({
    UploadStatus.DONE,
    UploadStatus.ERROR,
    UploadStatus.CANCELED,
})

ACTIVE_STATES: FrozenSet[UploadStatus] = frozenset({
    UploadStatus.INITIALIZING,
    UploadStatus.UPLOADING,
    UploadStatus.RETRYING,
    UploadStatus.FINALIZING,
})

# reset() may move any state back to IDLE; it is handled in can_transition.
ALLOWED_TRANSITIONS: Mapping[UploadStatus, FrozenSet[UploadStatus]] = {
    UploadStatus.IDLE: frozenset({UploadStatus.INITIALIZING}),
    UploadStatus.INITIALIZING: frozenset({
        UploadStatus.UPLOADING,
        UploadStatus.ERROR,
        UploadStatus.CANCELED,
    }),
    UploadStatus.UPLOADING: frozenset({
        UploadStatus.RETRYING,
        UploadStatus.FINALIZING,
        UploadStatus.ERROR,
        UploadStatus.CANCELED,
    }),
    UploadStatus.RETRYING: frozenset({
        UploadStatus.UPLOADING,
        UploadStatus.ERROR,
        UploadStatus.CANCELED,
    }),
    UploadStatus.FINALIZING: frozenset({
        UploadStatus.DONE,
        UploadStatus.ERROR,
        UploadStatus.CANCELED,
    }),
    UploadStatus.DONE: frozenset({UploadStatus.INITIALIZING}),
    UploadStatus.ERROR: frozenset({UploadStatus.INITIALIZING}),
    UploadStatus.CANCELED: frozenset({UploadStatus.INITIALIZING}),
}


def can_transition(current: UploadStatus, target: UploadStatus) -> bool:
    """Check whether the state machine allows ``current -> target``."""
    if target == UploadStatus.IDLE:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def total_chunks(file_size: int, chunk_size: int) -> int:
    """Number of chunks needed to cover ``file_size`` bytes."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if file_size < 0:
        raise ValueError(f"file_size cannot be negative, got {file_size}")
    return -(-file_size // chunk_size)


@dataclass(frozen=True)
class ChunkDescriptor:
    """Half-open byte range ``[start, end)`` of one chunk."""
    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    @classmethod
    def for_index(cls, index: int, file_size: int, chunk_size: int) -> 'ChunkDescriptor':
        count = total_chunks(file_size, chunk_size)
        if not 0 <= index < count:
            raise IndexError(f"chunk index {index} out of range 0..{count - 1}")
        start = index * chunk_size
        return cls(index=index, start=start, end=min(start + chunk_size, file_size))


def partition(file_size: int, chunk_size: int) -> List[ChunkDescriptor]:
    """Split ``[0, file_size)`` into consecutive chunk descriptors."""
    return [
        ChunkDescriptor.for_index(index, file_size, chunk_size)
        for index in range(total_chunks(file_size, chunk_size))
    ]


def uploaded_bytes_for(indices: Iterable[int], file_size: int, chunk_size: int) -> int:
    """
    Sum the byte lengths of the chunks in ``indices``.

    Indices outside the file's chunk range are ignored, so the result never
    exceeds ``file_size``.
    """
    count = total_chunks(file_size, chunk_size)
    return sum(
        ChunkDescriptor.for_index(index, file_size, chunk_size).size
        for index in set(indices)
        if 0 <= index < count
    )


class PersistedRecord(BaseModel):
    """Durable record of the chunks a session has delivered."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
    file_size: int = Field(..., alias="fileSize", ge=0)
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0)
    uploaded_chunk_indices: Tuple[int, ...] = Field(
        default=(), alias="uploadedChunkIndices"
    )

    @field_validator('uploaded_chunk_indices', mode='before')
    @classmethod
    def _normalize_indices(cls, value: Any) -> Tuple[int, ...]:
        if value is None:
            return ()
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError(f"chunk indices must be a list, got {type(value).__name__}")
        if any(isinstance(index, bool) or not isinstance(index, int) for index in value):
            raise ValueError("chunk indices must be integers")

        indices = sorted(set(value))
        if indices and indices[0] < 0:
            raise ValueError("chunk indices cannot be negative")
        return tuple(indices)

    def matches(self, file_size: int, chunk_size: int) -> bool:
        """Whether the recorded indices describe ``file_size`` split at ``chunk_size``."""
        return self.file_size == file_size and self.chunk_size == chunk_size

    def with_chunk(self, index: int) -> 'PersistedRecord':
        """Return a copy with ``index`` marked as uploaded."""
        if index in self.uploaded_chunk_indices:
            return self
        return self.model_copy(update={
            'uploaded_chunk_indices': tuple(sorted((*self.uploaded_chunk_indices, index)))
        })

    def to_wire(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'fileSize': self.file_size,
            'chunkSize': self.chunk_size,
            'uploadedChunkIndices': list(self.uploaded_chunk_indices),
        }


@dataclass
class ChunkState:
    """Per-chunk bookkeeping kept by a running session."""
    index: int
    size: int
    uploaded: bool = False
    retry_count: int = 0


@dataclass(frozen=True)
class UploadSnapshot:
    """Caller-visible view of an upload session."""
    status: UploadStatus = UploadStatus.IDLE
    progress: float = 0.0
    error: Optional[str] = None
    session_id: Optional[str] = None
    uploaded_bytes: int = 0
    total_bytes: int = 0
    total_chunks: int = 0
    failed_chunks: Tuple[int, ...] = field(default_factory=tuple)
    current_chunk: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'progress': self.progress,
            'error': self.error,
            'session_id': self.session_id,
            'uploaded_bytes': self.uploaded_bytes,
            'total_bytes': self.total_bytes,
            'total_chunks': self.total_chunks,
            'failed_chunks': list(self.failed_chunks),
            'current_chunk': self.current_chunk,
        }
