"""
Exception hierarchy for the chunked upload engine.

Transfer failures are contained by the upload session and surfaced through
its status; these exceptions are what the session and its collaborators
raise internally.
"""

from typing import Optional


class ChunkwiseError(Exception):
    """Base class for upload engine errors."""

    def __init__(self, message: str, error_code: str = "CHUNKWISE_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class BackendResponseError(ChunkwiseError):
    """The upload backend answered with a non-2xx status."""

    def __init__(self, operation: str, status: int, detail: Optional[str] = None):
        message = f"{operation} failed ({status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "BACKEND_RESPONSE_ERROR")
        self.operation = operation
        self.status = status
        self.detail = detail


class InitError(ChunkwiseError):
    """The init handshake failed; no session was created."""

    def __init__(self, message: str):
        super().__init__(message, "INIT_ERROR")


class ChunkTransportError(ChunkwiseError):
    """A single chunk exhausted its retry budget."""

    def __init__(self, chunk_index: int, attempts: int, last_error: BaseException):
        super().__init__(
            f"chunk {chunk_index} failed after {attempts} attempt(s): {last_error}",
            "CHUNK_TRANSPORT_ERROR"
        )
        self.chunk_index = chunk_index
        self.attempts = attempts
        self.last_error = last_error


class FinalizeError(ChunkwiseError):
    """The server rejected assembly after every chunk was delivered."""

    def __init__(self, message: str):
        super().__init__(message, "FINALIZE_ERROR")


class ResumeMismatchError(ChunkwiseError):
    """A durable record does not describe the file being resumed."""

    def __init__(self, session_id: str, recorded_size: int, actual_size: int,
                 recorded_chunk_size: Optional[int] = None,
                 actual_chunk_size: Optional[int] = None):
        if recorded_size != actual_size:
            message = (f"session {session_id} was recorded for {recorded_size} bytes, "
                       f"file has {actual_size} bytes")
        else:
            message = (f"session {session_id} was recorded with chunk size "
                       f"{recorded_chunk_size}, upload uses {actual_chunk_size}")
        super().__init__(message, "RESUME_MISMATCH")
        self.session_id = session_id
        self.recorded_size = recorded_size
        self.actual_size = actual_size
        self.recorded_chunk_size = recorded_chunk_size
        self.actual_chunk_size = actual_chunk_size


class InvalidTransitionError(ChunkwiseError):
    """An upload status change outside the transition table was requested."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid upload status transition: {current} -> {target}",
            "INVALID_TRANSITION"
        )
        self.current = current
        self.target = target


class UploadCanceled(Exception):
    """
    Cooperative cancellation signal.

    Not a ChunkwiseError: a canceled transfer is not a failure, it never
    populates failed chunks and never sets the error status.
    """

    def __init__(self, message: str = "Upload canceled"):
        super().__init__(message)
