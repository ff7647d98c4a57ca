"""
Shared fixtures and test doubles for the upload engine tests.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set

import pytest

from chunkwise.core.domain.cancellation import CancellationToken
from chunkwise.core.interfaces.upload import IUploadBackend
from chunkwise.infrastructure.storage.records import InMemoryRecordStore

MIB = 1024 * 1024


class FakeBackend(IUploadBackend):
    """
    Scriptable in-memory upload backend.

    ``failures`` maps a chunk index to the number of times its send fails
    before succeeding; indices in ``always_fail`` never succeed.
    """

    def __init__(self, session_id: str = "session-1") -> None:
        self.session_id = session_id
        self.init_calls: List[tuple] = []
        self.chunk_calls: List[int] = []
        self.received: Dict[int, bytes] = {}
        self.finalize_calls: List[str] = []
        self.failures: Dict[int, int] = {}
        self.always_fail: Set[int] = set()
        self.init_error: Optional[Exception] = None
        self.finalize_error: Optional[Exception] = None
        self.before_chunk: Optional[Callable[[int], Awaitable[None]]] = None

    async def init_upload(self, filename: str, size: int,
                          token: Optional[CancellationToken] = None) -> str:
        self.init_calls.append((filename, size))
        if self.init_error is not None:
            raise self.init_error
        return self.session_id

    async def send_chunk(self, session_id: str, chunk_index: int, total_chunks: int,
                         data: bytes, token: Optional[CancellationToken] = None) -> None:
        self.chunk_calls.append(chunk_index)
        if self.before_chunk is not None:
            await self.before_chunk(chunk_index)
        if chunk_index in self.always_fail:
            raise ConnectionError(f"chunk {chunk_index} rejected")
        if self.failures.get(chunk_index, 0) > 0:
            self.failures[chunk_index] -= 1
            raise ConnectionError(f"chunk {chunk_index} flaked")
        self.received[chunk_index] = data

    async def finalize_upload(self, session_id: str,
                              token: Optional[CancellationToken] = None) -> None:
        self.finalize_calls.append(session_id)
        if self.finalize_error is not None:
            raise self.finalize_error


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
