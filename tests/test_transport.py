"""
Tests for single-chunk delivery with retry and backoff.
"""

import asyncio

import pytest

from chunkwise.core.domain.cancellation import CancellationToken
from chunkwise.core.domain.upload import PersistedRecord
from chunkwise.core.exceptions import ChunkTransportError, UploadCanceled
from chunkwise.infrastructure.services.upload.transport import (
    ChunkTransport, compute_backoff_delay
)


class TestBackoff:
    """Test cases for the backoff schedule."""

    def test_default_schedule(self) -> None:
        assert [compute_backoff_delay(r) for r in range(1, 6)] == [1000, 2000, 4000, 8000, 16000]

    def test_delay_is_capped(self) -> None:
        assert compute_backoff_delay(6) == 30000
        assert compute_backoff_delay(20) == 30000

    def test_custom_parameters(self) -> None:
        assert compute_backoff_delay(3, initial_delay_ms=100, max_delay_ms=250) == 250

    def test_retry_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            compute_backoff_delay(0)


class TestChunkTransport:
    """Test cases for ChunkTransport."""

    @pytest.fixture
    async def seeded_store(self, record_store):
        await record_store.save(PersistedRecord(session_id="session-1", file_size=100))
        return record_store

    @pytest.fixture
    def transport(self, backend, seeded_store, recording_sleep) -> ChunkTransport:
        return ChunkTransport(backend, seeded_store, sleep=recording_sleep)

    @pytest.mark.asyncio
    async def test_success_first_try(self, transport, backend, seeded_store, recording_sleep) -> None:
        attempts = await transport.send("session-1", 0, 2, b"abc", CancellationToken())

        assert attempts == 1
        assert backend.received == {0: b"abc"}
        assert recording_sleep.delays == []
        record = await seeded_store.load("session-1")
        assert record.uploaded_chunk_indices == (0,)

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self, transport, backend, recording_sleep) -> None:
        backend.failures[1] = 5
        retries = []

        attempts = await transport.send(
            "session-1", 1, 2, b"x", CancellationToken(),
            on_retry=lambda index, retry, delay, error: retries.append((index, retry, delay))
        )

        assert attempts == 6
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert retries == [(1, 1, 1000), (1, 2, 2000), (1, 3, 4000), (1, 4, 8000), (1, 5, 16000)]
        assert transport.metrics.retries == 5
        assert transport.metrics.successes == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, transport, backend, seeded_store, recording_sleep) -> None:
        backend.always_fail.add(0)

        with pytest.raises(ChunkTransportError) as exc_info:
            await transport.send("session-1", 0, 2, b"x", CancellationToken())

        assert exc_info.value.chunk_index == 0
        assert exc_info.value.attempts == 6
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert backend.chunk_calls == [0] * 6
        assert len(recording_sleep.delays) == 5
        record = await seeded_store.load("session-1")
        assert record.uploaded_chunk_indices == ()

    @pytest.mark.asyncio
    async def test_async_retry_callback_is_awaited(self, transport, backend) -> None:
        backend.failures[0] = 1
        seen = []

        async def on_retry(index, retry, delay, error) -> None:
            await asyncio.sleep(0)
            seen.append(retry)

        await transport.send("session-1", 0, 1, b"x", CancellationToken(), on_retry=on_retry)
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_zero_retries(self, backend, seeded_store, recording_sleep) -> None:
        transport = ChunkTransport(backend, seeded_store, max_retries=0, sleep=recording_sleep)
        backend.always_fail.add(0)

        with pytest.raises(ChunkTransportError) as exc_info:
            await transport.send("session-1", 0, 1, b"x", CancellationToken())
        assert exc_info.value.attempts == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_cancel_before_send(self, transport, backend) -> None:
        token = CancellationToken()
        token.cancel()

        with pytest.raises(UploadCanceled):
            await transport.send("session-1", 0, 1, b"x", token)
        assert backend.chunk_calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_is_not_a_failure(self, backend, seeded_store) -> None:
        token = CancellationToken()
        backend.always_fail.add(0)

        async def cancelling_sleep(seconds: float) -> None:
            token.cancel()
            await asyncio.sleep(3600)

        transport = ChunkTransport(backend, seeded_store, sleep=cancelling_sleep)

        with pytest.raises(UploadCanceled):
            await asyncio.wait_for(transport.send("session-1", 0, 1, b"x", token), timeout=5)
        assert backend.chunk_calls == [0]
        assert transport.metrics.failures == 0

    @pytest.mark.asyncio
    async def test_cancel_during_send(self, transport, backend, seeded_store) -> None:
        token = CancellationToken()

        async def hang(index: int) -> None:
            token.cancel()
            await asyncio.sleep(3600)

        backend.before_chunk = hang

        with pytest.raises(UploadCanceled):
            await asyncio.wait_for(transport.send("session-1", 0, 1, b"x", token), timeout=5)
        record = await seeded_store.load("session-1")
        assert record.uploaded_chunk_indices == ()

    @pytest.mark.asyncio
    async def test_marking_is_idempotent(self, transport, seeded_store) -> None:
        token = CancellationToken()
        await transport.send("session-1", 1, 2, b"x", token)
        await transport.send("session-1", 1, 2, b"x", token)

        record = await seeded_store.load("session-1")
        assert record.uploaded_chunk_indices == (1,)
