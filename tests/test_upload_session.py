"""
Tests for the resumable upload session.

This module tests the full init/chunk/finalize flow, resumption from a
durable record, retry exhaustion, cancellation and reset.
"""

import asyncio
from typing import List
from unittest.mock import AsyncMock, Mock

import pytest

from chunkwise.core.domain.events import UploadEvents
from chunkwise.core.domain.upload import PersistedRecord, UploadSnapshot, UploadStatus
from chunkwise.core.exceptions import BackendResponseError
from chunkwise.core.interfaces.messaging import IEventBus
from chunkwise.infrastructure.services.upload.session import UploadSession
from chunkwise.infrastructure.sources import BytesSource

MIB = 1024 * 1024


def make_payload(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


class TestUploadSession:
    """Test cases for UploadSession."""

    @pytest.fixture
    def mock_event_bus(self) -> Mock:
        bus = Mock(spec=IEventBus)
        bus.publish = AsyncMock()
        return bus

    @pytest.fixture
    def session(self, backend, record_store, recording_sleep, mock_event_bus) -> UploadSession:
        return UploadSession(
            backend=backend,
            record_store=record_store,
            chunk_size=MIB,
            sleep=recording_sleep,
            event_bus=mock_event_bus
        )

    @pytest.fixture
    def source(self) -> BytesSource:
        return BytesSource(make_payload(5 * MIB // 2), name="video.bin")

    def published(self, bus: Mock, name: str) -> List[dict]:
        return [c.args[1] for c in bus.publish.call_args_list if c.args[0] == name]

    @pytest.mark.asyncio
    async def test_successful_upload(self, session, backend, record_store, source) -> None:
        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.DONE
        assert snapshot.progress == 1.0
        assert snapshot.session_id == "session-1"
        assert snapshot.uploaded_bytes == source.size
        assert snapshot.total_chunks == 3
        assert snapshot.failed_chunks == ()
        assert snapshot.error is None

        assert backend.init_calls == [("video.bin", source.size)]
        assert backend.chunk_calls == [0, 1, 2]
        assert b"".join(backend.received[i] for i in range(3)) == await source.read(0, source.size)
        assert backend.finalize_calls == ["session-1"]
        assert await record_store.load("session-1") is None
        assert await record_store.last_session_id() == "session-1"

    @pytest.mark.asyncio
    async def test_exact_multiple_of_chunk_size(self, session, backend) -> None:
        snapshot = await session.start(BytesSource(make_payload(2 * MIB)))

        assert snapshot.status == UploadStatus.DONE
        assert [len(backend.received[i]) for i in (0, 1)] == [MIB, MIB]

    @pytest.mark.asyncio
    async def test_empty_file(self, session, backend) -> None:
        snapshot = await session.start(BytesSource(b""))

        assert snapshot.status == UploadStatus.DONE
        assert snapshot.progress == 1.0
        assert snapshot.total_chunks == 0
        assert backend.chunk_calls == []
        assert backend.finalize_calls == ["session-1"]

    @pytest.mark.asyncio
    async def test_chunk_exhausts_retries(self, session, backend, record_store,
                                          recording_sleep, source) -> None:
        backend.always_fail.add(1)

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.ERROR
        assert snapshot.failed_chunks == (1,)
        assert snapshot.uploaded_bytes == MIB
        assert snapshot.progress == pytest.approx(0.4)
        assert snapshot.error.startswith("Failed to upload 1 chunk(s): 1")
        assert backend.chunk_calls == [0, 1, 1, 1, 1, 1, 1]
        assert 2 not in backend.chunk_calls
        assert backend.finalize_calls == []
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]

        record = await record_store.load("session-1")
        assert record.uploaded_chunk_indices == (0,)

        states = session.chunk_states()
        assert [state.uploaded for state in states] == [True, False, False]
        assert states[1].retry_count == 5

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, session, backend, mock_event_bus, source) -> None:
        backend.failures[0] = 2

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.DONE
        assert session.chunk_states()[0].retry_count == 2

        retries = self.published(mock_event_bus, UploadEvents.CHUNK_RETRY)
        assert [(r["chunk_index"], r["retry"], r["delay_ms"]) for r in retries] == [
            (0, 1, 1000), (0, 2, 2000)
        ]
        statuses = [s["status"] for s in self.published(mock_event_bus, UploadEvents.STATUS_CHANGED)]
        assert statuses == [
            "initializing", "uploading", "retrying", "uploading", "finalizing", "done"
        ]

    @pytest.mark.asyncio
    async def test_resume_skips_delivered_chunks(self, session, backend, record_store, source) -> None:
        await record_store.save(PersistedRecord(
            session_id="old", file_size=source.size, chunk_size=MIB, uploaded_chunk_indices=[0, 2]
        ))
        seen: List[UploadSnapshot] = []
        session._progress_callback = seen.append

        snapshot = await session.start(source, resume_session_id="old")

        assert snapshot.status == UploadStatus.DONE
        assert snapshot.session_id == "old"
        assert backend.init_calls == []
        assert backend.chunk_calls == [1]
        assert backend.finalize_calls == ["old"]
        assert seen[0].uploaded_bytes == MIB + MIB // 2
        assert await record_store.load("old") is None

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, session, backend, record_store, source) -> None:
        backend.always_fail.add(1)
        failed = await session.start(source)
        assert failed.status == UploadStatus.ERROR

        backend.always_fail.clear()
        backend.chunk_calls.clear()
        snapshot = await session.start(source, resume_session_id=failed.session_id)

        assert snapshot.status == UploadStatus.DONE
        assert backend.chunk_calls == [1, 2]
        assert len(backend.init_calls) == 1

    @pytest.mark.asyncio
    async def test_resume_without_record_sends_everything(self, session, backend, source) -> None:
        snapshot = await session.start(source, resume_session_id="unknown")

        assert snapshot.status == UploadStatus.DONE
        assert backend.init_calls == []
        assert backend.chunk_calls == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_resume_size_mismatch_resends_everything(self, session, backend, record_store,
                                                           mock_event_bus, source) -> None:
        await record_store.save(PersistedRecord(
            session_id="old", file_size=123, chunk_size=MIB, uploaded_chunk_indices=[0]
        ))

        snapshot = await session.start(source, resume_session_id="old")

        assert snapshot.status == UploadStatus.DONE
        assert backend.chunk_calls == [0, 1, 2]
        mismatches = self.published(mock_event_bus, UploadEvents.RESUME_MISMATCH)
        assert mismatches == [{
            "session_id": "old", "recorded_size": 123, "actual_size": source.size,
            "recorded_chunk_size": MIB, "chunk_size": MIB,
        }]

    @pytest.mark.asyncio
    async def test_strict_resume_size_mismatch_fails(self, backend, record_store,
                                                     recording_sleep, source) -> None:
        session = UploadSession(backend, record_store, chunk_size=MIB,
                                strict_resume=True, sleep=recording_sleep)
        await record_store.save(PersistedRecord(session_id="old", file_size=123))

        snapshot = await session.start(source, resume_session_id="old")

        assert snapshot.status == UploadStatus.ERROR
        assert "123" in snapshot.error
        assert snapshot.failed_chunks == ()
        assert backend.chunk_calls == []
        assert await record_store.load("old") is not None

    @pytest.mark.asyncio
    async def test_new_record_stores_chunk_size(self, session, backend, record_store, source) -> None:
        backend.always_fail.add(2)

        snapshot = await session.start(source)

        record = await record_store.load(snapshot.session_id)
        assert record.chunk_size == MIB
        assert record.file_size == source.size
        assert record.uploaded_chunk_indices == (0, 1)

    @pytest.mark.asyncio
    async def test_resume_with_other_chunk_size_resends_everything(
            self, backend, record_store, recording_sleep, mock_event_bus) -> None:
        payload = make_payload(2048)
        first = UploadSession(backend, record_store, chunk_size=512, sleep=recording_sleep)
        backend.always_fail.add(2)
        failed = await first.start(BytesSource(payload))
        assert failed.status == UploadStatus.ERROR
        assert (await record_store.load(failed.session_id)).uploaded_chunk_indices == (0, 1)

        backend.always_fail.clear()
        backend.chunk_calls.clear()
        backend.received.clear()
        second = UploadSession(backend, record_store, chunk_size=1024,
                               sleep=recording_sleep, event_bus=mock_event_bus)
        snapshot = await second.start(BytesSource(payload), resume_session_id=failed.session_id)

        assert snapshot.status == UploadStatus.DONE
        assert backend.chunk_calls == [0, 1]
        assert backend.received[0] + backend.received[1] == payload
        mismatches = self.published(mock_event_bus, UploadEvents.RESUME_MISMATCH)
        assert [(m["recorded_chunk_size"], m["chunk_size"]) for m in mismatches] == [(512, 1024)]

    @pytest.mark.asyncio
    async def test_strict_resume_chunk_size_mismatch_fails(self, backend, record_store,
                                                           recording_sleep) -> None:
        payload = make_payload(2048)
        await record_store.save(PersistedRecord(
            session_id="old", file_size=len(payload), chunk_size=512, uploaded_chunk_indices=[0, 1]
        ))
        session = UploadSession(backend, record_store, chunk_size=1024,
                                strict_resume=True, sleep=recording_sleep)

        snapshot = await session.start(BytesSource(payload), resume_session_id="old")

        assert snapshot.status == UploadStatus.ERROR
        assert "chunk size 512" in snapshot.error
        assert backend.chunk_calls == []
        assert backend.finalize_calls == []
        assert (await record_store.load("old")).uploaded_chunk_indices == (0, 1)

    @pytest.mark.asyncio
    async def test_resume_record_without_chunk_size_resends_everything(
            self, session, backend, record_store, source) -> None:
        await record_store.save(PersistedRecord(
            session_id="old", file_size=source.size, uploaded_chunk_indices=[0, 1]
        ))

        snapshot = await session.start(source, resume_session_id="old")

        assert snapshot.status == UploadStatus.DONE
        assert backend.chunk_calls == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_init_failure(self, session, backend, record_store, source) -> None:
        backend.init_error = BackendResponseError("init", 503)

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.ERROR
        assert snapshot.error == "init failed (503)"
        assert snapshot.session_id is None
        assert backend.chunk_calls == []
        assert await record_store.list_records() == []

    @pytest.mark.asyncio
    async def test_init_unexpected_error(self, session, backend, source) -> None:
        backend.init_error = ConnectionError("refused")

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.ERROR
        assert snapshot.error == "init failed: refused"

    @pytest.mark.asyncio
    async def test_finalize_failure_keeps_record(self, session, backend, record_store, source) -> None:
        backend.finalize_error = BackendResponseError("finalize", 500, "assembly failed")

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.ERROR
        assert snapshot.error == "finalize failed (500): assembly failed"
        assert snapshot.failed_chunks == ()
        assert snapshot.progress < 1.0
        record = await record_store.load("session-1")
        assert record.uploaded_chunk_indices == (0, 1, 2)

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_reaches_one_only_when_done(
            self, backend, record_store, recording_sleep, source) -> None:
        seen: List[UploadSnapshot] = []
        session = UploadSession(backend, record_store, chunk_size=MIB,
                                sleep=recording_sleep, progress_callback=seen.append)
        backend.failures[1] = 1

        await session.start(source)

        values = [s.progress for s in seen]
        assert values == sorted(values)
        assert values[-1] == 1.0
        for snapshot in seen:
            if snapshot.progress == 1.0:
                assert snapshot.status == UploadStatus.DONE

    @pytest.mark.asyncio
    async def test_cancel_during_chunk(self, session, backend, record_store, source) -> None:
        async def cancel_on_second(index: int) -> None:
            if index == 1:
                session.cancel()
                await asyncio.sleep(3600)

        backend.before_chunk = cancel_on_second

        snapshot = await asyncio.wait_for(session.start(source), timeout=5)

        assert snapshot.status == UploadStatus.CANCELED
        assert snapshot.error is None
        assert snapshot.failed_chunks == ()
        assert snapshot.uploaded_bytes == MIB
        assert backend.chunk_calls == [0, 1]
        assert backend.finalize_calls == []
        record = await record_store.load("session-1")
        assert record.uploaded_chunk_indices == (0,)

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, backend, record_store, source) -> None:
        holder = {}

        async def cancelling_sleep(seconds: float) -> None:
            holder["session"].cancel()
            await asyncio.sleep(3600)

        session = UploadSession(backend, record_store, chunk_size=MIB, sleep=cancelling_sleep)
        holder["session"] = session
        backend.always_fail.add(0)

        snapshot = await asyncio.wait_for(session.start(source), timeout=5)

        assert snapshot.status == UploadStatus.CANCELED
        assert snapshot.failed_chunks == ()
        assert backend.chunk_calls == [0]

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, session) -> None:
        assert session.cancel() is False
        assert session.status == UploadStatus.IDLE

    @pytest.mark.asyncio
    async def test_reset_clears_record(self, session, backend, record_store, source) -> None:
        backend.always_fail.add(2)
        failed = await session.start(source)
        assert await record_store.load(failed.session_id) is not None

        await session.reset()

        snapshot = session.snapshot()
        assert snapshot == UploadSnapshot()
        assert session.chunk_states() == []
        assert await record_store.load(failed.session_id) is None

    @pytest.mark.asyncio
    async def test_reset_while_running(self, session, backend, record_store, source) -> None:
        reached = asyncio.Event()

        async def block(index: int) -> None:
            if index == 1:
                reached.set()
                await asyncio.sleep(3600)

        backend.before_chunk = block
        run = asyncio.create_task(session.start(source))
        await asyncio.wait_for(reached.wait(), timeout=5)

        await session.reset()
        result = await asyncio.wait_for(run, timeout=5)

        assert result.status == UploadStatus.CANCELED
        assert session.status == UploadStatus.IDLE
        assert await record_store.load("session-1") is None

    @pytest.mark.asyncio
    async def test_start_again_after_done(self, session, backend, source) -> None:
        first = await session.start(source)
        backend.session_id = "session-2"
        second = await session.start(source)

        assert first.status == second.status == UploadStatus.DONE
        assert second.session_id == "session-2"

    @pytest.mark.asyncio
    async def test_event_bus_errors_do_not_break_upload(self, backend, record_store,
                                                        recording_sleep, source) -> None:
        bus = Mock(spec=IEventBus)
        bus.publish = AsyncMock(side_effect=RuntimeError("Event bus is not running"))
        session = UploadSession(backend, record_store, chunk_size=MIB,
                                sleep=recording_sleep, event_bus=bus)

        snapshot = await session.start(source)

        assert snapshot.status == UploadStatus.DONE

    @pytest.mark.asyncio
    async def test_completion_events(self, session, mock_event_bus, source) -> None:
        await session.start(source)

        completed = self.published(mock_event_bus, UploadEvents.COMPLETED)
        assert completed == [{"session_id": "session-1", "total_bytes": source.size}]
        chunks = self.published(mock_event_bus, UploadEvents.CHUNK_COMPLETED)
        assert [c["chunk_index"] for c in chunks] == [0, 1, 2]

    def test_invalid_chunk_size(self, backend, record_store) -> None:
        with pytest.raises(ValueError):
            UploadSession(backend, record_store, chunk_size=0)
