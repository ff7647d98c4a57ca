"""
Resumable chunked upload session.

The session owns the upload state machine: it partitions the source into
chunks, consults the durable record to skip chunks delivered by an earlier
run, drives the chunk transport strictly sequentially and finalizes the
upload. On exhausted retries or cancellation it stops and leaves the durable
record in place so the transfer can be resumed later.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ....core.domain.cancellation import CancellationToken, SleepFunc
from ....core.domain.events import UploadEvents
from ....core.domain.upload import (
    ACTIVE_STATES, DEFAULT_CHUNK_SIZE, ChunkDescriptor, ChunkState,
    PersistedRecord, UploadSnapshot, UploadStatus, can_transition,
    total_chunks, uploaded_bytes_for
)
from ....core.exceptions import (
    BackendResponseError, ChunkTransportError, ChunkwiseError, FinalizeError,
    InitError, InvalidTransitionError, ResumeMismatchError, UploadCanceled
)
from ....core.interfaces.messaging import IEventBus
from ....core.interfaces.upload import (
    IRecordStore, IUploadBackend, IUploadSession, IUploadSource
)
from .progress import ProgressTracker
from .transport import (
    INITIAL_RETRY_DELAY_MS, MAX_RETRIES, MAX_RETRY_DELAY_MS, ChunkTransport
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadSnapshot], None]


class UploadSession(IUploadSession):
    """
    Orchestrates one file transfer at a time.

    Args:
        backend: Server collaborator for init, chunk and finalize requests
        record_store: Durable record of delivered chunks
        chunk_size: Fixed chunk size in bytes
        max_retries: Retries per chunk after the first attempt
        initial_retry_delay_ms: Backoff before the first retry
        max_retry_delay_ms: Backoff cap
        strict_resume: Fail instead of re-sending everything when a resumed
            record was made for a file of a different size
        sleep: Delay function used for backoff, replaceable in tests
        event_bus: Optional bus receiving upload events
        progress_callback: Optional callable invoked with a snapshot after
            every progress report
    """

    def __init__(
        self,
        backend: IUploadBackend,
        record_store: IRecordStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = MAX_RETRIES,
        initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS,
        max_retry_delay_ms: int = MAX_RETRY_DELAY_MS,
        strict_resume: bool = False,
        sleep: SleepFunc = asyncio.sleep,
        event_bus: Optional[IEventBus] = None,
        progress_callback: Optional[ProgressCallback] = None
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self._backend = backend
        self._record_store = record_store
        self._chunk_size = chunk_size
        self._strict_resume = strict_resume
        self._event_bus = event_bus
        self._progress_callback = progress_callback
        self._transport = ChunkTransport(
            backend,
            record_store,
            max_retries=max_retries,
            initial_delay_ms=initial_retry_delay_ms,
            max_delay_ms=max_retry_delay_ms,
            sleep=sleep
        )

        self._progress = ProgressTracker()
        self._progress.add_listener(self._on_progress)

        self._status = UploadStatus.IDLE
        self._token: Optional[CancellationToken] = None
        self._run_task: Optional[asyncio.Future[UploadSnapshot]] = None
        self._canceled_from: Optional[UploadStatus] = None
        self._clear_fields()

    def _clear_fields(self) -> None:
        self._session_id: Optional[str] = None
        self._file_size = 0
        self._total_chunks = 0
        self._uploaded_bytes = 0
        self._failed_chunks: List[int] = []
        self._current_chunk: Optional[int] = None
        self._error: Optional[str] = None
        self._chunk_states: Dict[int, ChunkState] = {}
        self._progress.reset(0)

    @property
    def status(self) -> UploadStatus:
        return self._status

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def transport(self) -> ChunkTransport:
        return self._transport

    def snapshot(self) -> UploadSnapshot:
        return UploadSnapshot(
            status=self._status,
            progress=self._progress.progress,
            error=self._error,
            session_id=self._session_id,
            uploaded_bytes=self._uploaded_bytes,
            total_bytes=self._file_size,
            total_chunks=self._total_chunks,
            failed_chunks=tuple(self._failed_chunks),
            current_chunk=self._current_chunk
        )

    def chunk_states(self) -> List[ChunkState]:
        return [
            ChunkState(state.index, state.size, state.uploaded, state.retry_count)
            for _, state in sorted(self._chunk_states.items())
        ]

    async def start(self, source: IUploadSource,
                    resume_session_id: Optional[str] = None) -> UploadSnapshot:
        """
        Upload ``source``, resuming ``resume_session_id`` when given.

        Transfer failures and cancellation are reported through the returned
        snapshot rather than raised.
        """
        if self._run_task is not None and not self._run_task.done():
            logger.warning("Upload already running, canceling it before starting again")
            self.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)

        previous = self._set_status(UploadStatus.INITIALIZING)

        token = CancellationToken()
        self._token = token
        self._canceled_from = None
        self._clear_fields()
        self._file_size = source.size
        self._total_chunks = total_chunks(source.size, self._chunk_size)
        self._progress.reset(source.size)

        await self._publish_status(previous)

        self._run_task = asyncio.ensure_future(self._run(source, resume_session_id, token))
        return await self._run_task

    def cancel(self) -> bool:
        """
        Signal cancellation of the running transfer.

        The durable record is left untouched. Returns False when nothing is
        running.
        """
        if self._status not in ACTIVE_STATES:
            return False

        if self._token is not None:
            self._token.cancel()
        self._canceled_from = self._set_status(UploadStatus.CANCELED)
        logger.info(f"Upload {self._session_id or '<uninitialized>'} canceled")
        return True

    async def reset(self) -> None:
        """Cancel any running transfer, clear its durable record and return to idle."""
        self.cancel()

        run_task = self._run_task
        if (run_task is not None and not run_task.done()
                and run_task is not asyncio.current_task()):
            await asyncio.gather(run_task, return_exceptions=True)

        if self._session_id:
            await self._record_store.clear(self._session_id)

        previous = self._set_status(UploadStatus.IDLE)
        self._token = None
        self._run_task = None
        self._canceled_from = None
        self._clear_fields()

        if previous != UploadStatus.IDLE:
            await self._publish_status(previous)

    async def _run(self, source: IUploadSource, resume_session_id: Optional[str],
                   token: CancellationToken) -> UploadSnapshot:
        try:
            session_id, uploaded = await self._prepare(source, resume_session_id, token)
            await self._upload_chunks(source, session_id, uploaded, token)
            await self._finalize(session_id, token)
        except UploadCanceled:
            await self._handle_canceled()
        except asyncio.CancelledError:
            self.cancel()
            raise
        except ChunkTransportError as e:
            self._failed_chunks.append(e.chunk_index)
            state = self._chunk_states.get(e.chunk_index)
            if state is not None:
                state.retry_count = self._transport.max_retries
            chunks = ", ".join(str(index) for index in self._failed_chunks)
            await self._fail(
                f"Failed to upload {len(self._failed_chunks)} chunk(s): {chunks} ({e.last_error})",
                e
            )
        except InvalidTransitionError:
            raise
        except ChunkwiseError as e:
            await self._fail(e.message, e)
        except Exception as e:
            logger.exception(f"Unexpected upload failure: {e}")
            await self._fail(str(e) or "Upload failed", e)

        return self.snapshot()

    async def _prepare(self, source: IUploadSource, resume_session_id: Optional[str],
                       token: CancellationToken) -> Tuple[str, Set[int]]:
        """Establish the session id and the set of chunks already delivered."""
        uploaded: Set[int] = set()

        if resume_session_id:
            session_id = resume_session_id
            self._session_id = session_id
            record = await self._record_store.load(session_id)

            if record is None:
                logger.info(f"No durable record for session {session_id}, sending every chunk")
                await self._record_store.save(self._empty_record(session_id, source.size))
            elif not record.matches(source.size, self._chunk_size):
                # Indices recorded at another chunk size address other byte ranges.
                mismatch = ResumeMismatchError(
                    session_id, record.file_size, source.size,
                    record.chunk_size, self._chunk_size
                )
                await self._publish(UploadEvents.RESUME_MISMATCH, {
                    "session_id": session_id,
                    "recorded_size": record.file_size,
                    "actual_size": source.size,
                    "recorded_chunk_size": record.chunk_size,
                    "chunk_size": self._chunk_size,
                })
                if self._strict_resume:
                    raise mismatch
                logger.warning(f"{mismatch.message}; discarding stale record and sending every chunk")
                await self._record_store.save(self._empty_record(session_id, source.size))
            else:
                uploaded = {
                    index for index in record.uploaded_chunk_indices
                    if index < self._total_chunks
                }
                logger.info(
                    f"Resuming session {session_id}: "
                    f"{len(uploaded)}/{self._total_chunks} chunk(s) already delivered")
        else:
            try:
                session_id = await token.guard(
                    self._backend.init_upload(source.name, source.size, token))
            except (UploadCanceled, InitError):
                raise
            except BackendResponseError as e:
                raise InitError(e.message) from e
            except Exception as e:
                raise InitError(f"init failed: {e}") from e

            self._session_id = session_id
            await self._record_store.save(self._empty_record(session_id, source.size))
            await self._record_store.remember_last_session(session_id)
            logger.info(
                f"Initialized session {session_id} for {source.name} "
                f"({source.size} bytes, {self._total_chunks} chunk(s))")

        for descriptor_index in range(self._total_chunks):
            descriptor = ChunkDescriptor.for_index(descriptor_index, source.size, self._chunk_size)
            self._chunk_states[descriptor_index] = ChunkState(
                index=descriptor_index,
                size=descriptor.size,
                uploaded=descriptor_index in uploaded
            )

        self._uploaded_bytes = uploaded_bytes_for(uploaded, source.size, self._chunk_size)
        await self._report_progress()

        await self._change_status(UploadStatus.UPLOADING)
        return session_id, uploaded

    def _empty_record(self, session_id: str, file_size: int) -> PersistedRecord:
        return PersistedRecord(
            session_id=session_id, file_size=file_size, chunk_size=self._chunk_size
        )

    async def _upload_chunks(self, source: IUploadSource, session_id: str,
                             uploaded: Set[int], token: CancellationToken) -> None:
        """Send every missing chunk in index order, stopping at the first failure."""
        for index in range(self._total_chunks):
            token.raise_if_cancelled()

            if index in uploaded:
                continue

            descriptor = ChunkDescriptor.for_index(index, source.size, self._chunk_size)
            self._current_chunk = index
            data = await token.guard(source.read(descriptor.start, descriptor.end))

            await self._transport.send(
                session_id, index, self._total_chunks, data, token,
                on_retry=self._on_retry
            )

            self._chunk_states[index].uploaded = True
            self._uploaded_bytes += descriptor.size
            token.raise_if_cancelled()

            if self._status == UploadStatus.RETRYING:
                await self._change_status(UploadStatus.UPLOADING)

            await self._report_progress()
            await self._publish(UploadEvents.CHUNK_COMPLETED, {
                "session_id": session_id,
                "chunk_index": index,
                "chunk_bytes": descriptor.size,
            })

    async def _finalize(self, session_id: str, token: CancellationToken) -> None:
        self._current_chunk = None
        await self._change_status(UploadStatus.FINALIZING)

        try:
            await token.guard(self._backend.finalize_upload(session_id, token))
        except UploadCanceled:
            raise
        except BackendResponseError as e:
            raise FinalizeError(e.message) from e
        except Exception as e:
            raise FinalizeError(f"finalize failed: {e}") from e

        # Committed: the server has the complete file.
        self._uploaded_bytes = self._file_size
        previous = self._set_status(UploadStatus.DONE)
        self._progress.complete()

        await self._record_store.clear(session_id)
        await self._publish_status(previous)
        await self._publish(UploadEvents.PROGRESS, self.snapshot().to_dict())
        await self._publish(UploadEvents.COMPLETED, {
            "session_id": session_id,
            "total_bytes": self._file_size,
        })
        logger.info(f"Upload {session_id} completed ({self._file_size} bytes)")

    async def _on_retry(self, chunk_index: int, retry: int, delay_ms: int,
                        error: BaseException) -> None:
        state = self._chunk_states.get(chunk_index)
        if state is not None:
            state.retry_count = retry

        await self._change_status(UploadStatus.RETRYING)
        await self._publish(UploadEvents.CHUNK_RETRY, {
            "session_id": self._session_id,
            "chunk_index": chunk_index,
            "retry": retry,
            "delay_ms": delay_ms,
            "error": str(error),
        })

    async def _fail(self, message: str, error: BaseException) -> None:
        if self._status == UploadStatus.CANCELED:
            await self._handle_canceled()
            return

        self._error = message
        previous = self._set_status(UploadStatus.ERROR)
        logger.error(f"Upload {self._session_id or '<uninitialized>'} failed: {message}")

        await self._publish_status(previous)
        await self._publish(UploadEvents.FAILED, {
            "session_id": self._session_id,
            "error": message,
            "error_code": getattr(error, "error_code", None),
            "failed_chunks": list(self._failed_chunks),
        })

    async def _handle_canceled(self) -> None:
        if self._status in ACTIVE_STATES:
            self._canceled_from = self._set_status(UploadStatus.CANCELED)

        self._current_chunk = None
        if self._canceled_from is not None:
            await self._publish_status(self._canceled_from)
        await self._publish(UploadEvents.CANCELED, {
            "session_id": self._session_id,
            "uploaded_bytes": self._uploaded_bytes,
        })

    def _set_status(self, target: UploadStatus) -> UploadStatus:
        """Apply a transition from the table; returns the previous status."""
        current = self._status
        if current == target:
            return current

        if not can_transition(current, target):
            if current == UploadStatus.CANCELED:
                # The run lost a race with cancel(); unwind as canceled.
                raise UploadCanceled()
            raise InvalidTransitionError(current.value, target.value)

        self._status = target
        logger.debug(f"Upload {self._session_id or '<uninitialized>'} status changed: "
                     f"{current.value} -> {target.value}")
        return current

    async def _change_status(self, target: UploadStatus) -> None:
        previous = self._set_status(target)
        if previous != target:
            await self._publish_status(previous)

    async def _publish_status(self, previous: UploadStatus) -> None:
        await self._publish(UploadEvents.STATUS_CHANGED, {
            "session_id": self._session_id,
            "previous": previous.value,
            "status": self._status.value,
        })

    async def _report_progress(self) -> None:
        self._progress.update(self._uploaded_bytes)
        await self._publish(UploadEvents.PROGRESS, self.snapshot().to_dict())

    def _on_progress(self, uploaded_bytes: int, total_bytes: int, progress: float) -> None:
        if self._progress_callback is not None:
            self._progress_callback(self.snapshot())

    async def _publish(self, event_name: str, data: Dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event_name, data)
        except Exception as e:
            logger.warning(f"Failed to publish {event_name}: {e}")
