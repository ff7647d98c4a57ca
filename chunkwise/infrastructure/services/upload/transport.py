"""
Reliable single-chunk delivery with bounded retry and exponential backoff.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ....core.domain.cancellation import CancellationToken, SleepFunc
from ....core.exceptions import ChunkTransportError, UploadCanceled
from ....core.interfaces.upload import IRecordStore, IUploadBackend

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
INITIAL_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 30000

# (chunk_index, retry, delay_ms, error)
RetryCallback = Callable[[int, int, int, BaseException], Optional[Awaitable[Any]]]


def compute_backoff_delay(retry: int,
                          initial_delay_ms: int = INITIAL_RETRY_DELAY_MS,
                          max_delay_ms: int = MAX_RETRY_DELAY_MS) -> int:
    """
    Delay in milliseconds before retry number ``retry`` (1-based).

    ``min(initial * 2 ** (retry - 1), max)``: 1s, 2s, 4s, 8s, 16s, then capped.
    """
    if retry < 1:
        raise ValueError(f"retry must be >= 1, got {retry}")
    return min(initial_delay_ms * 2 ** (retry - 1), max_delay_ms)


@dataclass
class TransportMetrics:
    """Counters for chunk delivery attempts."""
    attempts: int = 0
    successes: int = 0
    retries: int = 0
    failures: int = 0
    total_send_time: float = 0.0
    last_error: Optional[str] = None

    def record_attempt(self, success: bool, send_time: float) -> None:
        self.attempts += 1
        self.total_send_time += send_time
        if success:
            self.successes += 1


class ChunkTransport:
    """
    Sends one chunk, retrying up to ``max_retries`` times.

    Cancellation observed before a send, during a send or during a backoff
    sleep aborts at once with UploadCanceled; it is never retried and never
    counted as an attempt failure.
    """

    def __init__(
        self,
        backend: IUploadBackend,
        record_store: IRecordStore,
        max_retries: int = MAX_RETRIES,
        initial_delay_ms: int = INITIAL_RETRY_DELAY_MS,
        max_delay_ms: int = MAX_RETRY_DELAY_MS,
        sleep: SleepFunc = asyncio.sleep
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {max_retries}")
        self._backend = backend
        self._record_store = record_store
        self._max_retries = max_retries
        self._initial_delay_ms = initial_delay_ms
        self._max_delay_ms = max_delay_ms
        self._sleep = sleep
        self._metrics = TransportMetrics()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def metrics(self) -> TransportMetrics:
        return self._metrics

    async def send(
        self,
        session_id: str,
        chunk_index: int,
        total_chunks: int,
        data: bytes,
        token: CancellationToken,
        on_retry: Optional[RetryCallback] = None
    ) -> int:
        """
        Deliver a chunk and record it durably.

        Returns:
            Number of attempts it took

        Raises:
            UploadCanceled: The token fired
            ChunkTransportError: Every attempt failed
        """
        retry = 0

        while True:
            token.raise_if_cancelled()
            start_time = time.monotonic()

            try:
                await token.guard(self._backend.send_chunk(
                    session_id, chunk_index, total_chunks, data, token
                ))
            except UploadCanceled:
                raise
            except Exception as e:
                self._metrics.record_attempt(False, time.monotonic() - start_time)
                self._metrics.last_error = str(e)

                if token.cancelled:
                    raise UploadCanceled(token.reason or "Upload canceled") from e

                if retry >= self._max_retries:
                    self._metrics.failures += 1
                    logger.error(
                        f"Chunk {chunk_index} of session {session_id} failed after "
                        f"{retry + 1} attempt(s): {e}")
                    raise ChunkTransportError(chunk_index, retry + 1, e) from e

                retry += 1
                self._metrics.retries += 1
                delay_ms = compute_backoff_delay(retry, self._initial_delay_ms, self._max_delay_ms)

                logger.warning(
                    f"Chunk {chunk_index} failed (retry {retry}/{self._max_retries} "
                    f"in {delay_ms}ms): {e}")

                if on_retry is not None:
                    result = on_retry(chunk_index, retry, delay_ms, e)
                    if asyncio.iscoroutine(result):
                        await result

                await token.sleep(delay_ms / 1000, self._sleep)
                continue

            self._metrics.record_attempt(True, time.monotonic() - start_time)
            await self._record_store.mark_chunk_uploaded(session_id, chunk_index)
            logger.debug(f"Chunk {chunk_index}/{total_chunks} of session {session_id} delivered")
            return retry + 1
