"""
HTTP upload backend built on aiohttp.

Wire contract:
    POST {base}/api/upload/init      JSON {filename, size}  ->  {sessionId}
    POST {base}/api/upload/chunk     raw bytes, headers x-session-id,
                                     x-chunk-index (0-based), x-total-chunks
    POST {base}/api/upload/finalize  JSON {sessionId}
Any non-2xx answer raises BackendResponseError.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from ...core.domain.cancellation import CancellationToken
from ...core.exceptions import BackendResponseError, InitError
from ...core.interfaces.lifecycle import IComponent
from ...core.interfaces.upload import IUploadBackend

logger = logging.getLogger(__name__)

DEFAULT_INIT_PATH = "/api/upload/init"
DEFAULT_CHUNK_PATH = "/api/upload/chunk"
DEFAULT_FINALIZE_PATH = "/api/upload/finalize"
MAX_ERROR_DETAIL = 200


class HttpUploadBackend(IUploadBackend, IComponent):
    """aiohttp client for the init/chunk/finalize endpoints."""

    def __init__(
        self,
        base_url: str,
        init_path: str = DEFAULT_INIT_PATH,
        chunk_path: str = DEFAULT_CHUNK_PATH,
        finalize_path: str = DEFAULT_FINALIZE_PATH,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the backend.

        Args:
            base_url: Server root, e.g. ``http://localhost:3000``
            init_path: Path of the init endpoint
            chunk_path: Path of the chunk endpoint
            finalize_path: Path of the finalize endpoint
            timeout: Total timeout of a single request in seconds; None
                (the default) applies no limit
            headers: Extra headers sent with every request
            session: Externally managed client session (not closed on stop)
        """
        self._base_url = base_url.rstrip('/')
        self._init_path = init_path
        self._chunk_path = chunk_path
        self._finalize_path = finalize_path
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None
        self._requests = 0
        self._failures = 0

    @property
    def name(self) -> str:
        return "HttpUploadBackend"

    @property
    def base_url(self) -> str:
        return self._base_url

    async def start(self) -> None:
        if self._session is not None and not self._session.closed:
            return

        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout),
            headers=self._headers
        )
        self._owns_session = True
        logger.debug(f"HTTP upload backend started for {self._base_url}")

    async def stop(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session
        logger.debug("HTTP upload backend stopped")

    async def check_health(self) -> Dict[str, Any]:
        running = self._session is not None and not self._session.closed
        return {
            'healthy': running,
            'status': 'running' if running else 'stopped',
            'details': {
                'base_url': self._base_url,
                'requests': self._requests,
                'failures': self._failures,
            }
        }

    async def __aenter__(self) -> 'HttpUploadBackend':
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def init_upload(self, filename: str, size: int,
                          token: Optional[CancellationToken] = None) -> str:
        if token is not None:
            token.raise_if_cancelled()

        session = self._ensure_session()
        async with session.post(
            self._url(self._init_path),
            json={"filename": filename, "size": size}
        ) as response:
            await self._check_response(response, "init")
            body = await response.json(content_type=None)

        session_id = body.get("sessionId") if isinstance(body, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise InitError("init response did not include a sessionId")
        return session_id

    async def send_chunk(self, session_id: str, chunk_index: int, total_chunks: int,
                         data: bytes, token: Optional[CancellationToken] = None) -> None:
        if token is not None:
            token.raise_if_cancelled()

        session = self._ensure_session()
        async with session.post(
            self._url(self._chunk_path),
            data=data,
            headers={
                "content-type": "application/octet-stream",
                "x-session-id": session_id,
                "x-chunk-index": str(chunk_index),
                "x-total-chunks": str(total_chunks),
            }
        ) as response:
            await self._check_response(response, f"chunk {chunk_index}")

    async def finalize_upload(self, session_id: str,
                              token: Optional[CancellationToken] = None) -> None:
        if token is not None:
            token.raise_if_cancelled()

        session = self._ensure_session()
        async with session.post(
            self._url(self._finalize_path),
            json={"sessionId": session_id}
        ) as response:
            await self._check_response(response, "finalize")

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise RuntimeError("HTTP upload backend is not started")
        return self._session

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _check_response(self, response: aiohttp.ClientResponse, operation: str) -> None:
        self._requests += 1
        if 200 <= response.status < 300:
            return

        self._failures += 1
        detail = (await response.text())[:MAX_ERROR_DETAIL].strip() or None
        raise BackendResponseError(operation, response.status, detail)
