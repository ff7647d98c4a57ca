"""
Application startup and wiring.

Builds the upload components from configuration, starts them in order and
stops them in reverse order.
"""

import asyncio
import logging
from typing import Any, List, Optional

from ..core.domain.cancellation import SleepFunc
from ..core.interfaces.lifecycle import IComponent, IStartable, IStoppable
from ..core.interfaces.upload import IRecordStore, IUploadBackend
from ..core.services.event_bus import EventBus
from ..infrastructure.clients.http import HttpUploadBackend
from ..infrastructure.config.models import ApplicationConfig
from ..infrastructure.services.upload.session import ProgressCallback, UploadSession
from ..infrastructure.storage.records import FileRecordStore, InMemoryRecordStore

logger = logging.getLogger(__name__)


class ApplicationStartup:
    """
    Owns the long-lived components of an upload run.

    Usable as an async context manager::

        async with ApplicationStartup(config) as app:
            session = app.create_session()
            snapshot = await session.start(FileSource(path))
    """

    def __init__(
        self,
        config: ApplicationConfig,
        backend: Optional[IUploadBackend] = None,
        record_store: Optional[IRecordStore] = None,
        event_bus: Optional[EventBus] = None
    ) -> None:
        self._config = config
        self._event_bus = event_bus or EventBus()
        self._backend = backend or HttpUploadBackend(
            base_url=config.backend.base_url,
            init_path=config.backend.init_path,
            chunk_path=config.backend.chunk_path,
            finalize_path=config.backend.finalize_path,
            timeout=config.backend.timeout,
            headers=config.backend.headers
        )
        if record_store is not None:
            self._record_store = record_store
        elif config.storage.persistent:
            self._record_store = FileRecordStore(config.storage.record_directory)
        else:
            self._record_store = InMemoryRecordStore()

        self._started_components: List[Any] = []

    @property
    def config(self) -> ApplicationConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def backend(self) -> IUploadBackend:
        return self._backend

    @property
    def record_store(self) -> IRecordStore:
        return self._record_store

    async def start_application(self) -> None:
        """Start the event bus, then the backend."""
        for component in (self._event_bus, self._backend):
            if not isinstance(component, IStartable):
                continue
            try:
                await component.start()
            except Exception as e:
                logger.error(f"Failed to start {_component_name(component)}: {e}")
                await self.stop_application()
                raise
            self._started_components.append(component)
            logger.debug(f"Started component: {_component_name(component)}")

    async def stop_application(self) -> None:
        """Stop started components in reverse order."""
        for component in reversed(self._started_components):
            if not isinstance(component, IStoppable):
                continue
            try:
                await component.stop()
                logger.debug(f"Stopped component: {_component_name(component)}")
            except Exception as e:
                logger.error(f"Error stopping {_component_name(component)}: {e}")

        self._started_components.clear()

    def create_session(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: SleepFunc = asyncio.sleep,
        chunk_size: Optional[int] = None
    ) -> UploadSession:
        """
        Create an upload session wired to this application's components.

        ``chunk_size`` overrides the configured size, e.g. to resume a session
        created with another one.
        """
        upload = self._config.upload
        return UploadSession(
            backend=self._backend,
            record_store=self._record_store,
            chunk_size=chunk_size or upload.chunk_size,
            max_retries=upload.max_retries,
            initial_retry_delay_ms=upload.initial_retry_delay_ms,
            max_retry_delay_ms=upload.max_retry_delay_ms,
            strict_resume=upload.strict_resume,
            sleep=sleep,
            event_bus=self._event_bus,
            progress_callback=progress_callback
        )

    async def __aenter__(self) -> 'ApplicationStartup':
        await self.start_application()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop_application()


def _component_name(component: Any) -> str:
    if isinstance(component, IComponent):
        return component.name
    return component.__class__.__name__
