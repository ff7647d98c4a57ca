"""
Durable chunk-completion record stores.

Records are best-effort: a failing storage layer must never break a transfer,
it only means a later resume re-sends chunks the server already has.
"""

import json
import logging
from abc import abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os

from ...core.domain.upload import PersistedRecord
from ...core.interfaces.upload import IRecordStore

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "upload_state_"
LAST_SESSION_KEY = "lastSessionId"


class BaseRecordStore(IRecordStore):
    """
    Shared record logic on top of a raw key-value capability.

    Subclasses provide ``_read``/``_write``/``_delete``/``_keys`` for record
    documents and ``_read_meta``/``_write_meta`` for the last-session marker.
    Storage errors are logged and swallowed here.
    """

    async def load(self, session_id: str) -> Optional[PersistedRecord]:
        try:
            raw = await self._read(session_id)
            if raw is None:
                return None
            record = PersistedRecord.model_validate(json.loads(raw))
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable upload record for {session_id}: {e}")
            return None

        if record.session_id != session_id:
            logger.warning(
                f"Upload record for {session_id} belongs to {record.session_id}, ignoring it")
            return None
        return record

    async def save(self, record: PersistedRecord) -> None:
        try:
            await self._write(record.session_id, json.dumps(record.to_wire()))
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to save upload record for {record.session_id}: {e}")

    async def mark_chunk_uploaded(self, session_id: str, index: int) -> None:
        record = await self.load(session_id)
        if record is None:
            return

        updated = record.with_chunk(index)
        if updated is not record:
            await self.save(updated)

    async def clear(self, session_id: str) -> None:
        try:
            await self._delete(session_id)
        except OSError as e:
            logger.warning(f"Failed to clear upload record for {session_id}: {e}")

    async def list_records(self) -> List[PersistedRecord]:
        try:
            keys = await self._keys()
        except OSError as e:
            logger.warning(f"Failed to list upload records: {e}")
            return []

        records = []
        for session_id in sorted(keys):
            record = await self.load(session_id)
            if record is not None:
                records.append(record)
        return records

    async def remember_last_session(self, session_id: str) -> None:
        try:
            await self._write_meta(json.dumps({LAST_SESSION_KEY: session_id}))
        except OSError as e:
            logger.warning(f"Failed to remember last session {session_id}: {e}")

    async def last_session_id(self) -> Optional[str]:
        try:
            raw = await self._read_meta()
            if raw is None:
                return None
            value = json.loads(raw).get(LAST_SESSION_KEY)
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable last session marker: {e}")
            return None
        return value if isinstance(value, str) and value else None

    @abstractmethod
    async def _read(self, session_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def _write(self, session_id: str, document: str) -> None:
        pass

    @abstractmethod
    async def _delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def _keys(self) -> List[str]:
        pass

    @abstractmethod
    async def _read_meta(self) -> Optional[str]:
        pass

    @abstractmethod
    async def _write_meta(self, document: str) -> None:
        pass


class InMemoryRecordStore(BaseRecordStore):
    """Process-local store, used in tests and when durability is not wanted."""

    def __init__(self) -> None:
        self._documents: Dict[str, str] = {}
        self._meta: Optional[str] = None

    async def _read(self, session_id: str) -> Optional[str]:
        return self._documents.get(session_id)

    async def _write(self, session_id: str, document: str) -> None:
        self._documents[session_id] = document

    async def _delete(self, session_id: str) -> None:
        self._documents.pop(session_id, None)

    async def _keys(self) -> List[str]:
        return list(self._documents)

    async def _read_meta(self) -> Optional[str]:
        return self._meta

    async def _write_meta(self, document: str) -> None:
        self._meta = document


class FileRecordStore(BaseRecordStore):
    """
    One JSON document per session in a directory.

    Writes go to a temporary file that atomically replaces the previous
    document, so a crash never leaves a half-written record behind.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._directory = Path(directory)
        self._meta_path = self._directory / "last_session.json"

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{STORAGE_KEY_PREFIX}{quote(session_id, safe='')}.json"

    async def _read(self, session_id: str) -> Optional[str]:
        return await self._read_file(self.path_for(session_id))

    async def _write(self, session_id: str, document: str) -> None:
        await self._write_file(self.path_for(session_id), document)

    async def _delete(self, session_id: str) -> None:
        try:
            await aiofiles.os.remove(self.path_for(session_id))
        except FileNotFoundError:
            pass

    async def _keys(self) -> List[str]:
        try:
            names = await aiofiles.os.listdir(self._directory)
        except FileNotFoundError:
            return []

        return [
            unquote(name[len(STORAGE_KEY_PREFIX):-len(".json")])
            for name in names
            if name.startswith(STORAGE_KEY_PREFIX) and name.endswith(".json")
        ]

    async def _read_meta(self) -> Optional[str]:
        return await self._read_file(self._meta_path)

    async def _write_meta(self, document: str) -> None:
        await self._write_file(self._meta_path, document)

    async def _read_file(self, path: Path) -> Optional[str]:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content: Any = await f.read()
                return str(content)
        except FileNotFoundError:
            return None

    async def _write_file(self, path: Path, document: str) -> None:
        await aiofiles.os.makedirs(self._directory, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(document)
        await aiofiles.os.replace(temp_path, path)
