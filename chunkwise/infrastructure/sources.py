"""
Upload sources the session reads chunk bytes from.
"""

import os
from pathlib import Path
from typing import Optional, Union

import aiofiles

from ..core.interfaces.upload import IUploadSource


class FileSource(IUploadSource):
    """
    A file on disk.

    The size is captured once at construction; chunk ranges are computed from
    it for the whole session.
    """

    def __init__(self, path: Union[str, Path], name: Optional[str] = None) -> None:
        self._path = Path(path)
        if not self._path.is_file():
            raise FileNotFoundError(f"File not found: {self._path}")
        self._name = name or self._path.name
        self._size = os.path.getsize(self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._size

    async def read(self, start: int, end: int) -> bytes:
        _check_range(start, end, self._size)
        async with aiofiles.open(self._path, 'rb') as f:
            await f.seek(start)
            data: bytes = await f.read(end - start)

        if len(data) != end - start:
            raise IOError(
                f"Short read from {self._path}: expected {end - start} bytes at "
                f"offset {start}, got {len(data)} (file changed during upload?)")
        return data


class BytesSource(IUploadSource):
    """In-memory payload."""

    def __init__(self, data: bytes, name: str = "upload.bin") -> None:
        self._data = bytes(data)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return len(self._data)

    async def read(self, start: int, end: int) -> bytes:
        _check_range(start, end, len(self._data))
        return self._data[start:end]


def _check_range(start: int, end: int, size: int) -> None:
    if not 0 <= start <= end <= size:
        raise ValueError(f"Invalid byte range [{start}, {end}) for {size} bytes")
