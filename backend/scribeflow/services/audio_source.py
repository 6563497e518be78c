import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import aiofiles

from scribeflow.core.config import Settings, settings as default_settings
from scribeflow.core.exceptions import InputError


class AudioSource(ABC):
    """
    Read-only view of one audio file of known size

    Sources are immutable for the duration of one transcription.
    """

    def __init__(self, filename: str, content_type: Optional[str] = None, config: Optional[Settings] = None):
        self.filename = filename
        self._config = config or default_settings
        self._content_type = content_type

    @property
    @abstractmethod
    def size(self) -> int:
        """Byte length of the audio"""

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower().lstrip(".")

    @property
    def content_type(self) -> str:
        if self._content_type:
            return self._content_type
        return self._config.AUDIO_MIME_TYPES.get(self.extension, "application/octet-stream")

    @abstractmethod
    async def read_range(self, offset: int, length: int) -> bytes:
        """Read up to length bytes starting at offset"""

    async def read_all(self) -> bytes:
        data = await self.read_range(0, self.size)
        if len(data) != self.size:
            raise InputError(f"Expected {self.size} bytes from {self.filename}, read {len(data)}")
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(filename={self.filename!r}, size={self.size})"


class FileAudioSource(AudioSource):
    """Audio stored on the local file system"""

    def __init__(self, path: Union[str, Path], content_type: Optional[str] = None, config: Optional[Settings] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise InputError(f"Audio file not found: {self.path}")
        super().__init__(self.path.name, content_type=content_type, config=config)
        self._size = os.path.getsize(self.path)

    @property
    def size(self) -> int:
        return self._size

    async def read_range(self, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(offset)
            return await f.read(length)


class BytesAudioSource(AudioSource):
    """Audio already held in memory"""

    def __init__(self, data: bytes, filename: str, content_type: Optional[str] = None, config: Optional[Settings] = None):
        super().__init__(filename, content_type=content_type, config=config)
        self._data = bytes(data)

    @property
    def size(self) -> int:
        return len(self._data)

    async def read_range(self, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        return self._data[offset:offset + length]
