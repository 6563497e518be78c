from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx

from scribeflow.core.config import Settings, settings as default_settings
from scribeflow.schemas.transcription import TranscriptionOptions
from scribeflow.services.audio_source import AudioSource
from scribeflow.utils.http import parse_json, raise_for_response, transport_errors

ProgressCallback = Callable[[int, str], None]


def no_progress(percent: int, status: str) -> None:
    pass


class Transcriber(ABC):
    """A way of turning one audio source into transcript text"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.REQUEST_TIMEOUT)

    @abstractmethod
    async def transcribe(
        self,
        source: AudioSource,
        options: TranscriptionOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Transcribe the source

        Raises:
            TranscriptionError: Any typed failure
        """

    async def _send(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        with transport_errors(action):
            response = await self.client.request(method, url, **kwargs)
        raise_for_response(response, action)
        return response

    async def _send_json(self, method: str, url: str, action: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._send(method, url, action, **kwargs)
        return parse_json(response, action)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
