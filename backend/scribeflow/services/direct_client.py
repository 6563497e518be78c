import json
import time
import uuid
from typing import Any, Dict, Optional, Tuple

import httpx
from loguru import logger
from pydantic import ValidationError

from scribeflow.core.exceptions import InputError, ProtocolError, RequestRejectedError
from scribeflow.schemas.transcription import TranscriptionOptions
from scribeflow.services.audio_source import AudioSource
from scribeflow.services.base import ProgressCallback, Transcriber, no_progress
from scribeflow.services.transcript_merger import segments_to_srt
from scribeflow.utils.http import parse_json, raise_for_response, transport_errors

NDJSON_CONTENT_TYPE = "application/x-ndjson"


class DirectTranscriptionClient(Transcriber):
    """
    Single-shot transcription: one multipart POST carrying the whole file

    Talks either to the transcription service or to a custom
    OpenAI-compatible endpoint, depending on TRANSCRIPTION_PROVIDER.
    """

    @property
    def endpoint(self) -> str:
        if self.config.is_custom_provider:
            endpoint = (self.config.CUSTOM_TRANSCRIPTION_ENDPOINT or "").strip()
            if not endpoint:
                raise InputError("Custom transcription endpoint is not configured")
            return endpoint
        return self.config.API_BASE_URL.rstrip("/")

    @property
    def is_groq(self) -> bool:
        return self.config.is_custom_provider and "groq.com" in self.endpoint.lower()

    async def transcribe(
        self,
        source: AudioSource,
        options: TranscriptionOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Upload the source in one request and return its transcript

        Args:
            source: Audio to transcribe
            options: Transcription options
            on_progress: Progress callback

        Returns:
            The transcript text

        Raises:
            InputError: If the custom endpoint is missing
            ServiceError: If the request fails
            ProtocolError: If the response holds no transcript
        """
        progress = on_progress or no_progress
        endpoint = self.endpoint
        data = await source.read_all()

        headers, fields = self._build_request(options)
        files = {"file": (source.filename, data, source.content_type)}

        progress(10, "Uploading audio...")
        progress(30, "Transcribing audio...")
        logger.debug(f"Posting {len(data)} bytes of {source.filename} to {endpoint}")

        action = "Transcription request"
        with transport_errors(action):
            async with self.client.stream("POST", endpoint, headers=headers, data=fields, files=files) as response:
                if not response.is_success:
                    await response.aread()
                    raise_for_response(response, action)
                content_type = response.headers.get("content-type", "").lower()
                if NDJSON_CONTENT_TYPE in content_type:
                    payload = await self._read_ndjson(response, progress)
                else:
                    await response.aread()
                    payload = self._read_body(response, content_type, action)

        progress(70, "Processing response...")
        text = self._extract_text(payload, options.timestamped).strip()
        if not text:
            raise ProtocolError("Empty transcription text received")

        progress(100, "Transcription complete!")
        logger.info(f"Transcribed {source.filename} in a single request ({len(text)} characters)")
        return text

    def _build_request(self, options: TranscriptionOptions) -> Tuple[Dict[str, str], Dict[str, str]]:
        request_id = f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        headers: Dict[str, str] = {}
        fields: Dict[str, str] = {}

        if not self.config.is_custom_provider:
            if self.config.API_KEY:
                headers["x-api-key"] = self.config.API_KEY
            fields["requestId"] = request_id
            if options.timestamped:
                fields["timestamped"] = "true"
            return headers, fields

        if self.config.CUSTOM_TRANSCRIPTION_API_KEY:
            headers["Authorization"] = f"Bearer {self.config.CUSTOM_TRANSCRIPTION_API_KEY}"

        if self.is_groq:
            headers["X-Request-ID"] = f"scribeflow-{request_id}"
            headers["Accept"] = "application/json"
            fields["model"] = self.config.CUSTOM_TRANSCRIPTION_MODEL or "whisper-large-v3"
            if options.timestamped:
                fields["response_format"] = "verbose_json"
                fields["timestamp_granularities[]"] = "segment"
            else:
                fields["response_format"] = "text"
            fields["language"] = "en"
        else:
            fields["model"] = self.config.CUSTOM_TRANSCRIPTION_MODEL or "whisper-1"
            fields["requestId"] = request_id
            if options.timestamped:
                fields["timestamped"] = "true"
        return headers, fields

    async def _read_ndjson(self, response: httpx.Response, progress: ProgressCallback) -> Dict[str, Any]:
        final: Dict[str, Any] = {}
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                logger.debug(f"Skipping unparseable NDJSON line: {line[:80]}")
                continue
            if not isinstance(obj, dict):
                continue

            update = obj.get("progress_update")
            if isinstance(update, dict):
                try:
                    progress(int(float(update.get("progress"))), str(update.get("status") or ""))
                except (TypeError, ValueError):
                    logger.debug(f"Ignoring malformed progress update: {update}")
            if obj.get("text") or obj.get("error"):
                final = obj

        error = final.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise RequestRejectedError(str(message or error), status_code=response.status_code)
        return final

    def _read_body(self, response: httpx.Response, content_type: str, action: str) -> Any:
        if "application/json" in content_type:
            return parse_json(response, action)
        if content_type.startswith("text/"):
            return response.text
        try:
            return parse_json(response, action)
        except ProtocolError as e:
            raise ProtocolError(f"Unexpected transcription response type: {content_type or 'unknown'}") from e

    def _extract_text(self, payload: Any, timestamped: bool) -> str:
        if isinstance(payload, str):
            return payload

        segments = payload.get("segments")
        if timestamped and isinstance(segments, list):
            try:
                return segments_to_srt(segments)
            except ValidationError as e:
                raise ProtocolError("Transcription response carried malformed segments") from e

        text = payload.get("text")
        if isinstance(text, str) and text.strip():
            return text

        data = payload.get("data")
        if isinstance(data, dict) and isinstance(data.get("text"), str):
            return data["text"]

        raise ProtocolError("Invalid response format: no transcription text found")
