"""
Shared fixtures: isolated settings, a fake clock, a progress recorder,
WAV generation and an in-memory transcription job service.
"""
import asyncio
import io
import json
import wave
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np
import pytest

from scribeflow.core.config import Settings

API_BASE_URL = "https://api.test/audio/transcriptions"
STORAGE_HOST = "storage.test"


@pytest.fixture
def settings_factory():
    """Build Settings that ignore .env files and the process environment defaults"""

    def make(**overrides: Any) -> Settings:
        values = {
            "API_BASE_URL": API_BASE_URL,
            "API_KEY": "test-key",
            "TRANSCRIPTION_PROVIDER": "service",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return make


class ProgressRecorder:
    """Collects (percent, status) progress reports"""

    def __init__(self):
        self.events: List[Tuple[int, str]] = []

    def __call__(self, percent: int, status: str) -> None:
        self.events.append((percent, status))

    @property
    def statuses(self) -> List[str]:
        return [status for _, status in self.events]


@pytest.fixture
def progress() -> ProgressRecorder:
    return ProgressRecorder()


class FakeClock:
    """Monotonic clock advanced only by the fake sleep"""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def build_wav(seconds: float, sample_rate: int, channels: int = 1, frequency: float = 220.0) -> bytes:
    """A 16-bit PCM WAV holding a quiet sine tone"""
    frames = int(seconds * sample_rate)
    t = np.arange(frames) / sample_rate
    tone = (0.3 * np.sin(2 * np.pi * frequency * t) * 32767).astype("<i2")
    interleaved = np.repeat(tone, channels) if channels > 1 else tone
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(interleaved.tobytes())
    return buffer.getvalue()


@pytest.fixture
def wav_factory():
    return build_wav


class FakeJobServer:
    """
    In-memory implementation of the transcription job protocol

    statuses is consumed one entry per status poll; the last entry repeats.
    start_responses is consumed one entry per start call; the last repeats.
    """

    def __init__(
        self,
        part_size: int = 1000,
        total_parts: Optional[int] = None,
        processing_strategy: str = "direct",
        statuses: Optional[List[Dict[str, Any]]] = None,
        start_responses: Optional[List[Tuple[int, Optional[Dict[str, Any]]]]] = None,
        put_status: int = 200,
        complete_status: int = 200,
        send_etag: bool = True,
        signed_files: Optional[Dict[str, str]] = None,
    ):
        self.part_size = part_size
        self.total_parts = total_parts
        self.processing_strategy = processing_strategy
        self.statuses = statuses or [{"job": {"status": "succeeded"}, "transcript": {"text": "done"}}]
        self.start_responses = start_responses or [(202, None)]
        self.put_status = put_status
        self.complete_status = complete_status
        self.send_etag = send_etag
        self.signed_files = signed_files or {}

        self.created: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, str]] = []
        self.uploaded: Dict[int, bytes] = {}
        self.completed: List[Dict[str, Any]] = []
        self.part_url_requests = 0
        self.start_calls = 0
        self.status_polls = 0
        self.aborts = 0
        self.api_keys: List[Optional[str]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        if request.url.host == STORAGE_HOST:
            return self._handle_storage(request)

        self.api_keys.append(request.headers.get("x-api-key"))
        jobs = "/audio/transcriptions/jobs"

        if method == "POST" and path == jobs:
            body = json.loads(request.content)
            self.created.append(body)
            size = body["contentLengthBytes"]
            total = self.total_parts if self.total_parts is not None else -(-size // self.part_size)
            return httpx.Response(200, json={
                "success": True,
                "job": {"id": "job-1", "processingStrategy": self.processing_strategy},
                "upload": {"partSizeBytes": self.part_size, "totalParts": total},
            })
        if method == "GET" and path == f"{jobs}/job-1/upload/part-url":
            self.part_url_requests += 1
            number = request.url.params["partNumber"]
            return httpx.Response(200, json={"success": True, "part": {"url": f"https://{STORAGE_HOST}/job-1/{number}"}})
        if method == "POST" and path == f"{jobs}/job-1/upload/complete":
            self.completed.append(json.loads(request.content))
            if self.complete_status != 200:
                return httpx.Response(self.complete_status, json={"error": {"message": "complete unavailable"}})
            return httpx.Response(200, json={"success": True})
        if method == "POST" and path == f"{jobs}/job-1/upload/abort":
            self.aborts += 1
            return httpx.Response(200, json={"success": True})
        if method == "POST" and path == f"{jobs}/job-1/start":
            index = min(self.start_calls, len(self.start_responses) - 1)
            self.start_calls += 1
            status_code, payload = self.start_responses[index]
            return httpx.Response(status_code, json={"success": True, **(payload or {})})
        if method == "GET" and path == f"{jobs}/job-1":
            index = min(self.status_polls, len(self.statuses) - 1)
            self.status_polls += 1
            return httpx.Response(200, json={"success": True, **self.statuses[index]})
        return httpx.Response(404, json={"error": {"message": f"No route for {method} {path}"}})

    def _handle_storage(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, text=self.signed_files[request.url.path])
        if self.put_status != 200:
            return httpx.Response(self.put_status, text="storage unavailable")
        number = int(request.url.path.rsplit("/", 1)[-1])
        self.uploaded[number] = request.content
        headers = {"ETag": f'"etag-{number}"'} if self.send_etag else {}
        return httpx.Response(200, headers=headers)


@pytest.fixture
def job_server_factory():
    return FakeJobServer
