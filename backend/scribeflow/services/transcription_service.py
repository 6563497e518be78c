import asyncio
import time
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import httpx
from loguru import logger

from scribeflow.core.config import Settings, settings as default_settings
from scribeflow.core.exceptions import (
    DecodeError,
    InputError,
    TranscriptionCancelledError,
    TranscriptionError,
    describe_error,
)
from scribeflow.schemas.transcription import TranscriptionAttempt, TranscriptionOptions, TranscriptionStrategy
from scribeflow.services.audio_codec import decode_audio, encode_wav, prepare_for_chunking
from scribeflow.services.audio_source import AudioSource, BytesAudioSource
from scribeflow.services.base import ProgressCallback, no_progress
from scribeflow.services.chunked_pipeline import LocalChunkedPipeline
from scribeflow.services.direct_client import DirectTranscriptionClient
from scribeflow.services.job_client import RemoteJobClient
from scribeflow.services.upload_scheduler import UploadScheduler


class TranscriptionService:
    """
    Entry point for transcribing one audio file

    Validates the input, picks a strategy (remote job, direct upload or
    local chunking) once per request, runs it under the shared scheduler
    and reports progress along the way.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[UploadScheduler] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or default_settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.REQUEST_TIMEOUT)
        self.scheduler = scheduler or UploadScheduler(self.config, sleep=sleep)
        self.job_client = RemoteJobClient(self.client, self.config, sleep=sleep, clock=clock)
        self.direct_client = DirectTranscriptionClient(self.client, self.config)
        self.pipeline = LocalChunkedPipeline(self.direct_client, self.scheduler, self.config)
        logger.info(f"Transcription service initialized (provider={self.config.TRANSCRIPTION_PROVIDER})")

    @property
    def remote_jobs_available(self) -> bool:
        return not self.config.is_custom_provider and self.config.REMOTE_JOBS_ENABLED

    async def transcribe(
        self,
        source: AudioSource,
        options: Optional[TranscriptionOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        """
        Transcribe an audio source

        Args:
            source: Audio to transcribe
            options: Transcription options
            on_progress: Called with (percent, status) as work advances
            cancel: Set this event to cancel the transcription

        Returns:
            The transcript text

        Raises:
            TranscriptionCancelledError: If cancel was set before completion
            TranscriptionError: Any other typed failure
        """
        options = options or TranscriptionOptions()
        progress = on_progress or no_progress
        work = asyncio.ensure_future(self._transcribe(source, options, progress))
        if cancel is None:
            return await work

        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
                # Let in-flight cleanup such as the upload abort finish
                await asyncio.gather(work, return_exceptions=True)

        if work in done:
            return work.result()

        logger.info(f"Transcription of {source.filename} cancelled")
        raise TranscriptionCancelledError("Transcription was cancelled")

    def validate(self, source: AudioSource, remote_job: bool) -> None:
        """
        Check the source against format and size limits

        Raises:
            InputError: If the source cannot be transcribed
        """
        if source.extension not in self.config.SUPPORTED_AUDIO_EXTENSIONS:
            supported = ", ".join(self.config.SUPPORTED_AUDIO_EXTENSIONS)
            raise InputError(f"Unsupported audio format '{source.extension or 'unknown'}'. Supported formats: {supported}")

        if not source.size or source.size <= 0:
            raise InputError("File size is unknown or zero")

        if source.size > self.config.MAX_FILE_SIZE:
            raise InputError(f"File too large. Maximum supported size is {self.config.MAX_FILE_SIZE // (1024 * 1024)}MB")

        if remote_job and source.size > self.config.JOB_MAX_AUDIO_BYTES:
            raise InputError(
                f"File too large for transcription. Maximum supported size is "
                f"{self.config.JOB_MAX_AUDIO_BYTES // (1024 * 1024)}MB"
            )

        if self.config.is_custom_provider and not (self.config.CUSTOM_TRANSCRIPTION_ENDPOINT or "").strip():
            raise InputError("Custom transcription endpoint is not configured")

    async def _transcribe(self, source: AudioSource, options: TranscriptionOptions, progress: ProgressCallback) -> str:
        attempt = TranscriptionAttempt(timeout_seconds=self.config.JOB_TIMEOUT)
        progress(0, "Reading audio file...")

        remote_job = self.remote_jobs_available
        self.validate(source, remote_job)

        async with self.scheduler.admission(progress):
            try:
                if remote_job:
                    attempt.strategy = TranscriptionStrategy.REMOTE_JOB
                    logger.info(f"Transcribing {source.filename} via remote job ({source.size} bytes)")
                    text = await self.scheduler.retrying(
                        partial(self.job_client.transcribe, source, options, progress), progress, attempt
                    )
                else:
                    text = await self._transcribe_locally(source, options, progress, attempt)
            except TranscriptionError as e:
                logger.error(
                    f"Transcription of {source.filename} failed after {attempt.elapsed:.1f}s "
                    f"(strategy={attempt.strategy.value if attempt.strategy else 'none'}, "
                    f"retries={attempt.retry_count}, scheduler={self.scheduler.diagnostics()}): "
                    f"{describe_error(e, self.config.ERROR_MESSAGE_MAX_LENGTH)}"
                )
                raise

        progress(100, "Transcription complete!")
        logger.info(
            f"Transcribed {source.filename} via {attempt.strategy.value} in {attempt.elapsed:.1f}s "
            f"with {attempt.retry_count} retries"
        )
        return text

    async def _transcribe_locally(
        self,
        source: AudioSource,
        options: TranscriptionOptions,
        progress: ProgressCallback,
        attempt: TranscriptionAttempt,
    ) -> str:
        data = await source.read_all()
        prepared, data = await self._prepare_direct_audio(source, data, progress)

        if len(data) > self.config.direct_upload_limit():
            attempt.strategy = TranscriptionStrategy.LOCAL_CHUNKED
            logger.info(
                f"Transcribing {source.filename} in local chunks "
                f"({len(data)} bytes over the {self.config.direct_upload_limit()} byte limit)"
            )
            return await self.pipeline.run(data, prepared.extension, options, progress, attempt)

        attempt.strategy = TranscriptionStrategy.DIRECT_UPLOAD
        logger.info(f"Transcribing {prepared.filename} with a direct upload ({len(data)} bytes)")
        return await self.scheduler.retrying(
            partial(self.direct_client.transcribe, prepared, options, progress), progress, attempt
        )

    async def _prepare_direct_audio(
        self,
        source: AudioSource,
        data: bytes,
        progress: ProgressCallback,
    ) -> Tuple[AudioSource, bytes]:
        """
        Re-encode audio as mono WAV at the provider's preferred sample rate

        Only applies to the transcription service with auto-resampling on
        and a file within the direct upload limit. Failures keep the
        original bytes.
        """
        if (
            self.config.is_custom_provider
            or not self.config.AUTO_RESAMPLING_ENABLED
            or len(data) > self.config.direct_upload_limit()
        ):
            return source, data

        target_rate = self.config.target_sample_rate(source.extension)
        loop = asyncio.get_running_loop()
        progress(10, "Checking audio compatibility...")
        try:
            pcm = await loop.run_in_executor(None, decode_audio, data, source.extension)
            if pcm.sample_rate == target_rate:
                return source, data

            progress(15, "Converting audio format...")
            mono = await loop.run_in_executor(None, prepare_for_chunking, pcm, target_rate)
            wav = await loop.run_in_executor(
                None, encode_wav, mono.samples[0], target_rate, self.config.WAV_ATTENUATION
            )
        except DecodeError as e:
            logger.warning(f"Could not resample {source.filename}, uploading the original audio: {e}")
            return source, data

        logger.info(f"Resampled {source.filename} from {pcm.sample_rate}Hz to {target_rate}Hz mono WAV")
        filename = f"{Path(source.filename).stem}.wav"
        return BytesAudioSource(wav, filename, "audio/wav", config=self.config), wav

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
