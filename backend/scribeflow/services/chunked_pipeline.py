import asyncio
import math
from functools import partial
from typing import List, Optional

from loguru import logger

from scribeflow.core.config import Settings, settings as default_settings
from scribeflow.core.exceptions import ProtocolError
from scribeflow.schemas.transcription import TranscriptionAttempt, TranscriptionOptions
from scribeflow.services.audio_codec import decode_audio, prepare_for_chunking
from scribeflow.services.audio_source import BytesAudioSource
from scribeflow.services.base import ProgressCallback, Transcriber, no_progress
from scribeflow.services.chunk_splitter import AudioChunk, split_audio
from scribeflow.services.transcript_merger import merge_transcripts
from scribeflow.services.upload_scheduler import UploadScheduler

BAND_START = 20
BAND_WIDTH = 78


class LocalChunkedPipeline:
    """
    Transcribe audio too large for one request by splitting it locally

    Decode, resample to mono, split into overlapping WAV chunks, transcribe
    each chunk in order and merge the results.
    """

    def __init__(self, transcriber: Transcriber, scheduler: UploadScheduler, config: Optional[Settings] = None):
        self.transcriber = transcriber
        self.scheduler = scheduler
        self.config = config or default_settings

    async def run(
        self,
        data: bytes,
        fmt: str,
        options: TranscriptionOptions,
        on_progress: Optional[ProgressCallback] = None,
        attempt: Optional[TranscriptionAttempt] = None,
    ) -> str:
        """
        Transcribe encoded audio chunk by chunk

        Args:
            data: Encoded audio bytes
            fmt: Format of data, e.g. "mp3"
            options: Transcription options applied to every chunk
            on_progress: Progress callback
            attempt: Attempt record for retry accounting

        Returns:
            The merged transcript

        Raises:
            DecodeError: If the audio cannot be decoded or split
            TranscriptionError: If any chunk fails
        """
        progress = on_progress or no_progress
        progress(BAND_START, "Splitting audio into chunks...")

        chunks = await self.build_chunks(data, fmt)
        transcripts: List[str] = []
        for chunk in chunks:
            chunk_progress = self._chunk_progress(progress, chunk.index, len(chunks))
            source = BytesAudioSource(chunk.data, chunk.filename, "audio/wav", config=self.config)
            text = await self.scheduler.retrying(
                partial(self.transcriber.transcribe, source, options, chunk_progress),
                chunk_progress,
                attempt,
            )
            logger.debug(
                f"Chunk {chunk.index + 1}/{len(chunks)} at {chunk.start_seconds:.1f}s transcribed ({len(text)} characters)"
            )
            transcripts.append(text)

        progress(BAND_START + BAND_WIDTH, "Merging transcripts...")
        merged = merge_transcripts(transcripts).strip()
        if not merged:
            raise ProtocolError("Chunked transcription produced an empty transcript")

        logger.info(f"Local chunked transcription finished: {len(chunks)} chunks, {len(merged)} characters")
        return merged

    async def build_chunks(self, data: bytes, fmt: str) -> List[AudioChunk]:
        """Decode and split audio off the event loop"""
        loop = asyncio.get_running_loop()
        target_rate = self.config.target_sample_rate(fmt)

        pcm = await loop.run_in_executor(None, decode_audio, data, fmt)
        logger.info(f"Decoded {pcm.duration:.1f}s of {fmt} audio at {pcm.sample_rate}Hz, {pcm.channels} channel(s)")
        mono = await loop.run_in_executor(None, prepare_for_chunking, pcm, target_rate)
        return await loop.run_in_executor(
            None,
            partial(
                split_audio,
                mono,
                self.config.direct_upload_limit(),
                overlap_seconds=self.config.CHUNK_OVERLAP_SECONDS,
                attenuation=self.config.WAV_ATTENUATION,
            ),
        )

    @staticmethod
    def _chunk_progress(progress: ProgressCallback, index: int, total: int) -> ProgressCallback:
        start = BAND_START + math.floor(index / total * BAND_WIDTH)
        end = BAND_START + math.floor((index + 1) / total * BAND_WIDTH)

        def report(percent: int, status: str) -> None:
            clamped = min(100, max(0, percent))
            progress(start + round(clamped / 100 * max(1, end - start)), f"Chunk {index + 1}/{total}: {status}")

        return report
