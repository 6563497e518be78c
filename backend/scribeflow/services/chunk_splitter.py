import math
from typing import List, NamedTuple

from loguru import logger

from scribeflow.core.exceptions import DecodeError
from scribeflow.services.audio_codec import (
    BYTES_PER_SAMPLE,
    WAV_HEADER_BYTES,
    PcmAudio,
    encode_wav,
)


class ChunkSpan(NamedTuple):
    """Sample range [start, end) of one chunk in the source buffer"""
    index: int
    start: int
    end: int
    overlap_samples: int


class AudioChunk:
    """One encoded chunk ready for transcription"""

    def __init__(self, span: ChunkSpan, data: bytes, sample_rate: int):
        self.index = span.index
        self.start = span.start
        self.end = span.end
        self.overlap_samples = span.overlap_samples
        self.data = data
        self.sample_rate = sample_rate

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def filename(self) -> str:
        return f"chunk_{self.index + 1}.wav"

    @property
    def start_seconds(self) -> float:
        return self.start / self.sample_rate

    def __repr__(self) -> str:
        return f"AudioChunk(index={self.index}, start={self.start}, end={self.end}, size={self.size})"


def plan_chunks(
    total_samples: int,
    sample_rate: int,
    max_chunk_bytes: int,
    overlap_seconds: float = 1.0,
) -> List[ChunkSpan]:
    """
    Work out the overlapping sample ranges for a mono 16-bit buffer

    Args:
        total_samples: Length of the buffer in samples
        sample_rate: Sample rate in Hz
        max_chunk_bytes: Upper bound on each encoded WAV chunk
        overlap_seconds: Audio shared between adjacent chunks

    Returns:
        The chunk spans, in order

    Raises:
        DecodeError: If max_chunk_bytes leaves no room for audio payload
    """
    raw_max_samples = (max_chunk_bytes - WAV_HEADER_BYTES) // BYTES_PER_SAMPLE
    # Overlap is capped at 10% of a chunk
    overlap_samples = max(0, min(int(math.floor(overlap_seconds * sample_rate)), raw_max_samples // 10))
    payload_samples = raw_max_samples - overlap_samples
    if payload_samples <= 0:
        raise DecodeError("Chunk size too small for WAV encoding")

    spans = []
    for index, start in enumerate(range(0, total_samples, payload_samples)):
        end = min(start + payload_samples + overlap_samples, total_samples)
        spans.append(ChunkSpan(index, start, end, overlap_samples))
    return spans


def split_audio(
    pcm: PcmAudio,
    max_chunk_bytes: int,
    overlap_seconds: float = 1.0,
    attenuation: float = 0.8,
) -> List[AudioChunk]:
    """
    Cut mono audio into overlapping WAV chunks no larger than max_chunk_bytes

    Raises:
        DecodeError: If the audio is not mono, or no chunk could be produced
    """
    if pcm.channels != 1:
        raise DecodeError(f"Chunking expects mono audio, got {pcm.channels} channels")

    samples = pcm.samples[0]
    spans = plan_chunks(pcm.frames, pcm.sample_rate, max_chunk_bytes, overlap_seconds)
    chunks = [
        AudioChunk(span, encode_wav(samples[span.start:span.end], pcm.sample_rate, attenuation), pcm.sample_rate)
        for span in spans
    ]
    if not chunks:
        raise DecodeError("Chunking produced zero audio chunks")

    logger.info(
        f"Split {pcm.duration:.1f}s of audio into {len(chunks)} chunks "
        f"(max {max_chunk_bytes} bytes, overlap {spans[0].overlap_samples} samples)"
    )
    return chunks
