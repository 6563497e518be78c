import io
import math
import wave
from typing import Optional

import numpy as np
from loguru import logger
from pydub import AudioSegment

from scribeflow.core.exceptions import DecodeError

WAV_HEADER_BYTES = 44
BYTES_PER_SAMPLE = 2

CONVERSION_HINT = "Try converting the file to MP3 or WAV and transcribing it again."


class PcmAudio:
    """
    Decoded audio as float samples in [-1, 1]

    samples has shape (channels, frames).
    """

    def __init__(self, samples: np.ndarray, sample_rate: int):
        if samples.ndim == 1:
            samples = samples.reshape(1, -1)
        self.samples = samples.astype(np.float32, copy=False)
        self.sample_rate = int(sample_rate)

    @property
    def channels(self) -> int:
        return self.samples.shape[0]

    @property
    def frames(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    def __repr__(self) -> str:
        return f"PcmAudio(channels={self.channels}, frames={self.frames}, sample_rate={self.sample_rate})"


def _int_to_float(raw: np.ndarray, sample_width: int) -> np.ndarray:
    scale = float(1 << (8 * sample_width - 1))
    return raw.astype(np.float32) / scale


def decode_audio(data: bytes, fmt: Optional[str] = None) -> PcmAudio:
    """
    Decode compressed or PCM audio bytes

    Args:
        data: Encoded audio
        fmt: Container/codec hint such as "mp3" or "wav"

    Returns:
        The decoded audio at its native sample rate and channel count

    Raises:
        DecodeError: If the bytes cannot be decoded
    """
    if not data:
        raise DecodeError(f"Audio file is empty. {CONVERSION_HINT}")

    try:
        segment = AudioSegment.from_file(io.BytesIO(data), format=fmt or None)
    except Exception as e:
        logger.error(f"Failed to decode {fmt or 'unknown'} audio: {e}")
        raise DecodeError(f"Could not decode {fmt or 'the'} audio: {e}. {CONVERSION_HINT}") from e

    raw = np.array(segment.get_array_of_samples())
    samples = _int_to_float(raw, segment.sample_width)
    channels = max(1, segment.channels)
    samples = samples[: len(samples) - len(samples) % channels].reshape(-1, channels).T
    return PcmAudio(samples, segment.frame_rate)


def resample(pcm: PcmAudio, sample_rate: int) -> PcmAudio:
    """Linearly resample to sample_rate, keeping duration"""
    if sample_rate <= 0:
        raise DecodeError(f"Invalid target sample rate: {sample_rate}")
    if pcm.sample_rate == sample_rate:
        return pcm
    if pcm.frames == 0:
        return PcmAudio(np.zeros((pcm.channels, 0), dtype=np.float32), sample_rate)

    frames = int(math.ceil(pcm.duration * sample_rate))
    source_times = np.arange(pcm.frames) / pcm.sample_rate
    target_times = np.arange(frames) / sample_rate
    resampled = np.vstack([np.interp(target_times, source_times, channel) for channel in pcm.samples])
    logger.debug(f"Resampled {pcm.frames} frames at {pcm.sample_rate}Hz to {frames} frames at {sample_rate}Hz")
    return PcmAudio(resampled, sample_rate)


def downmix_to_mono(pcm: PcmAudio) -> PcmAudio:
    """Average all channels into one"""
    if pcm.channels == 1:
        return pcm
    return PcmAudio(pcm.samples.mean(axis=0), pcm.sample_rate)


def prepare_for_chunking(pcm: PcmAudio, sample_rate: int) -> PcmAudio:
    """Resample to sample_rate and down-mix to mono"""
    return downmix_to_mono(resample(pcm, sample_rate))


def to_int16(samples: np.ndarray, attenuation: float = 1.0) -> np.ndarray:
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF) * attenuation
    return scaled.astype(np.int16)


def encode_wav(samples: np.ndarray, sample_rate: int, attenuation: float = 0.8) -> bytes:
    """
    Encode mono float samples as a 16-bit PCM WAV file

    Args:
        samples: 1-D float samples in [-1, 1]
        sample_rate: Sample rate in Hz
        attenuation: Gain applied before quantization

    Returns:
        RIFF/WAVE bytes with a 44-byte header
    """
    pcm = to_int16(np.asarray(samples, dtype=np.float32).reshape(-1), attenuation)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(BYTES_PER_SAMPLE)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm.astype("<i2").tobytes())
    return buffer.getvalue()


def decode_wav(data: bytes) -> PcmAudio:
    """
    Decode a 16-bit PCM WAV file

    Raises:
        DecodeError: If the data is not 16-bit PCM WAV
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise DecodeError(f"Invalid WAV data: {e}") from e

    if sample_width != BYTES_PER_SAMPLE:
        raise DecodeError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    raw = np.frombuffer(frames, dtype="<i2")
    samples = _int_to_float(raw, sample_width).reshape(-1, channels).T
    return PcmAudio(samples, sample_rate)


def wav_size(frames: int) -> int:
    """Encoded size of a mono 16-bit WAV with the given frame count"""
    return WAV_HEADER_BYTES + frames * BYTES_PER_SAMPLE
