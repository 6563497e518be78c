import numpy as np
import pytest

from scribeflow.core.exceptions import DecodeError
from scribeflow.services.audio_codec import PcmAudio, decode_wav, wav_size
from scribeflow.services.chunk_splitter import plan_chunks, split_audio

FIVE_MB = 5 * 1024 * 1024


def test_ten_minutes_at_16k_fit_five_megabyte_chunks():
    total = 10 * 60 * 16000
    spans = plan_chunks(total, 16000, FIVE_MB, overlap_seconds=1.0)

    assert len(spans) == 4
    assert all(wav_size(span.end - span.start) <= FIVE_MB for span in spans)

    # Ranges cover [0, total) with no gaps
    assert spans[0].start == 0
    assert spans[-1].end == total
    for previous, current in zip(spans, spans[1:]):
        assert current.start <= previous.end
        assert current.start > previous.start


def test_adjacent_chunks_share_the_overlap():
    spans = plan_chunks(16000 * 60, 16000, 44 + 2 * 160000, overlap_seconds=1.0)

    assert spans[0].overlap_samples == 16000
    for previous, current in zip(spans, spans[1:]):
        assert previous.end - current.start == 16000


def test_overlap_is_capped_at_a_tenth_of_a_chunk():
    spans = plan_chunks(5000, 16000, 44 + 2 * 1000, overlap_seconds=1.0)

    assert spans[0].overlap_samples == 100
    assert [span.start for span in spans] == list(range(0, 5000, 900))
    assert spans[0].end == 1000


def test_chunk_size_too_small_raises():
    with pytest.raises(DecodeError, match="too small"):
        plan_chunks(1000, 16000, 44)


def test_empty_audio_produces_no_chunks():
    assert plan_chunks(0, 16000, FIVE_MB) == []
    with pytest.raises(DecodeError, match="zero audio chunks"):
        split_audio(PcmAudio(np.zeros(0, dtype=np.float32), 16000), FIVE_MB)


def test_split_audio_encodes_each_chunk_as_wav():
    pcm = PcmAudio(np.sin(np.linspace(0, 200, 3000)).astype(np.float32), 1000)
    max_bytes = 44 + 2 * 1000

    chunks = split_audio(pcm, max_bytes, overlap_seconds=0.05)

    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert chunk.size <= max_bytes
        assert chunk.data[:4] == b"RIFF"
        assert chunk.filename == f"chunk_{chunk.index + 1}.wav"
        decoded = decode_wav(chunk.data)
        assert decoded.frames == chunk.end - chunk.start
        assert decoded.sample_rate == 1000
    assert chunks[-1].end == 3000
    assert chunks[1].start_seconds == pytest.approx(0.95)


def test_split_audio_requires_mono():
    stereo = PcmAudio(np.zeros((2, 100), dtype=np.float32), 1000)
    with pytest.raises(DecodeError, match="mono"):
        split_audio(stereo, FIVE_MB)
