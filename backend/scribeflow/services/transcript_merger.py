import re
import string
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from loguru import logger

from scribeflow.schemas.transcription import SubtitleEntry, TranscriptSegment

SRT_TIMING_PATTERN = re.compile(r"\d{2}:\d{2}:\d{2},\d{3}\s+-->\s+\d{2}:\d{2}:\d{2},\d{3}")
VTT_TIMING_PATTERN = re.compile(r"\d{2}:\d{2}:\d{2}\.\d{3}\s+-->\s+\d{2}:\d{2}:\d{2}\.\d{3}")
SRT_ENTRY_PATTERN = re.compile(
    r"^\d+\s*\n\d{2}:\d{2}:\d{2},\d{3}\s+-->\s+\d{2}:\d{2}:\d{2},\d{3}", re.MULTILINE
)
ENTRY_SEPARATOR = re.compile(r"\n\s*\n")
WORD_PATTERN = re.compile(r"\S+")

# Overlap detection thresholds
EXACT_OVERLAP_WINDOW = 300
EXACT_OVERLAP_MIN_CHARS = 10
FUZZY_OVERLAP_WINDOW = 100
FUZZY_OVERLAP_THRESHOLD = 0.7
FUZZY_MIN_WORD_LENGTH = 3

SegmentLike = Union[TranscriptSegment, Mapping[str, Any]]


def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS,mmm"""
    seconds = max(0.0, float(seconds))
    total_ms = int(seconds * 1000)
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, ms = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def segments_to_srt(segments: Iterable[SegmentLike]) -> str:
    """
    Render timed segments as SRT subtitle text

    Args:
        segments: Segments with start, end and text

    Returns:
        SRT entries numbered from 1
    """
    blocks = []
    for segment in segments:
        if not isinstance(segment, TranscriptSegment):
            segment = TranscriptSegment.model_validate(segment)
        number = len(blocks) + 1
        timing = f"{format_srt_timestamp(segment.start)} --> {format_srt_timestamp(segment.end)}"
        blocks.append(f"{number}\n{timing}\n{segment.text.strip()}")
    return "\n\n".join(blocks)


def has_timestamps(text: str) -> bool:
    """True when the text contains SRT or VTT timing lines"""
    return bool(SRT_TIMING_PATTERN.search(text) or VTT_TIMING_PATTERN.search(text))


def is_srt_format(text: str) -> bool:
    """True when the text contains a numbered entry followed by an SRT timing line"""
    return bool(SRT_ENTRY_PATTERN.search(text))


def parse_srt_entries(text: str, chunk_index: int = 0) -> List[SubtitleEntry]:
    """
    Parse SRT text into entries

    Blocks that lack a numeric first line, a timing second line or any
    content are skipped. Each entry records its character offset in text.
    """
    entries = []
    cursor = 0
    for block in ENTRY_SEPARATOR.split(text):
        block = block.strip()
        if not block:
            continue
        position = text.find(block, cursor)
        if position >= 0:
            cursor = position + len(block)

        lines = block.split("\n")
        if len(lines) < 3:
            continue
        try:
            number = int(lines[0].strip())
        except ValueError:
            continue
        if "-->" not in lines[1]:
            continue

        entries.append(SubtitleEntry(
            number=number,
            timestamp=lines[1].strip(),
            content="\n".join(lines[2:]),
            position=max(position, 0),
            chunk_index=chunk_index,
        ))
    return entries


def is_sequentially_numbered(entries: Sequence[SubtitleEntry]) -> bool:
    return all(entry.number == i for i, entry in enumerate(entries, start=1))


def render_srt(entries: Sequence[SubtitleEntry]) -> str:
    """Emit entries numbered 1..N in the given order"""
    return "\n\n".join(
        f"{number}\n{entry.timestamp}\n{entry.content}"
        for number, entry in enumerate(entries, start=1)
    )


def find_exact_overlap(
    previous: str,
    current: str,
    max_window: int = EXACT_OVERLAP_WINDOW,
    min_length: int = EXACT_OVERLAP_MIN_CHARS,
) -> int:
    """
    Longest case-insensitive suffix of previous that is a prefix of current

    Returns:
        The overlap length in characters of current.lstrip(), or 0
    """
    tail = previous.rstrip()
    head = current.lstrip()
    for length in range(min(len(tail), len(head), max_window), min_length - 1, -1):
        # Characters are folded one by one so lengths stay in original indices
        if all(a.lower() == b.lower() for a, b in zip(tail[-length:], head[:length])):
            return length
    return 0


def _normalize_word(word: str) -> str:
    return word.lower().strip(string.punctuation)


def find_fuzzy_overlap(
    previous: str,
    current: str,
    window: int = FUZZY_OVERLAP_WINDOW,
    threshold: float = FUZZY_OVERLAP_THRESHOLD,
    min_word_length: int = FUZZY_MIN_WORD_LENGTH,
) -> int:
    """
    Locate an approximate seam by comparing word windows

    The last k words of previous are compared with the first k words of
    current (within window characters), for k from the largest possible
    down to 2. Only words of min_word_length or more characters count.
    A seam is accepted when at least threshold of the counted trailing
    words occur among the leading words.

    Returns:
        The character offset in current.lstrip() just past the k-th word, or 0
    """
    head = current.lstrip()
    matches = list(WORD_PATTERN.finditer(head[:window]))
    if len(head) > window and matches and matches[-1].end() == window and not head[window].isspace():
        # Drop the word cut in half by the window
        matches.pop()

    tail_words = previous.split()
    for k in range(min(len(matches), len(tail_words)), 1, -1):
        leading = {_normalize_word(m.group()) for m in matches[:k]}
        counted = [w for w in (_normalize_word(w) for w in tail_words[-k:]) if len(w) >= min_word_length]
        if len(counted) < 2:
            continue
        hits = sum(1 for word in counted if word in leading)
        if hits / len(counted) >= threshold:
            return matches[k - 1].end()
    return 0


def join_plain_text(previous: str, current: str) -> str:
    """
    Join two adjacent chunk transcripts, dropping text they share at the seam
    """
    if not current.strip():
        return previous
    if not previous.strip():
        return current

    overlap = find_exact_overlap(previous, current)
    if not overlap:
        overlap = find_fuzzy_overlap(previous, current)
    if overlap:
        logger.debug(f"Removed {overlap} overlapping characters at chunk seam")
        return previous.rstrip() + current.lstrip()[overlap:]

    last_char = previous[-1]
    if last_char in ".!?":
        return previous + " " + current
    if last_char.isspace():
        return previous + current
    if current[0].isupper():
        return previous + ". " + current
    return previous + " " + current


def merge_transcripts(transcripts: Sequence[str]) -> str:
    """
    Merge per-chunk transcripts into one transcript

    The shape is detected once from the first chunk. SRT input is
    renumbered 1..N in chunk then textual order; other timestamped input is
    joined with blank lines; plain text is joined with overlap removal.

    Args:
        transcripts: Chunk transcripts in chunk order

    Returns:
        The merged transcript
    """
    if not transcripts:
        return ""

    first = transcripts[0]
    if len(transcripts) == 1:
        if is_srt_format(first):
            entries = parse_srt_entries(first)
            if entries and not is_sequentially_numbered(entries):
                logger.debug(f"Renumbering {len(entries)} subtitle entries")
                return render_srt(sorted(entries, key=lambda e: e.position))
        return first

    if has_timestamps(first) and is_srt_format(first):
        entries: List[SubtitleEntry] = []
        for index, transcript in enumerate(transcripts):
            entries.extend(parse_srt_entries(transcript, chunk_index=index))
        entries.sort(key=lambda e: (e.chunk_index, e.position))
        return render_srt(entries)

    if has_timestamps(first):
        return "\n\n".join(transcripts)

    result: Optional[str] = None
    for transcript in transcripts:
        result = transcript if result is None else join_plain_text(result, transcript)
    return result or ""
