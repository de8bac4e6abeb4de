"""Split long transcripts into character-bounded chunks for summarization.

With segments, chunks are built from whole segments so timestamps stay
intact; a single segment longer than the budget becomes its own oversized
chunk rather than being cut mid-sentence. Without segments, text is split on
blank lines and only force-cut into fixed windows as a last resort.
"""

from __future__ import annotations

import math
import re

from common.schemas import TranscriptionResult, TranscriptSegment

DEFAULT_CHUNK_CHARS = 12000
MIN_CHUNK_CHARS = 4000
MAX_CHUNK_CHARS = 30000

# Room for the "[HH:MM:SS] " tag each segment gets in the prompt.
SEGMENT_TAG_OVERHEAD = 16

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


def resolve_chunk_char_limit(configured: object) -> int:
    if isinstance(configured, bool) or not isinstance(configured, (int, float)) or not math.isfinite(configured):
        return DEFAULT_CHUNK_CHARS
    return min(MAX_CHUNK_CHARS, max(MIN_CHUNK_CHARS, int(configured)))


def split_transcription(transcription: TranscriptionResult, max_chars: int) -> list[TranscriptionResult]:
    segments = [seg for seg in transcription.segments if seg.text.strip()]
    if segments:
        return split_by_segments(transcription, segments, max_chars)
    return split_by_full_text(transcription, max_chars)


def split_by_segments(
    transcription: TranscriptionResult,
    segments: list[TranscriptSegment],
    max_chars: int,
) -> list[TranscriptionResult]:
    chunks: list[TranscriptionResult] = []
    bucket: list[TranscriptSegment] = []
    char_count = 0

    def flush() -> None:
        if not bucket:
            return
        chunks.append(TranscriptionResult(
            segments=[seg.model_copy() for seg in bucket],
            full_text="\n".join(seg.text for seg in bucket).strip(),
            language=transcription.language,
            duration=max(0.0, bucket[-1].end - bucket[0].start),
            provider_id=transcription.provider_id,
            created_at=transcription.created_at,
        ))

    for segment in segments:
        cost = len(segment.text) + SEGMENT_TAG_OVERHEAD
        if bucket and char_count + cost > max_chars:
            flush()
            bucket = []
            char_count = 0
        bucket.append(segment)
        char_count += cost

    flush()
    return chunks


def split_by_full_text(transcription: TranscriptionResult, max_chars: int) -> list[TranscriptionResult]:
    text = transcription.full_text.strip()
    if not text:
        return [transcription]

    paragraphs = [part.strip() for part in _PARAGRAPH_BREAK.split(text) if part.strip()]
    if len(paragraphs) <= 1 and len(text) <= max_chars:
        return [transcription]

    pieces: list[str] = []
    current = ""
    for paragraph in paragraphs or [text]:
        if not current:
            current = paragraph
        elif len(current) + len(paragraph) + 2 <= max_chars:
            current = f"{current}\n\n{paragraph}"
        else:
            pieces.append(current)
            current = paragraph
    if current:
        pieces.append(current)

    if len(pieces) == 1 and len(pieces[0]) > max_chars:
        pieces = force_split_text(pieces[0], max_chars)
        if not pieces:
            return [transcription]

    return [_text_chunk(transcription, piece) for piece in pieces]


def force_split_text(text: str, max_chars: int) -> list[str]:
    windows = (text[i:i + max_chars].strip() for i in range(0, len(text), max_chars))
    return [window for window in windows if window]


def _text_chunk(transcription: TranscriptionResult, text: str) -> TranscriptionResult:
    return TranscriptionResult(
        segments=[],
        full_text=text,
        language=transcription.language,
        duration=transcription.duration,
        provider_id=transcription.provider_id,
        created_at=transcription.created_at,
    )
