from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Provider identifiers ---

class TranscriptionProviderId(str, Enum):
    whisper = "whisper"
    xfyun = "xfyun"
    local_whisper = "local-whisper"
    faster_whisper = "faster-whisper"


class SummaryProviderId(str, Enum):
    openai_compat = "openai-compat"
    claude = "claude"


class ValidationResult(BaseModel):
    valid: bool
    message: str


# --- Transcription ---

class TranscriptSegment(BaseModel):
    start: float
    end: float
    text: str

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if isinstance(data, dict):
            start = max(0.0, float(data.get("start") or 0.0))
            end = max(start, float(data.get("end") or start))
            text = data.get("text")
            data = {**data, "start": start, "end": end, "text": text.strip() if isinstance(text, str) else text}
        return data

    @field_validator("text")
    @classmethod
    def _text_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("segment text must not be empty")
        return value


class TranscriptionResult(BaseModel):
    segments: list[TranscriptSegment] = []
    full_text: str = ""
    language: str = "unknown"
    duration: float = 0.0
    provider_id: str = ""
    created_at: str = Field(default_factory=utc_now_iso)

    def has_content(self) -> bool:
        return bool(self.full_text.strip()) or len(self.segments) > 0


class TranscriptionOptions(BaseModel):
    language: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None


class TranscriptionStage(str, Enum):
    prepare = "prepare"
    convert = "convert"
    upload = "upload"
    processing = "processing"
    download = "download"
    done = "done"


class TranscriptionProgress(BaseModel):
    stage: TranscriptionStage
    message: str
    progress: Optional[int] = None


class TranscriptionRunResult(BaseModel):
    result: TranscriptionResult
    transcript_path: str
    from_cache: bool


# --- Summary ---

class SummaryContext(BaseModel):
    course_name: str
    date: str
    duration: str = "00:00:00"


class SummaryOptions(BaseModel):
    context: SummaryContext
    template: Optional[str] = None


class SummaryRunMetadata(BaseModel):
    provider_id: str
    model: str
    created_at: str = Field(default_factory=utc_now_iso)


class SummaryRunResult(BaseModel):
    summary: str
    metadata: SummaryRunMetadata


# --- Batch processing ---

class BatchMode(str, Enum):
    transcribe = "transcribe"
    summarize = "summarize"
    both = "both"


class BatchProgress(BaseModel):
    mode: BatchMode
    current: int
    total: int
    resource_id: str
    message: str


class BatchFailure(BaseModel):
    resource_id: str
    reason: str


class BatchResult(BaseModel):
    mode: BatchMode
    total: int
    succeeded: list[str] = []
    failed: list[BatchFailure] = []


# --- Gateway request / response ---

class RecordingRequest(BaseModel):
    path: str


class BatchRequest(BaseModel):
    paths: list[str]
    mode: BatchMode = BatchMode.both


class RecordingListItem(BaseModel):
    file_path: str
    file_name: str
    size_bytes: int
    modified_at: float
    has_transcript: bool
    has_summary: bool
