from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError

from common.schemas import TranscriptionResult, utc_now_iso
from common.storage import LocalStorage

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


class CachedTranscription(BaseModel):
    version: int = CACHE_VERSION
    audio_file_path: str
    created_at: str = Field(default_factory=utc_now_iso)
    result: TranscriptionResult


class TranscriptionCache:
    """Stores transcripts as ``<audio>.transcript.json`` next to the recording."""

    def __init__(self, storage: LocalStorage) -> None:
        self.storage = storage

    @staticmethod
    def transcript_path(audio_path: str) -> str:
        return f"{audio_path}.transcript.json"

    def load(self, audio_path: str) -> TranscriptionResult | None:
        path = self.transcript_path(audio_path)
        if not self.storage.exists(path):
            return None
        try:
            payload = CachedTranscription.model_validate_json(self.storage.read_text(path))
        except (ValidationError, ValueError):
            logger.warning("Ignoring unreadable transcript cache %s", path, exc_info=True)
            return None
        return payload.result

    def save(self, audio_path: str, result: TranscriptionResult) -> str:
        path = self.transcript_path(audio_path)
        payload = CachedTranscription(audio_file_path=audio_path, result=result)
        self.storage.write_text(path, payload.model_dump_json(indent=2))
        return path
