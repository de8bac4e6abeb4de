from __future__ import annotations

import logging
from pathlib import PurePosixPath

import httpx

from asr_service.base import TranscriptionBackend
from asr_service.cache import TranscriptionCache
from asr_service.local_whisper import LocalWhisperBackend
from asr_service.transcriber import FasterWhisperBackend
from asr_service.whisper_api import WhisperApiBackend
from asr_service.xfyun import XfyunBackend
from common.config import TranscriptionSettings
from common.progress import ProgressCallback, emit_progress
from common.registry import check_exhaustive, require_valid, resolve_backend
from common.schemas import (
    TranscriptionOptions,
    TranscriptionProgress,
    TranscriptionProviderId,
    TranscriptionResult,
    TranscriptionRunResult,
    TranscriptionStage,
)
from common.storage import LocalStorage

logger = logging.getLogger(__name__)

TRANSCRIPTION_BACKENDS: dict[TranscriptionProviderId, type[TranscriptionBackend]] = {
    TranscriptionProviderId.whisper: WhisperApiBackend,
    TranscriptionProviderId.xfyun: XfyunBackend,
    TranscriptionProviderId.local_whisper: LocalWhisperBackend,
    TranscriptionProviderId.faster_whisper: FasterWhisperBackend,
}
check_exhaustive(TRANSCRIPTION_BACKENDS, TranscriptionProviderId)

MIME_TYPES = {
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
}


def guess_mime_type(path: str) -> str:
    return MIME_TYPES.get(PurePosixPath(path).suffix.lower().lstrip("."), "audio/webm")


class TranscriptionService:
    """Transcribes stored recordings through the configured backend, with a sidecar cache."""

    def __init__(
        self,
        settings: TranscriptionSettings,
        storage: LocalStorage,
        backend: TranscriptionBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.cache = TranscriptionCache(storage)
        self.backend = backend or resolve_backend(TRANSCRIPTION_BACKENDS, settings.provider, settings, transport)

    async def transcribe_file(self, path: str, on_progress: ProgressCallback = None) -> TranscriptionRunResult:
        cached = self.cache.load(path)
        if cached is not None:
            if cached.has_content():
                logger.info("Transcript cache hit for %s", path)
                emit_progress(on_progress, TranscriptionProgress(
                    stage=TranscriptionStage.done,
                    message="Using cached transcript",
                    progress=100,
                ))
                return TranscriptionRunResult(
                    result=cached,
                    transcript_path=self.cache.transcript_path(path),
                    from_cache=True,
                )
            emit_progress(on_progress, TranscriptionProgress(
                stage=TranscriptionStage.prepare,
                message="Cached transcript is empty; transcribing again",
                progress=2,
            ))

        await require_valid(self.backend)
        emit_progress(on_progress, TranscriptionProgress(
            stage=TranscriptionStage.prepare,
            message=f"Reading audio and preparing {self.backend.name}",
            progress=5,
        ))

        audio = self.storage.read_binary(path)
        options = TranscriptionOptions(
            language=self.settings.language or "auto",
            file_name=PurePosixPath(path).name,
            mime_type=guess_mime_type(path),
        )
        logger.info("Transcribing %s (%d bytes) with %s", path, len(audio), self.backend.name)
        result = await self.backend.transcribe(audio, options, on_progress)

        transcript_path = self.cache.save(path, result)
        emit_progress(on_progress, TranscriptionProgress(
            stage=TranscriptionStage.done,
            message=f"Transcript saved to {transcript_path}",
            progress=100,
        ))
        return TranscriptionRunResult(result=result, transcript_path=transcript_path, from_cache=False)

    def get_cached(self, path: str) -> TranscriptionResult | None:
        return self.cache.load(path)

    def transcript_path(self, path: str) -> str:
        return self.cache.transcript_path(path)
