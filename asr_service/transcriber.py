from __future__ import annotations

import asyncio
import importlib.util
import logging

import numpy as np

from asr_service.audio_utils import TARGET_SAMPLE_RATE, resample_and_downmix_to_16k_mono
from asr_service.base import CONFIG_OK, TranscriptionBackend, missing
from common.config import TranscriptionSettings
from common.progress import ProgressCallback
from common.schemas import (
    TranscriptionOptions,
    TranscriptionProviderId,
    TranscriptionResult,
    TranscriptionStage,
    TranscriptSegment,
    ValidationResult,
)

logger = logging.getLogger(__name__)

_model = None
_model_key: tuple[str, str, str] | None = None


def get_model(settings: TranscriptionSettings):
    """Lazily load the faster-whisper model; reloaded only when settings change."""
    global _model, _model_key
    key = (settings.model_size, settings.device, settings.compute_type)
    if _model is None or _model_key != key:
        from faster_whisper import WhisperModel

        logger.info("Loading faster-whisper model: %s", settings.model_size)
        _model = WhisperModel(
            settings.model_size,
            device=settings.device,
            compute_type=settings.compute_type,
        )
        _model_key = key
        logger.info("Model loaded")
    return _model


def transcribe_samples(
    audio: np.ndarray,
    settings: TranscriptionSettings,
    language: str | None = None,
) -> tuple[list[TranscriptSegment], str | None]:
    """Transcribe a 16 kHz float32 array; returns segments and the detected language."""
    model = get_model(settings)
    segments, info = model.transcribe(
        audio,
        language=language,
        vad_filter=True,
        vad_parameters={"min_silence_duration_ms": 300},
        beam_size=5,
    )
    results: list[TranscriptSegment] = []
    for seg in segments:
        text = seg.text.strip()
        if not text:
            continue
        results.append(
            TranscriptSegment(
                start=round(seg.start, 3),
                end=round(seg.end, 3),
                text=text,
            )
        )
    return results, getattr(info, "language", None)


class FasterWhisperBackend(TranscriptionBackend):
    """In-process faster-whisper model, run on a worker thread."""

    id = TranscriptionProviderId.faster_whisper
    name = "faster-whisper"

    async def validate_config(self) -> ValidationResult:
        if importlib.util.find_spec("faster_whisper") is None:
            return ValidationResult(
                valid=False,
                message="faster-whisper is not installed (pip install 'lecture-recorder[local]')",
            )
        if not self.settings.model_size.strip():
            return missing("ASR_MODEL_SIZE")
        return CONFIG_OK

    async def _transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback,
    ) -> TranscriptionResult:
        self.report(on_progress, TranscriptionStage.convert, "Converting audio to 16 kHz mono")
        samples = await asyncio.to_thread(resample_and_downmix_to_16k_mono, audio)

        language = self.requested_language(options)
        self.report(on_progress, TranscriptionStage.processing, f"Transcribing with faster-whisper {self.settings.model_size}")
        segments, detected = await asyncio.to_thread(transcribe_samples, samples, self.settings, language)
        logger.info("Transcribed %d segments", len(segments))

        self.report(on_progress, TranscriptionStage.done, "faster-whisper transcription finished", 100)
        return TranscriptionResult(
            segments=segments,
            full_text=" ".join(seg.text for seg in segments).strip(),
            language=detected or language or "unknown",
            duration=len(samples) / TARGET_SAMPLE_RATE,
            provider_id=self.id.value,
        )
