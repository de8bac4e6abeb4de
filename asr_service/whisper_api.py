from __future__ import annotations

import logging
from typing import Any

import httpx

from asr_service.audio_utils import convert_to_wav16k
from asr_service.base import CONFIG_OK, TranscriptionBackend, clean_setting, missing
from asr_service.wav import decode_wav_pcm16, split_by_byte_budget
from common.errors import BackendError
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

# Headroom below the upload limit for the multipart envelope.
UPLOAD_MARGIN_BYTES = 512 * 1024


def mime_extension(mime_type: str) -> str:
    if "wav" in mime_type:
        return "wav"
    if "ogg" in mime_type:
        return "ogg"
    if "mpeg" in mime_type or "mp3" in mime_type:
        return "mp3"
    return "webm"


class WhisperApiBackend(TranscriptionBackend):
    """OpenAI-compatible ``/audio/transcriptions`` multipart upload."""

    id = TranscriptionProviderId.whisper
    name = "OpenAI Whisper"

    async def validate_config(self) -> ValidationResult:
        if not clean_setting(self.settings.whisper_api_key):
            return missing("ASR_WHISPER_API_KEY")
        if not clean_setting(self.settings.whisper_api_base_url):
            return missing("ASR_WHISPER_API_BASE_URL")
        return CONFIG_OK

    def max_file_size(self) -> int | None:
        return self.settings.whisper_max_file_bytes

    async def _transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback,
    ) -> TranscriptionResult:
        chunks = [audio]
        chunk_durations: list[float] | None = None
        mime_type = options.mime_type or "audio/webm"

        if len(audio) > self.max_file_size():
            self.report(on_progress, TranscriptionStage.convert,
                        "Audio is large; converting to 16 kHz WAV and uploading in parts")
            wav = await convert_to_wav16k(audio)
            chunks = split_by_byte_budget(wav, self.max_file_size() - UPLOAD_MARGIN_BYTES)
            chunk_durations = [decode_wav_pcm16(chunk).duration for chunk in chunks]
            mime_type = "audio/wav"
            logger.info("Split %d bytes of audio into %d upload chunks", len(audio), len(chunks))

        language = self.requested_language(options)
        detected_language = language or "unknown"
        segments: list[TranscriptSegment] = []
        text_parts: list[str] = []
        offset = 0.0

        async with self.http_client() as client:
            for index, chunk in enumerate(chunks):
                multi = len(chunks) > 1
                self.report(
                    on_progress,
                    TranscriptionStage.upload,
                    f"Uploading part {index + 1}/{len(chunks)} to Whisper" if multi else "Uploading audio to Whisper",
                    index * 100 // len(chunks) if multi else 0,
                )
                if multi:
                    file_name = f"chunk-{index + 1}.{mime_extension(mime_type)}"
                else:
                    file_name = options.file_name or f"audio.{mime_extension(mime_type)}"

                payload = await self._request(client, chunk, file_name, mime_type, language)
                chunk_segments = extract_segments(payload, offset)
                segments.extend(chunk_segments)

                if chunk_durations is not None:
                    offset += chunk_durations[index]
                elif chunk_segments:
                    offset = max(offset, chunk_segments[-1].end)
                elif isinstance(payload.get("duration"), (int, float)) and payload["duration"] > 0:
                    offset += payload["duration"]

                text = payload.get("text")
                if isinstance(text, str) and text.strip():
                    text_parts.append(text.strip())
                elif chunk_segments:
                    text_parts.append(" ".join(seg.text for seg in chunk_segments))

                reported = payload.get("language")
                if isinstance(reported, str) and reported.strip():
                    detected_language = reported.strip()

        self.report(on_progress, TranscriptionStage.done, "Whisper transcription finished", 100)
        return TranscriptionResult(
            segments=segments,
            full_text="\n".join(text_parts).strip(),
            language=detected_language,
            duration=segments[-1].end if segments else offset,
            provider_id=self.id.value,
        )

    async def _request(self, client, audio: bytes, file_name: str, mime_type: str, language: str | None) -> dict:
        base_url = clean_setting(self.settings.whisper_api_base_url).rstrip("/")
        data = {
            "model": self.settings.whisper_model or "whisper-1",
            "response_format": "verbose_json",
        }
        if language:
            data["language"] = language

        try:
            resp = await client.post(
                f"{base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {clean_setting(self.settings.whisper_api_key)}"},
                data=data,
                files={"file": (file_name, audio, mime_type)},
            )
        except httpx.RequestError as exc:
            raise BackendError(f"Whisper API request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendError(
                f"Whisper API request failed ({resp.status_code}): {resp.text or 'request failed'}",
                status=resp.status_code,
            )
        try:
            payload = resp.json()
        except ValueError:
            raise BackendError("Whisper API returned an invalid response", status=resp.status_code) from None
        if not isinstance(payload, dict):
            raise BackendError("Whisper API returned an invalid response", status=resp.status_code)
        return payload


def extract_segments(payload: dict[str, Any], offset: float) -> list[TranscriptSegment]:
    """Turn a verbose_json payload into segments shifted by ``offset`` seconds."""
    segments: list[TranscriptSegment] = []
    for raw in payload.get("segments") or []:
        if not isinstance(raw, dict):
            continue
        text = raw.get("text").strip() if isinstance(raw.get("text"), str) else ""
        if not text:
            continue
        start = raw["start"] + offset if isinstance(raw.get("start"), (int, float)) else offset
        end = raw["end"] + offset if isinstance(raw.get("end"), (int, float)) else start
        segments.append(TranscriptSegment(start=start, end=max(start, end), text=text))

    text = payload.get("text")
    if not segments and isinstance(text, str) and text.strip():
        duration = payload.get("duration")
        fallback = duration if isinstance(duration, (int, float)) and duration > 0 else 0.0
        segments.append(TranscriptSegment(start=offset, end=offset + fallback, text=text.strip()))

    return segments
