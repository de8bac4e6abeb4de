from __future__ import annotations

import asyncio
import json
import logging
import math
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from asr_service.audio_utils import convert_to_wav16k
from asr_service.base import CONFIG_OK, TranscriptionBackend, clean_setting, missing
from common.errors import BackendError, EmptyResultError, OperationTimeoutError
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


class LocalWhisperBackend(TranscriptionBackend):
    """Runs a whisper.cpp executable and reads its JSON output."""

    id = TranscriptionProviderId.local_whisper
    name = "Local whisper.cpp"

    async def validate_config(self) -> ValidationResult:
        exe_path = clean_setting(self.settings.whisper_cpp_path)
        model_path = clean_setting(self.settings.whisper_cpp_model_path)
        if not exe_path:
            return missing("ASR_WHISPER_CPP_PATH")
        if not model_path:
            return missing("ASR_WHISPER_CPP_MODEL_PATH")
        if not Path(exe_path).is_file():
            return ValidationResult(valid=False, message=f"ASR_WHISPER_CPP_PATH does not exist: {exe_path}")
        if not Path(model_path).is_file():
            return ValidationResult(valid=False, message=f"ASR_WHISPER_CPP_MODEL_PATH does not exist: {model_path}")
        return CONFIG_OK

    async def _transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback,
    ) -> TranscriptionResult:
        self.report(on_progress, TranscriptionStage.convert, "Converting audio to 16 kHz WAV")
        wav = await convert_to_wav16k(audio)
        language = self.requested_language(options)

        with tempfile.TemporaryDirectory(prefix="whisper-cpp-") as tmp:
            wav_path = Path(tmp) / "input.wav"
            output_base = Path(tmp) / "output"
            wav_path.write_bytes(wav)

            args = [
                "-f", str(wav_path),
                "-m", clean_setting(self.settings.whisper_cpp_model_path),
                "-oj",
                "-of", str(output_base),
                "-t", str(max(1, self.settings.whisper_cpp_threads)),
            ]
            if language:
                args += ["-l", language]

            self.report(on_progress, TranscriptionStage.processing, "Running local whisper.cpp")
            await self._run(args)

            self.report(on_progress, TranscriptionStage.download, "Reading whisper.cpp output")
            payload = read_output_json([output_base.with_suffix(".json"), Path(f"{wav_path}.json")])
            parsed = parse_whisper_cpp_output(payload)

            if not parsed.full_text:
                txt_path = output_base.with_suffix(".txt")
                fallback = txt_path.read_text(encoding="utf-8").strip() if txt_path.is_file() else ""
                if fallback:
                    parsed.full_text = fallback
                    if not parsed.segments:
                        parsed.duration = float(max(1, math.ceil(len(fallback) / 4)))
                        parsed.segments = [TranscriptSegment(start=0.0, end=parsed.duration, text=fallback)]

        if not parsed.full_text:
            raise EmptyResultError("whisper.cpp produced no usable text; check the model and the audio")

        self.report(on_progress, TranscriptionStage.done, "Local whisper.cpp transcription finished", 100)
        return TranscriptionResult(
            segments=parsed.segments,
            full_text=parsed.full_text,
            language=parsed.language or language or "unknown",
            duration=parsed.duration,
            provider_id=self.id.value,
        )

    async def _run(self, args: list[str]) -> None:
        exe_path = clean_setting(self.settings.whisper_cpp_path)
        timeout = self.settings.whisper_cpp_timeout_s
        logger.info("Running %s %s", exe_path, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                exe_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendError(f"Could not start whisper.cpp at {exe_path}: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise OperationTimeoutError(f"whisper.cpp did not finish within {timeout:g}s") from None

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise BackendError(
                f"whisper.cpp exited with code {proc.returncode}: {detail or 'no output'}",
                status=proc.returncode,
            )


@dataclass
class ParsedOutput:
    segments: list[TranscriptSegment]
    full_text: str
    duration: float
    language: str


def read_output_json(candidates: list[Path]) -> dict:
    for path in candidates:
        if not path.is_file():
            continue
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("Could not parse whisper.cpp output %s", path)
            continue
        if isinstance(payload, dict):
            return payload
    raise BackendError("whisper.cpp output JSON not found; check the whisper-cli arguments")


def parse_whisper_cpp_output(payload: dict) -> ParsedOutput:
    """Normalize the JSON layouts written by different whisper.cpp builds."""
    segments: list[TranscriptSegment] = []
    for raw in _raw_segments(payload):
        text = raw.get("text", "").strip() if isinstance(raw.get("text"), str) else ""
        if not text:
            continue
        start, end = _segment_bounds(raw)
        segments.append(TranscriptSegment(start=start, end=max(start, end), text=text))

    result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    if segments:
        full_text = " ".join(seg.text for seg in segments).strip()
    else:
        full_text = (
            text_value(payload.get("transcription"))
            or text_value(payload.get("text"))
            or text_value(result.get("text"))
            or text_value(result.get("transcription"))
        )

    return ParsedOutput(
        segments=segments,
        full_text=full_text,
        duration=segments[-1].end if segments else 0.0,
        language=text_value(payload.get("language")) or text_value(result.get("language")),
    )


def _raw_segments(payload: dict) -> list[dict]:
    result = payload.get("result")
    candidates = [payload.get("segments"), payload.get("transcription"), result]
    if isinstance(result, dict):
        candidates += [result.get("segments"), result.get("transcription")]
    for candidate in candidates:
        if isinstance(candidate, list):
            return [item for item in candidate if isinstance(item, dict)]
    return []


def _segment_bounds(raw: dict) -> tuple[float, float]:
    if isinstance(raw.get("start"), (int, float)) and isinstance(raw.get("end"), (int, float)):
        return float(raw["start"]), float(raw["end"])
    offsets = raw.get("offsets")
    if isinstance(offsets, dict) and isinstance(offsets.get("from"), (int, float)) \
            and isinstance(offsets.get("to"), (int, float)):
        return offsets["from"] / 1000, offsets["to"] / 1000
    timestamps = raw.get("timestamps")
    if isinstance(timestamps, dict):
        return parse_timestamp(timestamps.get("from")), parse_timestamp(timestamps.get("to"))
    return 0.0, 0.0


def parse_timestamp(value: str | None) -> float:
    """``"00:01:02,500"`` -> 62.5"""
    if not value:
        return 0.0
    try:
        parts = [float(part) for part in value.strip().replace(",", ".").split(":")]
    except ValueError:
        return 0.0
    if len(parts) > 3:
        return 0.0
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + part
    return seconds


def text_value(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value).strip()
    if isinstance(value, list):
        return " ".join(filter(None, (text_value(item) for item in value))).strip()
    if isinstance(value, dict):
        for key in ("text", "transcription", "segments"):
            if key in value:
                return text_value(value[key])
    return ""
