"""
Base interface for transcription backends.

Every backend exposes the same capability set: a configuration check and a
``transcribe`` call. :meth:`TranscriptionBackend.transcribe` always runs the
configuration check first, so a misconfigured backend never issues a request.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar

import httpx

from common.config import TranscriptionSettings
from common.progress import ProgressCallback, emit_progress
from common.registry import require_valid
from common.schemas import (
    TranscriptionOptions,
    TranscriptionProgress,
    TranscriptionProviderId,
    TranscriptionResult,
    TranscriptionStage,
    ValidationResult,
)

CONFIG_OK = ValidationResult(valid=True, message="Configuration is valid")


def missing(setting: str) -> ValidationResult:
    return ValidationResult(valid=False, message=f"{setting} is not configured")


def clean_setting(value: object) -> str:
    """Strip whitespace and one pair of surrounding quotes from a setting value."""
    if not isinstance(value, str):
        return ""
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1].strip()
    return text


class TranscriptionBackend(ABC):
    id: ClassVar[TranscriptionProviderId]
    name: ClassVar[str]

    def __init__(
        self,
        settings: TranscriptionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.request_timeout_s, transport=self._transport)

    @abstractmethod
    async def validate_config(self) -> ValidationResult:
        """Report whether every setting this backend needs is present."""

    async def transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback = None,
    ) -> TranscriptionResult:
        await require_valid(self)
        return await self._transcribe(audio, options, on_progress)

    @abstractmethod
    async def _transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback,
    ) -> TranscriptionResult:
        ...

    def max_file_size(self) -> int | None:
        """Largest upload the backend accepts in one request, or None if unbounded."""
        return None

    def requested_language(self, options: TranscriptionOptions) -> str | None:
        language = (options.language or self.settings.language or "").strip()
        if not language or language == "auto":
            return None
        return language

    @staticmethod
    def report(
        on_progress: ProgressCallback,
        stage: TranscriptionStage,
        message: str,
        progress: int | None = None,
    ) -> None:
        emit_progress(on_progress, TranscriptionProgress(stage=stage, message=message, progress=progress))
