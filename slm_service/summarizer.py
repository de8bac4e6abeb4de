"""
Summary orchestration.

Short transcripts are summarized with one backend call. When hierarchical
summarization is enabled and the transcript is longer than the chunk limit,
each chunk is summarized in order and a final merge call combines the
partial notes. Any failure aborts the whole run; partial notes are never
returned.
"""

from __future__ import annotations

import logging

import httpx

from common.config import SummarySettings
from common.progress import ProgressCallback, emit_progress, prefixed
from common.registry import check_exhaustive, require_valid, resolve_backend
from common.schemas import (
    SummaryOptions,
    SummaryProviderId,
    SummaryRunMetadata,
    SummaryRunResult,
    TranscriptionResult,
)
from slm_service.chunker import resolve_chunk_char_limit, split_transcription
from slm_service.llm_clients import ClaudeClient, LLMBackend, OpenAICompatClient
from slm_service.prompts import build_chunk_template, build_merge_template, build_summary_prompts

logger = logging.getLogger(__name__)

SUMMARY_BACKENDS: dict[SummaryProviderId, type[LLMBackend]] = {
    SummaryProviderId.openai_compat: OpenAICompatClient,
    SummaryProviderId.claude: ClaudeClient,
}
check_exhaustive(SUMMARY_BACKENDS, SummaryProviderId)


class SummaryService:
    def __init__(
        self,
        settings: SummarySettings,
        backend: LLMBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend or resolve_backend(SUMMARY_BACKENDS, settings.provider, settings, transport)

    @property
    def chunk_char_limit(self) -> int:
        return resolve_chunk_char_limit(self.settings.chunk_char_limit)

    async def summarize(
        self,
        transcription: TranscriptionResult,
        options: SummaryOptions,
        on_progress: ProgressCallback = None,
    ) -> SummaryRunResult:
        await require_valid(self.backend)
        if self.should_use_hierarchical(transcription):
            return await self._summarize_hierarchically(transcription, options, on_progress)
        return await self.summarize_once(transcription, options, on_progress)

    def should_use_hierarchical(self, transcription: TranscriptionResult) -> bool:
        if not self.settings.enable_hierarchical:
            return False
        return len(transcription.full_text.strip()) > self.chunk_char_limit

    async def summarize_once(
        self,
        transcription: TranscriptionResult,
        options: SummaryOptions,
        on_progress: ProgressCallback = None,
    ) -> SummaryRunResult:
        prompts = build_summary_prompts(transcription, options)
        summary = await self.backend.complete(prompts, on_progress)
        return SummaryRunResult(
            summary=summary,
            metadata=SummaryRunMetadata(provider_id=self.backend.id.value, model=self.backend.model),
        )

    async def _summarize_hierarchically(
        self,
        transcription: TranscriptionResult,
        options: SummaryOptions,
        on_progress: ProgressCallback,
    ) -> SummaryRunResult:
        chunks = split_transcription(transcription, self.chunk_char_limit)
        if len(chunks) <= 1:
            return await self.summarize_once(transcription, options, on_progress)

        total = len(chunks)
        logger.info("Long transcript (%d chars); summarizing %d segments", len(transcription.full_text), total)
        emit_progress(on_progress, f"Long transcript detected; summarizing in {total} segments")

        partials: list[str] = []
        for index, chunk in enumerate(chunks, start=1):
            emit_progress(on_progress, f"Summarizing segment {index}/{total}")
            result = await self.summarize_once(
                chunk,
                SummaryOptions(context=options.context, template=build_chunk_template(index, total)),
                prefixed(on_progress, f"segment {index}/{total}: "),
            )
            partials.append(f"### Segment {index}/{total}\n{result.summary.strip()}")

        emit_progress(on_progress, "Merging segment notes into the final notes")
        merged = TranscriptionResult(
            segments=[],
            full_text="\n\n".join(partials),
            language=transcription.language,
            duration=transcription.duration,
            provider_id=transcription.provider_id,
        )
        return await self.summarize_once(
            merged,
            SummaryOptions(context=options.context, template=build_merge_template(options.template)),
            prefixed(on_progress, "merge: "),
        )
