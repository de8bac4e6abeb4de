"""
Recording-level operations: transcribe, summarize and batch-process stored recordings.

Both entry points go through a :class:`TaskDeduplicator` keyed by
``(path, operation)``, so a user-triggered run and an automatic run for the
same recording share one backend call.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import PurePosixPath

from asr_service.service import TranscriptionService
from common.errors import EmptyResultError, ResourceNotFoundError
from common.progress import ProgressCallback, emit_progress
from common.schemas import (
    BatchFailure,
    BatchMode,
    BatchProgress,
    BatchResult,
    RecordingListItem,
    SummaryContext,
    SummaryOptions,
    SummaryRunResult,
    TranscriptionResult,
    TranscriptionRunResult,
)
from common.storage import LocalStorage
from gateway.tasks import OperationKind, TaskDeduplicator
from slm_service.prompts import format_clock
from slm_service.summarizer import SummaryService

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {"webm", "wav", "ogg", "mp3", "m4a"}

_SIDECAR_BODY = re.compile(r"^##[^\n]*\n\n?(?:- [^\n]*\n)+\n(.*)$", re.DOTALL)


def summary_sidecar_path(audio_path: str) -> str:
    return f"{audio_path}.summary.md"


def build_summary_markdown(summary: str, context: SummaryContext, generated_at: datetime) -> str:
    return "\n".join([
        "## Lecture notes (AI)",
        "",
        f"- Course: {context.course_name}",
        f"- Date: {context.date}",
        f"- Duration: {context.duration}",
        f"- Generated: {generated_at.strftime('%Y-%m-%d %H:%M')}",
        "",
        summary.strip(),
        "",
    ])


def extract_summary_body(content: str) -> str:
    normalized = content.strip()
    if not normalized:
        return ""
    match = _SIDECAR_BODY.match(normalized)
    if match:
        return match.group(1).strip()
    return normalized


class RecordingService:
    def __init__(
        self,
        storage: LocalStorage,
        transcription: TranscriptionService,
        summary: SummaryService,
        tasks: TaskDeduplicator | None = None,
        auto_summarize: bool = False,
    ) -> None:
        self.storage = storage
        self.transcription = transcription
        self.summary = summary
        self.tasks = tasks or TaskDeduplicator()
        self.auto_summarize = auto_summarize
        self._background: set[asyncio.Task] = set()

    # --- transcription ---

    async def transcribe_file(self, path: str, on_progress: ProgressCallback = None) -> TranscriptionRunResult:
        path = self.storage.normalize(path)
        return await self.tasks.request_or_join(
            (path, OperationKind.transcribe),
            lambda: self._run_transcription(path, on_progress),
        )

    async def _run_transcription(self, path: str, on_progress: ProgressCallback) -> TranscriptionRunResult:
        if not self.storage.exists(path):
            raise ResourceNotFoundError(f"Recording does not exist: {path}", path=path)
        run = await self.transcription.transcribe_file(path, on_progress)
        if self.auto_summarize and not run.from_cache:
            self._schedule_summary(path, run.result)
        return run

    def _schedule_summary(self, path: str, transcription: TranscriptionResult) -> None:
        task = asyncio.ensure_future(self.summarize_file(path, transcription))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Automatic summary failed: %s", task.exception())

    def get_cached_transcription(self, path: str) -> TranscriptionResult | None:
        return self.transcription.get_cached(path)

    # --- summary ---

    async def summarize_file(
        self,
        path: str,
        transcription: TranscriptionResult | None = None,
        on_progress: ProgressCallback = None,
    ) -> SummaryRunResult:
        path = self.storage.normalize(path)
        return await self.tasks.request_or_join(
            (path, OperationKind.summarize),
            lambda: self._run_summary(path, transcription, on_progress),
        )

    async def _run_summary(
        self,
        path: str,
        transcription: TranscriptionResult | None,
        on_progress: ProgressCallback,
    ) -> SummaryRunResult:
        source = await self._resolve_transcription(path, transcription)
        context = self.build_context(path, source)
        result = await self.summary.summarize(
            source,
            SummaryOptions(context=context, template=self.summary.settings.template),
            on_progress,
        )
        sidecar = summary_sidecar_path(path)
        self.storage.write_text(sidecar, build_summary_markdown(result.summary, context, datetime.now()))
        logger.info("Summary for %s saved to %s", path, sidecar)
        return result

    async def _resolve_transcription(
        self,
        path: str,
        transcription: TranscriptionResult | None,
    ) -> TranscriptionResult:
        if transcription is not None and transcription.full_text.strip():
            return transcription
        cached = self.get_cached_transcription(path)
        if cached is not None and cached.full_text.strip():
            return cached
        run = await self.transcribe_file(path)
        if not run.result.full_text.strip():
            raise EmptyResultError("No usable transcript; transcribe the recording first", path=path)
        return run.result

    def build_context(self, path: str, transcription: TranscriptionResult) -> SummaryContext:
        try:
            modified = datetime.fromtimestamp(self.storage.modified_at(path))
        except OSError:
            modified = datetime.now()
        return SummaryContext(
            course_name=PurePosixPath(path).stem or PurePosixPath(path).name,
            date=modified.strftime("%Y-%m-%d"),
            duration=format_clock(transcription.duration),
        )

    def get_cached_summary(self, path: str) -> str | None:
        sidecar = summary_sidecar_path(path)
        if not self.storage.exists(sidecar):
            return None
        return extract_summary_body(self.storage.read_text(sidecar)) or None

    # --- batch ---

    async def batch_process(
        self,
        resource_ids: list[str],
        mode: BatchMode,
        on_progress: ProgressCallback = None,
    ) -> BatchResult:
        """Process recordings one at a time; a failed item never stops the batch."""
        queue = list(dict.fromkeys(rid for rid in resource_ids if rid))
        result = BatchResult(mode=mode, total=len(queue))

        for step, path in enumerate(queue, start=1):
            try:
                await self._process_one(path, mode)
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
                logger.warning("Batch item %s failed: %s", path, reason)
                result.failed.append(BatchFailure(resource_id=path, reason=reason))
                message = f"Failed: {reason}"
            else:
                result.succeeded.append(path)
                message = "Done"
            emit_progress(on_progress, BatchProgress(
                mode=mode,
                current=step,
                total=len(queue),
                resource_id=path,
                message=message,
            ))

        logger.info(
            "Batch %s finished: %d succeeded, %d failed",
            mode.value, len(result.succeeded), len(result.failed),
        )
        return result

    async def _process_one(self, path: str, mode: BatchMode) -> None:
        transcription = None
        if mode in (BatchMode.transcribe, BatchMode.both):
            run = await self.transcribe_file(path)
            if not run.result.full_text.strip():
                raise EmptyResultError("Transcription produced no usable text", path=path)
            transcription = run.result
        if mode in (BatchMode.summarize, BatchMode.both):
            summary = await self.summarize_file(path, transcription)
            if not summary.summary.strip():
                raise EmptyResultError("Summary produced no usable text", path=path)

    # --- listing ---

    def list_recordings(self) -> list[RecordingListItem]:
        items = []
        for path in self.storage.list_files(AUDIO_EXTENSIONS):
            items.append(RecordingListItem(
                file_path=path,
                file_name=PurePosixPath(path).name,
                size_bytes=self.storage.size(path),
                modified_at=self.storage.modified_at(path),
                has_transcript=self.storage.exists(self.transcription.transcript_path(path)),
                has_summary=self.storage.exists(summary_sidecar_path(path)),
            ))
        return sorted(items, key=lambda item: item.modified_at, reverse=True)
