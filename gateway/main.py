from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from asr_service.service import TranscriptionService
from common.config import GatewaySettings, SummarySettings, TranscriptionSettings
from common.errors import RecorderError
from common.schemas import (
    BatchRequest,
    BatchResult,
    RecordingListItem,
    RecordingRequest,
    SummaryRunResult,
    TranscriptionRunResult,
)
from common.storage import LocalStorage
from gateway.recordings import RecordingService
from slm_service.summarizer import SummaryService

logger = logging.getLogger(__name__)

settings = GatewaySettings()


def build_recording_service(
    gateway_settings: GatewaySettings,
    transcription_settings: TranscriptionSettings | None = None,
    summary_settings: SummarySettings | None = None,
) -> RecordingService:
    storage = LocalStorage(gateway_settings.storage_root)
    return RecordingService(
        storage=storage,
        transcription=TranscriptionService(transcription_settings or TranscriptionSettings(), storage),
        summary=SummaryService(summary_settings or SummarySettings()),
        auto_summarize=gateway_settings.auto_summarize,
    )


def create_app(recordings: RecordingService | None = None) -> FastAPI:
    app = FastAPI(title="Lecture Recorder Gateway")
    app.state.recordings = recordings or build_recording_service(settings)

    @app.exception_handler(RecorderError)
    async def handle_recorder_error(request: Request, exc: RecorderError) -> JSONResponse:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error_code": exc.error_code, "detail": str(exc), **exc.context},
        )

    def service() -> RecordingService:
        return app.state.recordings

    @app.get("/health")
    async def health():
        return {"status": "ok", "pending_tasks": service().tasks.active_count}

    @app.get("/recordings", response_model=list[RecordingListItem])
    async def list_recordings():
        return service().list_recordings()

    @app.post("/recordings/transcribe", response_model=TranscriptionRunResult)
    async def transcribe(req: RecordingRequest):
        return await service().transcribe_file(req.path)

    @app.post("/recordings/summarize", response_model=SummaryRunResult)
    async def summarize(req: RecordingRequest):
        return await service().summarize_file(req.path)

    @app.get("/recordings/summary")
    async def cached_summary(path: str):
        summary = service().get_cached_summary(path)
        if summary is None:
            raise HTTPException(status_code=404, detail=f"No summary saved for {path}")
        return {"path": path, "summary": summary}

    @app.post("/recordings/batch", response_model=BatchResult)
    async def batch(req: BatchRequest):
        return await service().batch_process(req.paths, req.mode)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)
