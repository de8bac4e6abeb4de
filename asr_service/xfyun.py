"""iFlytek long-form transcription (prepare, upload, merge, poll, fetch)."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import math
import time
from typing import Any

import httpx

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

FINISHED_STATUSES = {5, 9}
CHARS_PER_SECOND = 4


class XfyunBackend(TranscriptionBackend):
    id = TranscriptionProviderId.xfyun
    name = "iFlytek"

    async def validate_config(self) -> ValidationResult:
        if not clean_setting(self.settings.xfyun_app_id):
            return missing("ASR_XFYUN_APP_ID")
        if not clean_setting(self.settings.xfyun_secret_key):
            return missing("ASR_XFYUN_SECRET_KEY")
        return CONFIG_OK

    def max_file_size(self) -> int | None:
        return 500 * 1024 * 1024

    async def _transcribe(
        self,
        audio: bytes,
        options: TranscriptionOptions,
        on_progress: ProgressCallback,
    ) -> TranscriptionResult:
        self.report(on_progress, TranscriptionStage.convert, "Converting audio to 16 kHz WAV")
        wav = await convert_to_wav16k(audio)
        file_name = options.file_name or f"recording-{int(time.time() * 1000)}.wav"

        async with self.http_client() as client:
            task_id = await self._prepare(client, file_name, len(wav))
            logger.info("iFlytek task %s prepared for %s (%d bytes)", task_id, file_name, len(wav))

            self.report(on_progress, TranscriptionStage.upload, "Uploading audio to iFlytek", 20)
            await self._call(client, "upload", {"task_id": task_id, "slice_id": "aaaaaa"}, content=wav)

            self.report(on_progress, TranscriptionStage.processing, "Merging uploaded slices", 40)
            await self._call(client, "merge", {"task_id": task_id})

            self.report(on_progress, TranscriptionStage.processing, "iFlytek is recognizing speech", 55)
            await self._poll(client, task_id, on_progress)

            self.report(on_progress, TranscriptionStage.download, "Fetching iFlytek result", 90)
            response = await self._call(client, "getResult", {"task_id": task_id})

        full_text = parse_result_text(response.get("data"))
        if not full_text:
            raise EmptyResultError("iFlytek returned no transcript text", task_id=task_id)
        duration = estimate_duration(full_text)

        self.report(on_progress, TranscriptionStage.done, "iFlytek transcription finished", 100)
        return TranscriptionResult(
            segments=[TranscriptSegment(start=0.0, end=duration, text=full_text)],
            full_text=full_text,
            language=self.requested_language(options) or "zh",
            duration=duration,
            provider_id=self.id.value,
        )

    async def _prepare(self, client, file_name: str, file_size: int) -> str:
        response = await self._call(client, "prepare", {
            "file_name": file_name,
            "file_len": str(file_size),
            "lang": "cn",
        })
        data = normalize_data(response.get("data"))
        task_id = read_string_field(data, ["task_id", "order_id", "taskid", "id"])
        if not task_id:
            raise BackendError("iFlytek prepare response is missing task_id")
        return task_id

    async def _poll(self, client, task_id: str, on_progress: ProgressCallback) -> None:
        attempts = self.settings.xfyun_poll_attempts
        for attempt in range(attempts):
            response = await self._call(client, "getProgress", {"task_id": task_id})
            status = read_number_field(normalize_data(response.get("data")), ["status", "task_status"])
            if status in FINISHED_STATUSES:
                return
            self.report(
                on_progress,
                TranscriptionStage.processing,
                f"iFlytek still recognizing (poll {attempt + 1})",
                min(89, 55 + attempt * 30 // attempts),
            )
            await asyncio.sleep(self.settings.xfyun_poll_interval_s)

        raise OperationTimeoutError(
            f"iFlytek transcription did not finish after {attempts} polls",
            task_id=task_id,
        )

    async def _call(self, client, action: str, params: dict[str, str], content: bytes | None = None) -> dict:
        ts = str(int(time.time()))
        query = {
            "appid": clean_setting(self.settings.xfyun_app_id),
            "ts": ts,
            "signa": self.sign(ts),
            **params,
        }
        url = f"{self.settings.xfyun_api_base_url.rstrip('/')}/{action}"
        try:
            resp = await client.post(url, params=query, content=content)
        except httpx.RequestError as exc:
            raise BackendError(f"iFlytek {action} request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendError(
                f"iFlytek {action} request failed ({resp.status_code}): {resp.text or 'request failed'}",
                status=resp.status_code,
            )
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise BackendError(f"iFlytek {action} returned an invalid response", status=resp.status_code)

        # success envelopes may carry null err_no / failed
        code = _int_field(payload, "ok")
        if code is None:
            code = _int_field(payload, "err_no") or 0
        failed = _int_field(payload, "failed") or 0
        if code != 0 or failed != 0:
            raise BackendError(
                f"iFlytek {action} error: {payload.get('message') or f'code={code}'}",
                status=resp.status_code,
                code=code,
            )
        return payload

    def sign(self, ts: str) -> str:
        app_id = clean_setting(self.settings.xfyun_app_id)
        secret = clean_setting(self.settings.xfyun_secret_key)
        digest = hashlib.md5((app_id + ts).encode("utf-8")).hexdigest()
        mac = hmac.new(secret.encode("utf-8"), digest.encode("utf-8"), hashlib.sha1).digest()
        return base64.b64encode(mac).decode("ascii")


def _int_field(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def normalize_data(data: Any) -> dict:
    if isinstance(data, str):
        try:
            parsed = json.loads(data)
        except ValueError:
            return {"text": data}
        return parsed if isinstance(parsed, dict) else {"text": data}
    if isinstance(data, dict):
        return data
    return {}


def read_string_field(data: dict, keys: list[str]) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def read_number_field(data: dict, keys: list[str]) -> float:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip():
            try:
                return float(value)
            except ValueError:
                continue
    return -1


def collect_onebest(node: Any, out: list[str]) -> None:
    """Collect every ``onebest`` sentence, descending into JSON-encoded strings."""
    if isinstance(node, list):
        for item in node:
            collect_onebest(item, out)
        return
    if not isinstance(node, dict):
        return
    for key, value in node.items():
        if key == "onebest" and isinstance(value, str) and value.strip():
            out.append(value.strip())
        elif isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                continue
            collect_onebest(parsed, out)
        else:
            collect_onebest(value, out)


def parse_result_text(raw: Any) -> str:
    texts: list[str] = []
    collect_onebest(normalize_data(raw), texts)
    if texts:
        return "\n".join(texts).strip()
    if isinstance(raw, str):
        return raw.strip()
    return ""


def estimate_duration(text: str) -> float:
    if not text:
        return 0.0
    return float(max(1, math.ceil(len(text) / CHARS_PER_SECOND)))
