from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from common.config import SummarySettings
from common.errors import BackendError, EmptyResultError
from common.progress import ProgressCallback, emit_progress
from common.registry import require_valid
from common.schemas import SummaryProviderId, ValidationResult
from slm_service.prompts import SummaryPrompts

logger = logging.getLogger(__name__)

CONFIG_OK = ValidationResult(valid=True, message="Configuration is valid")


def missing(setting: str) -> ValidationResult:
    return ValidationResult(valid=False, message=f"{setting} is not configured")


class LLMBackend(ABC):
    """Chat-completion backend: a configuration check plus one prompt -> text call."""

    id: ClassVar[SummaryProviderId]
    name: ClassVar[str]

    def __init__(self, settings: SummarySettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @abstractmethod
    async def validate_config(self) -> ValidationResult:
        ...

    async def complete(self, prompts: SummaryPrompts, on_progress: ProgressCallback = None) -> str:
        await require_valid(self)
        emit_progress(on_progress, f"Calling {self.model} to write the notes")
        logger.info("Requesting completion from %s (%s)", self.name, self.model)

        text = await self._complete(prompts)
        if not text:
            raise EmptyResultError(f"{self.name} returned no text; check the model output", provider=self.id.value)

        emit_progress(on_progress, "Notes generated")
        return text

    @abstractmethod
    async def _complete(self, prompts: SummaryPrompts) -> str:
        ...

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_s, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=body)
        except httpx.RequestError as exc:
            raise BackendError(f"{self.name} request failed: {exc}", provider=self.id.value) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code >= 400:
            message = _error_message(payload) or resp.text or "request failed"
            raise BackendError(
                f"{self.name} request failed ({resp.status_code}): {message}",
                status=resp.status_code,
                provider=self.id.value,
            )
        if not isinstance(payload, dict):
            raise BackendError(f"{self.name} returned an invalid response", status=resp.status_code)
        return payload


class OpenAICompatClient(LLMBackend):
    id = SummaryProviderId.openai_compat
    name = "OpenAI Compatible"

    @property
    def model(self) -> str:
        return self.settings.llm_model.strip()

    async def validate_config(self) -> ValidationResult:
        if not self.settings.llm_api_key.strip():
            return missing("SUMMARY_LLM_API_KEY")
        if not self.settings.llm_api_base_url.strip():
            return missing("SUMMARY_LLM_API_BASE_URL")
        if not self.model:
            return missing("SUMMARY_LLM_MODEL")
        return CONFIG_OK

    async def _complete(self, prompts: SummaryPrompts) -> str:
        base_url = self.settings.llm_api_base_url.strip().rstrip("/")
        payload = await self._post(
            f"{base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.settings.llm_api_key.strip()}"},
            body={
                "model": self.model,
                "temperature": self.settings.temperature,
                "messages": [
                    {"role": "system", "content": prompts.system_prompt},
                    {"role": "user", "content": prompts.user_prompt},
                ],
            },
        )
        return extract_openai_content(payload)


class ClaudeClient(LLMBackend):
    id = SummaryProviderId.claude
    name = "Claude"

    @property
    def model(self) -> str:
        return self.settings.claude_model.strip()

    async def validate_config(self) -> ValidationResult:
        if not self.settings.claude_api_key.strip():
            return missing("SUMMARY_CLAUDE_API_KEY")
        if not self.model:
            return missing("SUMMARY_CLAUDE_MODEL")
        return CONFIG_OK

    async def _complete(self, prompts: SummaryPrompts) -> str:
        payload = await self._post(
            self.settings.claude_api_url,
            headers={
                "x-api-key": self.settings.claude_api_key.strip(),
                "anthropic-version": self.settings.claude_api_version,
            },
            body={
                "model": self.model,
                "temperature": self.settings.temperature,
                "max_tokens": self.settings.max_tokens,
                "system": prompts.system_prompt,
                "messages": [{"role": "user", "content": prompts.user_prompt}],
            },
        )
        return extract_claude_content(payload)


def extract_openai_content(payload: dict) -> str:
    """``choices[0].message.content`` as a string or a list of text parts."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""
    parts = [item["text"].strip() for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)]
    return "\n".join(part for part in parts if part).strip()


def extract_claude_content(payload: dict) -> str:
    content = payload.get("content")
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"].strip()
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "\n".join(part for part in parts if part).strip()


def _error_message(payload: Any) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message")
        if isinstance(message, str):
            return message
    return ""
