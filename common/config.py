from pydantic_settings import BaseSettings

from common.schemas import SummaryProviderId, TranscriptionProviderId


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    storage_root: str = "recordings"
    auto_summarize: bool = False

    model_config = {"env_prefix": "GATEWAY_"}


class TranscriptionSettings(BaseSettings):
    provider: TranscriptionProviderId = TranscriptionProviderId.whisper
    language: str = "auto"
    request_timeout_s: float = 300.0

    # OpenAI-compatible Whisper API
    whisper_api_key: str = ""
    whisper_api_base_url: str = "https://api.openai.com/v1"
    whisper_model: str = "whisper-1"
    whisper_max_file_bytes: int = 25 * 1024 * 1024

    # iFlytek long-form transcription
    xfyun_app_id: str = ""
    xfyun_secret_key: str = ""
    xfyun_api_base_url: str = "https://raasr.xfyun.cn/v2/api"
    xfyun_poll_attempts: int = 120
    xfyun_poll_interval_s: float = 3.0

    # whisper.cpp subprocess
    whisper_cpp_path: str = ""
    whisper_cpp_model_path: str = ""
    whisper_cpp_threads: int = 4
    whisper_cpp_timeout_s: float = 600.0

    # in-process faster-whisper
    model_size: str = "large-v3"
    device: str = "auto"
    compute_type: str = "auto"

    model_config = {"env_prefix": "ASR_"}


class SummarySettings(BaseSettings):
    provider: SummaryProviderId = SummaryProviderId.openai_compat
    request_timeout_s: float = 120.0
    temperature: float = 0.3
    max_tokens: int = 4096

    # OpenAI-compatible chat completions
    llm_api_key: str = ""
    llm_api_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o"

    # Anthropic messages API
    claude_api_key: str = ""
    claude_model: str = "claude-sonnet-4-5-20250929"
    claude_api_url: str = "https://api.anthropic.com/v1/messages"
    claude_api_version: str = "2023-06-01"

    template: str = ""
    enable_hierarchical: bool = True
    chunk_char_limit: int = 12000

    model_config = {"env_prefix": "SUMMARY_"}
