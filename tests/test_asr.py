import json
import stat
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import numpy as np
import pytest

from asr_service import audio_utils, transcriber, whisper_api
from asr_service.audio_utils import (
    convert_to_wav16k,
    downmix_and_resample,
    resample_and_downmix_to_16k_mono,
)
from asr_service.base import TranscriptionBackend, clean_setting
from asr_service.local_whisper import LocalWhisperBackend, parse_timestamp, parse_whisper_cpp_output
from asr_service.service import TranscriptionService, guess_mime_type
from asr_service.transcriber import FasterWhisperBackend
from asr_service.wav import decode_wav_pcm16, encode_wav
from asr_service.whisper_api import WhisperApiBackend, extract_segments
from asr_service.xfyun import XfyunBackend, estimate_duration, parse_result_text
from common.config import TranscriptionSettings
from common.errors import (
    BackendError,
    ConfigurationError,
    ConversionError,
    EmptyResultError,
    OperationTimeoutError,
)
from common.schemas import (
    TranscriptionOptions,
    TranscriptionProgress,
    TranscriptionProviderId,
    TranscriptionResult,
    TranscriptSegment,
    ValidationResult,
)
from common.storage import LocalStorage


def _wav(seconds: float, rate: int = 16000) -> bytes:
    return encode_wav(np.zeros(int(seconds * rate)), rate)


class TestAudioUtils:
    def test_downmix_averages_channels(self):
        stereo = np.array([1.0, 0.0, 0.5, 0.5, -1.0, 1.0], dtype=np.float32)
        mono = downmix_and_resample(stereo, channels=2, sample_rate=16000)
        np.testing.assert_allclose(mono, [0.5, 0.5, 0.0])

    def test_resample_length_is_rounded_up(self):
        samples = np.zeros(100, dtype=np.float32)
        out = downmix_and_resample(samples, channels=1, sample_rate=22050)
        assert len(out) == 73

    def test_empty_input_yields_one_sample(self):
        out = downmix_and_resample(np.zeros(0, dtype=np.float32), channels=1, sample_rate=44100)
        assert len(out) == 1

    def test_pcm16_wav_skips_ffmpeg(self, monkeypatch):
        monkeypatch.setattr(audio_utils.shutil, "which", lambda name: None)
        samples = resample_and_downmix_to_16k_mono(_wav(0.5, rate=8000))
        assert len(samples) == 8000

    def test_missing_ffmpeg_raises_conversion_error(self, monkeypatch):
        monkeypatch.setattr(audio_utils.shutil, "which", lambda name: None)
        with pytest.raises(ConversionError, match="ffmpeg"):
            resample_and_downmix_to_16k_mono(b"\x1a\x45\xdf\xa3 not a wav")

    @pytest.mark.asyncio
    async def test_convert_to_wav16k(self):
        wav = await convert_to_wav16k(_wav(1.0, rate=22050))
        info = decode_wav_pcm16(wav)
        assert info.sample_rate == 16000
        assert info.num_channels == 1
        assert len(info.pcm) == 32000


class TestBackendHelpers:
    def test_clean_setting_strips_quotes(self):
        assert clean_setting('  "sk-123" ') == "sk-123"
        assert clean_setting("'x'") == "x"
        assert clean_setting(None) == ""

    def test_guess_mime_type(self):
        assert guess_mime_type("a/b.WAV") == "audio/wav"
        assert guess_mime_type("talk.mp3") == "audio/mpeg"
        assert guess_mime_type("talk.webm") == "audio/webm"
        assert guess_mime_type("talk") == "audio/webm"

    def test_segment_clamps_times(self):
        seg = TranscriptSegment(start=-1, end=-5, text="  hi ")
        assert (seg.start, seg.end, seg.text) == (0.0, 0.0, "hi")


class TestWhisperApi:
    @pytest.fixture
    def settings(self):
        return TranscriptionSettings(whisper_api_key='"sk-test"', whisper_api_base_url="https://api.test/v1/")

    @pytest.mark.asyncio
    async def test_single_upload(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "text": "Hello class",
                "language": "english",
                "segments": [{"start": 0.0, "end": 1.5, "text": " Hello class "}],
            })

        backend = WhisperApiBackend(settings, transport=httpx.MockTransport(handler))
        progress = []
        result = await backend.transcribe(
            b"fake-webm",
            TranscriptionOptions(file_name="lecture.webm", mime_type="audio/webm"),
            progress.append,
        )

        assert len(requests) == 1
        assert str(requests[0].url) == "https://api.test/v1/audio/transcriptions"
        assert requests[0].headers["Authorization"] == "Bearer sk-test"
        assert b'filename="lecture.webm"' in requests[0].content
        assert b"verbose_json" in requests[0].content
        assert result.full_text == "Hello class"
        assert result.language == "english"
        assert result.duration == 1.5
        assert result.provider_id == "whisper"
        assert all(isinstance(p, TranscriptionProgress) for p in progress)

    @pytest.mark.asyncio
    async def test_large_audio_is_split_with_offsets(self, settings, monkeypatch):
        monkeypatch.setattr(whisper_api, "UPLOAD_MARGIN_BYTES", 0)
        settings.whisper_max_file_bytes = 44 + 32000
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={
                "text": f"part {len(calls)}",
                "segments": [{"start": 0.0, "end": 0.5, "text": f"part {len(calls)}"}],
            })

        backend = WhisperApiBackend(settings, transport=httpx.MockTransport(handler))
        result = await backend.transcribe(_wav(2.5), TranscriptionOptions())

        assert len(calls) == 3
        assert all(b"audio/wav" in call.content for call in calls)
        assert [seg.start for seg in result.segments] == [0.0, 1.0, 2.0]
        assert result.full_text == "part 1\npart 2\npart 3"

    @pytest.mark.asyncio
    async def test_error_status_raises_backend_error(self, settings):
        backend = WhisperApiBackend(
            settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad key")),
        )
        with pytest.raises(BackendError, match="401") as excinfo:
            await backend.transcribe(b"audio", TranscriptionOptions())
        assert excinfo.value.status == 401

    @pytest.mark.asyncio
    async def test_connection_failure_raises_backend_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = WhisperApiBackend(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(BackendError, match="connection refused") as excinfo:
            await backend.transcribe(b"audio", TranscriptionOptions())
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_missing_key_never_sends(self):
        def handler(request):
            raise AssertionError("request should not be sent")

        backend = WhisperApiBackend(TranscriptionSettings(whisper_api_key=""), transport=httpx.MockTransport(handler))
        with pytest.raises(ConfigurationError, match="ASR_WHISPER_API_KEY"):
            await backend.transcribe(b"audio", TranscriptionOptions())

    def test_extract_segments_falls_back_to_text(self):
        segments = extract_segments({"text": " only text ", "duration": 3}, offset=10)
        assert len(segments) == 1
        assert (segments[0].start, segments[0].end, segments[0].text) == (10, 13, "only text")


class TestXfyun:
    @pytest.fixture
    def settings(self):
        return TranscriptionSettings(
            xfyun_app_id="app",
            xfyun_secret_key="secret",
            xfyun_api_base_url="https://raasr.test/api",
            xfyun_poll_attempts=3,
            xfyun_poll_interval_s=0,
        )

    def _handler(self, statuses, result_data):
        calls = []
        statuses = iter(statuses)

        def envelope(data):
            # live API shape: err_no and failed are present but null on success
            return httpx.Response(200, json={"ok": 0, "err_no": 0, "failed": None, "data": data})

        def handler(request: httpx.Request) -> httpx.Response:
            action = request.url.path.rsplit("/", 1)[-1]
            calls.append(action)
            query = parse_qs(request.url.query.decode())
            assert query["appid"] == ["app"]
            assert query["signa"]
            if action == "prepare":
                return envelope({"task_id": "t-1"})
            if action == "getProgress":
                return envelope(json.dumps({"status": next(statuses)}))
            if action == "getResult":
                return envelope(result_data)
            return envelope(None)

        return handler, calls

    @pytest.mark.asyncio
    async def test_full_flow(self, settings):
        data = json.dumps({"lattice": [{"onebest": "Hello class"}, {"onebest": "Today we study"}]})
        handler, calls = self._handler([3, 9], data)
        backend = XfyunBackend(settings, transport=httpx.MockTransport(handler))

        result = await backend.transcribe(_wav(0.1), TranscriptionOptions(file_name="a.wav"))

        assert calls == ["prepare", "upload", "merge", "getProgress", "getProgress", "getResult"]
        assert result.full_text == "Hello class\nToday we study"
        assert result.provider_id == "xfyun"
        assert result.duration == estimate_duration(result.full_text)

    @pytest.mark.asyncio
    async def test_poll_exhaustion_times_out(self, settings):
        handler, calls = self._handler([3, 3, 3, 3], "")
        backend = XfyunBackend(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(OperationTimeoutError):
            await backend.transcribe(_wav(0.1), TranscriptionOptions())
        assert calls.count("getProgress") == 3
        assert "getResult" not in calls

    @pytest.mark.asyncio
    async def test_empty_result_raises(self, settings):
        handler, _ = self._handler([5], "")
        backend = XfyunBackend(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(EmptyResultError):
            await backend.transcribe(_wav(0.1), TranscriptionOptions())

    @pytest.mark.asyncio
    async def test_api_error_code(self, settings):
        backend = XfyunBackend(settings, transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"ok": -1, "failed": 1, "message": "quota exceeded"}),
        ))
        with pytest.raises(BackendError, match="quota exceeded"):
            await backend.transcribe(_wav(0.1), TranscriptionOptions())

    @pytest.mark.asyncio
    async def test_null_status_fields_count_as_success(self, settings):
        data = json.dumps({"lattice": [{"onebest": "Hello class"}]})

        def handler(request: httpx.Request) -> httpx.Response:
            action = request.url.path.rsplit("/", 1)[-1]
            payload = {"prepare": {"task_id": "t-1"}, "getProgress": json.dumps({"status": 9}), "getResult": data}
            return httpx.Response(200, json={"err_no": None, "failed": None, "data": payload.get(action)})

        backend = XfyunBackend(settings, transport=httpx.MockTransport(handler))
        result = await backend.transcribe(_wav(0.1), TranscriptionOptions())
        assert result.full_text == "Hello class"

    @pytest.mark.asyncio
    async def test_err_no_without_ok_is_an_error(self, settings):
        backend = XfyunBackend(settings, transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"err_no": 26600, "failed": None, "message": "bad signa"}),
        ))
        with pytest.raises(BackendError, match="bad signa") as excinfo:
            await backend.transcribe(_wav(0.1), TranscriptionOptions())
        assert excinfo.value.context["code"] == 26600

    @pytest.mark.asyncio
    async def test_connection_failure_raises_backend_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = XfyunBackend(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(BackendError, match="iFlytek prepare request failed: connection refused"):
            await backend.transcribe(_wav(0.1), TranscriptionOptions())

    def test_sign_is_stable(self, settings):
        backend = XfyunBackend(settings)
        assert backend.sign("1700000000") == backend.sign("1700000000")
        assert backend.sign("1700000000") != backend.sign("1700000001")

    def test_parse_result_text_plain_string(self):
        assert parse_result_text("  plain text ") == "plain text"
        assert parse_result_text(None) == ""


WHISPER_CPP_SCRIPT = """#!/bin/sh
while [ $# -gt 0 ]; do
  case "$1" in
    -of) out="$2"; shift 2 ;;
    *) shift ;;
  esac
done
{body}
"""

WHISPER_CPP_JSON = json.dumps({
    "result": {"language": "en"},
    "transcription": [
        {"timestamps": {"from": "00:00:00,000", "to": "00:00:02,500"}, "text": " Hello"},
        {"offsets": {"from": 2500, "to": 4000}, "text": " world"},
    ],
})


class TestLocalWhisper:
    def _settings(self, tmp_path, body: str, timeout: float = 30) -> TranscriptionSettings:
        exe = tmp_path / "whisper-cli"
        exe.write_text(WHISPER_CPP_SCRIPT.format(body=body))
        exe.chmod(exe.stat().st_mode | stat.S_IEXEC)
        model = tmp_path / "ggml-base.bin"
        model.write_bytes(b"model")
        return TranscriptionSettings(
            whisper_cpp_path=str(exe),
            whisper_cpp_model_path=str(model),
            whisper_cpp_timeout_s=timeout,
        )

    @pytest.mark.asyncio
    async def test_reads_json_output(self, tmp_path):
        body = f"cat > \"$out.json\" <<'EOF'\n{WHISPER_CPP_JSON}\nEOF"
        backend = LocalWhisperBackend(self._settings(tmp_path, body))

        result = await backend.transcribe(_wav(0.2), TranscriptionOptions())

        assert result.full_text == "Hello world"
        assert [(s.start, s.end) for s in result.segments] == [(0.0, 2.5), (2.5, 4.0)]
        assert result.language == "en"
        assert result.duration == 4.0

    @pytest.mark.asyncio
    async def test_falls_back_to_text_output(self, tmp_path):
        body = "echo '{}' > \"$out.json\"\necho 'plain transcript' > \"$out.txt\""
        backend = LocalWhisperBackend(self._settings(tmp_path, body))

        result = await backend.transcribe(_wav(0.2), TranscriptionOptions())
        assert result.full_text == "plain transcript"
        assert len(result.segments) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        backend = LocalWhisperBackend(self._settings(tmp_path, "exec sleep 5", timeout=0.2))
        with pytest.raises(OperationTimeoutError):
            await backend.transcribe(_wav(0.2), TranscriptionOptions())

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        backend = LocalWhisperBackend(self._settings(tmp_path, "echo boom >&2\nexit 3"))
        with pytest.raises(BackendError, match="boom"):
            await backend.transcribe(_wav(0.2), TranscriptionOptions())

    @pytest.mark.asyncio
    async def test_non_executable_binary_raises_backend_error(self, tmp_path):
        settings = self._settings(tmp_path, "exit 0")
        Path(settings.whisper_cpp_path).chmod(0o644)
        backend = LocalWhisperBackend(settings)

        with pytest.raises(BackendError, match="Could not start whisper.cpp") as excinfo:
            await backend.transcribe(_wav(0.2), TranscriptionOptions())
        assert isinstance(excinfo.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        settings = TranscriptionSettings(
            whisper_cpp_path=str(tmp_path / "nope"),
            whisper_cpp_model_path=str(tmp_path / "nope.bin"),
        )
        result = await LocalWhisperBackend(settings).validate_config()
        assert not result.valid
        assert "ASR_WHISPER_CPP_PATH" in result.message

    def test_parse_timestamp(self):
        assert parse_timestamp("00:01:02,500") == 62.5
        assert parse_timestamp("") == 0.0
        assert parse_timestamp("garbage") == 0.0

    def test_parse_plain_text_payload(self):
        parsed = parse_whisper_cpp_output({"text": " just text "})
        assert parsed.full_text == "just text"
        assert parsed.segments == []


class TestFasterWhisper:
    @pytest.mark.asyncio
    async def test_not_installed(self, monkeypatch):
        monkeypatch.setattr(transcriber.importlib.util, "find_spec", lambda name: None)
        with pytest.raises(ConfigurationError, match="faster-whisper"):
            await FasterWhisperBackend(TranscriptionSettings()).transcribe(_wav(0.1), TranscriptionOptions())

    @pytest.mark.asyncio
    async def test_transcribes_samples(self, monkeypatch):
        monkeypatch.setattr(transcriber.importlib.util, "find_spec", lambda name: object())

        def fake_transcribe(samples, settings, language):
            assert len(samples) == 16000
            return [TranscriptSegment(start=0.0, end=1.0, text="hello")], "en"

        monkeypatch.setattr(transcriber, "transcribe_samples", fake_transcribe)
        result = await FasterWhisperBackend(TranscriptionSettings()).transcribe(_wav(1.0), TranscriptionOptions())

        assert result.full_text == "hello"
        assert result.language == "en"
        assert result.duration == 1.0


class FakeBackend(TranscriptionBackend):
    id = TranscriptionProviderId.whisper
    name = "Fake"

    def __init__(self, settings, valid=True, text="Hello class"):
        super().__init__(settings)
        self.valid = valid
        self.text = text
        self.calls = 0

    async def validate_config(self):
        if self.valid:
            return ValidationResult(valid=True, message="ok")
        return ValidationResult(valid=False, message="FAKE_KEY is not configured")

    async def _transcribe(self, audio, options, on_progress):
        self.calls += 1
        segments = [TranscriptSegment(start=0, end=2, text=self.text)] if self.text else []
        return TranscriptionResult(segments=segments, full_text=self.text, duration=2.0, provider_id="whisper")


class TestTranscriptionService:
    @pytest.fixture
    def storage(self, tmp_path):
        (tmp_path / "lectures").mkdir()
        (tmp_path / "lectures" / "week1.wav").write_bytes(_wav(0.1))
        return LocalStorage(tmp_path)

    @pytest.mark.asyncio
    async def test_writes_and_reuses_cache(self, storage):
        backend = FakeBackend(TranscriptionSettings())
        service = TranscriptionService(TranscriptionSettings(), storage, backend=backend)

        first = await service.transcribe_file("lectures/week1.wav")
        second = await service.transcribe_file("lectures/week1.wav")

        assert backend.calls == 1
        assert not first.from_cache
        assert second.from_cache
        assert first.transcript_path == "lectures/week1.wav.transcript.json"
        assert second.result.full_text == "Hello class"
        cached = json.loads(storage.read_text(first.transcript_path))
        assert cached["version"] == 1
        assert cached["audio_file_path"] == "lectures/week1.wav"

    @pytest.mark.asyncio
    async def test_empty_cache_is_retranscribed(self, storage):
        empty = FakeBackend(TranscriptionSettings(), text="")
        service = TranscriptionService(TranscriptionSettings(), storage, backend=empty)
        await service.transcribe_file("lectures/week1.wav")

        service.backend = FakeBackend(TranscriptionSettings())
        run = await service.transcribe_file("lectures/week1.wav")
        assert not run.from_cache
        assert service.backend.calls == 1

    def test_unreadable_cache_is_ignored(self, storage):
        storage.write_text("lectures/week1.wav.transcript.json", "{not json")
        service = TranscriptionService(TranscriptionSettings(), storage, backend=FakeBackend(TranscriptionSettings()))
        assert service.get_cached("lectures/week1.wav") is None

    @pytest.mark.asyncio
    async def test_invalid_config_short_circuits(self, storage):
        backend = FakeBackend(TranscriptionSettings(), valid=False)
        service = TranscriptionService(TranscriptionSettings(), storage, backend=backend)
        with pytest.raises(ConfigurationError, match="FAKE_KEY"):
            await service.transcribe_file("lectures/week1.wav")
        assert backend.calls == 0

    def test_provider_selects_backend(self, storage):
        for provider, cls in [
            (TranscriptionProviderId.whisper, WhisperApiBackend),
            (TranscriptionProviderId.xfyun, XfyunBackend),
            (TranscriptionProviderId.local_whisper, LocalWhisperBackend),
            (TranscriptionProviderId.faster_whisper, FasterWhisperBackend),
        ]:
            service = TranscriptionService(TranscriptionSettings(provider=provider), storage)
            assert isinstance(service.backend, cls)
