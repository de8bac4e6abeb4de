from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

import numpy as np

from asr_service.wav import encode_wav, parse_wav
from common.errors import ConversionError, FormatError

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000


def resample_and_downmix_to_16k_mono(raw_audio: bytes) -> np.ndarray:
    """Decode any audio container to 16 kHz mono float32 samples.

    PCM16 WAV input is decoded directly. Everything else goes through
    ffmpeg, which only decodes to PCM16 at the source's own rate and channel
    count; channel averaging and resampling always happen here.
    """
    try:
        info = parse_wav(raw_audio)
    except FormatError:
        info = None
    if info is None or info.bits_per_sample != 16:
        info = parse_wav(_ffmpeg_decode_to_wav(raw_audio))

    samples = np.frombuffer(info.pcm, dtype="<i2", count=len(info.pcm) // 2).astype(np.float32) / 32768.0
    return downmix_and_resample(samples, info.num_channels, info.sample_rate)


def downmix_and_resample(
    samples: np.ndarray,
    channels: int,
    sample_rate: int,
    target_rate: int = TARGET_SAMPLE_RATE,
) -> np.ndarray:
    """Average interleaved channels into one, then linearly resample."""
    frame_count = len(samples) // channels
    mono = samples[: frame_count * channels].reshape(frame_count, channels).mean(axis=1)

    target_length = max(1, int(np.ceil(frame_count / sample_rate * target_rate)))
    if sample_rate == target_rate and frame_count == target_length:
        return mono.astype(np.float32)
    if frame_count == 0:
        return np.zeros(target_length, dtype=np.float32)

    positions = np.arange(target_length, dtype=np.float64) * (sample_rate / target_rate)
    resampled = np.interp(positions, np.arange(frame_count, dtype=np.float64), mono)
    return resampled.astype(np.float32)


async def convert_to_wav16k(raw_audio: bytes) -> bytes:
    """Convert arbitrary audio bytes into a canonical 16 kHz mono PCM16 WAV."""
    def _convert() -> bytes:
        samples = resample_and_downmix_to_16k_mono(raw_audio)
        return encode_wav(samples, TARGET_SAMPLE_RATE)

    return await asyncio.to_thread(_convert)


def _ffmpeg_decode_to_wav(raw_audio: bytes) -> bytes:
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg is None:
        raise ConversionError("ffmpeg is not available; cannot decode audio")

    with tempfile.TemporaryDirectory(prefix="recorder-") as tmp:
        src = Path(tmp) / "input"
        dst = Path(tmp) / "decoded.wav"
        src.write_bytes(raw_audio)
        cmd = [
            ffmpeg,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", str(src),
            "-vn",
            "-acodec", "pcm_s16le",
            "-f", "wav",
            str(dst),
        ]
        logger.info("Decoding %d bytes of audio with ffmpeg", len(raw_audio))
        result = subprocess.run(cmd, capture_output=True)
        if result.returncode != 0 or not dst.exists():
            detail = result.stderr.decode("utf-8", errors="replace").strip()
            raise ConversionError(f"ffmpeg failed to decode audio: {detail or 'unknown error'}")
        return dst.read_bytes()
