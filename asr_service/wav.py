"""Canonical PCM16 WAV encoding, decoding and byte-budget splitting.

Only 16-bit mono PCM is produced or accepted for splitting; there is no
implicit downmix here (see :mod:`asr_service.audio_utils` for conversion).
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from common.errors import ConfigurationError, FormatError

WAV_HEADER_BYTES = 44

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass
class WavInfo:
    sample_rate: int
    num_channels: int
    bits_per_sample: int
    pcm: bytes

    @property
    def frame_bytes(self) -> int:
        return self.bits_per_sample // 8 * self.num_channels

    @property
    def duration(self) -> float:
        return len(self.pcm) / self.frame_bytes / self.sample_rate


def build_wav_header(data_size: int, sample_rate: int, num_channels: int = 1, bits_per_sample: int = 16) -> bytes:
    block_align = num_channels * bits_per_sample // 8
    return _HEADER.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        num_channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


def wrap_pcm16(pcm: bytes, sample_rate: int) -> bytes:
    """Prefix raw mono PCM16 bytes with a canonical header."""
    return build_wav_header(len(pcm), sample_rate) + bytes(pcm)


def encode_wav(samples: Sequence[float] | np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples in [-1, 1] as a 16-bit mono WAV file."""
    values = np.clip(np.nan_to_num(np.asarray(samples, dtype=np.float64)), -1.0, 1.0)
    scaled = np.where(values < 0, values * 32768.0, values * 32767.0)
    pcm = np.floor(scaled + 0.5).astype("<i2")
    return build_wav_header(pcm.size * 2, sample_rate) + pcm.tobytes()


def parse_wav(data: bytes) -> WavInfo:
    """Read the ``fmt `` and ``data`` chunks of a RIFF/WAVE buffer.

    No restriction on channel count or bit depth is applied here.
    """
    data = bytes(data)
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise FormatError("Input is not a RIFF/WAVE buffer")

    sample_rate = num_channels = bits_per_sample = 0
    pcm: bytes | None = None

    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset:offset + 4]
        (chunk_size,) = struct.unpack_from("<I", data, offset + 4)
        start = offset + 8
        end = start + chunk_size
        if end > len(data):
            break

        if chunk_id == b"fmt ":
            if chunk_size < 16:
                raise FormatError("fmt chunk is too short", size=chunk_size)
            (num_channels,) = struct.unpack_from("<H", data, start + 2)
            (sample_rate,) = struct.unpack_from("<I", data, start + 4)
            (bits_per_sample,) = struct.unpack_from("<H", data, start + 14)
        elif chunk_id == b"data":
            pcm = data[start:end]

        offset = end + (chunk_size % 2)

    if pcm is None or not sample_rate or not num_channels or not bits_per_sample:
        raise FormatError("WAV buffer is missing a fmt or data chunk")

    return WavInfo(
        sample_rate=sample_rate,
        num_channels=num_channels,
        bits_per_sample=bits_per_sample,
        pcm=pcm,
    )


def decode_wav_pcm16(data: bytes) -> WavInfo:
    """Decode a 16-bit mono WAV buffer; any other layout is rejected."""
    info = parse_wav(data)
    if info.bits_per_sample != 16 or info.num_channels != 1:
        raise FormatError(
            "Only 16-bit mono WAV is supported",
            bits_per_sample=info.bits_per_sample,
            num_channels=info.num_channels,
        )
    return info


def pcm16_to_float32(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2", count=len(pcm) // 2).astype(np.float32) / 32768.0


def split_by_byte_budget(data: bytes, max_bytes: int) -> list[bytes]:
    """Split a WAV buffer into independently playable WAV files of at most ``max_bytes``.

    Chunk boundaries always fall on whole frames and the chunks' PCM payloads
    concatenate back to the original payload byte for byte, minus any
    trailing partial frame.
    """
    if len(data) <= max_bytes:
        return [data]
    if max_bytes <= WAV_HEADER_BYTES:
        raise ConfigurationError(
            f"max_bytes must be greater than {WAV_HEADER_BYTES}",
            max_bytes=max_bytes,
        )

    info = decode_wav_pcm16(data)
    frame_bytes = info.frame_bytes
    max_data_bytes = (max_bytes - WAV_HEADER_BYTES) // frame_bytes * frame_bytes
    if max_data_bytes == 0:
        raise ConfigurationError(
            f"max_bytes must leave room for at least one {frame_bytes}-byte frame",
            max_bytes=max_bytes,
        )

    # a trailing half-frame is dropped so every chunk holds whole frames
    usable = len(info.pcm) - len(info.pcm) % frame_bytes
    chunks: list[bytes] = []
    for offset in range(0, usable, max_data_bytes):
        chunks.append(wrap_pcm16(info.pcm[offset:min(offset + max_data_bytes, usable)], info.sample_rate))
    return chunks
