"""
PCM wire codec.

Stateless conversions between float sample buffers and the backend's audio
representation: mono or interleaved signed 16-bit little-endian PCM,
base64-encoded, tagged with an `audio/pcm;rate=<R>` mime string.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass

import numpy as np

from .errors import AudioCodecError

PCM_DTYPE = np.dtype("<i2")
ENCODE_SCALE = 32767.0
DECODE_SCALE = 32768.0


@dataclass(frozen=True)
class AudioPayload:
    """Outbound audio chunk as the transport sends it."""

    data: str
    mime_type: str


@dataclass(frozen=True)
class DecodedAudio:
    """Inbound audio, one row per channel."""

    samples: np.ndarray  # shape (channels, frames), float32
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={int(sample_rate)}"


def encode_pcm(samples, sample_rate: int) -> AudioPayload:
    """
    Encode float samples for the wire.

    Each sample is clamped to [-1, 1], scaled by 32767 and rounded to the
    nearest int16, then serialized little-endian and base64-encoded.
    """
    floats = np.asarray(samples, dtype=np.float64).reshape(-1)
    ints = np.rint(np.clip(floats, -1.0, 1.0) * ENCODE_SCALE).astype(PCM_DTYPE)
    return AudioPayload(
        data=base64.b64encode(ints.tobytes()).decode("ascii"),
        mime_type=pcm_mime_type(sample_rate),
    )


def decode_pcm(data: bytes, sample_rate: int, channels: int = 1) -> DecodedAudio:
    """
    Decode raw int16 little-endian PCM into per-channel float32 buffers.

    Interleaved input is split so that channel `c` of frame `i` comes from
    `sample[i * channels + c]`. Values are normalized by 32768.
    """
    if channels < 1:
        raise AudioCodecError(f"invalid channel count: {channels}")
    if len(data) % PCM_DTYPE.itemsize:
        raise AudioCodecError(f"odd PCM byte length: {len(data)}")

    ints = np.frombuffer(data, dtype=PCM_DTYPE)
    if ints.size % channels:
        raise AudioCodecError(
            f"{ints.size} samples do not split into {channels} channels"
        )

    frames = ints.reshape(-1, channels).T
    return DecodedAudio(
        samples=(frames.astype(np.float32) / np.float32(DECODE_SCALE)),
        sample_rate=int(sample_rate),
    )


def rms_level(samples) -> float:
    """Root-mean-square level of a block, 0.0 for an empty block."""
    block = np.asarray(samples, dtype=np.float32)
    if block.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(block))))
