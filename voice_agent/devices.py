"""
PortAudio capture and output adapters (sounddevice).

Both adapters are callback driven. The capture callback only hands a copy
of each block to `on_frame`; the caller decides how to cross into the event
loop. The output adapter mixes scheduled buffers into its callback blocks
and keeps its own clock as frames rendered / sample rate.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Optional, Tuple

import numpy as np

from logging_setup import Component, get_logger

from .errors import CapturePermissionError, FatalAudioError, VoiceAgentError

logger = get_logger(Component.AUDIO)

FrameCallback = Callable[[np.ndarray], None]

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def classify_device_error(exc: BaseException) -> VoiceAgentError:
    """Map a PortAudio failure to the orchestrator's error types."""
    if isinstance(exc, VoiceAgentError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, PermissionError) or any(m in message.lower() for m in _PERMISSION_MARKERS):
        return CapturePermissionError(message)
    return FatalAudioError(message)


class SoundDeviceCapture:
    """Mono float32 microphone capture in fixed-size blocks."""

    def __init__(self, sample_rate: int = 16000, block_size: int = 4096, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device
        self._stream = None

    def start(self, on_frame: FrameCallback) -> None:
        import sounddevice as sd

        def callback(indata, frames, time_info, status):  # PortAudio thread
            if status:
                logger.debug("Capture stream status", status=str(status))
            on_frame(indata[:, 0].copy())

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=callback,
            )
            stream.start()
        except Exception as e:
            raise classify_device_error(e) from e

        self._stream = stream
        logger.info("Capture started", sample_rate=self.sample_rate, block_size=self.block_size)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Capture stream did not close cleanly", error=str(e))
        logger.info("Capture stopped")


class SoundDeviceOutput:
    """Mono speaker output that plays buffers at scheduled clock positions."""

    def __init__(self, sample_rate: int = 24000, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.device = device
        self._stream = None
        self._lock = threading.Lock()
        self._pending: List[Tuple[int, np.ndarray]] = []
        self._frames_rendered = 0

    def start(self) -> None:
        import sounddevice as sd

        with self._lock:
            self._pending = []
            self._frames_rendered = 0
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            raise classify_device_error(e) from e
        self._stream = stream
        logger.info("Output started", sample_rate=self.sample_rate)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning("Output stream did not close cleanly", error=str(e))
        with self._lock:
            self._pending = []
        logger.info("Output stopped")

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def play_at(self, samples: np.ndarray, start_at: float) -> None:
        block = np.asarray(samples, dtype=np.float32)
        if block.ndim == 2:
            block = block.mean(axis=0)
        start_frame = int(round(start_at * self.sample_rate))
        with self._lock:
            self._pending.append((start_frame, block))

    def _callback(self, outdata, frames, time_info, status):  # PortAudio thread
        if status:
            logger.debug("Output stream status", status=str(status))
        self._render(outdata, frames)

    def _render(self, outdata: np.ndarray, frames: int) -> None:
        """Fill one callback block and advance the clock by `frames`."""
        outdata.fill(0)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            remaining = []
            for start, samples in self._pending:
                end = start + len(samples)
                if end <= block_start:
                    continue
                if start >= block_end:
                    remaining.append((start, samples))
                    continue
                lo, hi = max(start, block_start), min(end, block_end)
                outdata[lo - block_start:hi - block_start, 0] += samples[lo - start:hi - start]
                if end > block_end:
                    remaining.append((start, samples))
            self._pending = remaining
            self._frames_rendered = block_end


def check_audio_devices() -> bool:
    """Check that default input and output devices are present."""
    import sounddevice as sd

    try:
        sd.query_devices(kind="input")
        sd.query_devices(kind="output")
    except Exception as e:
        raise classify_device_error(e) from e
    return True
