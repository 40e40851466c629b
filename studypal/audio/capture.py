import errno
import importlib.util
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
from loguru import logger

from core.errors import DeviceUnavailable, PermissionDenied

SAMPLE_RATE = 16000
CHANNELS = 1
CHUNK_SIZE = 1280  # 80ms at 16kHz
FORMAT_DTYPE = np.int16

# Names PipeWire/PulseAudio give the sources of their echo-cancel module
# (webrtc AEC + noise suppression).
_PROCESSED_SOURCE_HINTS = ("echo-cancel", "echo_cancel", "echocancel")


@dataclass
class CaptureConstraints:
    sample_rate: int = SAMPLE_RATE
    chunk_size: int = CHUNK_SIZE
    echo_cancellation: bool = True
    noise_suppression: bool = True


class InputStream(Protocol):
    sample_rate: int

    def read_chunk(self) -> np.ndarray: ...

    def close(self) -> None: ...


class CaptureBackend(Protocol):
    def is_available(self) -> bool: ...

    def open(self, constraints: CaptureConstraints) -> InputStream: ...


class PyAudioInputStream:
    """One open PyAudio input stream, resampled to the requested rate.

    Tries the target rate first (PipeWire does high-quality resampling),
    falls back to native 44100/48000Hz with linear-interpolation resampling.
    """

    def __init__(self, pa, stream, capture_rate: int, sample_rate: int, chunk_size: int):
        self._pa = pa
        self._stream = stream
        self._capture_rate = capture_rate
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self._capture_chunk = (
            chunk_size if capture_rate == sample_rate
            else int(chunk_size * capture_rate / sample_rate)
        )

    def _resample(self, chunk: np.ndarray) -> np.ndarray:
        if self._capture_rate == self.sample_rate:
            return chunk

        ratio = self.sample_rate / self._capture_rate
        n_out = self.chunk_size
        indices = np.arange(n_out) / ratio
        indices = np.clip(indices, 0, len(chunk) - 1)
        idx_floor = indices.astype(np.int32)
        idx_ceil = np.minimum(idx_floor + 1, len(chunk) - 1)
        frac = indices - idx_floor
        resampled = chunk[idx_floor] * (1 - frac) + chunk[idx_ceil] * frac
        return resampled.astype(FORMAT_DTYPE)

    def read_chunk(self) -> np.ndarray:
        """Blocking read of one chunk; call from an executor."""
        raw = self._stream.read(self._capture_chunk, exception_on_overflow=False)
        return self._resample(np.frombuffer(raw, dtype=FORMAT_DTYPE))

    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None


class PyAudioBackend:
    """Microphone capture through PyAudio/PortAudio."""

    def is_available(self) -> bool:
        return importlib.util.find_spec("pyaudio") is not None

    def open(self, constraints: CaptureConstraints) -> PyAudioInputStream:
        """Open the microphone. Blocking; run in an executor.

        Raises:
            DeviceUnavailable: PyAudio missing or no usable input device.
            PermissionDenied: the OS refused access to the device.
        """
        if not self.is_available():
            raise DeviceUnavailable("PyAudio is not installed; audio recording unavailable")

        import pyaudio
        pa = pyaudio.PyAudio()

        try:
            pa.get_default_input_device_info()
        except (IOError, OSError):
            pa.terminate()
            raise DeviceUnavailable("No microphone found")

        device_index = self._pick_device(pa, constraints)
        last_error: Optional[Exception] = None

        for rate in [constraints.sample_rate, 44100, 48000]:
            try:
                capture_chunk = (
                    constraints.chunk_size if rate == constraints.sample_rate
                    else int(constraints.chunk_size * rate / constraints.sample_rate)
                )
                stream = pa.open(
                    format=pyaudio.paInt16,
                    channels=CHANNELS,
                    rate=rate,
                    input=True,
                    input_device_index=device_index,
                    frames_per_buffer=capture_chunk,
                )
                logger.info(
                    "Audio capture opened: capture={}Hz, output={}Hz, chunk={}",
                    rate, constraints.sample_rate, constraints.chunk_size,
                )
                return PyAudioInputStream(
                    pa, stream, rate, constraints.sample_rate, constraints.chunk_size
                )
            except OSError as e:
                if _is_permission_error(e):
                    pa.terminate()
                    raise PermissionDenied() from e
                logger.debug("Sample rate {}Hz not supported: {}", rate, e)
                last_error = e

        pa.terminate()
        raise DeviceUnavailable(f"Could not open audio input stream: {last_error}")

    @staticmethod
    def _pick_device(pa, constraints: CaptureConstraints) -> Optional[int]:
        """Prefer the system's echo-cancelled source when processing is requested."""
        if not (constraints.echo_cancellation or constraints.noise_suppression):
            return None
        for index in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(index)
            name = str(info.get("name", "")).lower()
            if info.get("maxInputChannels", 0) > 0 and any(h in name for h in _PROCESSED_SOURCE_HINTS):
                logger.info("Using processed input source '{}'", info.get("name"))
                return index
        logger.debug("No echo-cancel source available; using default input device.")
        return None


def _is_permission_error(error: OSError) -> bool:
    return error.errno == errno.EACCES or "permission" in str(error).lower()
