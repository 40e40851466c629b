import asyncio
import inspect
import time
from typing import Callable, Optional

import numpy as np
from loguru import logger

from core.config import VADConfig


class SpectrumAnalyser:
    """Frequency analyser producing byte spectra on the web-audio scale.

    Blackman window, exponential smoothing between frames, magnitudes in
    dB mapped linearly from [-100, -30] onto 0..255.
    """

    MIN_DECIBELS = -100.0
    MAX_DECIBELS = -30.0

    def __init__(self, fft_size: int = 256, smoothing: float = 0.8):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._window = np.blackman(fft_size)
        self._previous = np.zeros(self.frequency_bin_count)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        self._previous = np.zeros(self.frequency_bin_count)

    def byte_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        x = samples[-self.fft_size:]
        if x.dtype == np.int16:
            x = x.astype(np.float32) / 32768.0
        if len(x) < self.fft_size:
            x = np.concatenate([np.zeros(self.fft_size - len(x), dtype=np.float32), x])

        magnitude = np.abs(np.fft.rfft(x * self._window))[: self.frequency_bin_count] / self.fft_size
        self._previous = self.smoothing * self._previous + (1 - self.smoothing) * magnitude

        decibels = 20 * np.log10(np.maximum(self._previous, 1e-12))
        scaled = 255 * (decibels - self.MIN_DECIBELS) / (self.MAX_DECIBELS - self.MIN_DECIBELS)
        return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)

    def volume(self, samples: np.ndarray) -> float:
        """Mean spectrum magnitude normalized to [0, 1]."""
        return float(self.byte_frequency_data(samples).mean()) / 255.0


class VoiceActivityDetector:
    """Watches the microphone level and reports the end of an utterance.

    Speech begins at the first frame louder than ``silence_threshold``.
    Once speech has gone on for ``min_speech_duration`` seconds, a quiet
    frame arms a silence timer; any loud frame disarms it. When the timer
    runs out, ``on_speech_end`` is called once for this session.
    """

    def __init__(
        self,
        silence_threshold: float = 0.01,
        silence_duration: float = 2.0,
        min_speech_duration: float = 1.0,
        fft_size: int = 256,
        smoothing: float = 0.8,
        frame_interval: float = 1 / 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.silence_threshold = silence_threshold
        self.silence_duration = silence_duration
        self.min_speech_duration = min_speech_duration
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.frame_interval = frame_interval
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._analyser: Optional[SpectrumAnalyser] = None
        self._on_speech_end: Optional[Callable] = None
        self._callback_tasks: set[asyncio.Task] = set()
        self._session = 0
        self._speech_started_at: Optional[float] = None
        self._silence_deadline: Optional[float] = None
        self._fired = False

        self.is_listening = False
        self.current_volume = 0.0

    @classmethod
    def from_config(cls, config: VADConfig) -> "VoiceActivityDetector":
        return cls(
            silence_threshold=config.silence_threshold,
            silence_duration=config.silence_duration,
            min_speech_duration=config.min_speech_duration,
            fft_size=config.fft_size,
            smoothing=config.smoothing,
            frame_interval=config.frame_interval,
        )

    def start(self, stream, on_speech_end: Callable) -> None:
        """Begin sampling ``stream`` (anything with ``latest_frame()``)."""
        self.stop()
        self._session += 1
        self._analyser = SpectrumAnalyser(self.fft_size, self.smoothing)
        self._on_speech_end = on_speech_end
        self._speech_started_at = None
        self._silence_deadline = None
        self._fired = False
        self.is_listening = True
        self._task = asyncio.get_running_loop().create_task(self._monitor(stream))
        logger.debug("Voice activity detection started (threshold={})", self.silence_threshold)

    def stop(self) -> None:
        was_listening = self.is_listening
        self.is_listening = False
        self._session += 1
        self._on_speech_end = None
        self._speech_started_at = None
        self._silence_deadline = None
        self.current_volume = 0.0

        task, self._task = self._task, None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        if was_listening:
            logger.debug("Voice activity detection stopped")

    async def _monitor(self, stream) -> None:
        while self.is_listening:
            frame = stream.latest_frame()
            volume = self._analyser.volume(frame) if frame is not None else 0.0
            self.process_volume(volume)
            await asyncio.sleep(self.frame_interval)

    def process_volume(self, volume: float, now: Optional[float] = None) -> bool:
        """Feed one volume sample. Returns True when end of speech fires."""
        now = self._clock() if now is None else now
        self.current_volume = volume

        if volume > self.silence_threshold:
            if self._speech_started_at is None:
                self._speech_started_at = now
                logger.debug("Speech detected")
            self._silence_deadline = None
            return False

        if self._speech_started_at is None or self._fired:
            return False

        if self._silence_deadline is None:
            if now - self._speech_started_at >= self.min_speech_duration:
                self._silence_deadline = now + self.silence_duration
            return False

        if now >= self._silence_deadline:
            self._fired = True
            self._silence_deadline = None
            logger.debug("Silence detected after {:.1f}s, ending speech", now - self._speech_started_at)
            self._dispatch()
            return True
        return False

    def _dispatch(self) -> None:
        # Run the callback outside the sampling loop; it usually stops us.
        session = self._session
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._invoke(session)
            return
        loop.call_soon(self._invoke, session)

    def _invoke(self, session: int) -> None:
        if session != self._session or self._on_speech_end is None:
            return
        result = self._on_speech_end()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)
