import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import numpy as np
from loguru import logger

from audio.capture import CaptureBackend, CaptureConstraints, InputStream, PyAudioBackend
from audio.encoding import encode, is_type_supported, pcm_to_wav_bytes, select_mime_type
from core.config import RecorderConfig
from core.errors import DeviceUnavailable, VoiceError


@dataclass
class AudioBlob:
    data: bytes
    mime_type: str
    duration_seconds: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def size(self) -> int:
        return len(self.data)


class MicrophoneStream:
    """Read-only live view of the microphone for secondary consumers.

    The recorder publishes every captured chunk here; readers (the VAD)
    either peek at the latest chunk or iterate over all of them. Readers
    never affect what gets recorded.
    """

    def __init__(self, sample_rate: int):
        self.sample_rate = sample_rate
        self.active = True
        self._latest: Optional[np.ndarray] = None
        self._subscribers: list[asyncio.Queue] = []

    def latest_frame(self) -> Optional[np.ndarray]:
        return self._latest

    async def frames(self) -> AsyncIterator[np.ndarray]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=32)
        self._subscribers.append(queue)
        try:
            while self.active or not queue.empty():
                frame = await queue.get()
                if frame is None:
                    return
                yield frame
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def publish(self, frame: np.ndarray) -> None:
        frame = frame.copy()
        frame.setflags(write=False)
        self._latest = frame
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()  # slow reader: drop the oldest frame
            queue.put_nowait(frame)

    def close(self) -> None:
        self.active = False
        self._latest = None
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)


class AudioRecorder:
    """Records the microphone into an encoded audio blob.

    Audio is buffered in chunks of at most ``timeslice_seconds`` and only
    encoded when recording stops. The live stream is exposed through
    :meth:`get_media_stream` so the VAD can listen in.
    """

    def __init__(
        self,
        backend: Optional[CaptureBackend] = None,
        config: Optional[RecorderConfig] = None,
        type_supported: Callable[[str], bool] = is_type_supported,
    ):
        self.backend = backend or PyAudioBackend()
        self.config = config or RecorderConfig()
        self._type_supported = type_supported

        self._input: Optional[InputStream] = None
        self._stream: Optional[MicrophoneStream] = None
        self._read_task: Optional[asyncio.Task] = None
        self._clock_task: Optional[asyncio.Task] = None
        self._chunks: list[np.ndarray] = []
        self._pending: list[np.ndarray] = []
        self._pending_samples = 0
        self._sample_rate = self.config.sample_rate
        self._session = 0
        self._on_error: Optional[Callable[[VoiceError], None]] = None

        self.is_recording = False
        self.is_paused = False
        self.recording_time = 0
        self.mime_type: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def is_supported(self) -> bool:
        return self.backend.is_available()

    async def start_recording(
        self, on_error: Optional[Callable[[VoiceError], None]] = None
    ) -> bool:
        """Open the microphone and start buffering.

        ``on_error`` is called if capture breaks down mid-recording; the
        recorder has already released the device by then.

        Returns False when the open was overtaken by :meth:`abort` or a
        newer start; the microphone it opened is closed again.

        Raises:
            PermissionDenied: access to the microphone was refused.
            DeviceUnavailable: no capture support or no device.
        """
        if self.is_recording:
            return False
        if not self.is_supported:
            self.error = DeviceUnavailable.default_message
            raise DeviceUnavailable()

        self._session += 1
        session = self._session
        self.error = None
        constraints = CaptureConstraints(
            sample_rate=self.config.sample_rate,
            echo_cancellation=self.config.echo_cancellation,
            noise_suppression=self.config.noise_suppression,
        )
        loop = asyncio.get_running_loop()
        try:
            source = await loop.run_in_executor(None, self.backend.open, constraints)
        except VoiceError as e:
            if session == self._session:
                self.error = f"Failed to start recording: {e.user_message}"
            logger.error("Failed to start recording: {}", e)
            raise

        if session != self._session:
            source.close()
            logger.debug("Microphone open superseded; device closed.")
            return False

        self._on_error = on_error
        self._input = source
        self._sample_rate = source.sample_rate
        self.mime_type = select_mime_type(self._type_supported)
        self._chunks = []
        self._pending = []
        self._pending_samples = 0
        self._stream = MicrophoneStream(source.sample_rate)
        self.is_recording = True
        self.is_paused = False
        self.recording_time = 0
        self._read_task = asyncio.create_task(self._read_loop(source, session))
        self._clock_task = asyncio.create_task(self._count_seconds())
        logger.info("Recording started ({}, {}Hz)", self.mime_type, source.sample_rate)
        return True

    def pause_recording(self) -> None:
        if self.is_recording and not self.is_paused:
            self.is_paused = True
            logger.debug("Recording paused at {}s", self.recording_time)

    def resume_recording(self) -> None:
        if self.is_recording and self.is_paused:
            self.is_paused = False
            logger.debug("Recording resumed")

    def get_media_stream(self) -> Optional[MicrophoneStream]:
        return self._stream if self.is_recording else None

    async def stop_recording(self) -> Optional[AudioBlob]:
        """Finish recording and return the encoded audio.

        Returns None if no recording was in progress. Never raises.
        """
        if not self.is_recording:
            return None

        self.is_recording = False
        self.is_paused = False
        self._on_error = None
        self._stop_clock()
        if self._stream is not None:
            self._stream.close()
            self._stream = None

        # The read loop releases the device once its in-flight read returns.
        task, self._read_task = self._read_task, None
        if task is not None:
            await asyncio.wait({task})
        self._input = None

        self._flush_pending()
        chunks, self._chunks = self._chunks, []
        self.recording_time = 0
        mime_type = self.mime_type or "audio/wav"

        if not chunks:
            logger.warning("Recording stopped with no audio captured.")
            return AudioBlob(b"", mime_type, 0.0)

        pcm = np.concatenate(chunks)
        duration = len(pcm) / self._sample_rate
        try:
            data = await encode(pcm, self._sample_rate, mime_type)
        except Exception as e:
            logger.error("Encoding to {} failed: {}. Falling back to WAV.", mime_type, e)
            mime_type = "audio/wav"
            data = pcm_to_wav_bytes(pcm, self._sample_rate)

        logger.info("Recording stopped: {:.1f}s, {} bytes {}", duration, len(data), mime_type)
        return AudioBlob(data, mime_type, duration)

    def abort(self) -> None:
        """Release the microphone immediately, discarding buffered audio.

        Also cancels a :meth:`start_recording` that is still opening the
        device.
        """
        was_recording = self.is_recording
        self._session += 1
        self._on_error = None
        self.is_recording = False
        self.is_paused = False
        self._stop_clock()
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._read_task is None and self._input is not None:
            self._input.close()
        # A running read loop sees the new session and closes its own device.
        self._read_task = None
        self._input = None
        self._chunks = []
        self._pending = []
        self._pending_samples = 0
        self.recording_time = 0
        if was_recording:
            logger.info("Recording aborted.")

    async def _read_loop(self, source: InputStream, session: int) -> None:
        loop = asyncio.get_running_loop()
        timeslice = int(source.sample_rate * self.config.timeslice_seconds)
        try:
            while self.is_recording and self._session == session:
                try:
                    chunk = await loop.run_in_executor(None, source.read_chunk)
                except Exception as e:
                    if self.is_recording and self._session == session:
                        self._capture_failed(e)
                    break
                if not self.is_recording or self._session != session:
                    break
                if self._stream is not None:
                    self._stream.publish(chunk)
                if self.is_paused:
                    continue
                self._pending.append(chunk)
                self._pending_samples += len(chunk)
                if self._pending_samples >= timeslice:
                    self._flush_pending()
        finally:
            source.close()

    def _capture_failed(self, error: Exception) -> None:
        failure = DeviceUnavailable(f"Recording error: {error}")
        logger.error("Recording error: {}", error)
        callback = self._on_error
        # Called from the read loop, which closes the device on its way out
        self._read_task = None
        self._input = None
        self.abort()
        self.error = failure.user_message
        if callback is not None:
            try:
                callback(failure)
            except Exception as e:
                logger.error("Recording error callback failed: {}", e)

    def _flush_pending(self) -> None:
        if self._pending:
            self._chunks.append(np.concatenate(self._pending))
            self._pending = []
            self._pending_samples = 0

    async def _count_seconds(self) -> None:
        while self.is_recording:
            await asyncio.sleep(1.0)
            if self.is_recording and not self.is_paused:
                self.recording_time += 1

    def _stop_clock(self) -> None:
        task, self._clock_task = self._clock_task, None
        if task is not None and not task.done():
            task.cancel()
