import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from core.errors import (
    DeviceUnavailable,
    NoAudioCaptured,
    NoResponse,
    TranscriptionFailed,
    VoiceError,
)
from core.state import VoicePhase
from services.speech import SpeechOptions
from services.transcription import TranscriptionOptions


class VoiceConversation:
    """Turn-taking voice pipeline: record -> transcribe -> converse -> speak.

    idle --start--> recording --(manual stop | VAD silence)--> processing
         --> speaking --(playback done)--> idle

    ``force_stop`` returns to idle from any phase. Every turn carries an
    id; callbacks and results from a turn that was force-stopped see a
    newer id and are dropped.
    """

    def __init__(
        self,
        recorder,
        vad,
        tts,
        transcriber,
        on_voice_message: Callable[[str], Awaitable[str]],
        transcription_options: Optional[TranscriptionOptions] = None,
        speech_options: Optional[SpeechOptions] = None,
        on_state_change: Optional[Callable[[VoicePhase, VoicePhase], None]] = None,
    ):
        self.recorder = recorder
        self.vad = vad
        self.tts = tts
        self.transcriber = transcriber
        self.on_voice_message = on_voice_message
        self.transcription_options = transcription_options or TranscriptionOptions()
        self.speech_options = speech_options
        self.on_state_change = on_state_change

        self._phase = VoicePhase.IDLE
        self._turn_id = 0
        self._turn_task: Optional[asyncio.Task] = None

        self.error: Optional[str] = None
        self.last_transcript: Optional[str] = None
        self.last_response: Optional[str] = None

    @property
    def phase(self) -> VoicePhase:
        return self._phase

    @property
    def is_active(self) -> bool:
        return self._phase != VoicePhase.IDLE

    @property
    def recording_time(self) -> int:
        return self.recorder.recording_time

    @property
    def current_volume(self) -> float:
        return self.vad.current_volume

    def status(self) -> dict:
        return {
            "phase": self._phase.value,
            "active": self.is_active,
            "error": self.error,
            "recording_time": self.recording_time,
            "volume": round(self.current_volume, 4),
            "last_transcript": self.last_transcript,
            "last_response": self.last_response,
        }

    async def start_voice_conversation(self) -> None:
        if self._phase != VoicePhase.IDLE:
            logger.debug("Start ignored while {}.", self._phase.value)
            return

        self._turn_id += 1
        turn_id = self._turn_id
        self.error = None
        self.last_transcript = None
        self.last_response = None

        self.tts.initialize_user_gesture()
        self._set_phase(VoicePhase.RECORDING)
        try:
            started = await self.recorder.start_recording(
                on_error=lambda error: self._on_capture_error(turn_id, error)
            )
        except Exception as e:
            self._fail(turn_id, e)
            return

        if turn_id != self._turn_id:
            # Force-stopped while the microphone was opening; the recorder
            # has already closed the device it opened for this turn.
            return
        if not started:
            self._fail(turn_id, DeviceUnavailable("Microphone is already in use"))
            return

        stream = self.recorder.get_media_stream()
        if stream is not None:
            self.vad.start(stream, lambda: self._on_silence(turn_id))
        logger.info("Listening (turn {})...", turn_id)

    async def stop_and_converse(self) -> None:
        """End recording now and run the rest of the turn."""
        if self._phase != VoicePhase.RECORDING:
            logger.debug("Stop ignored while {}.", self._phase.value)
            return
        task = self._begin_turn(self._turn_id)
        await asyncio.wait({task})

    def force_stop(self) -> None:
        """Abandon the current turn immediately. Never raises."""
        previous = self._phase
        self._turn_id += 1

        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

        for stop in (self.recorder.abort, self.vad.stop, self.tts.force_stop):
            try:
                stop()
            except Exception as e:
                logger.warning("Error during force stop: {}", e)

        self.error = None
        self._set_phase(VoicePhase.IDLE)
        if previous != VoicePhase.IDLE:
            logger.info("Voice conversation force-stopped (was {}).", previous.value)

    def _on_silence(self, turn_id: int) -> None:
        if turn_id != self._turn_id or self._phase != VoicePhase.RECORDING:
            return
        logger.info("End of speech detected.")
        self._begin_turn(turn_id)

    def _on_capture_error(self, turn_id: int, error: VoiceError) -> None:
        if turn_id != self._turn_id or self._phase != VoicePhase.RECORDING:
            return
        self._fail(turn_id, error)

    def _begin_turn(self, turn_id: int) -> asyncio.Task:
        self._set_phase(VoicePhase.PROCESSING)
        self._turn_task = asyncio.get_running_loop().create_task(self._run_turn(turn_id))
        return self._turn_task

    async def _run_turn(self, turn_id: int) -> None:
        t_start = time.monotonic()
        try:
            self.vad.stop()
            blob = await self.recorder.stop_recording()
            if blob is None or blob.is_empty:
                raise NoAudioCaptured()
            logger.info("Recorded {:.1f}s ({} bytes {})", blob.duration_seconds, blob.size, blob.mime_type)

            t_rec = time.monotonic()
            result = await self.transcriber.transcribe(
                blob.data, blob.mime_type, self.transcription_options
            )
            logger.info("[TIMING] STT: {:.1f}s", time.monotonic() - t_rec)
            if not result.success or not result.text.strip():
                raise TranscriptionFailed(result.error)
            if turn_id != self._turn_id:
                return

            transcript = result.text.strip()
            self.last_transcript = transcript
            logger.info("User said: '{}'", transcript)

            t_llm = time.monotonic()
            response = await self.on_voice_message(transcript)
            logger.info("[TIMING] Response: {:.1f}s", time.monotonic() - t_llm)
            if not response or not response.strip():
                raise NoResponse()
            if turn_id != self._turn_id:
                return
            self.last_response = response

            if self.tts.is_supported:
                self._set_phase(VoicePhase.SPEAKING)
                await self.tts.speak(response, self.speech_options)
            else:
                logger.warning("Audio playback not supported; response not spoken.")

            logger.info("[TIMING] Total turn: {:.1f}s", time.monotonic() - t_start)
        except Exception as e:
            self._fail(turn_id, e)
        finally:
            if turn_id == self._turn_id:
                self._turn_task = None
                self._set_phase(VoicePhase.IDLE)

    def _fail(self, turn_id: int, error: Exception) -> None:
        if turn_id != self._turn_id:
            logger.debug("Dropping error from abandoned turn {}: {}", turn_id, error)
            return
        if isinstance(error, VoiceError):
            self.error = error.user_message
            logger.error("Voice Error: {}", error.user_message)
        else:
            self.error = str(error) or "Voice conversation failed"
            logger.exception("Voice conversation failed: {}", error)
        # Release anything the failed step left open
        self.recorder.abort()
        self.vad.stop()
        self._set_phase(VoicePhase.IDLE)

    def _set_phase(self, phase: VoicePhase) -> None:
        old = self._phase
        if old == phase:
            return
        self._phase = phase
        logger.debug("Voice phase {} -> {}", old.value, phase.value)
        if self.on_state_change is not None:
            try:
                self.on_state_change(old, phase)
            except Exception as e:
                logger.error("Voice state callback failed: {}", e)
