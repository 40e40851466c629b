import asyncio
from typing import Optional

import numpy as np
from loguru import logger

from audio.audio_player import AudioPlayer, Playback
from audio.encoding import pcm_to_wav_bytes
from core.errors import EmptyUtterance, PlaybackError, PlaybackUnsupported, VoiceError

# 50ms of silence, played once to wake up the output sink.
SILENT_WAV = pcm_to_wav_bytes(np.zeros(800, dtype=np.int16), 16000)


class TextToSpeechPlayer:
    """Speaks text through a speech synthesizer and an audio player.

    Only one utterance plays at a time: ``speak`` stops whatever is
    playing, and an utterance that was superseded while its audio was
    still being synthesized is dropped.
    """

    def __init__(self, synthesizer, player: Optional[AudioPlayer] = None):
        self.synthesizer = synthesizer
        self.player = player or AudioPlayer()
        self._playback: Optional[Playback] = None
        self._generation = 0
        self._output_primed = False
        self._prime_task: Optional[asyncio.Task] = None

        self.is_playing = False
        self.is_loading = False
        self.error: Optional[str] = None

    @property
    def is_supported(self) -> bool:
        return self.player.is_supported(self.synthesizer.mime_type)

    async def speak(self, text: str, options=None) -> None:
        """Synthesize ``text`` and play it; returns when playback ends.

        Returns quietly when the utterance is stopped on purpose.

        Raises:
            PlaybackUnsupported, EmptyUtterance, SynthesisFailed, PlaybackError
        """
        if not self.is_supported:
            self.error = PlaybackUnsupported.default_message
            raise PlaybackUnsupported()
        if not text or not text.strip():
            self.error = EmptyUtterance.default_message
            raise EmptyUtterance()

        self.stop()
        generation = self._generation
        self.is_loading = True
        self.error = None

        try:
            self.initialize_user_gesture()
            audio = await self.synthesizer.synthesize(text.strip(), options)
            if generation != self._generation:
                logger.debug("Utterance superseded before playback.")
                return
            playback = await self.player.start(audio, self.synthesizer.mime_type)
        except VoiceError as e:
            if generation == self._generation:
                self.error = e.user_message
            logger.error("TTS error: {}", e)
            raise
        finally:
            if generation == self._generation:
                self.is_loading = False

        if generation != self._generation:
            playback.stop()
            await playback.wait()
            return

        self._playback = playback
        self.is_playing = True
        try:
            await playback.wait()
        finally:
            if self._playback is playback:
                self._playback = None
                self.is_playing = False

        if playback.stopped:
            return
        if playback.failed:
            self.error = PlaybackError.default_message
            raise PlaybackError(f"Failed to play audio: {playback.stderr or playback.returncode}")
        logger.debug("Utterance finished playing.")

    def stop(self) -> None:
        """Stop the current utterance. Safe to call at any time."""
        self._generation += 1
        playback, self._playback = self._playback, None
        if playback is not None:
            playback.stop()
            logger.info("TTS playback stopped.")
        self.is_playing = False
        self.is_loading = False

    def force_stop(self) -> None:
        """Stop everything and forget that the output was primed."""
        self.stop()
        task, self._prime_task = self._prime_task, None
        if task is not None and not task.done():
            task.cancel()
        self._output_primed = False
        self.error = None

    def initialize_user_gesture(self) -> None:
        """Prime the audio output with a short silent clip, once."""
        if self._output_primed:
            return
        self._output_primed = True
        if not self.player.is_supported("audio/wav"):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._prime_task = loop.create_task(self._prime_output())

    async def _prime_output(self) -> None:
        try:
            await self.player.play(SILENT_WAV, "audio/wav")
        except Exception as e:
            logger.warning("Failed to prime audio output: {}", e)
