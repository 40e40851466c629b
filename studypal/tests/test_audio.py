"""Tests for audio pipeline components."""
import asyncio
import os
import threading
import time

import numpy as np
import pytest

from audio.audio_player import AudioPlayer
from audio.encoding import encode, pcm_to_wav_bytes, select_mime_type
from audio.recorder import AudioRecorder, MicrophoneStream
from audio.tts import TextToSpeechPlayer
from audio.vad import SpectrumAnalyser, VoiceActivityDetector
from core.config import RecorderConfig
from core.errors import (
    DeviceUnavailable,
    EmptyUtterance,
    PermissionDenied,
    PlaybackError,
    PlaybackUnsupported,
    SynthesisFailed,
)


def noise(n=1280, amplitude=3000, seed=0):
    rng = np.random.default_rng(seed)
    return (rng.standard_normal(n) * amplitude).astype(np.int16)


class TestEncoding:
    def test_prefers_opus(self):
        assert select_mime_type(lambda m: True) == "audio/webm;codecs=opus"

    def test_falls_through_preference_order(self):
        assert select_mime_type(lambda m: m in ("audio/mp4", "audio/wav")) == "audio/mp4"

    def test_wav_when_nothing_else(self):
        assert select_mime_type(lambda m: False) == "audio/wav"

    def test_wav_header(self):
        wav = pcm_to_wav_bytes(np.zeros(160, dtype=np.int16), 16000)
        assert wav[:4] == b"RIFF"
        assert wav[8:12] == b"WAVE"
        assert len(wav) == 44 + 320

    @pytest.mark.asyncio
    async def test_encode_wav(self):
        pcm = noise(1600)
        assert await encode(pcm, 16000, "audio/wav") == pcm_to_wav_bytes(pcm, 16000)

    @pytest.mark.asyncio
    async def test_encode_unknown_type(self):
        with pytest.raises(RuntimeError):
            await encode(noise(160), 16000, "audio/ogg")


class TestSpectrumAnalyser:
    def test_silence_is_zero(self):
        analyser = SpectrumAnalyser()
        assert analyser.volume(np.zeros(256, dtype=np.int16)) == 0.0

    def test_noise_is_loud(self):
        analyser = SpectrumAnalyser()
        assert analyser.volume(noise()) > 0.01

    def test_byte_spectrum_shape(self):
        analyser = SpectrumAnalyser(fft_size=256)
        data = analyser.byte_frequency_data(noise())
        assert data.shape == (128,)
        assert data.dtype == np.uint8

    def test_short_frame_is_padded(self):
        analyser = SpectrumAnalyser()
        assert analyser.byte_frequency_data(noise(100)).shape == (128,)

    def test_smoothing_decays(self):
        analyser = SpectrumAnalyser()
        loud = analyser.volume(noise())
        quiet = analyser.volume(np.zeros(256, dtype=np.int16))
        assert 0.0 < quiet < loud


class NullStream:
    def latest_frame(self):
        return None


class TestVoiceActivityDetector:
    @pytest.fixture
    def vad(self):
        # Long frame interval: the monitor samples once, the test drives the rest
        return VoiceActivityDetector(
            silence_threshold=0.01,
            silence_duration=1.5,
            min_speech_duration=0.8,
            frame_interval=3600,
            clock=lambda: 0.0,
        )

    @staticmethod
    def feed(vad, volume, start, stop, step=0.05):
        fired = []
        for i in range(int(round((stop - start) / step))):
            t = round(start + i * step, 3)
            if vad.process_volume(volume, now=t):
                fired.append(t)
        return fired

    @pytest.mark.asyncio
    async def test_speech_then_silence_fires_once(self, vad):
        calls = []
        vad.start(NullStream(), lambda: calls.append(1))
        await asyncio.sleep(0)

        assert self.feed(vad, 0.5, 0.0, 0.9) == []
        fired = self.feed(vad, 0.0, 0.9, 4.0)
        assert len(fired) == 1
        assert fired[0] == pytest.approx(0.9 + 1.5, abs=0.06)

        await asyncio.sleep(0)
        assert calls == [1]
        vad.stop()

    @pytest.mark.asyncio
    async def test_speech_cancels_silence_timer(self, vad):
        calls = []
        vad.start(NullStream(), lambda: calls.append(1))
        await asyncio.sleep(0)

        self.feed(vad, 0.5, 0.0, 1.0)
        assert self.feed(vad, 0.0, 1.0, 2.0) == []
        self.feed(vad, 0.5, 2.0, 2.1)
        fired = self.feed(vad, 0.0, 2.1, 5.0)
        assert fired[0] == pytest.approx(2.1 + 1.5, abs=0.06)
        vad.stop()

    @pytest.mark.asyncio
    async def test_no_speech_never_fires(self, vad):
        vad.start(NullStream(), lambda: None)
        await asyncio.sleep(0)
        assert self.feed(vad, 0.0, 0.0, 10.0) == []
        vad.stop()

    @pytest.mark.asyncio
    async def test_stop_drops_pending_callback(self, vad):
        calls = []
        vad.start(NullStream(), lambda: calls.append(1))
        await asyncio.sleep(0)
        self.feed(vad, 0.5, 0.0, 1.0)
        assert self.feed(vad, 0.0, 1.0, 3.0)
        vad.stop()
        await asyncio.sleep(0)
        assert calls == []

    @pytest.mark.asyncio
    async def test_async_callback(self, vad):
        done = asyncio.Event()

        async def on_end():
            done.set()

        vad.start(NullStream(), on_end)
        await asyncio.sleep(0)
        self.feed(vad, 0.5, 0.0, 1.0)
        self.feed(vad, 0.0, 1.0, 3.0)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        vad.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, vad):
        vad.start(NullStream(), lambda: None)
        vad.stop()
        vad.stop()
        assert not vad.is_listening
        assert vad.current_volume == 0.0

    @pytest.mark.asyncio
    async def test_reads_volume_from_stream(self):
        stream = MicrophoneStream(16000)
        stream.publish(noise())
        vad = VoiceActivityDetector(frame_interval=0.01)
        vad.start(stream, lambda: None)
        await asyncio.sleep(0.05)
        assert vad.current_volume > 0.01
        vad.stop()


class FakeInput:
    def __init__(self, sample_rate=16000):
        self.sample_rate = sample_rate
        self.closed = False
        self.reads = 0

    def read_chunk(self):
        time.sleep(0.005)
        self.reads += 1
        return noise(1280, seed=self.reads)

    def close(self):
        self.closed = True


class FailingInput(FakeInput):
    def __init__(self, sample_rate=16000, fail_after=3):
        super().__init__(sample_rate)
        self.fail_after = fail_after

    def read_chunk(self):
        if self.reads >= self.fail_after:
            raise OSError("device unplugged")
        return super().read_chunk()


class FakeBackend:
    def __init__(self, available=True, error=None, source=FakeInput):
        self.available = available
        self.error = error
        self.source = source
        self.input = None
        self.constraints = None

    def is_available(self):
        return self.available

    def open(self, constraints):
        self.constraints = constraints
        if self.error is not None:
            raise self.error
        self.input = self.source(constraints.sample_rate)
        return self.input


class GatedBackend(FakeBackend):
    """Each open blocks until the test releases it."""

    def __init__(self):
        super().__init__()
        self.opens = []

    def open(self, constraints):
        released = threading.Event()
        source = FakeInput(constraints.sample_rate)
        self.opens.append((released, source))
        released.wait(timeout=2.0)
        return source


async def wait_until(condition, timeout=2.0):
    for _ in range(int(timeout / 0.005)):
        if condition():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never met")


def make_recorder(backend):
    return AudioRecorder(backend, RecorderConfig(), type_supported=lambda m: m == "audio/wav")


class TestAudioRecorder:
    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        recorder = make_recorder(FakeBackend())
        assert await recorder.stop_recording() is None

    @pytest.mark.asyncio
    async def test_record_and_stop(self):
        backend = FakeBackend()
        recorder = make_recorder(backend)
        await recorder.start_recording()
        assert recorder.is_recording
        assert recorder.mime_type == "audio/wav"
        assert backend.constraints.echo_cancellation
        assert backend.constraints.noise_suppression

        await asyncio.sleep(0.1)
        blob = await recorder.stop_recording()
        assert not recorder.is_recording
        assert blob.mime_type == "audio/wav"
        assert blob.data[:4] == b"RIFF"
        assert blob.duration_seconds > 0
        assert backend.input.closed

    @pytest.mark.asyncio
    async def test_media_stream_while_recording(self):
        recorder = make_recorder(FakeBackend())
        assert recorder.get_media_stream() is None
        await recorder.start_recording()
        await asyncio.sleep(0.05)
        stream = recorder.get_media_stream()
        frame = stream.latest_frame()
        assert frame is not None
        assert not frame.flags.writeable
        await recorder.stop_recording()
        assert recorder.get_media_stream() is None

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        recorder = make_recorder(FakeBackend(error=PermissionDenied()))
        with pytest.raises(PermissionDenied):
            await recorder.start_recording()
        assert not recorder.is_recording
        assert "denied" in recorder.error

    @pytest.mark.asyncio
    async def test_unsupported(self):
        recorder = make_recorder(FakeBackend(available=False))
        assert not recorder.is_supported
        with pytest.raises(DeviceUnavailable):
            await recorder.start_recording()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        recorder = make_recorder(FakeBackend())
        recorder.pause_recording()
        assert not recorder.is_paused
        await recorder.start_recording()
        recorder.pause_recording()
        assert recorder.is_paused
        recorder.resume_recording()
        assert not recorder.is_paused
        await recorder.stop_recording()

    @pytest.mark.asyncio
    async def test_abort_releases_device(self):
        backend = FakeBackend()
        recorder = make_recorder(backend)
        await recorder.start_recording()
        await asyncio.sleep(0.02)
        recorder.abort()
        recorder.abort()
        assert not recorder.is_recording
        await asyncio.sleep(0.05)
        assert backend.input.closed
        assert await recorder.stop_recording() is None

    @pytest.mark.asyncio
    async def test_frames_iterator_ends_on_stop(self):
        recorder = make_recorder(FakeBackend())
        await recorder.start_recording()
        stream = recorder.get_media_stream()
        received = []

        async def consume():
            async for frame in stream.frames():
                received.append(frame)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        await recorder.stop_recording()
        await asyncio.wait_for(consumer, timeout=1.0)
        assert received

    @pytest.mark.asyncio
    async def test_abort_while_opening_closes_device(self):
        backend = GatedBackend()
        recorder = make_recorder(backend)
        starter = asyncio.create_task(recorder.start_recording())
        await wait_until(lambda: backend.opens)

        recorder.abort()
        released, source = backend.opens[0]
        released.set()
        assert await starter is False
        assert source.closed
        assert not recorder.is_recording
        assert recorder.get_media_stream() is None

    @pytest.mark.asyncio
    async def test_late_open_does_not_replace_newer_recording(self):
        backend = GatedBackend()
        recorder = make_recorder(backend)
        first = asyncio.create_task(recorder.start_recording())
        await wait_until(lambda: len(backend.opens) == 1)
        recorder.abort()
        second = asyncio.create_task(recorder.start_recording())
        await wait_until(lambda: len(backend.opens) == 2)

        backend.opens[1][0].set()
        assert await second is True
        stream = recorder.get_media_stream()
        backend.opens[0][0].set()
        assert await first is False

        assert backend.opens[0][1].closed
        assert not backend.opens[1][1].closed
        assert recorder.is_recording
        assert recorder.get_media_stream() is stream
        await asyncio.sleep(0.05)
        blob = await recorder.stop_recording()
        assert blob.duration_seconds > 0
        assert backend.opens[1][1].closed

    @pytest.mark.asyncio
    async def test_read_error_releases_device_and_reports(self):
        backend = FakeBackend(source=FailingInput)
        recorder = make_recorder(backend)
        errors = []
        assert await recorder.start_recording(on_error=errors.append) is True
        await wait_until(lambda: errors)

        assert len(errors) == 1
        assert isinstance(errors[0], DeviceUnavailable)
        assert "device unplugged" in errors[0].user_message
        assert "device unplugged" in recorder.error
        assert not recorder.is_recording
        assert recorder.get_media_stream() is None
        await wait_until(lambda: backend.input.closed)
        assert await recorder.stop_recording() is None

    @pytest.mark.asyncio
    async def test_read_error_after_stop_is_not_reported(self):
        backend = FakeBackend(source=FailingInput)
        recorder = make_recorder(backend)
        errors = []
        await recorder.start_recording(on_error=errors.append)
        await recorder.stop_recording()
        await asyncio.sleep(0.05)
        assert errors == []
        assert recorder.error is None


class TestAudioPlayer:
    def test_unknown_type_unsupported(self):
        assert not AudioPlayer({"audio/wav": ["true"]}).is_supported("audio/mpeg")

    def test_missing_binary_unsupported(self):
        assert not AudioPlayer({"audio/wav": ["no-such-player-binary"]}).is_supported("audio/wav")

    @pytest.mark.asyncio
    async def test_start_unsupported_raises(self):
        with pytest.raises(PlaybackUnsupported):
            await AudioPlayer({}).start(b"data", "audio/wav")

    @pytest.mark.asyncio
    async def test_playback_completes_and_cleans_up(self):
        player = AudioPlayer({"audio/wav": ["true"]})
        playback = await player.start(b"data", "audio/wav")
        assert await playback.wait() == 0
        assert not playback.failed
        assert not os.path.exists(playback.path)

    @pytest.mark.asyncio
    async def test_failed_playback(self):
        player = AudioPlayer({"audio/wav": ["false"]})
        playback = await player.start(b"data", "audio/wav")
        await playback.wait()
        assert playback.failed

    @pytest.mark.asyncio
    async def test_stop_kills_player(self):
        player = AudioPlayer({"audio/mpeg": ["sh", "-c", "exec sleep 5", "player"]})
        playback = await player.start(b"data", "audio/mpeg")
        playback.stop()
        await asyncio.wait_for(playback.wait(), timeout=2.0)
        assert playback.stopped
        assert not playback.failed


class FakeSynthesizer:
    mime_type = "audio/mpeg"

    def __init__(self, error=None):
        self.error = error
        self.texts = []

    async def synthesize(self, text, options=None):
        self.texts.append(text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return b"mp3-bytes"


class FakePlayback:
    def __init__(self, returncode):
        self._returncode = returncode
        self._done = asyncio.Event()
        self.returncode = None
        self.stopped = False
        self.stderr = ""

    @property
    def failed(self):
        return not self.stopped and self.returncode not in (None, 0)

    def finish(self):
        self.returncode = self._returncode
        self._done.set()

    def stop(self):
        self.stopped = True
        if self.returncode is None:
            self.returncode = -9
        self._done.set()

    async def wait(self):
        await self._done.wait()
        return self.returncode


class FakePlayer:
    def __init__(self, supported=True, autofinish=True, returncode=0):
        self.supported = supported
        self.autofinish = autofinish
        self.returncode = returncode
        self.playbacks = []
        self.played = []

    def is_supported(self, mime_type="audio/mpeg"):
        return self.supported

    async def start(self, audio, mime_type="audio/mpeg"):
        playback = FakePlayback(self.returncode)
        self.playbacks.append(playback)
        if self.autofinish:
            playback.finish()
        return playback

    async def play(self, audio, mime_type="audio/wav"):
        self.played.append(mime_type)


class TestTextToSpeechPlayer:
    @pytest.mark.asyncio
    async def test_speak_plays_to_completion(self):
        player = FakePlayer()
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        await tts.speak("  Hello there  ")
        assert tts.synthesizer.texts == ["Hello there"]
        assert len(player.playbacks) == 1
        assert not tts.is_playing
        assert not tts.is_loading
        assert tts.error is None

    @pytest.mark.asyncio
    async def test_empty_text(self):
        tts = TextToSpeechPlayer(FakeSynthesizer(), FakePlayer())
        with pytest.raises(EmptyUtterance):
            await tts.speak("   ")
        assert tts.error == "No text provided"

    @pytest.mark.asyncio
    async def test_unsupported_output(self):
        tts = TextToSpeechPlayer(FakeSynthesizer(), FakePlayer(supported=False))
        assert not tts.is_supported
        with pytest.raises(PlaybackUnsupported):
            await tts.speak("hi")

    @pytest.mark.asyncio
    async def test_synthesis_failure(self):
        tts = TextToSpeechPlayer(FakeSynthesizer(error=SynthesisFailed("Invalid OpenAI API key")), FakePlayer())
        with pytest.raises(SynthesisFailed):
            await tts.speak("hi")
        assert tts.error == "Invalid OpenAI API key"
        assert not tts.is_loading

    @pytest.mark.asyncio
    async def test_player_failure(self):
        tts = TextToSpeechPlayer(FakeSynthesizer(), FakePlayer(returncode=1))
        with pytest.raises(PlaybackError):
            await tts.speak("hi")
        assert tts.error == "Failed to play audio"

    @pytest.mark.asyncio
    async def test_stop_returns_quietly(self):
        player = FakePlayer(autofinish=False)
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        task = asyncio.create_task(tts.speak("a long answer"))
        await asyncio.sleep(0.01)
        assert tts.is_playing
        tts.stop()
        await task
        assert player.playbacks[0].stopped
        assert not tts.is_playing

    @pytest.mark.asyncio
    async def test_new_utterance_replaces_old(self):
        player = FakePlayer(autofinish=False)
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        first = asyncio.create_task(tts.speak("one"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(tts.speak("two"))
        await asyncio.sleep(0.01)
        await first
        assert player.playbacks[0].stopped
        assert len(player.playbacks) == 2
        assert tts.is_playing
        player.playbacks[1].finish()
        await second
        assert not tts.is_playing

    @pytest.mark.asyncio
    async def test_stop_when_idle(self):
        tts = TextToSpeechPlayer(FakeSynthesizer(), FakePlayer())
        tts.stop()
        tts.force_stop()
        assert not tts.is_playing

    @pytest.mark.asyncio
    async def test_output_primed_once(self):
        player = FakePlayer()
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        tts.initialize_user_gesture()
        tts.initialize_user_gesture()
        await asyncio.sleep(0)
        assert player.played == ["audio/wav"]

    @pytest.mark.asyncio
    async def test_force_stop_forgets_priming(self):
        player = FakePlayer()
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        tts.initialize_user_gesture()
        await asyncio.sleep(0)
        tts.force_stop()
        tts.initialize_user_gesture()
        await asyncio.sleep(0)
        assert player.played == ["audio/wav", "audio/wav"]

    @pytest.mark.asyncio
    async def test_priming_failure_is_logged_not_raised(self):
        player = FakePlayer()

        async def broken(audio, mime_type="audio/wav"):
            raise OSError("no output device")

        player.play = broken
        tts = TextToSpeechPlayer(FakeSynthesizer(), player)
        tts.initialize_user_gesture()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert tts._prime_task.done()
        assert tts._prime_task.exception() is None
