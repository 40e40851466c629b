"""Tests for the OpenAI transcription and speech clients."""
from types import SimpleNamespace

import httpx
import openai
import pytest

from core.errors import SynthesisFailed
from services.speech import SpeechOptions, SpeechSynthesizer, validate_speech_options
from services.transcription import (
    MAX_AUDIO_BYTES,
    Transcriber,
    TranscriptionOptions,
    normalize_audio_type,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/audio")


def status_error(cls, code):
    return cls("error", response=httpx.Response(code, request=REQUEST), body=None)


class FakeEndpoint:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.result


def fake_audio_client(transcriptions=None, translations=None, speech=None):
    audio = SimpleNamespace(
        transcriptions=transcriptions or FakeEndpoint(),
        translations=translations or FakeEndpoint(),
        speech=speech or FakeEndpoint(),
    )
    return SimpleNamespace(audio=audio)


class TestNormalizeAudioType:
    @pytest.mark.parametrize(
        "mime, expected",
        [
            ("audio/webm;codecs=opus", ("webm", "audio/webm")),
            ("audio/mp4", ("mp4", "audio/mp4")),
            ("audio/mpeg", ("mp3", "audio/mp3")),
            ("audio/wav", ("wav", "audio/wav")),
            ("application/octet-stream", ("webm", "audio/webm")),
        ],
    )
    def test_mapping(self, mime, expected):
        assert normalize_audio_type(mime) == expected


class TestTranscriber:
    @pytest.mark.asyncio
    async def test_no_audio(self):
        result = await Transcriber("sk-test").transcribe(b"", "audio/wav")
        assert not result.success
        assert result.error == "No audio file provided"

    @pytest.mark.asyncio
    async def test_too_large(self):
        result = await Transcriber("sk-test").transcribe(b"\0" * (MAX_AUDIO_BYTES + 1), "audio/wav")
        assert result.error == "File size exceeds 25MB limit"

    @pytest.mark.asyncio
    async def test_missing_key(self):
        result = await Transcriber("").transcribe(b"audio", "audio/wav")
        assert result.error == "OpenAI API key not configured"

    @pytest.mark.asyncio
    async def test_transcribe(self):
        endpoint = FakeEndpoint(result=SimpleNamespace(text="  Hello world  "))
        transcriber = Transcriber("sk-test")
        transcriber._client = fake_audio_client(transcriptions=endpoint)
        options = TranscriptionOptions(model="whisper-1", language="en", prompt="Study conversation.")

        result = await transcriber.transcribe(b"audio", "audio/webm;codecs=opus", options)
        assert result.success
        assert result.text == "Hello world"
        assert result.model == "whisper-1"
        assert endpoint.kwargs["file"] == ("recording.webm", b"audio", "audio/webm")
        assert endpoint.kwargs["language"] == "en"
        assert endpoint.kwargs["prompt"] == "Study conversation."
        assert endpoint.kwargs["response_format"] == "json"

    @pytest.mark.asyncio
    async def test_translate_uses_whisper(self):
        endpoint = FakeEndpoint(result=SimpleNamespace(text="Good morning"))
        transcriber = Transcriber("sk-test")
        transcriber._client = fake_audio_client(translations=endpoint)

        result = await transcriber.transcribe(b"audio", "audio/wav", TranscriptionOptions(translate=True))
        assert result.success
        assert result.translated
        assert endpoint.kwargs["model"] == "whisper-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, message",
        [
            (status_error(openai.AuthenticationError, 401), "Invalid OpenAI API key"),
            (status_error(openai.RateLimitError, 429), "OpenAI API quota exceeded"),
        ],
    )
    async def test_api_errors(self, error, message):
        transcriber = Transcriber("sk-test")
        transcriber._client = fake_audio_client(transcriptions=FakeEndpoint(error=error))
        result = await transcriber.transcribe(b"audio", "audio/wav")
        assert not result.success
        assert result.error == message

    @pytest.mark.asyncio
    async def test_connection_error(self):
        transcriber = Transcriber("sk-test")
        error = openai.APIConnectionError(request=REQUEST)
        transcriber._client = fake_audio_client(transcriptions=FakeEndpoint(error=error))
        result = await transcriber.transcribe(b"audio", "audio/wav")
        assert result.error.startswith("Failed to transcribe audio")

    def test_update_api_key(self):
        transcriber = Transcriber("sk-old")
        transcriber._client = object()
        transcriber.update_api_key("sk-old")
        assert transcriber._client is not None
        transcriber.update_api_key("sk-new")
        assert transcriber._client is None


class TestSpeechOptions:
    def test_valid(self):
        validate_speech_options(SpeechOptions(voice="nova", model="tts-1-hd"))

    def test_invalid_voice(self):
        with pytest.raises(SynthesisFailed, match="Invalid voice"):
            validate_speech_options(SpeechOptions(voice="robot"))

    def test_invalid_model(self):
        with pytest.raises(SynthesisFailed, match="Invalid model"):
            validate_speech_options(SpeechOptions(model="tts-9"))


class TestSpeechSynthesizer:
    @pytest.mark.asyncio
    async def test_synthesize(self):
        endpoint = FakeEndpoint(result=SimpleNamespace(content=b"mp3"))
        synth = SpeechSynthesizer("sk-test", SpeechOptions(voice="onyx"))
        synth._client = fake_audio_client(speech=endpoint)
        assert await synth.synthesize("Hello") == b"mp3"
        assert endpoint.kwargs == {
            "model": "tts-1",
            "voice": "onyx",
            "input": "Hello",
            "response_format": "mp3",
        }

    @pytest.mark.asyncio
    async def test_no_text(self):
        with pytest.raises(SynthesisFailed, match="No text provided"):
            await SpeechSynthesizer("sk-test").synthesize("")

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(SynthesisFailed, match="not configured"):
            await SpeechSynthesizer("").synthesize("Hello")

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        synth = SpeechSynthesizer("sk-test")
        error = status_error(openai.AuthenticationError, 401)
        synth._client = fake_audio_client(speech=FakeEndpoint(error=error))
        with pytest.raises(SynthesisFailed) as exc:
            await synth.synthesize("Hello")
        assert exc.value.user_message == "Invalid OpenAI API key"

    @pytest.mark.asyncio
    async def test_empty_audio(self):
        synth = SpeechSynthesizer("sk-test")
        synth._client = fake_audio_client(speech=FakeEndpoint(result=SimpleNamespace(content=b"")))
        with pytest.raises(SynthesisFailed) as exc:
            await synth.synthesize("Hello")
        assert exc.value.user_message == "Failed to generate speech"
