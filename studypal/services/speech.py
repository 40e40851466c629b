from typing import Optional

from loguru import logger
from openai import APIError, AuthenticationError, RateLimitError
from pydantic import BaseModel

from core.errors import SynthesisFailed

VALID_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
VALID_MODELS = ("tts-1", "tts-1-hd")


class SpeechOptions(BaseModel):
    voice: str = "alloy"
    model: str = "tts-1"


def validate_speech_options(options: SpeechOptions) -> None:
    """Raises SynthesisFailed for a voice or model the API does not offer."""
    if options.voice not in VALID_VOICES:
        raise SynthesisFailed(f"Invalid voice. Supported voices: {', '.join(VALID_VOICES)}")
    if options.model not in VALID_MODELS:
        raise SynthesisFailed(f"Invalid model. Supported models: {', '.join(VALID_MODELS)}")


class SpeechSynthesizer:
    """Text-to-speech through the OpenAI speech API, returning MP3 bytes."""

    mime_type = "audio/mpeg"

    def __init__(self, api_key: str, default_options: Optional[SpeechOptions] = None):
        self.api_key = api_key
        self.default_options = default_options or SpeechOptions()
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    def update_api_key(self, api_key: str):
        if api_key != self.api_key:
            self.api_key = api_key
            self._client = None

    async def synthesize(self, text: str, options: Optional[SpeechOptions] = None) -> bytes:
        """Synthesize ``text`` to MP3 bytes.

        Raises:
            SynthesisFailed: bad input, bad key, quota or any API failure.
        """
        options = options or self.default_options
        if not text:
            raise SynthesisFailed("No text provided")
        validate_speech_options(options)
        if not self.api_key:
            raise SynthesisFailed("OpenAI API key not configured")

        self._ensure_client()
        try:
            response = await self._client.audio.speech.create(
                model=options.model,
                voice=options.voice,
                input=text,
                response_format="mp3",
            )
        except AuthenticationError as e:
            raise SynthesisFailed("Invalid OpenAI API key") from e
        except RateLimitError as e:
            raise SynthesisFailed("OpenAI API quota exceeded") from e
        except APIError as e:
            logger.error("TTS API error: {}", e)
            raise SynthesisFailed(f"Failed to generate speech: {e}") from e

        audio = response.content
        if not audio:
            raise SynthesisFailed()
        logger.debug("TTS: synthesized {} bytes for '{}'", len(audio), text[:50])
        return audio
