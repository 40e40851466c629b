from typing import Literal, Optional

from loguru import logger
from openai import APIError, AuthenticationError, RateLimitError
from pydantic import BaseModel

MAX_AUDIO_BYTES = 25 * 1024 * 1024

TranscriptionModel = Literal["whisper-1", "gpt-4o-mini-transcribe", "gpt-4o-transcribe"]


class TranscriptionOptions(BaseModel):
    model: TranscriptionModel = "gpt-4o-mini-transcribe"
    language: Optional[str] = None
    prompt: Optional[str] = None
    translate: bool = False  # translate to English instead of transcribing


class TranscriptionResult(BaseModel):
    success: bool
    text: str = ""
    model: Optional[str] = None
    translated: bool = False
    error: Optional[str] = None


def normalize_audio_type(mime_type: str) -> tuple[str, str]:
    """Map a recorder MIME type onto (file extension, MIME) the API accepts.

    Unknown types are sent as webm.
    """
    mime = (mime_type or "").lower()
    if "mp3" in mime or "mpeg" in mime:
        return "mp3", "audio/mp3"
    if "mp4" in mime or "m4a" in mime:
        return "mp4", "audio/mp4"
    if "wav" in mime:
        return "wav", "audio/wav"
    if "webm" in mime or "opus" in mime:
        return "webm", "audio/webm"
    logger.debug("Unknown audio type '{}', sending as webm", mime_type)
    return "webm", "audio/webm"


class Transcriber:
    """Cloud STT using the OpenAI transcription API.

    Never raises: every failure comes back as ``success=False`` with a
    message the voice UI can show.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    def update_api_key(self, api_key: str):
        """Update API key (e.g., when user changes it in settings)."""
        if api_key != self.api_key:
            self.api_key = api_key
            self._client = None  # Force re-creation

    async def transcribe(
        self,
        audio: bytes,
        mime_type: str,
        options: Optional[TranscriptionOptions] = None,
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()

        if not audio:
            return TranscriptionResult(success=False, error="No audio file provided")
        if len(audio) > MAX_AUDIO_BYTES:
            return TranscriptionResult(success=False, error="File size exceeds 25MB limit")
        if not self.api_key:
            logger.warning("STT: No API key configured.")
            return TranscriptionResult(success=False, error="OpenAI API key not configured")

        self._ensure_client()
        extension, api_mime = normalize_audio_type(mime_type)
        # The SDK takes (filename, content, content_type) tuples as files
        audio_file = (f"recording.{extension}", audio, api_mime)

        try:
            if options.translate:
                model = "whisper-1"
                api_kwargs = {"model": model, "file": audio_file}
                if options.prompt:
                    api_kwargs["prompt"] = options.prompt
                response = await self._client.audio.translations.create(**api_kwargs)
            else:
                model = options.model
                api_kwargs = {"model": model, "file": audio_file, "response_format": "json"}
                if options.language:
                    api_kwargs["language"] = options.language
                if options.prompt:
                    api_kwargs["prompt"] = options.prompt
                response = await self._client.audio.transcriptions.create(**api_kwargs)
        except AuthenticationError:
            logger.error("STT: invalid OpenAI API key")
            return TranscriptionResult(success=False, error="Invalid OpenAI API key")
        except RateLimitError as e:
            logger.error("STT rate limited: {}", e)
            return TranscriptionResult(success=False, error="OpenAI API quota exceeded")
        except APIError as e:
            logger.error("STT error: {}", e)
            return TranscriptionResult(success=False, error=f"Failed to transcribe audio: {e}")

        text = (response.text or "").strip()
        logger.debug("STT result ({}, {} bytes {}): '{}'", model, len(audio), api_mime, text)
        return TranscriptionResult(
            success=True, text=text, model=model, translated=options.translate
        )
