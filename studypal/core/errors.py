"""Voice pipeline error taxonomy.

Every error carries a short ``user_message`` that the UI shows next to the
voice control. The focus timer has no error conditions and does not use
these.
"""

from typing import Optional


class VoiceError(Exception):
    """Base class for failures of a voice turn."""

    default_message = "Voice conversation failed"

    def __init__(self, message: Optional[str] = None):
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


class PermissionDenied(VoiceError):
    default_message = "Microphone access was denied"


class DeviceUnavailable(VoiceError):
    default_message = "Audio recording is not supported on this device"


class NoAudioCaptured(VoiceError):
    default_message = "No audio recorded"


class TranscriptionFailed(VoiceError):
    default_message = "Failed to transcribe audio"


class NoResponse(VoiceError):
    default_message = "No response from AI"


class PlaybackUnsupported(VoiceError):
    default_message = "Audio playback is not supported on this device"


class SynthesisFailed(VoiceError):
    default_message = "Failed to generate speech"


class PlaybackError(VoiceError):
    default_message = "Failed to play audio"


class EmptyUtterance(VoiceError):
    default_message = "No text provided"
