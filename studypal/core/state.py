import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TimerMode(str, Enum):
    STUDYING = "studying"
    ON_BREAK = "on_break"
    LONG_BREAK_PENDING = "long_break_pending"  # waits for the user to acknowledge
    GOAL_MET = "goal_met"                      # terminal until a new goal is set


class VoicePhase(str, Enum):
    IDLE = "idle"              # Waiting for the user to start a turn
    RECORDING = "recording"    # Microphone open, VAD listening for end of speech
    PROCESSING = "processing"  # Transcription + conversation round-trip
    SPEAKING = "speaking"      # TTS playing the response


@dataclass
class SharedState:
    """Process-wide state shared between the API layer and the app."""

    voice_phase: VoicePhase = VoicePhase.IDLE
    last_voice_error: Optional[str] = None
    is_ready: bool = False

    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    def set_voice_phase(self, phase: VoicePhase) -> None:
        self.voice_phase = phase

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def is_running(self) -> bool:
        return not self.stop_event.is_set()
