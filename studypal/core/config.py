import os
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field


class TimerConfig(BaseModel):
    block_minutes: int = 30
    break_minutes: int = 5
    long_block_min_minutes: int = 120
    long_block_max_minutes: int = 180
    max_manual_break_minutes: int = 10
    focus_streak_minutes: int = 10  # uninterrupted study per +10 focus score

    @property
    def block_seconds(self) -> int:
        return self.block_minutes * 60

    @property
    def break_seconds(self) -> int:
        return self.break_minutes * 60


class VADConfig(BaseModel):
    silence_threshold: float = 0.01
    silence_duration: float = 1.5   # seconds of silence that end the turn
    min_speech_duration: float = 0.8  # seconds of speech before auto-stop is armed
    fft_size: int = 256
    smoothing: float = 0.8
    frame_interval: float = 1 / 60


class RecorderConfig(BaseModel):
    sample_rate: int = 16000
    timeslice_seconds: float = 1.0
    echo_cancellation: bool = True
    noise_suppression: bool = True


class SpeechConfig(BaseModel):
    voice: str = "onyx"
    model: str = "tts-1"


class TranscriptionConfig(BaseModel):
    model: str = "whisper-1"
    prompt: str = "Study conversation. Quick transcription."
    language: Optional[str] = None


class AssistantConfig(BaseModel):
    model: str = "gpt-4o-mini"
    max_tokens: int = 500
    temperature: float = 0.7
    topic_filter: bool = True


class APIKeysConfig(BaseModel):
    openai: str = ""


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class AppConfig(BaseModel):
    timer: TimerConfig = Field(default_factory=TimerConfig)
    vad: VADConfig = Field(default_factory=VADConfig)
    recorder: RecorderConfig = Field(default_factory=RecorderConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


class ConfigManager:
    """Loads and saves ``config.json`` in the data directory.

    Every change is validated by building a fresh ``AppConfig`` before it
    replaces the current one, so a bad update never reaches the running app.
    """

    FILENAME = "config.json"

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.config_path = data_dir / self.FILENAME
        self._config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = self._read()
        return self._config

    def _read(self) -> AppConfig:
        if not self.config_path.exists():
            logger.info("No config at {}, using defaults.", self.config_path)
            return AppConfig()
        try:
            config = AppConfig.model_validate_json(self.config_path.read_text())
        except (OSError, ValueError) as e:
            logger.error("Unreadable config {}: {}. Using defaults.", self.config_path, e)
            return AppConfig()
        logger.info("Configuration loaded from {}", self.config_path)
        return config

    def save(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.config_path.with_suffix(".tmp")
        tmp.write_text(self.config.model_dump_json(indent=2))
        tmp.replace(self.config_path)
        logger.debug("Configuration saved to {}", self.config_path)

    def _replace(self, data: dict) -> AppConfig:
        self._config = AppConfig(**data)
        self.save()
        return self._config

    def update(self, **sections) -> AppConfig:
        """Merge whole sections (dicts are merged field by field) and save."""
        data = self.config.model_dump()
        for name, value in sections.items():
            if name not in data:
                logger.warning("Ignoring unknown config section '{}'", name)
            elif isinstance(value, dict):
                data[name].update(value)
            else:
                data[name] = value
        return self._replace(data)

    def update_nested(self, section: str, **fields) -> AppConfig:
        """Set individual fields of one section and save."""
        return self.update(**{section: fields})

    def reset(self) -> None:
        self._config = AppConfig()
        self.config_path.unlink(missing_ok=True)
        logger.info("Configuration reset to defaults.")

    @property
    def openai_api_key(self) -> str:
        """Configured OpenAI key, falling back to the OPENAI_API_KEY env var."""
        return self.config.api_keys.openai or os.environ.get("OPENAI_API_KEY", "")
