import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from audio.audio_player import AudioPlayer
from audio.capture import CaptureBackend
from audio.recorder import AudioRecorder
from audio.tts import TextToSpeechPlayer
from audio.vad import VoiceActivityDetector
from core.config import ConfigManager
from core.conversation import VoiceConversation
from core.state import SharedState, VoicePhase
from focus.timer import FocusTimer
from llm.assistant import StudyAssistant, StudyContext
from llm.base import BaseLLM
from llm.providers.openai_provider import OpenAIProvider
from llm.topic_filter import StudyTopicFilter
from services.speech import SpeechOptions, SpeechSynthesizer
from services.transcription import TranscriptionOptions, Transcriber
from storage.kv_store import FileStore
from storage.study_stats import StudyStatsObserver, StudyStatsStore

# Base directory for the studypal package
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"


class StudyPal:
    """Wires the focus timer, study statistics and voice pipeline together
    and serves them through the control API."""

    def __init__(
        self,
        data_dir: Path = DATA_DIR,
        capture_backend: Optional[CaptureBackend] = None,
        audio_player: Optional[AudioPlayer] = None,
        llm: Optional[BaseLLM] = None,
    ):
        self.data_dir = data_dir
        self.config_manager = ConfigManager(data_dir)
        self.state = SharedState()
        self.store = FileStore(data_dir / "store")

        config = self.config_manager.config
        api_key = self.config_manager.openai_api_key

        self.stats = StudyStatsStore(self.store)
        self.timer = FocusTimer(self.store, config.timer)
        self.timer.add_observer(StudyStatsObserver(self.stats))
        self.apply_daily_goal()

        self.transcriber = Transcriber(api_key)
        self.synthesizer = SpeechSynthesizer(api_key)
        self.llm = llm or OpenAIProvider(api_key, model=config.assistant.model)
        self.assistant = StudyAssistant(
            self.llm,
            config.assistant,
            topic_filter=StudyTopicFilter(self.llm) if config.assistant.topic_filter else None,
            context_provider=self.study_context,
        )

        self.recorder = AudioRecorder(capture_backend, config.recorder)
        self.vad = VoiceActivityDetector.from_config(config.vad)
        self.tts = TextToSpeechPlayer(self.synthesizer, audio_player)
        self.conversation = VoiceConversation(
            self.recorder,
            self.vad,
            self.tts,
            self.transcriber,
            self.assistant.respond,
            transcription_options=self._transcription_options(),
            speech_options=self._speech_options(),
            on_state_change=self._on_voice_phase,
        )

    def _transcription_options(self) -> TranscriptionOptions:
        cfg = self.config_manager.config.transcription
        return TranscriptionOptions(model=cfg.model, prompt=cfg.prompt, language=cfg.language)

    def _speech_options(self) -> SpeechOptions:
        cfg = self.config_manager.config.speech
        return SpeechOptions(voice=cfg.voice, model=cfg.model)

    def _on_voice_phase(self, old: VoicePhase, new: VoicePhase) -> None:
        self.state.set_voice_phase(new)
        self.state.last_voice_error = self.conversation.error

    def study_context(self) -> StudyContext:
        return StudyContext(
            study_minutes=self.stats.minutes_today(),
            focus_score=self.timer.state.focus_score,
        )

    def apply_daily_goal(self) -> None:
        """Point the timer's study goal at the end of today's daily goal."""
        goal = self.stats.data.daily_goal
        if goal is None or goal.total_seconds <= 0:
            self.timer.set_study_goal(None)
            return
        remaining = goal.total_seconds - self.stats.minutes_today() * 60
        if remaining <= 0:
            logger.info("Daily goal already reached today.")
            self.timer.set_study_goal(None)
            return
        self.timer.set_study_goal(self.timer.state.elapsed_total_seconds + remaining)

    def apply_settings(self) -> None:
        """Push the saved configuration into the running components."""
        config = self.config_manager.config
        api_key = self.config_manager.openai_api_key

        self.timer.config = config.timer
        for name, value in config.vad.model_dump().items():
            setattr(self.vad, name, value)
        self.recorder.config = config.recorder

        self.transcriber.update_api_key(api_key)
        self.synthesizer.update_api_key(api_key)
        if isinstance(self.llm, OpenAIProvider):
            self.llm.update_api_key(api_key)
            self.llm.model = config.assistant.model

        self.assistant.config = config.assistant
        self.assistant.topic_filter = (
            StudyTopicFilter(self.llm) if config.assistant.topic_filter else None
        )
        self.conversation.transcription_options = self._transcription_options()
        self.conversation.speech_options = self._speech_options()
        logger.info("Settings applied.")

    async def start(self):
        """Boot sequence: start the API server and wait for shutdown."""
        logger.info("=== StudyPal starting ===")
        await self._start_api_server()
        self.state.is_ready = True
        logger.info("=== StudyPal is ready. ===")
        await self.state.stop_event.wait()

    async def _start_api_server(self):
        """Start the FastAPI server in the background."""
        from api.server import create_app

        app = create_app(self)

        import uvicorn
        server_cfg = self.config_manager.config.server
        server_config = uvicorn.Config(
            app, host=server_cfg.host, port=server_cfg.port, log_level="warning"
        )
        server = uvicorn.Server(server_config)
        self._server_task = asyncio.create_task(server.serve())
        logger.info("API server started on {}:{}", server_cfg.host, server_cfg.port)

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down...")
        self.conversation.force_stop()
        self.timer.close()
        await self.llm.close()
        self.state.request_stop()
        logger.info("Shutdown complete.")


def main():
    """Entry point."""
    import sys
    from loguru import logger as log

    DATA_DIR.mkdir(parents=True, exist_ok=True)
    log.remove()
    log.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")
    log.add(DATA_DIR / "studypal.log", rotation="10 MB", retention="7 days", level="DEBUG")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = StudyPal()
    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        loop.run_until_complete(app.shutdown())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
