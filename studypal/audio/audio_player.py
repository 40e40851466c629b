import asyncio
import os
import shutil
import tempfile
from typing import Optional

from loguru import logger

from core.errors import PlaybackError, PlaybackUnsupported

# paplay for reliable Bluetooth speaker output via PipeWire; it cannot
# decode mp3, so synthesized speech goes through ffplay.
PLAYER_COMMANDS = {
    "audio/wav": ["paplay"],
    "audio/mpeg": ["ffplay", "-nodisp", "-autoexit", "-loglevel", "error"],
}

_SUFFIXES = {"audio/wav": ".wav", "audio/mpeg": ".mp3"}


class Playback:
    """Handle on one running player process."""

    def __init__(self, process: asyncio.subprocess.Process, path: str):
        self.process = process
        self.path = path
        self.stopped = False
        self.stderr = ""

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def failed(self) -> bool:
        return not self.stopped and self.returncode not in (None, 0)

    async def wait(self) -> Optional[int]:
        """Wait for playback to end and remove the temp file."""
        try:
            _, stderr = await self.process.communicate()
            self.stderr = (stderr or b"").decode().strip()
        except asyncio.CancelledError:
            self.stop()
            raise
        finally:
            self._cleanup()
        return self.returncode

    def stop(self) -> None:
        self.stopped = True
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def _cleanup(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class AudioPlayer:
    """Plays audio bytes through PipeWire/PulseAudio command-line players."""

    def __init__(self, commands: Optional[dict[str, list[str]]] = None):
        self.commands = PLAYER_COMMANDS if commands is None else commands

    def is_supported(self, mime_type: str = "audio/mpeg") -> bool:
        command = self.commands.get(mime_type)
        return command is not None and shutil.which(command[0]) is not None

    async def start(self, audio: bytes, mime_type: str = "audio/mpeg") -> Playback:
        """Start playing ``audio`` and return without waiting for it to end.

        Raises:
            PlaybackUnsupported: no player for ``mime_type`` on this system.
            PlaybackError: the player could not be launched.
        """
        if not self.is_supported(mime_type):
            raise PlaybackUnsupported(f"No audio player available for {mime_type}")

        # Write bytes to a temp file; the players want a path
        fd, path = tempfile.mkstemp(suffix=_SUFFIXES.get(mime_type, ""))
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(audio)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.commands[mime_type], path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            os.unlink(path)
            raise PlaybackError(f"Failed to play audio: {e}") from e

        logger.debug("Playing {} bytes of {}", len(audio), mime_type)
        return Playback(proc, path)

    async def play(self, audio: bytes, mime_type: str = "audio/wav") -> None:
        """Play ``audio`` to completion."""
        if not audio:
            return
        playback = await self.start(audio, mime_type)
        await playback.wait()
        if playback.failed:
            logger.error("{} error: {}", self.commands[mime_type][0], playback.stderr)
