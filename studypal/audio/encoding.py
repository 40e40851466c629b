import asyncio
import io
import shutil
import wave
from typing import Callable

import numpy as np
from loguru import logger

# Best first. WAV is always available; the compressed formats need ffmpeg.
MIME_PREFERENCE = (
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/mp4",
    "audio/wav",
)

_FFMPEG_ARGS = {
    "audio/webm;codecs=opus": ["-c:a", "libopus", "-f", "webm"],
    "audio/webm": ["-f", "webm"],
    # mp4 needs a fragmented layout to be written to a pipe
    "audio/mp4": ["-c:a", "aac", "-movflags", "frag_keyframe+empty_moov", "-f", "mp4"],
}


def is_type_supported(mime_type: str) -> bool:
    if mime_type == "audio/wav":
        return True
    return mime_type in _FFMPEG_ARGS and shutil.which("ffmpeg") is not None


def select_mime_type(supported: Callable[[str], bool] = is_type_supported) -> str:
    """Pick the most preferred container/codec the platform can produce."""
    for mime_type in MIME_PREFERENCE:
        if supported(mime_type):
            return mime_type
    return "audio/wav"


def pcm_to_wav_bytes(audio: np.ndarray, sample_rate: int) -> bytes:
    """Convert a mono int16 numpy array to WAV bytes in memory."""
    if audio.dtype != np.int16:
        audio = (np.clip(audio, -1.0, 1.0) * 32767).astype(np.int16)

    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)  # 16-bit
        wf.setframerate(sample_rate)
        wf.writeframes(audio.tobytes())
    return buf.getvalue()


async def encode(audio: np.ndarray, sample_rate: int, mime_type: str) -> bytes:
    """Encode captured PCM into ``mime_type``.

    Raises:
        RuntimeError: if ffmpeg fails for a compressed format.
    """
    wav_bytes = pcm_to_wav_bytes(audio, sample_rate)
    if mime_type == "audio/wav":
        return wav_bytes

    args = _FFMPEG_ARGS.get(mime_type)
    if args is None:
        raise RuntimeError(f"Unsupported recording format: {mime_type}")

    proc = await asyncio.create_subprocess_exec(
        "ffmpeg", "-hide_banner", "-loglevel", "error",
        "-f", "wav", "-i", "pipe:0", *args, "pipe:1",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate(wav_bytes)
    if proc.returncode != 0:
        raise RuntimeError(f"ffmpeg exited with {proc.returncode}: {err.decode().strip()}")
    logger.debug("Encoded {} bytes WAV -> {} bytes {}", len(wav_bytes), len(out), mime_type)
    return out
