from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from core.errors import SynthesisFailed
from services.speech import SpeechOptions, validate_speech_options

router = APIRouter()


class TimerSettingsUpdate(BaseModel):
    block_minutes: Optional[int] = None
    break_minutes: Optional[int] = None
    max_manual_break_minutes: Optional[int] = None


class VADSettingsUpdate(BaseModel):
    silence_threshold: Optional[float] = None
    silence_duration: Optional[float] = None
    min_speech_duration: Optional[float] = None


class SpeechSettingsUpdate(BaseModel):
    voice: Optional[str] = None
    model: Optional[str] = None


class APIKeyUpdate(BaseModel):
    openai: Optional[str] = None


def _apply(request: Request) -> None:
    request.app.state.studypal.apply_settings()


def _mask(secret: str) -> str:
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}****{secret[-4:]}"


@router.get("/")
async def get_settings(request: Request):
    """Current configuration with API keys masked."""
    data = request.app.state.config_manager.config.model_dump()
    data["api_keys"] = {
        name: _mask(value) if value else value
        for name, value in data["api_keys"].items()
    }
    return data


@router.put("/timer")
async def update_timer_settings(body: TimerSettingsUpdate, request: Request):
    updates = body.model_dump(exclude_none=True)
    if any(value <= 0 for value in updates.values()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Durations must be positive",
        )
    cm = request.app.state.config_manager
    if updates:
        cm.update_nested("timer", **updates)
        _apply(request)
    return {"status": "updated", "timer": cm.config.timer.model_dump()}


@router.put("/vad")
async def update_vad_settings(body: VADSettingsUpdate, request: Request):
    updates = body.model_dump(exclude_none=True)
    cm = request.app.state.config_manager
    if updates:
        cm.update_nested("vad", **updates)
        _apply(request)
    return {"status": "updated", "vad": cm.config.vad.model_dump()}


@router.put("/speech")
async def update_speech_settings(body: SpeechSettingsUpdate, request: Request):
    cm = request.app.state.config_manager
    merged = {**cm.config.speech.model_dump(), **body.model_dump(exclude_none=True)}
    try:
        validate_speech_options(SpeechOptions(**merged))
    except SynthesisFailed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message)
    cm.update_nested("speech", **merged)
    _apply(request)
    return {"status": "updated", "speech": cm.config.speech.model_dump()}


@router.put("/api-keys")
async def update_api_keys(body: APIKeyUpdate, request: Request):
    """Update the OpenAI API key used for transcription, speech and chat."""
    cm = request.app.state.config_manager
    if body.openai is not None:
        cm.update_nested("api_keys", openai=body.openai)
        _apply(request)
    return {"status": "updated"}
