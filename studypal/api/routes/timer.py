from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

router = APIRouter()


class BreakNowRequest(BaseModel):
    minutes: int = Field(ge=1)


class GoalUpdate(BaseModel):
    minutes: Optional[int] = Field(default=None, ge=1)


@router.get("/")
async def get_timer(request: Request):
    """Current timer state with remaining time and block progress."""
    return request.app.state.timer.snapshot()


@router.post("/start")
async def start_timer(request: Request):
    timer = request.app.state.timer
    timer.start()
    return timer.snapshot()


@router.post("/pause")
async def pause_timer(request: Request):
    timer = request.app.state.timer
    timer.pause()
    return timer.snapshot()


@router.post("/reset")
async def reset_timer(request: Request):
    timer = request.app.state.timer
    timer.reset()
    return timer.snapshot()


@router.post("/break-now")
async def break_now(body: BreakNowRequest, request: Request):
    """Cut the current study block short and take a break."""
    timer = request.app.state.timer
    max_minutes = request.app.state.config_manager.config.timer.max_manual_break_minutes
    if body.minutes > max_minutes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Break must be between 1 and {max_minutes} minutes",
        )
    if not timer.take_break_now(body.minutes * 60):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A break can only start while studying with the timer running",
        )
    return timer.snapshot()


@router.post("/acknowledge-long-break")
async def acknowledge_long_break(request: Request):
    timer = request.app.state.timer
    if not timer.acknowledge_long_break():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No long break is pending",
        )
    return timer.snapshot()


@router.put("/goal")
async def set_goal(body: GoalUpdate, request: Request):
    """Set the study goal for this session, or clear it with null."""
    timer = request.app.state.timer
    timer.set_study_goal(body.minutes * 60 if body.minutes else None)
    return timer.snapshot()
