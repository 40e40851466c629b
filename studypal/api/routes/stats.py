from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

router = APIRouter()


class DailyGoalUpdate(BaseModel):
    # null clears the goal
    hours: Optional[int] = Field(default=None, ge=0, le=24)
    minutes: Optional[int] = Field(default=None, ge=0, le=59)


@router.get("/")
async def get_stats(request: Request):
    """Study statistics: today, this week, focus score, daily goal."""
    return request.app.state.stats.current().model_dump()


@router.put("/daily-goal")
async def update_daily_goal(body: DailyGoalUpdate, request: Request):
    stats = request.app.state.stats
    if body.hours is None and body.minutes is None:
        stats.clear_daily_goal()
    else:
        stats.set_daily_goal(body.hours or 0, body.minutes or 0)
    request.app.state.studypal.apply_daily_goal()
    goal = stats.data.daily_goal
    return {"status": "updated", "daily_goal": goal.model_dump() if goal else None}


@router.post("/tasks/completed")
async def complete_task(request: Request):
    completed = request.app.state.stats.increment_completed_tasks()
    return {"completed_tasks": completed}
