from typing import Optional

from pydantic import BaseModel

from core.config import TimerConfig
from core.state import TimerMode


class FocusTimerState(BaseModel):
    """Persisted focus timer counters.

    ``elapsed_total_seconds`` only ever grows; the per-block counter restarts
    on every mode change.
    """

    mode: TimerMode = TimerMode.STUDYING
    is_running: bool = False
    elapsed_total_seconds: int = 0
    block_elapsed_seconds: int = 0
    long_block_elapsed_seconds: int = 0
    block_length_seconds: int = 1800
    break_length_seconds: int = 300
    study_goal_seconds: Optional[int] = None
    focus_score: int = 0

    @classmethod
    def defaults(cls, config: TimerConfig) -> "FocusTimerState":
        return cls(
            block_length_seconds=config.block_seconds,
            break_length_seconds=config.break_seconds,
        )

    @property
    def current_block_length(self) -> int:
        if self.mode == TimerMode.ON_BREAK:
            return self.break_length_seconds
        return self.block_length_seconds

    @property
    def remaining_seconds(self) -> int:
        return max(0, self.current_block_length - self.block_elapsed_seconds)

    @property
    def progress(self) -> float:
        length = self.current_block_length
        if length <= 0:
            return 0.0
        return min(self.block_elapsed_seconds / length, 1.0)
