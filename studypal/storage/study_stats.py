from datetime import date
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from focus.timer import TimerObserver
from storage.kv_store import KeyValueStore

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class StudyStats(BaseModel):
    today_minutes: int = 0
    weekly_minutes: int = 0
    focus_score: int = 0
    completed_tasks: int = 0


class DailyGoal(BaseModel):
    hours: int = 0
    minutes: int = 0

    @property
    def total_seconds(self) -> int:
        return (self.hours * 60 + self.minutes) * 60


class UserStudyData(BaseModel):
    study_stats: StudyStats = Field(default_factory=StudyStats)
    weekly_study_data: dict[str, int] = Field(
        default_factory=lambda: {day: 0 for day in WEEKDAYS}
    )
    daily_goal: Optional[DailyGoal] = None
    last_active_date: Optional[str] = None  # ISO date of the last recorded minute


def _deep_merge(base: dict, partial: dict) -> dict:
    for key, value in partial.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class StudyStatsStore:
    """Per-user study statistics kept as one JSON blob in the key-value store.

    Mirrors how the web client persisted its ``user_data`` row: the whole
    document is rewritten on every change, partial updates are merged in.
    """

    def __init__(self, store: KeyValueStore, user_id: str = "default"):
        self.store = store
        self.key = f"study-stats:{user_id}"
        self._data: Optional[UserStudyData] = None

    @property
    def data(self) -> UserStudyData:
        if self._data is None:
            self._data = self._load()
        return self._data

    def _load(self) -> UserStudyData:
        raw = self.store.load(self.key)
        if raw:
            try:
                return UserStudyData.model_validate_json(raw)
            except Exception as e:
                logger.error("Failed to parse study stats: {}. Using defaults.", e)
        return UserStudyData()

    def save(self) -> None:
        self.store.save(self.key, self.data.model_dump_json().encode())

    def merge(self, partial: dict) -> UserStudyData:
        """Deep-merge a partial update into the stored document and save."""
        current = _deep_merge(self.data.model_dump(), partial)
        self._data = UserStudyData(**current)
        self._recompute_weekly()
        self.save()
        return self._data

    def add_study_minutes(self, minutes: int, today: Optional[date] = None) -> StudyStats:
        """Credit studied minutes to today and to today's weekday."""
        if minutes <= 0:
            return self.data.study_stats
        today = today or date.today()
        self._roll_over(today)

        data = self.data
        weekday = WEEKDAYS[today.weekday()]
        data.study_stats.today_minutes += minutes
        data.weekly_study_data[weekday] = data.weekly_study_data.get(weekday, 0) + minutes
        data.last_active_date = today.isoformat()
        self._recompute_weekly()
        self.save()
        logger.debug(
            "Study time +{} min (today={}, week={})",
            minutes, data.study_stats.today_minutes, data.study_stats.weekly_minutes,
        )
        return data.study_stats

    def current(self, today: Optional[date] = None) -> UserStudyData:
        """Copy of the stored document as it reads on ``today``.

        Counters left over from an earlier day or ISO week read as zero.
        The stored document is not modified.
        """
        today = today or date.today()
        data = self.data.model_copy(deep=True)
        if data.last_active_date is None:
            return data
        last_day = date.fromisoformat(data.last_active_date)
        if last_day != today:
            data.study_stats.today_minutes = 0
        if last_day.isocalendar()[:2] != today.isocalendar()[:2]:
            data.weekly_study_data = {day: 0 for day in WEEKDAYS}
            data.study_stats.weekly_minutes = 0
        return data

    def minutes_today(self, today: Optional[date] = None) -> int:
        """Minutes credited today; 0 if nothing was recorded yet today."""
        return self.current(today).study_stats.today_minutes

    def record_focus_score(self, score: int) -> None:
        self.data.study_stats.focus_score = max(0, min(100, score))
        self.save()

    def increment_completed_tasks(self) -> int:
        self.data.study_stats.completed_tasks += 1
        self.save()
        return self.data.study_stats.completed_tasks

    def set_daily_goal(self, hours: int, minutes: int) -> DailyGoal:
        self.data.daily_goal = DailyGoal(hours=hours, minutes=minutes)
        self.save()
        return self.data.daily_goal

    def clear_daily_goal(self) -> None:
        self.data.daily_goal = None
        self.save()

    def _roll_over(self, today: date) -> None:
        last = self.data.last_active_date
        if last is None:
            return
        last_day = date.fromisoformat(last)
        if last_day == today:
            return
        self._data = self.current(today)
        if last_day.isocalendar()[:2] != today.isocalendar()[:2]:
            logger.info("New week started; weekly study table cleared.")

    def _recompute_weekly(self) -> None:
        self.data.study_stats.weekly_minutes = sum(self.data.weekly_study_data.values())


class StudyStatsObserver(TimerObserver):
    """Feeds focus timer events into the study statistics."""

    def __init__(self, stats: StudyStatsStore):
        self.stats = stats

    def on_study_minutes_delta(self, minutes: int) -> None:
        self.stats.add_study_minutes(minutes)

    def on_focus_score(self, score: int) -> None:
        self.stats.record_focus_score(score)
