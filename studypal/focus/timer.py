import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from core.config import TimerConfig
from core.state import TimerMode
from focus.state import FocusTimerState


class TimerObserver:
    """Receives focus timer events. Override only the hooks you need."""

    def on_study_minutes_delta(self, minutes: int) -> None:
        pass

    def on_total_progress(self, seconds: int) -> None:
        pass

    def on_block_progress(self, seconds: int) -> None:
        pass

    def on_focus_score(self, score: int) -> None:
        pass

    def on_mode_change(self, old: TimerMode, new: TimerMode) -> None:
        pass


class FocusTimer:
    """Study/break block timer driven by a 1-second tick.

    Transitions, evaluated after every tick in this order:
      1. study goal reached           -> GOAL_MET (stops)
      2. study block finished         -> ON_BREAK
      3. break finished               -> STUDYING (default lengths restored)
      4. 2-3 hours since last long break, while studying
                                      -> LONG_BREAK_PENDING (stops)

    State is written to the key-value store after every mutation so a host
    can rehydrate it after a restart. A rehydrated timer is never running.
    """

    def __init__(
        self,
        store,
        config: TimerConfig,
        timer_id: str = "default",
        auto_tick: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config
        self.timer_id = timer_id
        self.key = f"focus-timer:{timer_id}"
        self.auto_tick = auto_tick
        self._clock = clock
        self._observers: list[TimerObserver] = []
        self._task: Optional[asyncio.Task] = None
        self._state = self._load()
        self._reported_minutes = self._state.elapsed_total_seconds // 60

    # --- observers -----------------------------------------------------

    def add_observer(self, observer: TimerObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: TimerObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, hook: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error("Timer observer {} failed in {}: {}",
                             type(observer).__name__, hook, e)

    # --- persistence ---------------------------------------------------

    def _load(self) -> FocusTimerState:
        raw = self.store.load(self.key)
        state = None
        if raw:
            try:
                state = FocusTimerState.model_validate_json(raw)
                logger.info("Focus timer '{}' restored ({}s total, mode={})",
                            self.timer_id, state.elapsed_total_seconds, state.mode.value)
            except Exception as e:
                logger.error("Failed to restore focus timer '{}': {}. Using defaults.",
                             self.timer_id, e)
        if state is None:
            state = FocusTimerState.defaults(self.config)
        state.is_running = False
        return state

    def _save(self) -> None:
        self.store.save(self.key, self._state.model_dump_json().encode())

    # --- public API ----------------------------------------------------

    @property
    def state(self) -> FocusTimerState:
        """A copy of the current state."""
        return self._state.model_copy()

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def mode(self) -> TimerMode:
        return self._state.mode

    def snapshot(self) -> dict:
        """Current state plus display values (remaining time, progress)."""
        data = self._state.model_dump(mode="json")
        data["remaining_seconds"] = self._state.remaining_seconds
        data["progress"] = round(self._state.progress, 4)
        return data

    def start(self) -> None:
        s = self._state
        if s.is_running:
            return
        if s.mode in (TimerMode.LONG_BREAK_PENDING, TimerMode.GOAL_MET):
            logger.info("Timer start ignored while {}.", s.mode.value)
            return
        s.is_running = True
        self._save()
        logger.info("Focus timer started: mode={}, block={}s/{}s, total={}s",
                    s.mode.value, s.block_elapsed_seconds,
                    s.current_block_length, s.elapsed_total_seconds)
        if self.auto_tick:
            self._start_ticker()

    def pause(self) -> None:
        self._cancel_ticker()
        if not self._state.is_running:
            return
        self._state.is_running = False
        self._save()
        logger.info("Focus timer paused at {}s total.", self._state.elapsed_total_seconds)

    def reset(self) -> None:
        """Back to a fresh study block. Total elapsed time is kept."""
        self._cancel_ticker()
        s = self._state
        s.is_running = False
        s.block_elapsed_seconds = 0
        s.long_block_elapsed_seconds = 0
        s.block_length_seconds = self.config.block_seconds
        s.break_length_seconds = self.config.break_seconds
        self._set_focus_score(0)
        if s.mode != TimerMode.STUDYING:
            self._transition(TimerMode.STUDYING)
        self._save()
        logger.info("Focus timer reset (total kept at {}s).", s.elapsed_total_seconds)

    def take_break_now(self, duration_seconds: int) -> bool:
        """Start a break of ``duration_seconds`` right away.

        Only valid while studying with the timer running; returns False
        otherwise.
        """
        if duration_seconds <= 0:
            raise ValueError("Break duration must be positive")
        s = self._state
        if s.mode != TimerMode.STUDYING or not s.is_running:
            logger.debug("Break-now ignored (mode={}, running={}).", s.mode.value, s.is_running)
            return False
        s.break_length_seconds = duration_seconds
        self._set_focus_score(0)
        self._transition(TimerMode.ON_BREAK)
        self._save()
        return True

    def acknowledge_long_break(self) -> bool:
        if self._state.mode != TimerMode.LONG_BREAK_PENDING:
            return False
        self.reset()
        return True

    def set_study_goal(self, seconds: Optional[int]) -> None:
        """Set (or clear with None) the goal. A goal still ahead of the
        elapsed total restarts a timer that already met its previous goal."""
        s = self._state
        s.study_goal_seconds = seconds if seconds and seconds > 0 else None
        if s.mode == TimerMode.GOAL_MET and (
            s.study_goal_seconds is None or s.study_goal_seconds > s.elapsed_total_seconds
        ):
            self._transition(TimerMode.STUDYING)
        self._save()
        logger.info("Study goal set to {}", s.study_goal_seconds)

    def close(self) -> None:
        self._cancel_ticker()
        self._save()

    # --- tick ----------------------------------------------------------

    def tick(self) -> None:
        s = self._state
        if not s.is_running:
            return

        s.elapsed_total_seconds += 1
        s.block_elapsed_seconds += 1
        s.long_block_elapsed_seconds += 1
        if s.mode == TimerMode.STUDYING:
            self._update_focus_score()

        self._notify("on_total_progress", s.elapsed_total_seconds)
        self._notify("on_block_progress", s.block_elapsed_seconds)
        self._emit_minutes()
        self._evaluate_transitions()
        self._save()

    def _emit_minutes(self) -> None:
        # Derived from the absolute total so coalesced ticks never drift.
        minutes = self._state.elapsed_total_seconds // 60
        delta = minutes - self._reported_minutes
        if delta > 0:
            self._reported_minutes = minutes
            self._notify("on_study_minutes_delta", delta)

    def _evaluate_transitions(self) -> None:
        s = self._state
        long_min = self.config.long_block_min_minutes * 60
        long_max = self.config.long_block_max_minutes * 60

        if s.study_goal_seconds and s.elapsed_total_seconds >= s.study_goal_seconds:
            self._transition(TimerMode.GOAL_MET)
            self._stop_running()
            logger.info("Study goal of {}s reached.", s.study_goal_seconds)
        elif s.mode == TimerMode.STUDYING and s.block_elapsed_seconds >= s.block_length_seconds:
            self._set_focus_score(0)
            self._transition(TimerMode.ON_BREAK)
        elif s.mode == TimerMode.ON_BREAK and s.block_elapsed_seconds >= s.break_length_seconds:
            s.block_length_seconds = self.config.block_seconds
            s.break_length_seconds = self.config.break_seconds
            self._transition(TimerMode.STUDYING)
        elif s.mode == TimerMode.STUDYING and long_min <= s.long_block_elapsed_seconds <= long_max:
            self._transition(TimerMode.LONG_BREAK_PENDING)
            self._stop_running()
            logger.info("Long study block completed ({} min). Long break suggested.",
                        s.long_block_elapsed_seconds // 60)

    def _transition(self, new_mode: TimerMode) -> None:
        old_mode = self._state.mode
        self._state.mode = new_mode
        self._state.block_elapsed_seconds = 0
        logger.debug("Timer mode {} -> {}", old_mode.value, new_mode.value)
        self._notify("on_mode_change", old_mode, new_mode)

    def _update_focus_score(self) -> None:
        streak = self.config.focus_streak_minutes * 60
        if streak > 0 and self._state.block_elapsed_seconds % streak == 0:
            self._set_focus_score(min(self._state.focus_score + 10, 100))

    def _set_focus_score(self, score: int) -> None:
        if self._state.focus_score == score:
            return
        self._state.focus_score = score
        self._notify("on_focus_score", score)

    def _stop_running(self) -> None:
        self._state.is_running = False
        self._cancel_ticker()

    def _start_ticker(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; focus timer ticks must be driven by the host.")
            return
        self._task = loop.create_task(self._tick_loop())

    def _cancel_ticker(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _tick_loop(self) -> None:
        next_tick = self._clock() + 1.0
        while self._state.is_running:
            await asyncio.sleep(max(0.0, next_tick - self._clock()))
            # The loop may wake late (suspended laptop, busy loop); run one
            # tick per whole second that has passed.
            due = 1 + int(max(0.0, self._clock() - next_tick))
            next_tick += due
            if due > 1:
                logger.debug("Focus timer catching up {} ticks.", due)
            for _ in range(due):
                if not self._state.is_running:
                    break
                self.tick()
