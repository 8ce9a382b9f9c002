# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Cancellable one-shot timers and ordered step sequences for a PDU session.

Every delay in the session (credential pacing, confirmation timeouts, retry
delays, reconnect backoff, settle windows) is a scheduled callback on the
event loop, never a blocking wait. The registry caps how many may be live at
once; when the cap is reached the oldest timer is cancelled to make room.
"""

import logging
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

DEFAULT_MAX_TIMERS = 50


class Timer:
    """Handle for one scheduled callback."""

    def __init__(self, registry: "TimerRegistry", name: str, delay: float,
                 callback: Callable[[], object]):
        self.name = name
        self.delay = delay
        self._registry = registry
        self._callback = callback
        self._handle = None
        self._active = True
        self.due = registry.now() + delay

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._handle is not None:
            self._handle.cancel()
        self._registry._forget(self)

    def _fire(self) -> None:
        if not self._active:
            return
        self._active = False
        self._registry._forget(self)
        try:
            self._callback()
        except Exception:
            logger.exception("Timer %s callback failed", self.name)

    def __repr__(self) -> str:
        state = "active" if self._active else "done"
        return f"<Timer {self.name} {self.delay:.2f}s {state}>"


class TimerRegistry:
    """Owns every timer of a session.

    ``loop`` only needs ``call_later`` and ``time`` so tests can drive a
    manual clock instead of a real event loop.
    """

    def __init__(self, loop, max_timers: int = DEFAULT_MAX_TIMERS):
        self._loop = loop
        self.max_timers = max_timers
        self._timers: list[Timer] = []
        self.evicted = 0

    def now(self) -> float:
        return self._loop.time()

    @property
    def active_count(self) -> int:
        return len(self._timers)

    def active_names(self) -> list[str]:
        return [t.name for t in self._timers]

    def call_later(self, delay: float, callback: Callable[[], object],
                   name: str = "timer") -> Timer:
        """Schedule *callback* after *delay* seconds and return its handle."""
        self._timers = [t for t in self._timers if t.active]
        while len(self._timers) >= self.max_timers:
            oldest = self._timers[0]
            self.evicted += 1
            logger.warning(
                "Timer limit %d reached, cancelling oldest timer %s",
                self.max_timers, oldest.name,
            )
            oldest.cancel()

        timer = Timer(self, name, max(0.0, delay), callback)
        timer._handle = self._loop.call_later(timer.delay, timer._fire)
        self._timers.append(timer)
        return timer

    def cancel_all(self) -> None:
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()

    def _forget(self, timer: Timer) -> None:
        try:
            self._timers.remove(timer)
        except ValueError:
            pass


Step = tuple[float, Callable[[], object]]


class StepSequence:
    """An ordered list of ``(delay, action)`` steps run one after another.

    Each delay is measured from the previous step. An action that returns
    ``False`` aborts the rest of the sequence; ``cancel()`` stops it at any
    point.
    """

    def __init__(self, registry: TimerRegistry, steps: Sequence[Step],
                 name: str = "sequence"):
        self._registry = registry
        self._steps = list(steps)
        self.name = name
        self._position = 0
        self._timer: Timer | None = None
        self._running = False

    @property
    def active(self) -> bool:
        return self._running

    @property
    def position(self) -> int:
        return self._position

    def start(self) -> "StepSequence":
        self.cancel()
        self._position = 0
        self._running = True
        self._schedule_next()
        return self

    def cancel(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_next(self) -> None:
        if self._position >= len(self._steps):
            self._running = False
            self._timer = None
            return
        delay, _action = self._steps[self._position]
        self._timer = self._registry.call_later(
            delay, self._run_step, f"{self.name}[{self._position}]"
        )

    def _run_step(self) -> None:
        if not self._running:
            return
        _delay, action = self._steps[self._position]
        self._position += 1
        try:
            result = action()
        except Exception:
            logger.exception("Step %d of %s failed", self._position, self.name)
            result = False
        if result is False:
            logger.debug("Sequence %s stopped after step %d", self.name, self._position)
            self._running = False
            self._timer = None
            return
        if self._running:
            self._schedule_next()
