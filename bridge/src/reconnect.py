# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Reconnection with exponential backoff and jitter.

delay = min(base * 2**attempt, max_delay) + uniform(0, jitter)

The attempt budget is bounded. Once it is spent the manager stops and
reports "Max Reconnect Attempts Reached" until a manual connect resets it.
"""

import logging
import random
from typing import Callable

from .pdu_model import STATUS_CODE_FAULT, STATUS_MAX_RECONNECT, SessionFlags
from .controls import ControlSurface
from .scheduler import Timer, TimerRegistry

logger = logging.getLogger(__name__)


class ReconnectionManager:
    def __init__(self, flags: SessionFlags, controls: ControlSurface,
                 timers: TimerRegistry, max_attempts: int = 5,
                 base_delay: float = 2.0, max_delay: float = 60.0,
                 jitter: float = 2.0, rng: random.Random | None = None,
                 label: str = "pdu"):
        self._flags = flags
        self._controls = controls
        self._timers = timers
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._label = label

        self.attempts = 0
        self.exhausted = False
        self.last_attempt_time: float | None = None
        self.last_delay: float | None = None
        self._timer: Timer | None = None

        # Wired by the session
        self.connect_fn: Callable[[], None] | None = None
        self.can_connect: Callable[[], bool] = lambda: True

    @property
    def scheduled(self) -> bool:
        return self._timer is not None and self._timer.active

    def next_delay(self) -> float:
        backoff = min(self.base_delay * (2 ** self.attempts), self.max_delay)
        return backoff + self._rng.uniform(0, self.jitter)

    def attempt(self) -> bool:
        """Schedule one reconnect. Returns True if a timer was scheduled."""
        if self._flags.connected:
            return False
        if not self.can_connect():
            logger.debug("[%s] No host configured, not reconnecting", self._label)
            return False
        if self.scheduled:
            return False
        if self.attempts >= self.max_attempts:
            if not self.exhausted:
                logger.error(
                    "[%s] Maximum reconnection attempts reached (%d). "
                    "Manual intervention required.",
                    self._label, self.max_attempts,
                )
            self.exhausted = True
            self._controls.set_status(STATUS_MAX_RECONNECT, STATUS_CODE_FAULT)
            return False

        delay = self.next_delay()
        self.attempts += 1
        self.last_attempt_time = self._timers.now()
        self.last_delay = delay
        logger.info("[%s] Attempting reconnection #%d in %.1f seconds",
                    self._label, self.attempts, delay)
        self._timer = self._timers.call_later(delay, self._fire, "reconnect")
        return True

    def _fire(self) -> None:
        self._timer = None
        if self._flags.connected or not self._flags.keep_connected:
            return
        if self.connect_fn:
            self.connect_fn()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        if self.attempts:
            logger.debug("[%s] Reconnection attempts reset", self._label)
        self.cancel()
        self.attempts = 0
        self.exhausted = False

    def get_status(self) -> dict:
        return {
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "exhausted": self.exhausted,
            "scheduled": self.scheduled,
            "last_delay": round(self.last_delay, 2) if self.last_delay is not None else None,
        }
