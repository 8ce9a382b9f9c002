# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Periodic read-only status polling for one PDU session.

Each cycle queues a fixed battery of show commands. Polling only runs while
the session is idle; a run of consecutive skipped cycles halts the chain
until something restarts it, so a session that stays busy cannot spin a
timer forever.
"""

import logging

from .pdu_model import CMD_SHOW_OUTLETS, SENSOR_COMMANDS, Command, SessionFlags
from .dispatcher import CommandDispatcher
from .scheduler import Timer, TimerRegistry

logger = logging.getLogger(__name__)


class Poller:
    def __init__(self, flags: SessionFlags, dispatcher: CommandDispatcher,
                 timers: TimerRegistry, poll_interval: float = 30.0,
                 max_skips: int = 5, group_listing_command: str = "show outletgroups",
                 label: str = "pdu"):
        self._flags = flags
        self._dispatcher = dispatcher
        self._timers = timers
        self.poll_interval = poll_interval
        self.max_skips = max_skips
        self.group_listing_command = group_listing_command
        self._label = label

        self._timer: Timer | None = None
        self.consecutive_skips = 0
        self.halted = False
        self.polls = 0
        self.skipped = 0
        self.last_poll_time: float | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.active

    def build_batch(self) -> list[Command]:
        """The status battery. Outlet listing is left out around group operations."""
        batch = [Command(text) for text in SENSOR_COMMANDS]
        if self._flags.group_op_in_flight or self._flags.post_group_cooldown:
            logger.debug("[%s] Group operation active, omitting outlet listing", self._label)
        else:
            batch.append(Command(CMD_SHOW_OUTLETS))
        batch.append(Command(self.group_listing_command))
        return batch

    def queue_commands(self) -> bool:
        if not self._flags.authenticated:
            return False
        if (self._flags.processing_command
                or self._flags.awaiting_user_confirmation
                or self._flags.awaiting_server_confirmation):
            logger.debug("[%s] Not queueing poll: user command active", self._label)
            return False
        self._dispatcher.enqueue(self.build_batch())
        return True

    def start(self, delay: float | None = None) -> None:
        self.stop()
        self.halted = False
        self.consecutive_skips = 0
        self._schedule(self.poll_interval if delay is None else delay)

    def restart(self) -> None:
        logger.debug("[%s] Restarting polling", self._label)
        self.start()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay: float) -> None:
        self._timer = self._timers.call_later(delay, self.poll, "poll")

    def poll(self) -> None:
        self._timer = None
        if not (self._flags.connected and self._flags.authenticated):
            logger.debug("[%s] Poll skipped: not logged in", self._label)
            return

        if self._flags.busy or self._flags.processing_broadcast:
            self.consecutive_skips += 1
            self.skipped += 1
            if self.consecutive_skips >= self.max_skips:
                self.halted = True
                logger.error(
                    "[%s] Polling halted after %d consecutive skipped cycles",
                    self._label, self.consecutive_skips,
                )
                return
            logger.debug("[%s] Poll skipped: session busy (%d/%d)",
                         self._label, self.consecutive_skips, self.max_skips)
            self._schedule(self.poll_interval)
            return

        self.consecutive_skips = 0
        if self.queue_commands():
            self.polls += 1
            self.last_poll_time = self._timers.now()
        self._schedule(self.poll_interval)

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "halted": self.halted,
            "interval": self.poll_interval,
            "polls": self.polls,
            "skipped": self.skipped,
            "consecutive_skips": self.consecutive_skips,
            "last_poll": self.last_poll_time,
        }
