# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Cross-PDU synchronized group cycling.

When a group is cycled on one PDU, every other session that has a group of
the same name cycles it too. Sessions share a broadcast channel carrying
BroadcastMessage values. The initiator remembers which group it is cycling
(``pending_cycle_group``); any other session whose local group matches the
name becomes a receiver, waits out a short settle window while watching for
a cancellation, then sends its own group command.
"""

import logging
from typing import Callable, Protocol, runtime_checkable

from .pdu_model import (
    BroadcastIntent,
    BroadcastMessage,
    SessionFlags,
    group_command,
)
from .controls import ControlSurface
from .dispatcher import CommandDispatcher
from .scheduler import Timer, TimerRegistry

logger = logging.getLogger(__name__)

MessageCallback = Callable[[BroadcastMessage], None]

SETTLE_CHECK_INTERVAL = 0.5
UNMATCHED_RELEASE_DELAY = 0.5


@runtime_checkable
class BroadcastChannel(Protocol):
    """Shared pub/sub channel. Implementations: LocalBroadcastChannel, MQTTBroadcastChannel."""

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        """Register *callback*; returns an unsubscribe function."""
        ...

    def publish(self, message: BroadcastMessage) -> None:
        ...


class LocalBroadcastChannel:
    """In-process channel shared by every session of one bridge."""

    def __init__(self):
        self._subscribers: list[MessageCallback] = []
        self.published = 0

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return _unsubscribe

    def publish(self, message: BroadcastMessage) -> None:
        self.published += 1
        for cb in list(self._subscribers):
            try:
                cb(message)
            except Exception:
                logger.exception("Broadcast subscriber failed for %r", message.group_name)


class BroadcastCoordinator:
    def __init__(self, origin: str, channel: BroadcastChannel | None,
                 flags: SessionFlags, controls: ControlSurface,
                 dispatcher: CommandDispatcher, timers: TimerRegistry, config):
        self.origin = origin
        self._channel = channel
        self._flags = flags
        self._controls = controls
        self._dispatcher = dispatcher
        self._timers = timers

        self.cooldown = config.broadcast_cooldown
        self.settle = config.broadcast_settle
        self.receiver_action = config.broadcast_receiver_action
        self.expiry = config.command_timeout * 2

        self.intent: BroadcastIntent | None = None
        self.pending_cycle_group: int | None = None
        self.receiver_group_index: int | None = None
        self.last_name = ""
        self.last_time: float | None = None
        self.received = 0
        self.sent_as_receiver = 0

        self._settle_timer: Timer | None = None
        self._expiry_timer: Timer | None = None
        self._release_timer: Timer | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self) -> None:
        if self._channel is not None and self._unsubscribe is None:
            self._unsubscribe = self._channel.subscribe(self.on_message)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def settling(self) -> bool:
        return self._settle_timer is not None and self._settle_timer.active

    def _publish(self, message: BroadcastMessage) -> None:
        if self._channel is None:
            return
        try:
            self._channel.publish(message)
        except Exception:
            logger.exception("[%s] Failed to publish broadcast", self.origin)

    # ------------------------------------------------------------------
    # Initiator side
    # ------------------------------------------------------------------

    def initiate(self, index: int, group_name: str) -> None:
        """Announce a local group cycle to peer sessions."""
        self.pending_cycle_group = index
        self._flags.processing_broadcast = True
        self._flags.broadcast_cancelled = False
        self.intent = BroadcastIntent(group_name, initiated_locally=True,
                                      issued_at=self._timers.now())
        self._start_expiry()
        if group_name:
            logger.info("[%s] Broadcasting cycle for group: %s", self.origin, group_name)
            self._publish(BroadcastMessage(group_name, self.origin))

    # ------------------------------------------------------------------
    # Receiver side
    # ------------------------------------------------------------------

    def on_message(self, message: BroadcastMessage) -> None:
        name = message.group_name.strip()
        if message.cancelled or not name:
            if self.settling:
                logger.info("[%s] Broadcast cancelled, aborting receiver operation", self.origin)
                self._abort_receiver()
            return
        if self._flags.broadcast_cancelled:
            return

        now = self._timers.now()
        if (name == self.last_name and self.last_time is not None
                and now - self.last_time < self.cooldown):
            logger.debug("[%s] Duplicate broadcast for %s within cooldown", self.origin, name)
            return
        if self._flags.processing_broadcast:
            return

        self.last_name = name
        self.last_time = now
        self.received += 1
        self._flags.processing_broadcast = True
        logger.info("[%s] Processing broadcast for group: %s", self.origin, name)

        index = self._controls.find_group(name)
        if index is None:
            logger.info("[%s] No matching group found for name: %s", self.origin, name)
            self._release_timer = self._timers.call_later(
                UNMATCHED_RELEASE_DELAY, self._release, "broadcast-release"
            )
            return

        if self.pending_cycle_group == index:
            # Our own cycle; completion clears the flag
            return

        self.intent = BroadcastIntent(name, initiated_locally=False, issued_at=now)
        self.receiver_group_index = index
        self._settle_timer = self._timers.call_later(
            SETTLE_CHECK_INTERVAL, self._settle_check, "broadcast-settle"
        )

    def _settle_check(self) -> None:
        self._settle_timer = None
        if self._flags.broadcast_cancelled or self.intent is None:
            logger.info("[%s] Broadcast cancelled, aborting receiver operation", self.origin)
            self._abort_receiver()
            return
        if self._timers.now() - (self.last_time or 0.0) < self.settle:
            self._settle_timer = self._timers.call_later(
                SETTLE_CHECK_INTERVAL, self._settle_check, "broadcast-settle"
            )
            return

        index = self.receiver_group_index
        if not self._flags.connected or index is None:
            logger.warning("[%s] Not connected, dropping broadcast receiver action",
                           self.origin)
            self._abort_receiver()
            return

        command = group_command(index, self.receiver_action)
        logger.info("[%s] Broadcast receiver sending: %s", self.origin, command)
        self._flags.group_op_in_flight = True
        self.sent_as_receiver += 1
        self._start_expiry()
        if not self._dispatcher.submit(command, user_initiated=False, timeout=self.expiry):
            logger.warning("[%s] Broadcast receiver command not sent", self.origin)
            self._flags.group_op_in_flight = False
            self._clear()

    def _release(self) -> None:
        self._release_timer = None
        if self.intent is None:
            self._flags.processing_broadcast = False

    def _abort_receiver(self) -> None:
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None
        self.intent = None
        self.receiver_group_index = None
        self._flags.processing_broadcast = False

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _start_expiry(self) -> None:
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
        self._expiry_timer = self._timers.call_later(
            self.expiry, self.expire, "broadcast-expiry"
        )

    def complete(self) -> None:
        """The group command's response arrived."""
        if self.intent is not None:
            logger.debug("[%s] Broadcast for %s complete", self.origin, self.intent.group_name)
        self._clear()

    def expire(self) -> None:
        if self.intent is not None:
            logger.warning("[%s] Broadcast for %s expired without completion",
                           self.origin, self.intent.group_name)
        self._clear()

    def _clear(self) -> None:
        for timer in (self._expiry_timer, self._settle_timer, self._release_timer):
            if timer is not None:
                timer.cancel()
        self._expiry_timer = self._settle_timer = self._release_timer = None
        self.intent = None
        self.pending_cycle_group = None
        self.receiver_group_index = None
        self._flags.processing_broadcast = False

    def reset(self) -> None:
        """Drop all broadcast state; tell peers if we were the initiator."""
        intent = self.intent
        self._clear()
        self.last_name = ""
        self.last_time = None
        self._flags.broadcast_cancelled = False
        if intent is not None and intent.initiated_locally:
            logger.info("[%s] Clearing broadcast for %s", self.origin, intent.group_name)
            self._publish(BroadcastMessage(intent.group_name, self.origin, cancelled=True))

    def get_status(self) -> dict:
        return {
            "intent": (
                {"group_name": self.intent.group_name,
                 "initiated_locally": self.intent.initiated_locally,
                 "issued_at": self.intent.issued_at}
                if self.intent else None
            ),
            "pending_cycle_group": self.pending_cycle_group,
            "receiver_group_index": self.receiver_group_index,
            "settling": self.settling,
            "received": self.received,
            "sent_as_receiver": self.sent_as_receiver,
            "receiver_action": self.receiver_action,
        }
