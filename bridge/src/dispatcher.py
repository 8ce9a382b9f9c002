# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Outbound command queue for one PDU connection.

The CLI has no correlation IDs: a response belongs to whatever was sent
last. The dispatcher therefore keeps at most one command in flight and only
writes the next one after the session reports a complete response.
"""

import logging
from collections import deque
from typing import Callable, Iterable

from .cli_parser import validate_command
from .pdu_model import LINE_ENDING, Command, SessionFlags, SessionStats
from .scheduler import Timer, TimerRegistry
from .transport import ByteTransport

logger = logging.getLogger(__name__)

CommandCallback = Callable[[Command], None]


class CommandDispatcher:
    def __init__(self, transport: ByteTransport, timers: TimerRegistry,
                 flags: SessionFlags, stats: SessionStats, label: str = "pdu",
                 command_timeout: float = 10.0, retry_attempts: int = 3,
                 retry_delay: float = 1.0, retry_budget: float = 30.0):
        self._transport = transport
        self._timers = timers
        self._flags = flags
        self._stats = stats
        self._label = label
        self.command_timeout = command_timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.retry_budget = retry_budget

        self._queue: deque[Command] = deque()
        self._in_flight: Command | None = None
        self._sent_at: float | None = None
        self._response_timer: Timer | None = None
        self._retry_timer: Timer | None = None
        self._attempts = 0
        self._first_sent_at: float | None = None
        self.retries_sent = 0
        self.rejected = 0

        # Set by the session
        self.on_failure: CommandCallback | None = None
        self.on_send_failed: CommandCallback | None = None

    @property
    def in_flight(self) -> Command | None:
        return self._in_flight

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> list[str]:
        return [c.text for c in self._queue]

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None and self._retry_timer.active

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def enqueue(self, commands: Iterable[Command]) -> None:
        """Replace the queue wholesale, then dispatch if idle."""
        self._queue = deque(commands)
        self.process_next()

    def extend(self, commands: Iterable[Command]) -> None:
        """Append behind anything already queued, then dispatch if idle."""
        self._queue.extend(commands)
        self.process_next()

    def submit(self, text: str, user_initiated: bool = True,
               timeout: float | None = None) -> bool:
        """Queue a single command ahead of polls and refreshes.

        Queued poll and refresh commands are dropped. Queued user commands
        keep their place in front of the new one. Returns False if the text
        fails sanitization or the write fails; True once it is written or
        waiting behind the command in flight.
        """
        if not validate_command(text):
            self._reject(text)
            return False
        kept = [c for c in self._queue if c.user_initiated]
        if len(kept) < len(self._queue):
            logger.debug("[%s] Dropping %d queued command(s) for %r", self._label,
                         len(self._queue) - len(kept), text)
        kept.append(Command(text, user_initiated=user_initiated, timeout=timeout))
        self._queue = deque(kept)
        if self._in_flight is not None or self._flags.waiting_for_response:
            return True
        return self.process_next()

    def process_next(self) -> bool:
        """Send the head of the queue if nothing is outstanding."""
        if self._in_flight is not None or self._flags.waiting_for_response:
            return False
        while self._queue:
            cmd = self._queue.popleft()
            if cmd.sanitize and not validate_command(cmd.text):
                self._reject(cmd.text)
                continue
            return self._send(cmd)
        return False

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_line(self, text: str) -> bool:
        if not self._transport.is_connected:
            return False
        return self._transport.write((text + LINE_ENDING).encode("utf-8"))

    def _send(self, cmd: Command, retry: bool = False) -> bool:
        if not self._write_line(cmd.text):
            self._stats.record_error("connection", "send while disconnected")
            logger.error("[%s] Cannot send %r: not connected", self._label, cmd.text)
            dropped_user = any(c.user_initiated for c in self._queue)
            self._queue.clear()
            self._in_flight = None
            self._flags.waiting_for_response = False
            if (cmd.user_initiated or dropped_user) and self.on_send_failed:
                self.on_send_failed(cmd)
            return False

        now = self._timers.now()
        self._in_flight = cmd
        self._sent_at = now
        self._flags.waiting_for_response = True
        if retry:
            self.retries_sent += 1
        else:
            self._stats.commands_sent += 1
            self._attempts = 0
            self._first_sent_at = now
        logger.debug("[%s] Sent %r%s", self._label, cmd.text,
                     f" (retry {self._attempts})" if retry else "")
        self._start_response_timer(cmd)
        return True

    def send_credential(self, text: str) -> bool:
        """Write a login credential. Not sanitized and never logged."""
        if not self._write_line(text):
            self._stats.record_error("connection", "credential send while disconnected")
            logger.error("[%s] Cannot send credential: not connected", self._label)
            return False
        return True

    def send_reply(self, answer: str) -> bool:
        """Answer a server y/n confirmation inside the current exchange."""
        if answer not in ("y", "n"):
            raise ValueError(f"confirmation reply must be 'y' or 'n', got {answer!r}")
        if not self._write_line(answer):
            self._stats.record_error("connection", "reply while disconnected")
            logger.error("[%s] Cannot send confirmation reply: not connected", self._label)
            return False
        logger.info("[%s] Sent confirmation reply %r", self._label, answer)
        return True

    def _reject(self, text: str) -> None:
        self.rejected += 1
        self._stats.record_error("command", "invalid characters")
        logger.error("[%s] Rejected command with invalid characters: %r", self._label, text)

    # ------------------------------------------------------------------
    # Response tracking
    # ------------------------------------------------------------------

    def _start_response_timer(self, cmd: Command) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
        timeout = cmd.timeout or self.command_timeout
        self._response_timer = self._timers.call_later(
            timeout, self._on_response_timeout, "response-timeout"
        )

    def pause_response_timer(self) -> None:
        """Stop the response deadline while a y/n prompt waits on the user."""
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None

    def resume_response_timer(self) -> None:
        if self._in_flight is not None:
            self._start_response_timer(self._in_flight)

    def on_response(self) -> float | None:
        """Mark the outstanding command answered. Returns elapsed seconds."""
        self._cancel_timers()
        cmd, self._in_flight = self._in_flight, None
        self._flags.waiting_for_response = False
        self._attempts = 0
        self._first_sent_at = None
        if cmd is None or self._sent_at is None:
            return None
        elapsed = self._timers.now() - self._sent_at
        logger.debug("[%s] Response to %r after %.3fs", self._label, cmd.text, elapsed)
        return elapsed

    def _on_response_timeout(self) -> None:
        self._response_timer = None
        cmd = self._in_flight
        if cmd is None:
            return
        self._stats.record_error("timeout", f"no response to {cmd.text!r}")
        elapsed = self._timers.now() - (self._first_sent_at or self._timers.now())

        if self._attempts < self.retry_attempts and elapsed < self.retry_budget:
            self._attempts += 1
            logger.warning(
                "[%s] No response to %r, retrying (%d/%d) in %.1fs",
                self._label, cmd.text, self._attempts, self.retry_attempts,
                self.retry_delay,
            )
            self._retry_timer = self._timers.call_later(
                self.retry_delay, self._retry, "command-retry"
            )
            return

        self._give_up(cmd, elapsed)

    def _give_up(self, cmd: Command, elapsed: float) -> None:
        logger.error(
            "[%s] Giving up on %r after %d retries (%.1fs)",
            self._label, cmd.text, self._attempts, elapsed,
        )
        self._in_flight = None
        self._flags.waiting_for_response = False
        self._attempts = 0
        self._first_sent_at = None
        if self.on_failure:
            self.on_failure(cmd)
        self.process_next()

    def _retry(self) -> None:
        self._retry_timer = None
        cmd = self._in_flight
        if cmd is None:
            return
        elapsed = self._timers.now() - (self._first_sent_at or self._timers.now())
        if elapsed >= self.retry_budget:
            self._cancel_timers()
            self._give_up(cmd, elapsed)
            return
        self._in_flight = None
        self._flags.waiting_for_response = False
        self._send(cmd, retry=True)

    def _cancel_timers(self) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def reset(self) -> None:
        """Drop the queue and anything outstanding."""
        self._cancel_timers()
        self._queue.clear()
        self._in_flight = None
        self._sent_at = None
        self._attempts = 0
        self._first_sent_at = None
        self._flags.waiting_for_response = False

    def get_status(self) -> dict:
        return {
            "in_flight": self._in_flight.text if self._in_flight else None,
            "queued": self.pending,
            "attempts": self._attempts,
            "retries_sent": self.retries_sent,
            "rejected": self.rejected,
        }
