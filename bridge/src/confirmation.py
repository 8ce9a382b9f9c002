# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Two-layer confirmation for user power commands.

Layer 1 (arming): a toggle or cycle press stores a PendingUserCommand and
enables the confirm/cancel pair. Nothing is sent yet. Re-arming supersedes
the previous pending command and reverts its toggle.

Layer 2 (execution): confirming snapshots the target's prior state, sends
the command, and keeps "awaiting user confirmation" set until the PDU's
response lands, so a second arm/execute cannot overlap the first.

When the CLI itself asks "Do you wish to continue? [y/n]" the answer is
automatic if the user already confirmed; otherwise (direct commands) the
prompt is surfaced on the confirm/cancel pair with its own timeout that
answers "n".
"""

import logging
from typing import Callable

from .pdu_model import (
    CMD_SHOW_OUTLETS,
    Command,
    CommandKind,
    OperationRecord,
    PendingUserCommand,
    SessionFlags,
)
from .cli_parser import validate_command
from .controls import ControlSurface
from .dispatcher import CommandDispatcher
from .scheduler import StepSequence, Timer, TimerRegistry

logger = logging.getLogger(__name__)


class ConfirmationManager:
    def __init__(self, flags: SessionFlags, controls: ControlSurface,
                 dispatcher: CommandDispatcher, timers: TimerRegistry, config,
                 label: str = "pdu"):
        self._flags = flags
        self._controls = controls
        self._dispatcher = dispatcher
        self._timers = timers
        self._label = label

        self.confirm_timeout = config.confirm_timeout
        self.safety_timeout = config.confirm_safety_timeout
        self.server_prompt_timeout = config.confirm_timeout
        self.processing_safety = config.processing_safety_timeout
        self.revert_grace = config.revert_grace
        self.command_timeout = config.command_timeout
        self.group_listing_command = config.group_listing_command

        self.pending: PendingUserCommand | None = None
        self.executed: PendingUserCommand | None = None
        self.operation: OperationRecord | None = None
        self.snapshot: dict[str, dict[int, bool]] = {"outlets": {}, "groups": {}}
        self.last_rejection = ""
        self._direct = False

        self._confirm_timer: Timer | None = None
        self._safety_timer: Timer | None = None
        self._server_prompt_timer: Timer | None = None
        self._processing_timer: Timer | None = None
        self._revert_timer: Timer | None = None
        self._refresh: StepSequence | None = None

        # Wired by the session
        self.broadcast = None
        self.on_reset: Callable[[], None] | None = None
        self.restart_polling: Callable[[], None] | None = None

    @property
    def refresh_active(self) -> bool:
        return self._refresh is not None and self._refresh.active

    def _reject(self, reason: str) -> bool:
        self.last_rejection = reason
        logger.warning("[%s] Command rejected: %s", self._label, reason)
        return False

    @staticmethod
    def _cancel(timer: Timer | None) -> None:
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # Layer 1: arming
    # ------------------------------------------------------------------

    def prepare_command(self, kind: CommandKind, index: int, command: str,
                        intended_state: bool, description: str) -> bool:
        """Arm a user command. Returns False (see ``last_rejection``) if refused."""
        if not (self._flags.connected and self._flags.authenticated):
            return self._reject("not connected")
        if self._flags.awaiting_server_confirmation:
            return self._reject("server confirmation pending")
        if self.executed is not None:
            return self._reject("previous command still awaiting response")
        if self._flags.group_op_in_flight:
            return self._reject("group operation in progress")

        if self.pending is not None:
            logger.info("[%s] Superseding pending command: %s",
                        self._label, self.pending.description)
            self._revert_pending_visual(self.pending)

        self.pending = PendingUserCommand(
            kind=kind, index=index, command=command,
            intended_state=intended_state, description=description,
            armed_at=self._timers.now(),
        )
        self.last_rejection = ""
        self._flags.awaiting_user_confirmation = True
        self._controls.set_waiting(True)
        self._controls.set_confirmation(True, description)

        self._cancel(self._confirm_timer)
        self._confirm_timer = self._timers.call_later(
            self.confirm_timeout, self.on_confirmation_timeout, "confirm-timeout"
        )
        if self._safety_timer is None or not self._safety_timer.active:
            self._safety_timer = self._timers.call_later(
                self.safety_timeout, self._on_safety_timeout, "confirm-safety"
            )
        logger.info("[%s] Armed: %s (awaiting confirmation)", self._label, description)
        return True

    def _revert_pending_visual(self, cmd: PendingUserCommand) -> None:
        if cmd.kind == CommandKind.OUTLET_TOGGLE:
            outlet = self._controls.outlet(cmd.index)
            if outlet is not None:
                self._controls.set_outlet(cmd.index, not cmd.intended_state)
        elif cmd.kind == CommandKind.GROUP_TOGGLE:
            group = self._controls.group(cmd.index)
            if group is not None:
                self._controls.set_group(cmd.index, not cmd.intended_state)

    def on_confirmation_timeout(self) -> None:
        self._confirm_timer = None
        if self.pending is not None:
            logger.warning("[%s] Confirmation timed out: %s",
                           self._label, self.pending.description)
            self.cancel_pending("confirmation timeout")

    def _on_safety_timeout(self) -> None:
        self._safety_timer = None
        if self.pending is not None:
            logger.warning("[%s] Confirmation safety timeout reached, forcing cancel",
                           self._label)
            self.cancel_pending("safety timeout")

    def cancel_pending(self, reason: str = "cancelled") -> bool:
        cmd, self.pending = self.pending, None
        self._cancel(self._confirm_timer)
        self._cancel(self._safety_timer)
        self._confirm_timer = self._safety_timer = None
        if cmd is None:
            return False
        self._revert_pending_visual(cmd)
        if self.executed is None:
            self._flags.awaiting_user_confirmation = False
        self._controls.set_confirmation(False)
        self._controls.set_waiting(False)
        logger.info("[%s] Pending command cleared (%s): %s",
                    self._label, reason, cmd.description)
        return True

    # ------------------------------------------------------------------
    # Layer 2: execution
    # ------------------------------------------------------------------

    def execute_pending(self) -> bool:
        cmd = self.pending
        if cmd is None:
            return self._reject("no pending command")
        if not self._flags.connected:
            self.cancel_pending("connection lost")
            return self._reject("not connected")

        self.pending = None
        self._cancel(self._confirm_timer)
        self._cancel(self._safety_timer)
        self._confirm_timer = self._safety_timer = None
        self._controls.set_confirmation(False)
        logger.info("[%s] Executing: %s", self._label, cmd.description)
        return self._execute(cmd, direct=False)

    def execute_direct(self, kind: CommandKind, index: int, command: str,
                       description: str) -> bool:
        """Send a command without arming (cycle buttons, string triggers)."""
        if not (self._flags.connected and self._flags.authenticated):
            return self._reject("not connected")
        if self._flags.user_busy or self.pending is not None:
            return self._reject("busy")
        current = self._current_state(kind, index)
        cmd = PendingUserCommand(
            kind=kind, index=index, command=command,
            intended_state=current, description=description,
            armed_at=self._timers.now(),
        )
        logger.info("[%s] Direct command: %s", self._label, description)
        return self._execute(cmd, direct=True)

    def _current_state(self, kind: CommandKind, index: int) -> bool:
        if kind.is_group:
            group = self._controls.group(index)
            return bool(group and group.powered)
        outlet = self._controls.outlet(index)
        return bool(outlet and outlet.powered)

    def _execute(self, cmd: PendingUserCommand, direct: bool) -> bool:
        if cmd.kind.is_cycle:
            prior = self._current_state(cmd.kind, cmd.index)
        else:
            prior = not cmd.intended_state
        self.store_current_state()
        self.operation = OperationRecord(cmd.kind, cmd.index, prior)

        self.executed = cmd
        self._direct = direct
        self._flags.awaiting_user_confirmation = not direct
        self._flags.processing_command = True
        self._controls.set_processing(True)
        self._controls.set_waiting(True)
        if cmd.kind.is_group:
            self._flags.group_op_in_flight = True
        if cmd.kind == CommandKind.GROUP_CYCLE and self.broadcast is not None:
            group = self._controls.group(cmd.index)
            self.broadcast.initiate(cmd.index, group.name if group else "")

        timeout = self.command_timeout * 2 if cmd.kind == CommandKind.GROUP_CYCLE else None
        self._start_processing_safety()
        if not self._dispatcher.submit(cmd.command, user_initiated=True, timeout=timeout):
            if not validate_command(cmd.command):
                self.on_command_failed(Command(cmd.command, user_initiated=True))
                return self._reject("command failed validation")
            # on_send_failed already ran from the dispatcher
            return self._reject("send failed")
        return True

    def _start_processing_safety(self) -> None:
        self._cancel(self._processing_timer)
        self._processing_timer = self._timers.call_later(
            self.processing_safety, self._on_processing_safety, "processing-safety"
        )

    def _on_processing_safety(self) -> None:
        self._processing_timer = None
        if self._flags.processing_command or self._controls.processing:
            logger.warning("[%s] Processing indicator stuck, forcing it off", self._label)
            self.clear_processing()
            if self.restart_polling:
                self.restart_polling()

    def clear_processing(self) -> None:
        self._flags.processing_command = False
        self._controls.set_processing(False)
        self._controls.set_waiting(False)
        if self.pending is None and not self._flags.awaiting_server_confirmation:
            self._controls.set_confirmation(False)

    # ------------------------------------------------------------------
    # Confirm / cancel buttons
    # ------------------------------------------------------------------

    def confirm(self) -> bool:
        if self._flags.awaiting_server_confirmation:
            return self._answer_server_prompt("y")
        if self.pending is not None:
            return self.execute_pending()
        return self._reject("nothing to confirm")

    def cancel(self) -> bool:
        if self._flags.awaiting_server_confirmation:
            return self._answer_server_prompt("n")
        if self.pending is not None:
            return self.cancel_pending("cancelled by user")
        return self._reject("nothing to cancel")

    # ------------------------------------------------------------------
    # Server-side "Do you wish to continue?" prompt
    # ------------------------------------------------------------------

    def on_server_prompt(self, text: str) -> None:
        if self._flags.awaiting_user_confirmation:
            if self.executed is not None:
                logger.info("[%s] Auto-confirming server prompt for %s",
                            self._label, self.executed.description)
                self._dispatcher.send_reply("y")
            else:
                logger.warning("[%s] Unexpected server prompt before execution, declining",
                               self._label)
                self._dispatcher.send_reply("n")
            return

        prompt = text.strip().splitlines()[-1] if text.strip() else text
        logger.info("[%s] Server confirmation requested: %s", self._label, prompt)
        self._flags.awaiting_server_confirmation = True
        self._dispatcher.pause_response_timer()
        self._controls.server_prompt = prompt
        self._controls.set_confirmation(True, prompt)
        self._cancel(self._server_prompt_timer)
        self._server_prompt_timer = self._timers.call_later(
            self.server_prompt_timeout, self._on_server_prompt_timeout,
            "server-confirm-timeout",
        )

    def _on_server_prompt_timeout(self) -> None:
        self._server_prompt_timer = None
        if self._flags.awaiting_server_confirmation:
            logger.warning("[%s] Server confirmation timed out, answering 'n'", self._label)
            self._answer_server_prompt("n")

    def _answer_server_prompt(self, answer: str) -> bool:
        self._cancel(self._server_prompt_timer)
        self._server_prompt_timer = None
        self._flags.awaiting_server_confirmation = False
        self._controls.set_confirmation(False)
        sent = self._dispatcher.send_reply(answer)
        self._dispatcher.resume_response_timer()
        return sent

    # ------------------------------------------------------------------
    # Response / failure
    # ------------------------------------------------------------------

    def on_user_response(self) -> None:
        """The PDU answered the executed user command."""
        cmd, self.executed = self.executed, None
        self._flags.awaiting_user_confirmation = False
        if cmd is None:
            return
        logger.info("[%s] Command completed: %s", self._label, cmd.description)
        if cmd.kind == CommandKind.GROUP_CYCLE and self.broadcast is not None:
            self.broadcast.complete()
        self._start_refresh(cmd)

    def _start_refresh(self, cmd: PendingUserCommand) -> None:
        if self._refresh is not None:
            self._refresh.cancel()

        if cmd.kind == CommandKind.OUTLET_CYCLE and self._direct:
            steps = [
                (3.0, lambda: self._queue_refresh(include_groups=False)),
                (1.0, self._finish_refresh),
            ]
        else:
            steps = [
                (1.0, self._check_link),
                (2.0, self._queue_refresh),
                (3.0, self._check_link),
                (5.0, self._finish_refresh),
            ]
        self._refresh = StepSequence(self._timers, steps, "post-command-refresh").start()

    def _check_link(self) -> bool:
        if not self._flags.connected:
            logger.warning("[%s] Connection lost after command, resetting", self._label)
            if self.on_reset:
                self.on_reset()
            return False
        return True

    def _queue_refresh(self, include_groups: bool = True) -> bool:
        if not self._check_link():
            return False
        batch = []
        if not (self._flags.group_op_in_flight or self._flags.post_group_cooldown):
            batch.append(Command(CMD_SHOW_OUTLETS))
        if include_groups:
            batch.append(Command(self.group_listing_command))
        self._dispatcher.extend(batch)
        return True

    def _finish_refresh(self) -> bool:
        self._cancel(self._processing_timer)
        self._processing_timer = None
        self.clear_processing()
        if self.restart_polling:
            self.restart_polling()
        return True

    def on_command_failed(self, cmd: Command) -> None:
        """Retries exhausted for a command. Only user commands are reverted."""
        if not cmd.user_initiated:
            return
        logger.error("[%s] User command failed: %s", self._label, cmd.text)
        self.executed = None
        self._flags.awaiting_user_confirmation = False
        self._flags.group_op_in_flight = False
        if self.broadcast is not None:
            self.broadcast.expire()
        if self.on_reset:
            self.on_reset()
        # After the reset so the revert grace window survives it
        self.revert_to_previous_state()

    def on_send_failed(self) -> None:
        """A user command could not be written. The toggle stays until reverted."""
        self.executed = None
        self._flags.awaiting_user_confirmation = False
        self._flags.group_op_in_flight = False
        self._cancel(self._processing_timer)
        self._processing_timer = None
        self.clear_processing()
        if self.broadcast is not None:
            self.broadcast.reset()

    # ------------------------------------------------------------------
    # State snapshot / revert
    # ------------------------------------------------------------------

    def store_current_state(self) -> None:
        self.snapshot = {
            "outlets": {n: o.powered for n, o in self._controls.outlets.items()},
            "groups": {n: g.powered for n, g in self._controls.groups.items() if g.used},
        }

    def revert_to_previous_state(self) -> None:
        op, self.operation = self.operation, None
        if op is not None and op.kind.is_cycle:
            logger.info("[%s] Cycle operations are not reverted", self._label)
            return

        self._flags.reverting = True
        if op is None:
            logger.info("[%s] Reverting all controls to stored snapshot", self._label)
            for n, powered in self.snapshot.get("outlets", {}).items():
                self._controls.set_outlet(n, powered)
            for n, powered in self.snapshot.get("groups", {}).items():
                self._controls.set_group(n, powered)
        elif op.kind.is_group:
            logger.info("[%s] Reverting group %d to %s", self._label, op.index,
                        "on" if op.prior_state else "off")
            self._controls.set_group(op.index, op.prior_state)
        else:
            logger.info("[%s] Reverting outlet %d to %s", self._label, op.index,
                        "on" if op.prior_state else "off")
            self._controls.set_outlet(op.index, op.prior_state)

        self._cancel(self._revert_timer)
        self._revert_timer = self._timers.call_later(
            self.revert_grace, self._end_revert_grace, "revert-grace"
        )

    def _end_revert_grace(self) -> None:
        self._revert_timer = None
        self._flags.reverting = False
        logger.debug("[%s] Revert grace window ended", self._label)

    def abort(self, reason: str) -> None:
        """Connection lost: abandon the armed command and anything in flight."""
        if self.pending is not None:
            self.cancel_pending(reason)
        self.reset()

    def reset(self) -> None:
        for timer in (self._confirm_timer, self._safety_timer, self._server_prompt_timer,
                      self._processing_timer, self._revert_timer):
            self._cancel(timer)
        self._confirm_timer = self._safety_timer = self._server_prompt_timer = None
        self._processing_timer = self._revert_timer = None
        if self._refresh is not None:
            self._refresh.cancel()
            self._refresh = None
        self.pending = None
        self.executed = None
        self._direct = False
        self._flags.awaiting_user_confirmation = False
        self._flags.awaiting_server_confirmation = False
        self._flags.processing_command = False
        self._flags.reverting = False
        self._controls.set_confirmation(False)
        self._controls.set_processing(False)
        self._controls.set_waiting(False)

    def get_status(self) -> dict:
        return {
            "pending": self.pending.description if self.pending else None,
            "executed": self.executed.description if self.executed else None,
            "operation": (
                {"kind": self.operation.kind.value, "index": self.operation.index,
                 "prior_state": self.operation.prior_state}
                if self.operation else None
            ),
            "refresh_active": self.refresh_active,
            "last_rejection": self.last_rejection,
        }
