# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""One PDU CLI session: connection lifecycle, login handshake and the
command/response state machine.

Lifecycle:
  disconnected -> connecting -> awaiting_username -> awaiting_password
  -> awaiting_welcome -> ready

Once ready, the busy substates (awaiting a response, awaiting user or server
confirmation, group operation in flight, post-group cooldown, reverting) are
independent flags on SessionFlags. Polling and new user commands are held
off while any of them is set.

All state is touched from the event loop only: transport events arrive as
listener calls and every delay is a TimerRegistry callback.
"""

import asyncio
import logging
import random
import time

from .pdu_model import (
    STATUS_AUTH_FAILED,
    STATUS_CODE_BUSY,
    STATUS_CODE_FAULT,
    STATUS_CODE_IDLE,
    STATUS_CODE_OK,
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_LOGGED_IN,
    STATUS_SOCKET_CLOSED,
    STATUS_SOCKET_ERROR,
    STATUS_SOCKET_TIMEOUT,
    UNUSED_GROUP_LABEL,
    Command,
    CommandKind,
    OperationMode,
    SessionFlags,
    SessionStats,
    group_command,
    outlet_command,
)
from .broadcast import BroadcastChannel, BroadcastCoordinator
from .cli_parser import FrameEvent, ParsedResponse, ResponseBuffer, detect_frame, parse_response
from .confirmation import ConfirmationManager
from .controls import ControlSurface
from .dispatcher import CommandDispatcher
from .pdu_config import PDUConfig
from .poller import Poller
from .reconnect import ReconnectionManager
from .scheduler import Timer, TimerRegistry
from .tcp_transport import TCPTransport
from .transport import ByteTransport

logger = logging.getLogger(__name__)

GROUP_COMMAND_PREFIX = "power outletgroup"
HEALTH_ERROR_WARN = 10


class PDUSession:
    """Client for one PDU. Also the transport's event listener."""

    def __init__(self, pdu_cfg: PDUConfig, config,
                 transport: ByteTransport | None = None,
                 controls: ControlSurface | None = None,
                 channel: BroadcastChannel | None = None,
                 loop=None, rng: random.Random | None = None):
        self.pdu = pdu_cfg
        self.device_id = pdu_cfg.device_id
        self.config = config
        self._loop = loop or asyncio.get_running_loop()

        self.flags = SessionFlags()
        self.stats = SessionStats()
        self.controls = controls or ControlSurface(
            config.max_outlets, config.max_groups, config.default_mode
        )
        self.timers = TimerRegistry(self._loop, config.max_timers)
        self.buffer = ResponseBuffer(config.buffer_size)
        self.transport: ByteTransport = transport or TCPTransport(
            self, connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout, label=self.device_id,
        )

        self.dispatcher = CommandDispatcher(
            self.transport, self.timers, self.flags, self.stats,
            label=self.device_id,
            command_timeout=config.command_timeout,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            retry_budget=config.retry_budget,
        )
        self.confirmation = ConfirmationManager(
            self.flags, self.controls, self.dispatcher, self.timers, config,
            label=self.device_id,
        )
        self.poller = Poller(
            self.flags, self.dispatcher, self.timers,
            poll_interval=config.poll_interval,
            max_skips=config.max_poll_skips,
            group_listing_command=config.group_listing_command,
            label=self.device_id,
        )
        self.reconnect = ReconnectionManager(
            self.flags, self.controls, self.timers,
            max_attempts=config.reconnect_max_attempts,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            jitter=config.reconnect_jitter,
            rng=rng, label=self.device_id,
        )
        self.broadcast = BroadcastCoordinator(
            self.device_id, channel, self.flags, self.controls,
            self.dispatcher, self.timers, config,
        )

        self.dispatcher.on_failure = self._on_command_failed
        self.dispatcher.on_send_failed = self._on_send_failed
        self.confirmation.broadcast = self.broadcast
        self.confirmation.on_reset = lambda: self.reset_operation_state(force=True)
        self.confirmation.restart_polling = self.poller.restart
        self.reconnect.connect_fn = self._open
        self.reconnect.can_connect = lambda: bool(self.pdu.host)
        self.controls.add_listener(self._on_control_changed)

        self.state = "disconnected"
        self.last_rejection = ""
        self._credential_timer: Timer | None = None
        self._cooldown_timer: Timer | None = None
        self._health_timer: Timer | None = None
        self._stuck_timer: Timer | None = None
        self._started_at = time.time()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Attach to the broadcast channel and auto-connect if a host is set."""
        self.broadcast.attach()
        self.controls.initialize_mode()
        self._schedule_health_check()
        self._stuck_timer = self.timers.call_later(
            self.config.stuck_check_delay, self._stuck_processing_check,
            "stuck-processing-check",
        )
        if self.pdu.host and self.pdu.enabled:
            self.connect()
        else:
            logger.info("[%s] No host configured, not connecting", self.device_id)

    def stop(self) -> None:
        self.disconnect()
        self.broadcast.detach()
        self.timers.cancel_all()

    def connect(self) -> None:
        """Manual connect. Resets the reconnect budget."""
        self.flags.keep_connected = True
        self.reconnect.reset()
        self._open()

    def _open(self) -> None:
        if not self.pdu.host:
            logger.warning("[%s] Cannot connect: no host configured", self.device_id)
            return
        if self.transport.is_connected:
            self.transport.disconnect()
        self.flags.connected = False
        self.flags.reset_login()
        self.buffer.clear()
        self.stats.connection_attempts += 1
        self.state = "connecting"
        self.controls.set_status(STATUS_CONNECTING, STATUS_CODE_BUSY)
        logger.info("[%s] Connecting to %s:%d", self.device_id, self.pdu.host, self.pdu.port)
        self.transport.connect(self.pdu.host, self.pdu.port)

    def disconnect(self) -> None:
        """Manual disconnect. No reconnect follows."""
        self.flags.keep_connected = False
        self.reconnect.cancel()
        self.transport.disconnect()
        self.flags.connected = False
        self.flags.reset_login()
        self._teardown("manual disconnect")
        self.state = "disconnected"
        self.controls.set_status(STATUS_DISCONNECTED, STATUS_CODE_IDLE)
        logger.info("[%s] Disconnected", self.device_id)

    def _teardown(self, reason: str) -> None:
        """Abandon everything tied to the current connection."""
        for timer in (self._credential_timer, self._cooldown_timer):
            if timer is not None:
                timer.cancel()
        self._credential_timer = self._cooldown_timer = None
        self.poller.stop()
        self.confirmation.abort(reason)
        self.dispatcher.reset()
        self.broadcast.reset()
        self.flags.reset_operation()
        self.buffer.clear()
        self.controls.reset_to_unknown()
        self._refresh_lock()

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def on_connected(self) -> None:
        self.flags.connected = True
        self.flags.reset_login()
        self.buffer.clear()
        self.reconnect.reset()
        self.stats.successful_connections += 1
        self.stats.last_connection_time = time.time()
        self.state = "awaiting_username"
        self.controls.set_status(STATUS_CONNECTED, STATUS_CODE_OK)
        logger.info("[%s] Connected to %s:%d", self.device_id, self.pdu.host, self.pdu.port)

    def on_data(self, data: bytes) -> None:
        if not self.buffer.append(data):
            return
        self._process_buffer()

    def on_closed(self) -> None:
        self._on_link_lost(STATUS_SOCKET_CLOSED, "connection", "socket closed")

    def on_error(self, detail: str) -> None:
        self._on_link_lost(f"{STATUS_SOCKET_ERROR}: {detail}", "connection", detail)

    def on_timeout(self) -> None:
        self._on_link_lost(STATUS_SOCKET_TIMEOUT, "timeout", "socket timeout")

    def _on_link_lost(self, status: str, category: str, detail: str) -> None:
        auth_failed = self.flags.auth_failed
        self.flags.connected = False
        self.flags.reset_login()
        self.stats.record_error(category, detail)
        logger.warning("[%s] %s", self.device_id, status)
        self._teardown(status)
        self.state = "disconnected"
        self.controls.set_status(status, STATUS_CODE_FAULT)
        if self.flags.keep_connected and not auth_failed:
            self.reconnect.attempt()

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _process_buffer(self) -> None:
        text = self.buffer.text
        event = detect_frame(text, self.pdu.prompt)
        if event == FrameEvent.NONE:
            return

        if self.flags.authenticated and event in (
            FrameEvent.USERNAME, FrameEvent.PASSWORD,
            FrameEvent.WELCOME, FrameEvent.AUTH_FAILED,
        ):
            # Login words inside a command response (e.g. an outlet name)
            if self.pdu.prompt in text:
                event = FrameEvent.RESPONSE
            elif event == FrameEvent.USERNAME:
                logger.warning("[%s] Login challenge while logged in, session expired",
                               self.device_id)
                self.flags.authenticated = False
                self.poller.stop()
            else:
                return

        if event == FrameEvent.CONFIRM_PROMPT:
            self.buffer.clear()
            self.confirmation.on_server_prompt(text)
        elif event == FrameEvent.USERNAME:
            self.buffer.clear()
            if self.flags.auth_failed:
                return
            self.state = "awaiting_username"
            self._send_credential_later("username")
        elif event == FrameEvent.PASSWORD:
            self.buffer.clear()
            if self.flags.auth_failed:
                return
            self.state = "awaiting_password"
            self._send_credential_later("password")
        elif event == FrameEvent.WELCOME:
            self.buffer.clear()
            self._on_login()
        elif event == FrameEvent.AUTH_FAILED:
            self.buffer.clear()
            self._on_auth_failed()
        elif event == FrameEvent.RESPONSE:
            self.buffer.clear()
            if self.flags.authenticated:
                self._handle_response(text)
        self._refresh_lock()

    def _send_credential_later(self, which: str) -> None:
        if self._credential_timer is not None:
            self._credential_timer.cancel()
        self._credential_timer = self.timers.call_later(
            self.config.credential_delay,
            lambda: self._send_credential(which),
            f"send-{which}",
        )

    def _send_credential(self, which: str) -> None:
        self._credential_timer = None
        if not self.flags.connected:
            return
        if which == "username":
            logger.info("[%s] Sending username %s", self.device_id, self.pdu.username)
            self.dispatcher.send_credential(self.pdu.username)
        else:
            logger.info("[%s] Sending password %s", self.device_id,
                        "*" * len(self.pdu.password))
            self.dispatcher.send_credential(self.pdu.password)
            self.state = "awaiting_welcome"

    def _on_login(self) -> None:
        self.flags.authenticated = True
        self.flags.auth_failed = False
        self.reconnect.reset()
        self.state = "ready"
        self.controls.set_status(STATUS_LOGGED_IN, STATUS_CODE_OK)
        self.controls.initialize_mode()
        logger.info("[%s] Logged in, first poll in %.1fs",
                    self.device_id, self.config.login_grace)
        self.poller.start(delay=self.config.login_grace)

    def _on_auth_failed(self) -> None:
        self.flags.authenticated = False
        self.flags.auth_failed = True
        self.stats.record_error("authentication", "authentication failed")
        logger.error("[%s] Authentication failed for user %s",
                     self.device_id, self.pdu.username)
        self.poller.stop()
        self.transport.disconnect()
        self.flags.connected = False
        self.state = "auth_failed"
        self.controls.reset_to_unknown()
        self.controls.set_status(STATUS_AUTH_FAILED, STATUS_CODE_FAULT)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _handle_response(self, text: str) -> None:
        cmd = self.dispatcher.in_flight
        elapsed = self.dispatcher.on_response()
        if elapsed is not None:
            self.stats.record_response(elapsed)

        parsed = parse_response(
            text, cmd.text if cmd else None,
            self.controls.max_outlets, self.controls.max_groups,
        )
        self._apply(parsed)

        if cmd is not None and cmd.user_initiated:
            self.confirmation.on_user_response()
        if cmd is not None and cmd.text.startswith(GROUP_COMMAND_PREFIX):
            self._end_group_operation()

        if not (self.flags.processing_command
                or self.flags.awaiting_user_confirmation
                or self.flags.awaiting_server_confirmation):
            self.controls.set_processing(False)
            self.controls.set_waiting(False)

        self.dispatcher.process_next()

    def _apply(self, parsed: ParsedResponse) -> None:
        readings = parsed.sensors
        if any(v is not None for v in readings.to_dict().values()):
            self.controls.update_readings(readings)

        if self.flags.reverting:
            if parsed.outlets or parsed.groups:
                logger.debug("[%s] Revert in progress, ignoring state update", self.device_id)
            return

        for index, outlet in parsed.outlets.items():
            self.controls.set_outlet(index, outlet.powered, outlet.name, disabled=False)

        for index, group in parsed.groups.items():
            self.controls.set_group(index, group.powered, group.name, group.members)
        if parsed.is_group_listing:
            for index, group in self.controls.groups.items():
                if index not in parsed.groups and (group.used or group.name != UNUSED_GROUP_LABEL):
                    self.controls.mark_group_unused(index)

        if self.flags.group_op_in_flight:
            for index, powered in parsed.group_outlets.items():
                self.controls.set_outlet(index, powered, disabled=False)

    def _end_group_operation(self) -> None:
        self.flags.group_op_in_flight = False
        if self.broadcast.intent is not None and not self.broadcast.settling:
            self.broadcast.complete()
        self.flags.post_group_cooldown = True
        if self._cooldown_timer is not None:
            self._cooldown_timer.cancel()
        self._cooldown_timer = self.timers.call_later(
            self.config.post_group_cooldown, self._end_cooldown, "post-group-cooldown"
        )

    def _end_cooldown(self) -> None:
        self._cooldown_timer = None
        self.flags.post_group_cooldown = False
        logger.debug("[%s] Post-group cooldown ended", self.device_id)

    def _on_command_failed(self, cmd: Command) -> None:
        if cmd.user_initiated:
            self.confirmation.on_command_failed(cmd)
        elif cmd.text.startswith(GROUP_COMMAND_PREFIX):
            self.flags.group_op_in_flight = False
            self.broadcast.expire()
        self._refresh_lock()

    def _on_send_failed(self, cmd: Command) -> None:
        self.confirmation.on_send_failed()
        self.flags.connected = self.transport.is_connected
        if self.flags.keep_connected and not self.flags.connected:
            self.reconnect.attempt()

    # ------------------------------------------------------------------
    # User intents
    # ------------------------------------------------------------------

    def _reject(self, reason: str) -> bool:
        self.last_rejection = reason
        logger.warning("[%s] Request rejected: %s", self.device_id, reason)
        return False

    def _from_confirmation(self, ok: bool) -> bool:
        self.last_rejection = "" if ok else self.confirmation.last_rejection
        self._refresh_lock()
        return ok

    def press_outlet_toggle(self, index: int) -> bool:
        """Arm an outlet command according to the operation mode."""
        outlet = self.controls.outlet(index)
        if outlet is None:
            return self._reject(f"no outlet {index}")
        if self.controls.locked:
            return self._reject("controls locked")
        mode = self.controls.initialize_mode()

        if mode == OperationMode.CYCLE:
            ok = self.confirmation.prepare_command(
                CommandKind.OUTLET_CYCLE, index, outlet_command(index, "cycle"),
                outlet.powered, f"Power cycle {outlet.label}",
            )
            return self._from_confirmation(ok)

        target = self.controls.flip_outlet(index)
        action = "on" if target else "off"
        ok = self.confirmation.prepare_command(
            CommandKind.OUTLET_TOGGLE, index, outlet_command(index, action),
            target, f"Turn {action.upper()} {outlet.label}",
        )
        if not ok:
            self.controls.set_outlet(index, not target)
        return self._from_confirmation(ok)

    def press_group_toggle(self, index: int) -> bool:
        group = self.controls.group(index)
        if group is None:
            return self._reject(f"no group {index}")
        if not group.used:
            return self._reject(f"group {index} is unused")
        if self.controls.locked:
            return self._reject("controls locked")
        mode = self.controls.initialize_mode()

        if mode == OperationMode.CYCLE:
            ok = self.confirmation.prepare_command(
                CommandKind.GROUP_CYCLE, index, group_command(index, "cycle"),
                group.powered, f"Power cycle group {group.label}",
            )
            return self._from_confirmation(ok)

        target = self.controls.flip_group(index)
        action = "on" if target else "off"
        ok = self.confirmation.prepare_command(
            CommandKind.GROUP_TOGGLE, index, group_command(index, action),
            target, f"Turn {action.upper()} group {group.label}",
        )
        if not ok:
            self.controls.set_group(index, not target)
        return self._from_confirmation(ok)

    def press_outlet_cycle(self, index: int) -> bool:
        """Cycle an outlet immediately (no arming)."""
        outlet = self.controls.outlet(index)
        if outlet is None:
            return self._reject(f"no outlet {index}")
        ok = self.confirmation.execute_direct(
            CommandKind.OUTLET_CYCLE, index, outlet_command(index, "cycle"),
            f"Power cycle {outlet.label}",
        )
        return self._from_confirmation(ok)

    def press_group_cycle(self, index: int) -> bool:
        """Cycle a group immediately and broadcast it to peer PDUs."""
        group = self.controls.group(index)
        if group is None:
            return self._reject(f"no group {index}")
        if not group.used or group.name == UNUSED_GROUP_LABEL:
            return self._reject(f"group {index} is unused")
        if self.confirmation.pending is not None:
            return self._reject("confirmation pending")
        ok = self.confirmation.execute_direct(
            CommandKind.GROUP_CYCLE, index, group_command(index, "cycle"),
            f"Power cycle group {group.label}",
        )
        return self._from_confirmation(ok)

    def trigger_group_by_name(self, name: str) -> bool:
        """String trigger: cycle the local group called *name* (case-insensitive)."""
        name = (name or "").strip()
        if not name:
            return self._reject("empty group name")
        index = self.controls.find_group(name)
        if index is None:
            return self._reject(f"no group named {name!r}")
        logger.info("[%s] String trigger for group %s (index %d)", self.device_id, name, index)
        return self.press_group_cycle(index)

    def confirm(self) -> bool:
        return self._from_confirmation(self.confirmation.confirm())

    def cancel(self) -> bool:
        return self._from_confirmation(self.confirmation.cancel())

    def select_mode(self, mode, selected: bool = True) -> bool:
        try:
            parsed = OperationMode.parse(mode)
        except ValueError as e:
            return self._reject(str(e))
        if not self.controls.select_mode(parsed, selected):
            return self._reject("cannot deselect the active mode")
        return True

    def reset_operation_state(self, force: bool = False) -> bool:
        """Clear every busy flag, the queue and the pending command.

        Refused while a group operation is in flight unless *force*.
        Authentication state is left alone.
        """
        if self.flags.group_op_in_flight and not force:
            return self._reject("group operation in progress")
        logger.info("[%s] Resetting operation state", self.device_id)
        self.confirmation.reset()
        self.dispatcher.reset()
        self.broadcast.reset()
        if self._cooldown_timer is not None:
            self._cooldown_timer.cancel()
            self._cooldown_timer = None
        self.flags.reset_operation()
        self.buffer.clear()
        self._refresh_lock()
        if self.flags.connected and self.flags.authenticated:
            self.poller.restart()
        return True

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def _on_control_changed(self, what: str) -> None:
        if what in ("processing", "waiting", "confirmation"):
            self._refresh_lock()

    def _refresh_lock(self) -> None:
        self.controls.refresh_lock(
            self.controls.processing
            or (self.controls.waiting_response and not self.flags.awaiting_user_confirmation)
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _schedule_health_check(self) -> None:
        self._health_timer = self.timers.call_later(
            self.config.health_check_interval, self._health_check, "health-check"
        )

    def _health_check(self) -> None:
        health = self.get_health()
        perf = health["performance"]
        logger.info(
            "[%s] Health: state=%s sent=%d received=%d avg=%.1fms errors=%d",
            self.device_id, self.state, perf["commands_sent"],
            perf["responses_received"], perf["average_response_time_ms"],
            health["errors"]["total"],
        )
        if self.stats.errors > HEALTH_ERROR_WARN:
            logger.warning("[%s] High error count: %d", self.device_id, self.stats.errors)
        if (not self.flags.connected and self.flags.keep_connected
                and self.pdu.host and self.state != "auth_failed"):
            logger.info("[%s] Health check found link down, reconnecting", self.device_id)
            self.reconnect.attempt()
        self._schedule_health_check()

    def _stuck_processing_check(self) -> None:
        self._stuck_timer = None
        if self.controls.processing:
            logger.warning("[%s] Processing indicator stuck on, clearing", self.device_id)
            self.confirmation.clear_processing()

    def get_health(self) -> dict:
        s = self.stats.to_dict()
        return {
            "device_id": self.device_id,
            "uptime": round(time.time() - self._started_at, 1),
            "connection": {
                "host": self.pdu.host,
                "port": self.pdu.port,
                "state": self.state,
                "connected": self.flags.connected,
                "authenticated": self.flags.authenticated,
                "status": self.controls.status,
                "status_code": self.controls.status_code,
                "connection_attempts": s["connection_attempts"],
                "successful_connections": s["successful_connections"],
                "last_connection_time": s["last_connection_time"],
                "reconnect": self.reconnect.get_status(),
                "transport": self.transport.get_health(),
            },
            "performance": {
                "commands_sent": s["commands_sent"],
                "responses_received": s["responses_received"],
                "average_response_time_ms": s["average_response_time_ms"],
                "last_response_time_ms": s["last_response_time_ms"],
            },
            "errors": {
                "total": s["errors"],
                "by_category": s["error_counts"],
                "last_error_time": s["last_error_time"],
                "last_error_type": s["last_error_type"],
            },
            "state": {
                "flags": self.flags.to_dict(),
                "dispatcher": self.dispatcher.get_status(),
                "confirmation": self.confirmation.get_status(),
                "poller": self.poller.get_status(),
                "broadcast": self.broadcast.get_status(),
                "active_timers": self.timers.active_count,
                "buffer_size": len(self.buffer),
                "buffer_overflows": self.buffer.overflow_count,
            },
        }

    def snapshot(self) -> dict:
        """Everything a front end needs to render this PDU."""
        data = self.controls.snapshot()
        data.update({
            "device_id": self.device_id,
            "label": self.pdu.label or self.device_id,
            "state": self.state,
            "connected": self.flags.connected,
            "authenticated": self.flags.authenticated,
            "busy": self.flags.busy,
            "last_rejection": self.last_rejection,
        })
        return data
