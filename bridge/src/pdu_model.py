# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""CLI vocabulary, status constants and data models for Legrand-style PDUs."""

import enum
import time
from dataclasses import dataclass, field

# Wire markers
DEFAULT_PROMPT = "[My PDU] #"
USERNAME_CHALLENGE = "Username:"
PASSWORD_CHALLENGE = "Password:"
WELCOME_BANNER = "Welcome"
AUTH_FAILED_MARKER = "Authentication failed"
CONFIRM_PROMPT = "Do you wish to"
LINE_ENDING = "\r\n"

MAX_OUTLETS = 24
MAX_GROUPS = 10
UNUSED_GROUP_LABEL = "Unused Group"

# Read-only status battery
CMD_SHOW_INLETS = "show inlets"
CMD_SHOW_EXT_SENSOR_1 = "show sensor externalsensor 1"
CMD_SHOW_EXT_SENSOR_2 = "show sensor externalsensor 2"
CMD_SHOW_ACTIVE_POWER = "show sensor inlet I1 activePower"
CMD_SHOW_OUTLETS = "show outlets"
CMD_SHOW_GROUPS = "show outletgroups"

SENSOR_COMMANDS = (
    CMD_SHOW_INLETS,
    CMD_SHOW_EXT_SENSOR_1,
    CMD_SHOW_EXT_SENSOR_2,
    CMD_SHOW_ACTIVE_POWER,
)

POWER_ACTIONS = ("on", "off", "cycle")

# Status strings shown on the connection indicator
STATUS_CONNECTING = "Connecting"
STATUS_CONNECTED = "Connected"
STATUS_LOGGED_IN = "Logged In"
STATUS_AUTH_FAILED = "Authentication Failed"
STATUS_SOCKET_CLOSED = "Socket Closed"
STATUS_SOCKET_ERROR = "Socket Error"
STATUS_SOCKET_TIMEOUT = "Socket Timeout"
STATUS_DISCONNECTED = "Disconnected"
STATUS_MAX_RECONNECT = "Max Reconnect Attempts Reached"
STATUS_CONNECTION_FAILED = "Connection Failed"

# Status codes: 0=ok, 1=transitional, 2=fault, 3=idle
STATUS_CODE_OK = 0
STATUS_CODE_BUSY = 1
STATUS_CODE_FAULT = 2
STATUS_CODE_IDLE = 3

ERROR_CATEGORIES = ("connection", "authentication", "command", "timeout")


class CommandError(ValueError):
    """A power command was built with an unknown action or kind."""


class CommandKind(enum.Enum):
    OUTLET_TOGGLE = "outlet"
    GROUP_TOGGLE = "group"
    OUTLET_CYCLE = "cycle_outlet"
    GROUP_CYCLE = "cycle_group"

    @property
    def is_group(self) -> bool:
        return self in (CommandKind.GROUP_TOGGLE, CommandKind.GROUP_CYCLE)

    @property
    def is_cycle(self) -> bool:
        return self in (CommandKind.OUTLET_CYCLE, CommandKind.GROUP_CYCLE)


class OperationMode(enum.Enum):
    """Mode selector values. Exactly one is selected at a time."""
    ON_OFF = 1
    CYCLE = 2

    @classmethod
    def parse(cls, value) -> "OperationMode":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace("/", "_").replace("-", "_")
        for mode in cls:
            if text in (mode.name.lower(), str(mode.value)):
                return mode
        raise ValueError(f"unknown operation mode: {value!r}")


def outlet_command(index: int, action: str) -> str:
    if action not in POWER_ACTIONS:
        raise CommandError(f"invalid power action: {action!r}")
    return f"power outlets {index} {action}"


def group_command(index: int, action: str) -> str:
    if action not in POWER_ACTIONS:
        raise CommandError(f"invalid power action: {action!r}")
    return f"power outletgroup {index} {action}"


@dataclass
class Command:
    text: str
    sanitize: bool = True
    user_initiated: bool = False
    timeout: float | None = None  # seconds; None = session default


@dataclass
class PendingUserCommand:
    """The single armed-but-unexecuted user action."""
    kind: CommandKind
    index: int
    command: str
    intended_state: bool
    description: str
    armed_at: float = field(default_factory=time.time)


@dataclass
class OperationRecord:
    kind: CommandKind
    index: int
    prior_state: bool


@dataclass
class OutletState:
    index: int
    name: str = ""
    powered: bool = False
    disabled: bool = True

    @property
    def label(self) -> str:
        return self.name or f"Outlet {self.index}"


@dataclass
class GroupState:
    index: int
    name: str = ""
    powered: bool = False
    members: list[int] = field(default_factory=list)
    disabled: bool = True
    used: bool = False

    @property
    def label(self) -> str:
        return self.name or f"Group {self.index}"


@dataclass
class SensorReadings:
    """Display strings for the inlet and external sensors (None = not seen)."""
    rms_current: str | None = None
    active_power: str | None = None
    temperature: str | None = None
    humidity: str | None = None

    def merge(self, other: "SensorReadings") -> None:
        for name in ("rms_current", "active_power", "temperature", "humidity"):
            value = getattr(other, name)
            if value is not None:
                setattr(self, name, value)

    def to_dict(self) -> dict:
        return {
            "rms_current": self.rms_current,
            "active_power": self.active_power,
            "temperature": self.temperature,
            "humidity": self.humidity,
        }


@dataclass
class BroadcastIntent:
    group_name: str
    initiated_locally: bool
    issued_at: float = field(default_factory=time.time)


@dataclass
class BroadcastMessage:
    """Published on the shared channel; ``cancelled`` means the name was cleared."""
    group_name: str
    origin: str
    issued_at: float = field(default_factory=time.time)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "group_name": self.group_name,
            "origin": self.origin,
            "issued_at": self.issued_at,
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "BroadcastMessage":
        return cls(
            group_name=str(d.get("group_name", "")),
            origin=str(d.get("origin", "")),
            issued_at=float(d.get("issued_at", time.time())),
            cancelled=bool(d.get("cancelled", False)),
        )


@dataclass
class SessionFlags:
    """Overlapping busy/state booleans of one PDU session."""
    connected: bool = False
    authenticated: bool = False
    auth_failed: bool = False
    keep_connected: bool = True
    waiting_for_response: bool = False
    processing_command: bool = False
    awaiting_user_confirmation: bool = False
    awaiting_server_confirmation: bool = False
    group_op_in_flight: bool = False
    post_group_cooldown: bool = False
    reverting: bool = False
    processing_broadcast: bool = False
    broadcast_cancelled: bool = False

    @property
    def busy(self) -> bool:
        return (
            self.waiting_for_response
            or self.processing_command
            or self.awaiting_user_confirmation
            or self.awaiting_server_confirmation
            or self.group_op_in_flight
            or self.reverting
        )

    @property
    def user_busy(self) -> bool:
        """Busy from the user's point of view: a poll command in flight does not count."""
        return (
            self.processing_command
            or self.awaiting_user_confirmation
            or self.awaiting_server_confirmation
            or self.group_op_in_flight
            or self.reverting
            or self.processing_broadcast
        )

    @property
    def poll_blocked(self) -> bool:
        return self.busy or not self.authenticated

    def reset_login(self) -> None:
        self.authenticated = False
        self.auth_failed = False

    def reset_operation(self) -> None:
        self.waiting_for_response = False
        self.processing_command = False
        self.awaiting_user_confirmation = False
        self.awaiting_server_confirmation = False
        self.group_op_in_flight = False
        self.post_group_cooldown = False
        self.reverting = False
        self.processing_broadcast = False
        self.broadcast_cancelled = False

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "authenticated": self.authenticated,
            "auth_failed": self.auth_failed,
            "keep_connected": self.keep_connected,
            "waiting_for_response": self.waiting_for_response,
            "processing_command": self.processing_command,
            "awaiting_user_confirmation": self.awaiting_user_confirmation,
            "awaiting_server_confirmation": self.awaiting_server_confirmation,
            "group_op_in_flight": self.group_op_in_flight,
            "post_group_cooldown": self.post_group_cooldown,
            "reverting": self.reverting,
            "processing_broadcast": self.processing_broadcast,
            "busy": self.busy,
        }


@dataclass
class SessionStats:
    commands_sent: int = 0
    responses_received: int = 0
    total_response_time: float = 0.0
    last_response_time: float | None = None
    connection_attempts: int = 0
    successful_connections: int = 0
    last_connection_time: float | None = None
    errors: int = 0
    error_counts: dict[str, int] = field(
        default_factory=lambda: {c: 0 for c in ERROR_CATEGORIES}
    )
    last_error_time: float | None = None
    last_error_type: str | None = None

    @property
    def average_response_time(self) -> float:
        if not self.responses_received:
            return 0.0
        return self.total_response_time / self.responses_received

    def record_error(self, category: str, error_type: str) -> None:
        self.errors += 1
        if category in self.error_counts:
            self.error_counts[category] += 1
        self.last_error_time = time.time()
        self.last_error_type = error_type

    def record_response(self, elapsed: float) -> None:
        self.responses_received += 1
        self.total_response_time += elapsed
        self.last_response_time = elapsed

    def to_dict(self) -> dict:
        return {
            "commands_sent": self.commands_sent,
            "responses_received": self.responses_received,
            "average_response_time_ms": round(self.average_response_time * 1000, 1),
            "last_response_time_ms": (
                round(self.last_response_time * 1000, 1)
                if self.last_response_time is not None else None
            ),
            "connection_attempts": self.connection_attempts,
            "successful_connections": self.successful_connections,
            "last_connection_time": self.last_connection_time,
            "errors": self.errors,
            "error_counts": dict(self.error_counts),
            "last_error_time": self.last_error_time,
            "last_error_type": self.last_error_type,
        }
