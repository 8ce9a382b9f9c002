# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Pure-function framer and parsers for the PDU telnet CLI.

The CLI has no message framing: the only end-of-response marker is the
recurring shell prompt, and login/confirmation challenges arrive as bare
text. Recognition therefore runs over the whole accumulated buffer, never
line by line, and nothing is reported until the full marker has landed.

CLI commands and their output formats:
  show inlets                        -> RMS Current: 3.45 A
  show sensor externalsensor 1|2     -> Reading: 22.10 deg C / Reading: 45 %
  show sensor inlet I1 activePower   -> Reading: 220.10 W
  show outlets                       -> Outlet 3 - Server Rack:
                                          Power state: On
  show outletgroups [details]        -> Outlet Group 2 - Network:
                                          Outlet 1 - Switch: On
                                          State: 3 on 1 off

Fully testable with no I/O dependencies.
"""

import codecs
import enum
import logging
import re
from dataclasses import dataclass, field

from .pdu_model import (
    AUTH_FAILED_MARKER,
    CMD_SHOW_GROUPS,
    CMD_SHOW_OUTLETS,
    CONFIRM_PROMPT,
    MAX_GROUPS,
    MAX_OUTLETS,
    PASSWORD_CHALLENGE,
    USERNAME_CHALLENGE,
    WELCOME_BANNER,
    GroupState,
    OutletState,
    SensorReadings,
)

logger = logging.getLogger(__name__)

# Non-credential command text: letters, digits, space, tab, '-', '.', ':'
_SAFE_COMMAND_RE = re.compile(r"[A-Za-z0-9 \t.:-]+")

_RMS_CURRENT_RE = re.compile(r"RMS Current:\s*([\d.]+)\s*A")
_ACTIVE_POWER_RE = re.compile(r"Reading:\s*([\d.]+)\s*W")
_TEMPERATURE_RE = re.compile(r"Reading:\s*([\d.]+)\s*deg C")
_HUMIDITY_RE = re.compile(r"Reading:\s*([\d.]+)\s*%")

_OUTLET_RE = re.compile(
    r"Outlet\s*(\d+)\s*(?:-\s*([^:\r\n]*?))?\s*:\s*Power state:\s*([A-Za-z]+)"
)

# Header name stops at ':' / end of line / '...' / an inline "State:".
# The body runs up to "State:" without crossing into the next group header.
_GROUP_RE = re.compile(
    r"Outlet Group\s+(\d+)\s*-\s*(?P<name>[^:\r\n]*?)\s*(?::|$|\.{3}|(?=\bState:))"
    r"(?P<body>(?:(?!Outlet Group).)*?)"
    r"State:\s*(?P<summary>[^\r\n]+)",
    re.MULTILINE | re.DOTALL,
)
_GROUP_OUTLET_LINE_RE = re.compile(
    r"^\s*Outlet\s+(\d+)\b[^:\r\n]*:\s*(On|Off)\b", re.MULTILINE | re.IGNORECASE
)
_GROUP_MEMBER_LIST_RE = re.compile(r"Outlets?:\s*([\d,\s-]+)")
_ON_COUNT_RE = re.compile(r"(\d+)\s*on\b", re.IGNORECASE)
_OFF_COUNT_RE = re.compile(r"(\d+)\s*off\b", re.IGNORECASE)


class FrameEvent(enum.Enum):
    NONE = "none"
    CONFIRM_PROMPT = "confirm_prompt"
    USERNAME = "username"
    PASSWORD = "password"
    WELCOME = "welcome"
    AUTH_FAILED = "auth_failed"
    RESPONSE = "response"


class ResponseBuffer:
    """Bounded accumulator for one connection's inbound text.

    Bytes are decoded incrementally so a multi-byte character split across
    two transport reads is not mangled.
    """

    def __init__(self, max_size: int = 8192):
        self.max_size = max_size
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._text = ""
        self.overflow_count = 0

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def append(self, data: bytes) -> bool:
        """Add a chunk. Returns False if the buffer overflowed and was dropped."""
        self._text += self._decoder.decode(data)
        if len(self._text) > self.max_size:
            self.overflow_count += 1
            logger.warning(
                "Response buffer overflow (%d > %d chars), dropping contents",
                len(self._text), self.max_size,
            )
            self.clear()
            return False
        return True

    def clear(self) -> None:
        self._text = ""
        self._decoder.reset()


def detect_frame(text: str, prompt: str) -> FrameEvent:
    """Classify the accumulated buffer.

    Priority: server confirmation, username, password, welcome banner,
    authentication failure, then a complete prompt-terminated response.
    A prompt split across reads yields NONE until it fully arrives.
    """
    if not text:
        return FrameEvent.NONE
    if CONFIRM_PROMPT in text:
        return FrameEvent.CONFIRM_PROMPT
    if USERNAME_CHALLENGE in text:
        return FrameEvent.USERNAME
    if PASSWORD_CHALLENGE in text:
        return FrameEvent.PASSWORD
    if WELCOME_BANNER in text:
        return FrameEvent.WELCOME
    if AUTH_FAILED_MARKER in text:
        return FrameEvent.AUTH_FAILED
    if prompt and prompt in text:
        return FrameEvent.RESPONSE
    return FrameEvent.NONE


def validate_command(text: str) -> bool:
    """True if *text* only uses the conservative CLI character set."""
    return bool(text) and _SAFE_COMMAND_RE.fullmatch(text) is not None


def _reading(pattern: re.Pattern, text: str, unit: str, field_name: str) -> str | None:
    try:
        m = pattern.search(text)
        if not m:
            return None
        raw = m.group(1)
        float(raw)
        return f"{raw} {unit}"
    except (ValueError, IndexError) as e:
        logger.debug("Failed to parse %s from response: %s", field_name, e)
        return None


def parse_sensor_readings(text: str) -> SensorReadings:
    """Extract sensor fields. Each field is independent and optional."""
    return SensorReadings(
        rms_current=_reading(_RMS_CURRENT_RE, text, "A", "RMS current"),
        active_power=_reading(_ACTIVE_POWER_RE, text, "W", "active power"),
        temperature=_reading(_TEMPERATURE_RE, text, "°C", "temperature"),
        humidity=_reading(_HUMIDITY_RE, text, "%", "humidity"),
    )


def parse_outlet_listing(text: str, max_outlets: int = MAX_OUTLETS) -> dict[int, OutletState]:
    """Parse ``Outlet <n> [- <name>]: Power state: <On|Off>`` entries."""
    outlets: dict[int, OutletState] = {}
    for m in _OUTLET_RE.finditer(text):
        try:
            index = int(m.group(1))
        except ValueError:
            continue
        if not (1 <= index <= max_outlets):
            logger.debug("Ignoring outlet %d outside 1..%d", index, max_outlets)
            continue
        outlets[index] = OutletState(
            index=index,
            name=(m.group(2) or "").strip(),
            powered=m.group(3).lower() == "on",
            disabled=False,
        )
    return outlets


def parse_group_summary(summary: str) -> bool:
    """Derive a group's power state from its ``State:`` summary.

    A group is on iff no member is off and at least one member is on, so a
    group reporting ``0 on 0 off`` shows as off.
    """
    on_m = _ON_COUNT_RE.search(summary)
    off_m = _OFF_COUNT_RE.search(summary)
    if on_m or off_m:
        on_count = int(on_m.group(1)) if on_m else 0
        off_count = int(off_m.group(1)) if off_m else 0
        return off_count == 0 and on_count > 0
    return summary.strip().lower() in ("on", "all on")


def _parse_member_list(raw: str) -> list[int]:
    members: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, _, hi = part.partition("-")
            try:
                members.extend(range(int(lo), int(hi) + 1))
            except ValueError:
                continue
        else:
            try:
                members.append(int(part))
            except ValueError:
                continue
    return members


def parse_group_outlet_lines(text: str, max_outlets: int = MAX_OUTLETS) -> dict[int, bool]:
    """Per-outlet sub-lines embedded in a group listing (``Outlet 1 - X: On``)."""
    states: dict[int, bool] = {}
    for m in _GROUP_OUTLET_LINE_RE.finditer(text):
        index = int(m.group(1))
        if 1 <= index <= max_outlets:
            states[index] = m.group(2).lower() == "on"
    return states


def parse_group_listing(text: str, max_groups: int = MAX_GROUPS) -> dict[int, GroupState]:
    """Parse ``Outlet Group <n> - <name> ... State: <summary>`` entries."""
    groups: dict[int, GroupState] = {}
    for m in _GROUP_RE.finditer(text):
        try:
            index = int(m.group(1))
            if not (1 <= index <= max_groups):
                logger.debug("Ignoring group %d outside 1..%d", index, max_groups)
                continue
            body = m.group("body") or ""
            members = sorted(parse_group_outlet_lines(body))
            if not members:
                member_m = _GROUP_MEMBER_LIST_RE.search(body)
                if member_m:
                    members = _parse_member_list(member_m.group(1))
            groups[index] = GroupState(
                index=index,
                name=m.group("name").strip(),
                powered=parse_group_summary(m.group("summary")),
                members=members,
                disabled=False,
                used=True,
            )
        except (ValueError, IndexError) as e:
            logger.debug("Failed to parse group entry %r: %s", m.group(0)[:80], e)
    return groups


@dataclass
class ParsedResponse:
    sensors: SensorReadings = field(default_factory=SensorReadings)
    outlets: dict[int, OutletState] = field(default_factory=dict)
    groups: dict[int, GroupState] = field(default_factory=dict)
    group_outlets: dict[int, bool] = field(default_factory=dict)
    # Full listing: groups absent from it are unused
    is_group_listing: bool = False


def parse_response(text: str, command: str | None = None,
                   max_outlets: int = MAX_OUTLETS,
                   max_groups: int = MAX_GROUPS) -> ParsedResponse:
    """Run every field extractor over a complete response."""
    result = ParsedResponse(sensors=parse_sensor_readings(text))

    result.outlets = parse_outlet_listing(text, max_outlets)
    if command and command.startswith(CMD_SHOW_OUTLETS) and not result.outlets:
        logger.debug("Outlet listing response contained no outlet entries")

    result.groups = parse_group_listing(text, max_groups)
    result.is_group_listing = (
        CMD_SHOW_GROUPS in text
        or (command is not None and command.startswith(CMD_SHOW_GROUPS))
    )
    if result.groups or result.is_group_listing:
        result.group_outlets = parse_group_outlet_lines(text, max_outlets)
    return result
