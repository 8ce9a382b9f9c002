# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""In-memory control surface shared between a PDU session and its UI.

Holds the addressable values a front end renders: outlet/group toggles,
the confirm/cancel pair, status and busy indicators, sensor readouts and
the operation-mode selector. The session reads and writes these values;
the web API and MQTT handler read snapshots and feed user intents back to
the session.
"""

import logging
from typing import Callable

from .pdu_model import (
    MAX_GROUPS,
    MAX_OUTLETS,
    STATUS_CODE_IDLE,
    STATUS_DISCONNECTED,
    UNUSED_GROUP_LABEL,
    GroupState,
    OperationMode,
    OutletState,
    SensorReadings,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


class ControlSurface:
    def __init__(self, max_outlets: int = MAX_OUTLETS, max_groups: int = MAX_GROUPS,
                 default_mode: OperationMode = OperationMode.CYCLE):
        self.max_outlets = max_outlets
        self.max_groups = max_groups
        self.default_mode = default_mode

        self.outlets: dict[int, OutletState] = {
            n: OutletState(index=n) for n in range(1, max_outlets + 1)
        }
        self.groups: dict[int, GroupState] = {
            n: GroupState(index=n) for n in range(1, max_groups + 1)
        }
        self.readings = SensorReadings()

        self.status = STATUS_DISCONNECTED
        self.status_code = STATUS_CODE_IDLE
        self.processing = False
        self.waiting_response = False
        self.confirm_enabled = False
        self.pending_description = ""
        self.server_prompt = ""
        self.locked = False
        self.mode: OperationMode | None = None

        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def add_listener(self, callback: ChangeListener) -> None:
        self._listeners.append(callback)

    def _changed(self, what: str) -> None:
        for cb in self._listeners:
            try:
                cb(what)
            except Exception:
                logger.exception("Control listener failed for %s", what)

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def set_status(self, text: str, code: int) -> None:
        if text == self.status and code == self.status_code:
            return
        self.status = text
        self.status_code = code
        self._changed("status")

    def set_processing(self, value: bool) -> None:
        if self.processing != value:
            self.processing = value
            self._changed("processing")

    def set_waiting(self, value: bool) -> None:
        if self.waiting_response != value:
            self.waiting_response = value
            self._changed("waiting")

    def set_confirmation(self, enabled: bool, description: str = "") -> None:
        self.confirm_enabled = enabled
        self.pending_description = description if enabled else ""
        if not enabled:
            self.server_prompt = ""
        self._changed("confirmation")

    def refresh_lock(self, busy: bool) -> None:
        """Outlet and group controls are non-interactive while busy."""
        if self.locked != busy:
            self.locked = busy
            self._changed("lock")

    def update_readings(self, readings: SensorReadings) -> None:
        self.readings.merge(readings)
        self._changed("readings")

    # ------------------------------------------------------------------
    # Mode selector (exactly one mode selected)
    # ------------------------------------------------------------------

    def initialize_mode(self) -> OperationMode:
        if self.mode is None:
            self.mode = self.default_mode
            logger.info("No operation mode selected, defaulting to %s", self.mode.name)
            self._changed("mode")
        return self.mode

    def select_mode(self, mode: OperationMode, selected: bool = True) -> bool:
        """Select *mode*. Deselecting the active mode is refused."""
        if not selected:
            if self.mode == mode:
                logger.debug("Refusing to deselect active mode %s", mode.name)
                return False
            return True
        if self.mode != mode:
            self.mode = mode
            logger.info("Operation mode set to %s", mode.name)
            self._changed("mode")
        return True

    # ------------------------------------------------------------------
    # Outlets and groups
    # ------------------------------------------------------------------

    def outlet(self, index: int) -> OutletState | None:
        return self.outlets.get(index)

    def group(self, index: int) -> GroupState | None:
        return self.groups.get(index)

    def set_outlet(self, index: int, powered: bool, name: str | None = None,
                   disabled: bool | None = None) -> None:
        outlet = self.outlets.get(index)
        if outlet is None:
            return
        outlet.powered = powered
        if name:
            outlet.name = name
        if disabled is not None:
            outlet.disabled = disabled
        self._changed(f"outlet.{index}")

    def set_group(self, index: int, powered: bool, name: str | None = None,
                  members: list[int] | None = None) -> None:
        group = self.groups.get(index)
        if group is None:
            return
        group.powered = powered
        group.used = True
        group.disabled = False
        if name:
            group.name = name
        if members:
            group.members = list(members)
        self._changed(f"group.{index}")

    def mark_group_unused(self, index: int) -> None:
        group = self.groups.get(index)
        if group is None:
            return
        group.powered = False
        group.disabled = True
        group.used = False
        group.name = UNUSED_GROUP_LABEL
        group.members = []
        self._changed(f"group.{index}")

    def flip_outlet(self, index: int) -> bool | None:
        """Optimistically flip an outlet toggle; returns the new value."""
        outlet = self.outlets.get(index)
        if outlet is None:
            return None
        outlet.powered = not outlet.powered
        self._changed(f"outlet.{index}")
        return outlet.powered

    def flip_group(self, index: int) -> bool | None:
        group = self.groups.get(index)
        if group is None:
            return None
        group.powered = not group.powered
        self._changed(f"group.{index}")
        return group.powered

    def find_group(self, name: str) -> int | None:
        """Case-insensitive lookup of a used group by name."""
        wanted = name.strip().lower()
        if not wanted or wanted == UNUSED_GROUP_LABEL.lower():
            return None
        for index, group in self.groups.items():
            if group.used and group.name.strip().lower() == wanted:
                return index
        return None

    def reset_to_unknown(self) -> None:
        """Disconnected: every outlet and group becomes off and disabled."""
        for outlet in self.outlets.values():
            outlet.powered = False
            outlet.disabled = True
        for group in self.groups.values():
            group.powered = False
            group.disabled = True
        self._changed("reset")

    def snapshot(self) -> dict:
        return {
            "status": self.status,
            "status_code": self.status_code,
            "processing": self.processing,
            "waiting_response": self.waiting_response,
            "confirm_enabled": self.confirm_enabled,
            "pending_description": self.pending_description,
            "server_prompt": self.server_prompt,
            "locked": self.locked,
            "mode": self.mode.name.lower() if self.mode else None,
            "readings": self.readings.to_dict(),
            "outlets": {
                n: {"name": o.label, "powered": o.powered, "disabled": o.disabled}
                for n, o in self.outlets.items()
            },
            "groups": {
                n: {"name": g.label if g.used else (g.name or UNUSED_GROUP_LABEL),
                    "powered": g.powered, "disabled": g.disabled,
                    "used": g.used, "members": list(g.members)}
                for n, g in self.groups.items()
            },
        }
