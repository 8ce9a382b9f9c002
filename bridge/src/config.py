# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation.

Settings can also be persisted to a JSON file via the web API. Saved settings
override env-var defaults on startup.
"""

import json
import logging
import os

from .pdu_model import CMD_SHOW_GROUPS, DEFAULT_PROMPT, OperationMode

logger = logging.getLogger(__name__)

RECEIVER_ACTIONS = ("cycle", "on")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        # Single-PDU connection (used when no pdus.json exists)
        self.pdu_host = os.environ.get("PDU_HOST", "")
        self.pdu_port = self._int("PDU_PORT", "23", 1, 65535)
        self.pdu_username = os.environ.get("PDU_USERNAME", "admin")
        self.pdu_password = os.environ.get("PDU_PASSWORD", "")
        self.pdu_prompt = os.environ.get("PDU_PROMPT", DEFAULT_PROMPT)
        self.device_id = os.environ.get("PDU_DEVICE_ID", "pdu1")
        self.group_listing_command = os.environ.get(
            "PDU_GROUP_LISTING_COMMAND", CMD_SHOW_GROUPS
        )

        # Timing
        self.command_timeout = self._float("PDU_COMMAND_TIMEOUT", "10", 0.5, 300)
        self.confirm_timeout = self._float("PDU_CONFIRM_TIMEOUT", "10", 1, 300)
        self.confirm_safety_timeout = self._float("PDU_CONFIRM_SAFETY_TIMEOUT", "30", 1, 600)
        self.processing_safety_timeout = self._float("PDU_PROCESSING_SAFETY_TIMEOUT", "30", 1, 600)
        self.poll_interval = self._float("BRIDGE_POLL_INTERVAL", "30", 1, 3600)
        self.credential_delay = self._float("PDU_CREDENTIAL_DELAY", "0.5", 0, 10)
        self.login_grace = self._float("PDU_LOGIN_GRACE", "5", 0, 120)
        self.post_group_cooldown = self._float("PDU_POST_GROUP_COOLDOWN", "30", 0, 600)
        self.revert_grace = self._float("PDU_REVERT_GRACE", "10", 0, 120)
        self.connect_timeout = self._float("PDU_CONNECT_TIMEOUT", "10", 0.5, 120)
        self.read_timeout = self._float("PDU_READ_TIMEOUT", "0", 0, 3600)
        self.health_check_interval = self._float("BRIDGE_HEALTH_INTERVAL", "300", 10, 86400)
        self.stuck_check_delay = self._float("BRIDGE_STUCK_CHECK_DELAY", "60", 1, 3600)

        # Limits
        self.buffer_size = self._int("PDU_BUFFER_SIZE", "8192", 256, 1048576)
        self.max_outlets = self._int("PDU_MAX_OUTLETS", "24", 1, 48)
        self.max_groups = self._int("PDU_MAX_GROUPS", "10", 1, 32)
        self.max_poll_skips = self._int("BRIDGE_MAX_POLL_SKIPS", "5", 1, 100)
        self.max_timers = self._int("BRIDGE_MAX_TIMERS", "50", 5, 1000)

        # Command retry and reconnect backoff
        self.retry_attempts = self._int("PDU_RETRY_ATTEMPTS", "3", 0, 10)
        self.retry_delay = self._float("PDU_RETRY_DELAY", "1", 0, 60)
        self.retry_budget = self._float("PDU_RETRY_BUDGET", "30", 1, 600)
        self.reconnect_max_attempts = self._int("RECONNECT_MAX_ATTEMPTS", "5", 1, 100)
        self.reconnect_base_delay = self._float("RECONNECT_BASE_DELAY", "2", 0.1, 300)
        self.reconnect_max_delay = self._float("RECONNECT_MAX_DELAY", "60", 1, 3600)
        self.reconnect_jitter = self._float("RECONNECT_JITTER", "2", 0, 60)

        # Cross-PDU broadcast
        self.broadcast_cooldown = self._float("BROADCAST_COOLDOWN", "1", 0, 60)
        self.broadcast_settle = self._float("BROADCAST_SETTLE", "3", 0, 60)
        self.broadcast_receiver_action = os.environ.get(
            "BROADCAST_RECEIVER_ACTION", "cycle"
        ).strip().lower()
        self.broadcast_topic = os.environ.get(
            "MQTT_BROADCAST_TOPIC", "pdu/broadcast/group_cycle"
        )

        try:
            self.default_mode = OperationMode.parse(
                os.environ.get("PDU_DEFAULT_MODE", "cycle")
            )
        except ValueError as e:
            raise ConfigError(f"PDU_DEFAULT_MODE: {e}")

        # MQTT (empty broker = in-process broadcast only)
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")

        self.mock_mode = os.environ.get("BRIDGE_MOCK_MODE", "false").lower() in ("true", "1", "yes")
        self.log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO")
        self.web_port = self._int("BRIDGE_WEB_PORT", "8080", 1, 65535)

        # Multi-PDU config file
        self.pdus_file = os.environ.get("BRIDGE_PDUS_FILE", "/data/pdus.json")

        # Bridge settings persistence file
        self.settings_file = os.environ.get(
            "BRIDGE_SETTINGS_FILE", "/data/bridge_settings.json"
        )

        if self.broadcast_receiver_action not in RECEIVER_ACTIONS:
            raise ConfigError(
                f"BROADCAST_RECEIVER_ACTION must be one of {RECEIVER_ACTIONS}, "
                f"got {self.broadcast_receiver_action!r}"
            )

        # Validate device_id has no MQTT-unsafe characters
        if any(c in self.device_id for c in "/#+ "):
            raise ConfigError(
                f"PDU_DEVICE_ID contains invalid characters: {self.device_id!r}"
            )

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    # ------------------------------------------------------------------
    # Settings persistence: save/load from JSON file
    # ------------------------------------------------------------------

    # Fields that can be saved/loaded from the settings file.
    SAVEABLE_FIELDS = {
        "mqtt_broker": str,
        "mqtt_port": int,
        "mqtt_username": str,
        "mqtt_password": str,
        "poll_interval": float,
        "log_level": str,
        "command_timeout": float,
        "confirm_timeout": float,
        "broadcast_receiver_action": str,
        "default_mode": str,  # stored by name, parsed on load
    }

    def load_saved_settings(self, path: str):
        """Load persisted settings from JSON file, overriding current values."""
        try:
            with open(path) as f:
                saved = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return  # No saved settings, use env/defaults

        for field, typ in self.SAVEABLE_FIELDS.items():
            if field not in saved:
                continue
            try:
                self.apply_setting(field, saved[field])
            except (ValueError, TypeError):
                logger.warning("Invalid saved setting %s=%r, ignoring",
                               field, saved[field])

        logger.info("Loaded saved settings from %s", path)

    def apply_setting(self, field: str, value) -> None:
        """Set one saveable field, raising ValueError on a bad value."""
        if field not in self.SAVEABLE_FIELDS:
            raise ValueError(f"{field} is not a saveable setting")
        if field == "default_mode":
            self.default_mode = OperationMode.parse(value)
            return
        if field == "broadcast_receiver_action":
            value = str(value).strip().lower()
            if value not in RECEIVER_ACTIONS:
                raise ValueError(f"receiver action must be one of {RECEIVER_ACTIONS}")
        setattr(self, field, self.SAVEABLE_FIELDS[field](value))

    def save_settings(self, path: str):
        """Persist current saveable settings to JSON file."""
        data = self.settings_dict
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
            logger.info("Saved settings to %s", path)
        except OSError as e:
            logger.error("Failed to save settings to %s: %s", path, e)

    @property
    def settings_dict(self) -> dict:
        """Return saveable settings as a dict (for GET /api/config)."""
        data = {field: getattr(self, field, None)
                for field in self.SAVEABLE_FIELDS}
        data["default_mode"] = self.default_mode.name.lower()
        return data

    def _log_config(self):
        logger.info(
            "Config: pdu=%s:%d mock=%s poll=%.1fs timeout=%.1fs mqtt=%s:%d receiver=%s",
            self.pdu_host or "-", self.pdu_port, self.mock_mode,
            self.poll_interval, self.command_timeout,
            self.mqtt_broker or "-", self.mqtt_port,
            self.broadcast_receiver_action,
        )
