# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""PDU configuration — single or multi-PDU from JSON file or env vars."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .pdu_model import DEFAULT_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_PDUS_FILE = "/data/pdus.json"
DEFAULT_TELNET_PORT = 23
MOCK_BASE_PORT = 2323


@dataclass
class PDUConfig:
    """Connection settings for a single PDU CLI endpoint."""
    device_id: str                      # MQTT topic key, e.g., "rack1-pdu"
    host: str = ""                      # IP address or hostname (empty = never connect)
    port: int = DEFAULT_TELNET_PORT
    username: str = "admin"
    password: str = ""
    prompt: str = DEFAULT_PROMPT        # Shell prompt that terminates every response
    label: str = ""                     # Human-friendly name
    enabled: bool = True

    def to_dict(self) -> dict:
        d = {
            "device_id": self.device_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "label": self.label,
            "enabled": self.enabled,
        }
        if self.password:
            d["password"] = self.password
        if self.prompt != DEFAULT_PROMPT:
            d["prompt"] = self.prompt
        return d

    def public_dict(self) -> dict:
        """to_dict() without the password, for API responses."""
        d = self.to_dict()
        d.pop("password", None)
        d["prompt"] = self.prompt
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "PDUConfig":
        return cls(
            device_id=d["device_id"],
            host=d.get("host", ""),
            port=int(d.get("port", DEFAULT_TELNET_PORT)),
            username=d.get("username", "admin"),
            password=d.get("password", ""),
            prompt=d.get("prompt", DEFAULT_PROMPT),
            label=d.get("label", ""),
            enabled=d.get("enabled", True),
        )

    def validate(self):
        if not self.device_id or any(c in self.device_id for c in "/#+ "):
            raise ValueError(
                f"device_id contains invalid MQTT characters: {self.device_id!r}"
            )
        if not self.host:
            raise ValueError(f"PDU {self.device_id!r} has no host configured")
        if not (1 <= self.port <= 65535):
            raise ValueError(
                f"PDU {self.device_id!r} port out of range: {self.port}"
            )
        if not self.prompt.strip():
            raise ValueError(f"PDU {self.device_id!r} prompt must not be empty")


def load_pdu_configs(pdus_file: str = DEFAULT_PDUS_FILE,
                     env_host: str = "",
                     env_port: int = DEFAULT_TELNET_PORT,
                     env_username: str = "admin",
                     env_password: str = "",
                     env_prompt: str = DEFAULT_PROMPT,
                     env_device_id: str = "pdu1",
                     mock_mode: bool = False) -> list[PDUConfig]:
    """Load PDU configs.

    Priority:
    1. pdus.json file if it exists
    2. Mock mode generates a mock config
    3. Environment variables (single PDU)
    """
    path = Path(pdus_file)

    if path.exists():
        try:
            data = json.loads(path.read_text())
            pdus = []
            for d in data.get("pdus", []):
                pdu = PDUConfig.from_dict(d)
                pdu.validate()
                pdus.append(pdu)
            if pdus:
                logger.info("Loaded %d PDU(s) from %s", len(pdus), path)
                return pdus
            logger.warning("pdus.json exists but has no PDUs, falling back to env vars")
        except Exception:
            logger.exception("Failed to load %s, falling back to env vars", path)

    if mock_mode:
        logger.info("Mock mode — using simulated PDU config")
        return [PDUConfig(
            device_id=env_device_id,
            host="127.0.0.1",
            port=MOCK_BASE_PORT,
            username=env_username,
            password=env_password or "mock",
            prompt=env_prompt,
            label="Mock PDU",
        )]

    if env_host:
        pdu = PDUConfig(
            device_id=env_device_id,
            host=env_host,
            port=env_port,
            username=env_username,
            password=env_password,
            prompt=env_prompt,
        )
        pdu.validate()
        logger.info("Using single PDU from env vars: %s via %s:%d",
                    pdu.device_id, env_host, env_port)
        return [pdu]

    raise ValueError(
        "No PDU configuration found. Either:\n"
        "  1. Create a pdus.json file\n"
        "  2. Set PDU_HOST in .env\n"
        "  3. Enable BRIDGE_MOCK_MODE=true for testing"
    )


def save_pdu_configs(pdus: list[PDUConfig], pdus_file: str = DEFAULT_PDUS_FILE):
    """Save PDU configs to JSON file atomically."""
    path = Path(pdus_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps({"pdus": [p.to_dict() for p in pdus]}, indent=2)
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(data)
        tmp.rename(path)
        logger.info("Saved %d PDU config(s) to %s", len(pdus), path)
    except Exception:
        logger.exception("Failed to save PDU configs")
        try:
            tmp.unlink(missing_ok=True)
        except Exception:
            pass
        raise
