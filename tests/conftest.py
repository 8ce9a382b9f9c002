# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""Pytest configuration — branded HTML reports with git metadata, plus
shared fakes for driving PDU sessions without a network or a real clock."""

import os
import platform
import subprocess
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from src.config import Config
from src.pdu_config import PDUConfig
from src.pdu_model import DEFAULT_PROMPT
from src.session import PDUSession


def _git(cmd: str) -> str:
    """Run a git command and return stripped output, or '' on failure."""
    try:
        return subprocess.check_output(
            ["git"] + cmd.split(), stderr=subprocess.DEVNULL
        ).decode().strip()
    except Exception:
        return ""


def pytest_configure(config):
    """Add project metadata to HTML report (only if pytest-metadata installed)."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = "Legrand PDU Bridge"
    config.stash[metadata_key]["Author"] = "Matthew Valancy, Valpatel Software LLC"
    config.stash[metadata_key]["Git Commit"] = _git("rev-parse --short HEAD")
    config.stash[metadata_key]["Git Branch"] = _git("rev-parse --abbrev-ref HEAD")
    config.stash[metadata_key]["Python"] = platform.python_version()
    config.stash[metadata_key]["Timestamp"] = datetime.now().isoformat(timespec="seconds")


# Conditional hooks: only registered when pytest-html is available
try:
    import pytest_html  # noqa: F401

    def pytest_html_report_title(report):
        """Set the HTML report title."""
        report.title = "Legrand PDU Bridge — Test Report"

    def pytest_html_results_summary(prefix, summary, postfix):
        """Add Valpatel branding to the results summary."""
        prefix.extend([
            "<div style='padding:16px 0 8px;font-family:Inter,system-ui,sans-serif'>",
            "<h2 style='margin:0;color:#00f0ff;font-size:18px;letter-spacing:0.05em'>"
            "Legrand PDU Bridge</h2>",
            "<p style='margin:4px 0 0;color:#8b8fa3;font-size:13px'>"
            "Created by <a href='https://mattvalancy.com' style='color:#00f0ff'>"
            "Matthew Valancy</a>, "
            "<a href='https://valpatel.com' style='color:#00f0ff'>"
            "Valpatel Software LLC</a></p>",
            "</div>",
        ])
except ImportError:
    pass


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class _Handle:
    def __init__(self, when, seq, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualLoop:
    """Just enough of an event loop for TimerRegistry, on a hand-cranked clock."""

    def __init__(self):
        self.now = 0.0
        self._handles: list[_Handle] = []
        self._seq = 0

    def time(self) -> float:
        return self.now

    def call_later(self, delay, callback, *args):
        self._seq += 1
        handle = _Handle(self.now + delay, self._seq, callback, args)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every due callback in order."""
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback(*handle.args)
        self._handles = [h for h in self._handles if not h.cancelled]
        self.now = target


class FakeTransport:
    """In-memory ByteTransport. Tests deliver events to the session directly."""

    def __init__(self):
        self.connected = False
        self.writes: list[str] = []
        self.connects: list[tuple[str, int]] = []
        self.disconnects = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def lines(self) -> list[str]:
        return [w[:-2] if w.endswith("\r\n") else w for w in self.writes]

    def connect(self, host: str, port: int) -> None:
        self.connects.append((host, port))

    def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    def write(self, data: bytes) -> bool:
        if not self.connected:
            return False
        self.writes.append(data.decode("utf-8"))
        return True

    def get_health(self) -> dict:
        return {"connected": self.connected, "connects": len(self.connects)}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

SESSION_DEFAULTS = {
    # Keep polling out of the way unless a test asks for it
    "login_grace": 1000.0,
    "poll_interval": 1000.0,
    "settings_file": "/nonexistent/bridge_settings.json",
    "pdus_file": "/nonexistent/pdus.json",
}


def build_config(**overrides) -> Config:
    config = Config()
    for key, value in {**SESSION_DEFAULTS, **overrides}.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def make_config():
    return build_config


@pytest.fixture
def manual_loop():
    return ManualLoop()


@pytest.fixture
def make_session(manual_loop):
    """Factory: make_session(device_id=..., channel=..., **config_overrides)."""

    def _make(device_id="pdu1", host="10.0.0.5", password="secret", channel=None,
              prompt=DEFAULT_PROMPT, **overrides):
        transport = FakeTransport()
        pdu = PDUConfig(device_id=device_id, host=host, port=23,
                        username="admin", password=password, prompt=prompt)
        session = PDUSession(pdu, build_config(**overrides), transport=transport,
                             channel=channel, loop=manual_loop)
        session.broadcast.attach()
        return session, transport

    return _make


@pytest.fixture
def login(manual_loop):
    """Drive a session through the Username/Password/Welcome handshake."""

    def _login(session, transport):
        session.connect()
        transport.connected = True
        session.on_connected()
        session.on_data(b"Username: ")
        manual_loop.advance(session.config.credential_delay)
        session.on_data(b"Password: ")
        manual_loop.advance(session.config.credential_delay)
        session.on_data(f"\r\nWelcome to PDU CLI!\r\n\r\n{session.pdu.prompt} ".encode())
        transport.writes.clear()
        return session

    return _login


def respond(session, body: str) -> None:
    """Deliver a prompt-terminated response to *session*."""
    session.on_data(f"{body}\r\n\r\n{session.pdu.prompt} ".encode())


@pytest.fixture
def reply():
    return respond
