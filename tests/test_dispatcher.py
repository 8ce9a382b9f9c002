# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for the single-in-flight command dispatcher."""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from conftest import FakeTransport
from src.dispatcher import CommandDispatcher
from src.pdu_model import Command, SessionFlags, SessionStats
from src.scheduler import TimerRegistry


def make_dispatcher(loop, connected=True, **kwargs):
    transport = FakeTransport()
    transport.connected = connected
    flags = SessionFlags()
    stats = SessionStats()
    d = CommandDispatcher(transport, TimerRegistry(loop), flags, stats, **kwargs)
    return d, transport, flags, stats


class TestSending:
    def test_submit_writes_crlf_terminated_line(self, manual_loop):
        d, transport, flags, stats = make_dispatcher(manual_loop)
        assert d.submit("show outlets")
        assert transport.writes == ["show outlets\r\n"]
        assert flags.waiting_for_response
        assert d.in_flight.text == "show outlets"
        assert stats.commands_sent == 1

    def test_only_one_command_in_flight(self, manual_loop):
        d, transport, flags, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets"), Command("show outletgroups")])
        assert transport.lines == ["show inlets"]
        assert d.queue_length == 2
        assert not d.process_next()
        assert transport.lines == ["show inlets"]

    def test_response_releases_next_command(self, manual_loop):
        d, transport, flags, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        manual_loop.advance(0.25)
        elapsed = d.on_response()
        assert elapsed == pytest.approx(0.25)
        assert not flags.waiting_for_response
        d.process_next()
        assert transport.lines == ["show inlets", "show outlets"]

    def test_enqueue_replaces_queue(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        d.enqueue([Command("show outletgroups")])
        assert d.pending == ["show outletgroups"]

    def test_extend_appends(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        d.extend([Command("show outletgroups")])
        assert d.pending == ["show outlets", "show outletgroups"]

    def test_submit_jumps_the_queue(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        d.submit("power outlets 1 on")
        assert d.pending == ["power outlets 1 on"]
        d.on_response()
        d.process_next()
        assert transport.lines[-1] == "power outlets 1 on"
        assert d.in_flight.user_initiated

    def test_submit_keeps_queued_user_command(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        assert d.submit("power outlets 4 on")
        assert d.submit("power outletgroup 2 cycle", user_initiated=False)
        assert d.pending == ["power outlets 4 on", "power outletgroup 2 cycle"]
        d.on_response()
        d.process_next()
        assert transport.lines == ["show inlets", "power outlets 4 on"]


class TestSanitization:
    def test_submit_rejects_injection(self, manual_loop):
        d, transport, _, stats = make_dispatcher(manual_loop)
        assert not d.submit("show outlets; reboot")
        assert transport.writes == []
        assert d.rejected == 1
        assert stats.error_counts["command"] == 1

    def test_queued_bad_command_is_skipped(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        d.enqueue([Command("show `id`"), Command("show inlets")])
        assert transport.lines == ["show inlets"]
        assert d.rejected == 1

    def test_credentials_are_not_sanitized(self, manual_loop, caplog):
        d, transport, _, _ = make_dispatcher(manual_loop)
        assert d.send_credential("p@ss;w0rd!")
        assert transport.writes == ["p@ss;w0rd!\r\n"]
        assert "p@ss;w0rd!" not in caplog.text

    def test_reply_must_be_y_or_n(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        assert d.send_reply("y")
        with pytest.raises(ValueError):
            d.send_reply("yes")
        assert transport.lines == ["y"]


class TestTimeoutAndRetry:
    def test_retries_then_gives_up(self, manual_loop):
        d, transport, flags, stats = make_dispatcher(
            manual_loop, command_timeout=10, retry_attempts=3,
            retry_delay=1, retry_budget=1000,
        )
        failed = MagicMock()
        d.on_failure = failed
        d.submit("power outlets 1 on")
        manual_loop.advance(43.5)
        assert transport.lines == ["power outlets 1 on"] * 4
        assert d.retries_sent == 3
        failed.assert_called_once()
        assert failed.call_args[0][0].text == "power outlets 1 on"
        assert d.in_flight is None
        assert not flags.waiting_for_response
        assert stats.error_counts["timeout"] == 4

    def test_retry_budget_caps_total_time(self, manual_loop):
        d, transport, _, _ = make_dispatcher(
            manual_loop, command_timeout=10, retry_attempts=3,
            retry_delay=1, retry_budget=30,
        )
        failed = MagicMock()
        d.on_failure = failed
        d.submit("show outlets", user_initiated=False)
        manual_loop.advance(33)
        # Sent at 0, 11 and 22; the timeout at 32 is past the budget
        assert len(transport.writes) == 3
        failed.assert_called_once()

    def test_per_command_timeout(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop, command_timeout=10, retry_attempts=0)
        failed = MagicMock()
        d.on_failure = failed
        d.submit("power outletgroup 1 cycle", timeout=20)
        manual_loop.advance(15)
        failed.assert_not_called()
        manual_loop.advance(5)
        failed.assert_called_once()

    def test_response_cancels_timeout(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop)
        failed = MagicMock()
        d.on_failure = failed
        d.submit("show inlets")
        manual_loop.advance(5)
        d.on_response()
        manual_loop.advance(100)
        failed.assert_not_called()
        assert len(transport.writes) == 1

    def test_paused_timer_does_not_fire(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop, retry_attempts=0)
        failed = MagicMock()
        d.on_failure = failed
        d.submit("power outlets 2 cycle")
        d.pause_response_timer()
        manual_loop.advance(60)
        failed.assert_not_called()
        d.resume_response_timer()
        manual_loop.advance(10)
        failed.assert_called_once()

    def test_failure_moves_on_to_next_queued(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop, retry_attempts=0)
        d.enqueue([Command("show inlets"), Command("show outlets")])
        manual_loop.advance(10)
        assert transport.lines == ["show inlets", "show outlets"]


class TestDisconnected:
    def test_send_while_disconnected(self, manual_loop):
        d, transport, flags, stats = make_dispatcher(manual_loop, connected=False)
        send_failed = MagicMock()
        d.on_send_failed = send_failed
        assert not d.submit("power outlets 1 on")
        assert transport.writes == []
        send_failed.assert_called_once()
        assert d.in_flight is None
        assert not flags.waiting_for_response
        assert stats.error_counts["connection"] == 1

    def test_poll_send_failure_does_not_notify(self, manual_loop):
        d, transport, _, _ = make_dispatcher(manual_loop, connected=False)
        send_failed = MagicMock()
        d.on_send_failed = send_failed
        d.enqueue([Command("show inlets"), Command("show outlets")])
        send_failed.assert_not_called()
        assert d.queue_length == 0

    def test_reset_clears_everything(self, manual_loop):
        d, transport, flags, _ = make_dispatcher(manual_loop)
        failed = MagicMock()
        d.on_failure = failed
        d.enqueue([Command("show inlets"), Command("show outlets")])
        d.reset()
        assert d.in_flight is None
        assert d.queue_length == 0
        assert not flags.waiting_for_response
        manual_loop.advance(100)
        failed.assert_not_called()
