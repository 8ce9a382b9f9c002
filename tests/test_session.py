# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Session state machine tests: login handshake, framing, polling,
link loss and reconnection, driven through a fake transport."""

import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from src.pdu_model import (
    STATUS_AUTH_FAILED,
    STATUS_CODE_FAULT,
    STATUS_CODE_IDLE,
    STATUS_CODE_OK,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_LOGGED_IN,
    STATUS_MAX_RECONNECT,
    STATUS_SOCKET_CLOSED,
    STATUS_SOCKET_TIMEOUT,
    OperationMode,
)

OUTLETS = (
    "show outlets\r\n"
    "Outlet 1 - Lamp:\r\nPower state: Off\r\n"
    "Outlet 2 - Fan:\r\nPower state: On\r\n"
    "Outlet 3 - Radio:\r\nPower state: On"
)

GROUPS = (
    "show outletgroups\r\n"
    "Outlet Group 1 - Lighting:\r\n"
    "  Outlet 1 - Lamp: Off\r\n"
    "  Outlet 2 - Fan: On\r\n"
    "State: 1 on 1 off\r\n"
    "Outlet Group 2 - Network:\r\n"
    "  Outlet 3 - Radio: On\r\n"
    "State: 1 on 0 off"
)


# ---------------------------------------------------------------------------
# Login handshake
# ---------------------------------------------------------------------------

class TestLogin:
    def test_username_sent_once_after_pacing_delay(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        transport.connected = True
        session.on_connected()
        assert session.controls.status == STATUS_CONNECTED

        session.on_data(b"\r\nUsername: ")
        # Buffer is cleared on detection, not when the credential goes out
        assert len(session.buffer) == 0
        assert transport.writes == []
        manual_loop.advance(0.25)
        assert transport.writes == []
        manual_loop.advance(0.25)
        assert transport.writes == ["admin\r\n"]
        manual_loop.advance(10)
        assert transport.writes == ["admin\r\n"]

    def test_full_handshake(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        assert transport.connects == [("10.0.0.5", 23)]
        assert session.state == "connecting"
        transport.connected = True
        session.on_connected()
        assert session.state == "awaiting_username"

        session.on_data(b"Username: ")
        manual_loop.advance(0.5)
        session.on_data(b"Password: ")
        assert session.state == "awaiting_password"
        manual_loop.advance(0.5)
        assert transport.lines == ["admin", "secret"]
        assert session.state == "awaiting_welcome"

        session.on_data(b"\r\nWelcome to PDU CLI!\r\n\r\n[My PDU] # ")
        assert session.state == "ready"
        assert session.flags.authenticated
        assert session.controls.status == STATUS_LOGGED_IN
        assert session.controls.status_code == STATUS_CODE_OK
        assert session.poller.running
        assert session.controls.mode == OperationMode.CYCLE

    def test_password_is_masked_in_logs(self, make_session, login, caplog):
        caplog.set_level(logging.INFO)
        session, transport = make_session(password="hunter2")
        login(session, transport)
        assert "hunter2" not in caplog.text
        assert "*******" in caplog.text

    def test_authentication_failure_is_terminal(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        transport.connected = True
        session.on_connected()
        session.on_data(b"Username: ")
        manual_loop.advance(0.5)
        session.on_data(b"Password: ")
        manual_loop.advance(0.5)
        session.on_data(b"\r\nAuthentication failed\r\n")

        assert session.state == "auth_failed"
        assert session.controls.status == STATUS_AUTH_FAILED
        assert session.controls.status_code == STATUS_CODE_FAULT
        assert transport.disconnects == 1
        assert not session.flags.connected
        assert session.stats.error_counts["authentication"] == 1
        assert not session.reconnect.scheduled
        manual_loop.advance(600)
        assert len(transport.connects) == 1

    def test_manual_connect_after_auth_failure(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        transport.connected = True
        session.on_connected()
        session.on_data(b"\r\nAuthentication failed\r\n")
        session.connect()
        assert len(transport.connects) == 2
        assert not session.flags.auth_failed
        assert session.state == "connecting"

    def test_credentials_ignored_after_auth_failure(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        transport.connected = True
        session.on_connected()
        session.on_data(b"\r\nAuthentication failed\r\n")
        transport.connected = True
        session.on_data(b"Username: ")
        manual_loop.advance(1)
        assert transport.writes == []

    def test_login_challenge_while_logged_in_means_expired(self, make_session, login, manual_loop):
        session, transport = make_session()
        login(session, transport)
        session.on_data(b"\r\nSession timed out.\r\nUsername: ")
        assert not session.flags.authenticated
        assert not session.poller.running
        manual_loop.advance(0.5)
        assert transport.lines == ["admin"]

    def test_login_words_inside_a_response(self, make_session, login, reply):
        session, transport = make_session()
        login(session, transport)
        reply(session, "show outlets\r\nOutlet 1 - Welcome Desk:\r\nPower state: On")
        assert session.flags.authenticated
        assert session.controls.outlet(1).name == "Welcome Desk"
        assert session.controls.outlet(1).powered


# ---------------------------------------------------------------------------
# Polling and framing
# ---------------------------------------------------------------------------

class TestPolling:
    def test_first_poll_after_login_grace(self, make_session, login, manual_loop, reply):
        session, transport = make_session(login_grace=5, poll_interval=30)
        login(session, transport)
        manual_loop.advance(4)
        assert transport.writes == []
        manual_loop.advance(1)
        assert transport.lines == ["show inlets"]

        reply(session, "show inlets\r\nInlet I1:\r\nRMS Current: 3.45 A")
        assert transport.lines[-1] == "show sensor externalsensor 1"
        reply(session, "show sensor externalsensor 1\r\nReading: 22.10 deg C")
        reply(session, "show sensor externalsensor 2\r\nReading: 45 %")
        reply(session, "show sensor inlet I1 activePower\r\nReading: 220.10 W")
        assert transport.lines[-1] == "show outlets"
        reply(session, OUTLETS)
        assert transport.lines[-1] == "show outletgroups"
        reply(session, GROUPS)

        r = session.controls.readings
        assert r.rms_current == "3.45 A"
        assert r.temperature == "22.10 °C"
        assert r.humidity == "45 %"
        assert r.active_power == "220.10 W"
        assert session.controls.outlet(1).name == "Lamp"
        assert not session.controls.outlet(1).powered
        assert not session.controls.outlet(1).disabled
        assert session.controls.group(1).name == "Lighting"
        assert not session.controls.group(1).powered
        assert session.controls.group(2).powered
        assert session.controls.group(2).members == [3]
        assert not session.controls.group(3).used
        assert session.stats.responses_received == 6
        assert not session.flags.waiting_for_response

    def test_one_command_in_flight(self, make_session, login, manual_loop):
        session, transport = make_session(login_grace=5)
        login(session, transport)
        manual_loop.advance(5)
        assert len(transport.writes) == 1
        assert session.dispatcher.queue_length == 5
        assert session.flags.waiting_for_response

    def test_split_prompt_waits_for_full_delimiter(self, make_session, login, manual_loop):
        session, transport = make_session(login_grace=5)
        login(session, transport)
        manual_loop.advance(5)
        session.on_data(b"show inlets\r\nRMS Current: 1.50 A\r\n\r\n[My P")
        assert session.dispatcher.in_flight.text == "show inlets"
        assert session.controls.readings.rms_current is None
        assert len(transport.writes) == 1

        session.on_data(b"DU] # ")
        assert session.controls.readings.rms_current == "1.50 A"
        assert transport.lines[-1] == "show sensor externalsensor 1"

    def test_reparsing_same_response_is_stable(self, make_session, login, reply):
        session, transport = make_session()
        login(session, transport)
        reply(session, GROUPS)
        first = session.controls.snapshot()
        reply(session, GROUPS)
        assert session.controls.snapshot() == first

    def test_custom_prompt(self, make_session, login, reply):
        session, transport = make_session(prompt="rack-7>")
        login(session, transport)
        reply(session, "show outlets\r\nOutlet 4 - Pump:\r\nPower state: On")
        assert session.controls.outlet(4).powered

    def test_buffer_overflow_drops_contents(self, make_session, login):
        session, transport = make_session(buffer_size=256)
        login(session, transport)
        session.on_data(b"x" * 300)
        assert len(session.buffer) == 0
        assert session.buffer.overflow_count == 1

    def test_poll_after_group_operation_skips_outlets(self, make_session, login, manual_loop, reply):
        session, transport = make_session(login_grace=5, poll_interval=30)
        login(session, transport)
        session.flags.post_group_cooldown = True
        manual_loop.advance(5)
        reply(session, "show inlets\r\nRMS Current: 1.0 A")
        reply(session, "Reading: 22.10 deg C")
        reply(session, "Reading: 45 %")
        reply(session, "Reading: 10.0 W")
        assert transport.lines[-1] == "show outletgroups"
        assert "show outlets" not in transport.lines


# ---------------------------------------------------------------------------
# Link loss and reconnection
# ---------------------------------------------------------------------------

class TestLinkLoss:
    def test_socket_closed(self, make_session, login, manual_loop, reply):
        session, transport = make_session()
        login(session, transport)
        reply(session, OUTLETS)
        assert not session.controls.outlet(2).disabled

        transport.connected = False
        session.on_closed()
        assert session.controls.status == STATUS_SOCKET_CLOSED
        assert session.controls.status_code == STATUS_CODE_FAULT
        assert session.state == "disconnected"
        assert not session.flags.connected
        assert not session.flags.authenticated
        assert session.controls.outlet(2).disabled
        assert not session.controls.outlet(2).powered
        assert session.reconnect.scheduled

        manual_loop.advance(5)
        assert len(transport.connects) == 2

    def test_socket_error_status_carries_detail(self, make_session, login):
        session, transport = make_session()
        login(session, transport)
        session.on_error("Connection reset by peer")
        assert session.controls.status == "Socket Error: Connection reset by peer"
        assert session.stats.error_counts["connection"] == 1

    def test_socket_timeout(self, make_session, login):
        session, transport = make_session()
        login(session, transport)
        session.on_timeout()
        assert session.controls.status == STATUS_SOCKET_TIMEOUT
        assert session.stats.error_counts["timeout"] == 1

    def test_link_loss_abandons_armed_command(self, make_session, login):
        session, transport = make_session()
        login(session, transport)
        session.select_mode("on_off")
        assert session.press_outlet_toggle(1)
        session.on_closed()
        assert session.confirmation.pending is None
        assert not session.controls.confirm_enabled
        assert not session.flags.busy

    def test_manual_disconnect_does_not_reconnect(self, make_session, login, manual_loop):
        session, transport = make_session()
        login(session, transport)
        session.disconnect()
        assert session.controls.status == STATUS_DISCONNECTED
        assert session.controls.status_code == STATUS_CODE_IDLE
        assert not session.flags.keep_connected
        assert not session.reconnect.scheduled
        manual_loop.advance(600)
        assert len(transport.connects) == 1

    def test_reconnect_budget_exhausted(self, make_session, manual_loop):
        """Five failed reconnects end in a terminal status with no sixth try."""
        session, transport = make_session()
        session.connect()
        session.on_error("Connection refused")
        for _ in range(5):
            assert session.reconnect.scheduled
            manual_loop.advance(70)
            session.on_error("Connection refused")

        assert len(transport.connects) == 6
        assert session.controls.status == STATUS_MAX_RECONNECT
        assert session.controls.status_code == STATUS_CODE_FAULT
        assert session.reconnect.exhausted
        assert not session.reconnect.scheduled
        manual_loop.advance(1000)
        assert len(transport.connects) == 6

    def test_manual_connect_resets_budget(self, make_session, manual_loop):
        session, transport = make_session(reconnect_max_attempts=1)
        session.connect()
        session.on_error("Connection refused")
        manual_loop.advance(70)
        session.on_error("Connection refused")
        assert session.reconnect.exhausted
        session.connect()
        assert not session.reconnect.exhausted
        assert session.reconnect.attempts == 0

    def test_established_link_resets_attempts(self, make_session, manual_loop):
        session, transport = make_session()
        session.connect()
        session.on_error("Connection refused")
        manual_loop.advance(70)
        assert session.reconnect.attempts == 1
        transport.connected = True
        session.on_connected()
        assert session.reconnect.attempts == 0


# ---------------------------------------------------------------------------
# Lifecycle, mode and health
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_start_without_host_stays_disconnected(self, make_session):
        session, transport = make_session(host="")
        session.start()
        assert transport.connects == []
        assert session.state == "disconnected"
        assert session.controls.mode == OperationMode.CYCLE

    def test_start_with_host_connects(self, make_session):
        session, transport = make_session()
        session.start()
        assert transport.connects == [("10.0.0.5", 23)]

    def test_stop_cancels_all_timers(self, make_session, login):
        session, transport = make_session()
        session.start()
        login(session, transport)
        session.stop()
        assert session.timers.active_count == 0
        assert not session.flags.keep_connected

    def test_stuck_processing_indicator_cleared(self, make_session, manual_loop):
        session, transport = make_session(stuck_check_delay=60)
        session.start()
        session.controls.set_processing(True)
        manual_loop.advance(60)
        assert not session.controls.processing

    def test_health_check_reconnects_dropped_link(self, make_session, manual_loop):
        session, transport = make_session(health_check_interval=300,
                                          reconnect_max_attempts=1)
        session.start()
        session.on_error("Connection refused")
        manual_loop.advance(70)
        session.on_error("Connection refused")
        assert session.reconnect.exhausted
        session.reconnect.reset()
        manual_loop.advance(300)
        assert len(transport.connects) == 3

    def test_select_mode(self, make_session):
        session, _ = make_session()
        session.controls.initialize_mode()
        assert session.select_mode("on_off")
        assert session.controls.mode == OperationMode.ON_OFF
        assert not session.select_mode("on_off", selected=False)
        assert session.last_rejection == "cannot deselect the active mode"
        assert session.select_mode("cycle", selected=False)
        assert not session.select_mode("sideways")

    def test_get_health(self, make_session, login, reply):
        session, transport = make_session()
        login(session, transport)
        reply(session, OUTLETS)
        health = session.get_health()
        assert health["device_id"] == "pdu1"
        assert health["connection"]["state"] == "ready"
        assert health["connection"]["authenticated"] is True
        assert health["connection"]["transport"]["connected"] is True
        assert health["errors"]["total"] == 0
        assert set(health["state"]) >= {"flags", "dispatcher", "confirmation",
                                        "poller", "broadcast", "active_timers"}

    def test_snapshot(self, make_session, login):
        session, transport = make_session()
        login(session, transport)
        snap = session.snapshot()
        assert snap["device_id"] == "pdu1"
        assert snap["state"] == "ready"
        assert snap["mode"] == "cycle"
        assert len(snap["outlets"]) == 24
        assert len(snap["groups"]) == 10
        assert snap["busy"] is False
