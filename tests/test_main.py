# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for BridgeManager wiring: sessions, channel, MQTT routing."""

import asyncio
import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from conftest import build_config
from src.broadcast import LocalBroadcastChannel
from src.main import BridgeManager
from src.mqtt_handler import MQTTBroadcastChannel, MQTTHandler
from src.pdu_config import MOCK_BASE_PORT


def _manager(tmp_path, **overrides):
    overrides.setdefault("mqtt_broker", "")
    config = build_config(
        pdus_file=str(tmp_path / "pdus.json"),
        settings_file=str(tmp_path / "bridge_settings.json"),
        **overrides,
    )
    return BridgeManager(config)


class TestSessionWiring:
    @pytest.mark.asyncio
    async def test_mock_mode_builds_one_session(self, tmp_path):
        manager = _manager(tmp_path, mock_mode=True, device_id="rack1")
        assert manager.mqtt is None

        manager._build_sessions()
        try:
            assert isinstance(manager.channel, LocalBroadcastChannel)
            assert len(manager.sessions) == 1
            session = manager.sessions[0]
            assert session.device_id == "rack1"
            assert session.pdu.host == "127.0.0.1"
            assert session.pdu.port == MOCK_BASE_PORT
            assert manager.web._sessions == {"rack1": session}
        finally:
            for s in manager.sessions:
                s.stop()

    @pytest.mark.asyncio
    async def test_disabled_pdu_skipped(self, tmp_path):
        (tmp_path / "pdus.json").write_text(json.dumps({"pdus": [
            {"device_id": "pdu-a", "host": "10.0.0.1"},
            {"device_id": "pdu-b", "host": "10.0.0.2", "enabled": False},
        ]}))
        manager = _manager(tmp_path)

        manager._build_sessions()
        try:
            assert [s.device_id for s in manager.sessions] == ["pdu-a"]
        finally:
            for s in manager.sessions:
                s.stop()

    def test_saved_settings_applied(self, tmp_path):
        (tmp_path / "bridge_settings.json").write_text(json.dumps({"poll_interval": 45}))
        manager = _manager(tmp_path, mock_mode=True)
        assert manager.config.poll_interval == 45.0

    def test_no_configuration_raises(self, tmp_path):
        with pytest.raises(ValueError, match="No PDU configuration found"):
            _manager(tmp_path, mock_mode=False, pdu_host="")


@patch("paho.mqtt.client.Client")
class TestMQTTWiring:
    @pytest.mark.asyncio
    async def test_sessions_registered_for_triggers(self, MockClient, tmp_path):
        manager = _manager(tmp_path, mock_mode=True, mqtt_broker="mosquitto")
        assert isinstance(manager.mqtt, MQTTHandler)

        manager._build_sessions()
        try:
            assert isinstance(manager.channel, MQTTBroadcastChannel)
            assert "pdu1" in manager.mqtt._device_callbacks
        finally:
            for s in manager.sessions:
                s.stop()

    def test_trigger_response_published(self, MockClient, tmp_path):
        manager = _manager(tmp_path, mock_mode=True)
        manager.mqtt = MagicMock()
        session = MagicMock(device_id="pdu1", last_rejection="no group named 'Nope'")
        session.trigger_group_by_name.return_value = False

        manager._handle_trigger(session, "Nope")

        session.trigger_group_by_name.assert_called_once_with("Nope")
        manager.mqtt.publish_trigger_response.assert_called_once_with(
            "Nope", False, "no group named 'Nope'", device_id="pdu1",
        )

    def test_trigger_success_has_no_error(self, MockClient, tmp_path):
        manager = _manager(tmp_path, mock_mode=True)
        manager.mqtt = MagicMock()
        session = MagicMock(device_id="pdu1")
        session.trigger_group_by_name.return_value = True

        manager._handle_trigger(session, "Lighting")

        manager.mqtt.publish_trigger_response.assert_called_once_with(
            "Lighting", True, None, device_id="pdu1",
        )

    @pytest.mark.asyncio
    async def test_state_publishes_coalesced(self, MockClient, tmp_path):
        manager = _manager(tmp_path, mock_mode=True)
        manager.mqtt = MagicMock()
        session = MagicMock(device_id="pdu1")
        session.snapshot.return_value = {"status": "Logged In"}

        manager._schedule_state_publish(session)
        manager._schedule_state_publish(session)
        manager._schedule_state_publish(session)
        await asyncio.sleep(0.35)

        manager.mqtt.publish_session_state.assert_called_once_with(
            {"status": "Logged In"}, device_id="pdu1",
        )
        assert manager._publish_handles == {}


def test_stop_before_run_is_noop(tmp_path):
    manager = _manager(tmp_path, mock_mode=True)
    manager.stop()
    assert manager._stop_event is None
