# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- multi-PDU telnet CLI bridge.

Architecture
------------
BridgeManager   -- orchestrates shared services (MQTT, broadcast channel, web)
                   and runs one PDUSession per configured device.
PDUSession      -- handles a SINGLE PDU: login handshake, command queue,
                   confirmations, polling, reconnects.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys
import time

from .broadcast import BroadcastChannel, LocalBroadcastChannel
from .config import Config, ConfigError
from .mock_pdu import MockPDU
from .mqtt_handler import MQTTBroadcastChannel, MQTTHandler
from .pdu_config import load_pdu_configs
from .session import PDUSession
from .web import RingBufferHandler, WebServer

logger = logging.getLogger("pdu_bridge")

STATE_PUBLISH_DELAY = 0.25


class BridgeManager:
    """Top-level orchestrator.

    Creates the shared MQTTHandler (when a broker is configured), the
    broadcast channel and the WebServer, then starts one PDUSession per
    enabled PDU.
    """

    def __init__(self, config: Config | None = None):
        self.config = config or Config()
        self.config.load_saved_settings(self.config.settings_file)
        self._running = False
        self._start_time = time.time()
        self._stop_event: asyncio.Event | None = None

        # Shared services
        self.mqtt = MQTTHandler(self.config) if self.config.mqtt_broker else None

        self._pdu_configs = load_pdu_configs(
            pdus_file=self.config.pdus_file,
            env_host=self.config.pdu_host,
            env_port=self.config.pdu_port,
            env_username=self.config.pdu_username,
            env_password=self.config.pdu_password,
            env_prompt=self.config.pdu_prompt,
            env_device_id=self.config.device_id,
            mock_mode=self.config.mock_mode,
        )

        self.web = WebServer(self.config.web_port, mqtt=self.mqtt, config=self.config)
        self.web.set_bridge_version(__version__)
        self.web.set_start_time(self._start_time)

        self.channel: BroadcastChannel | None = None
        self.sessions: list[PDUSession] = []
        self.mocks: list[MockPDU] = []
        self._publish_handles: dict[str, asyncio.TimerHandle] = {}

        logger.info(
            "BridgeManager: %d PDU(s) configured, mqtt=%s, mock=%s",
            len(self._pdu_configs), self.config.mqtt_broker or "off",
            self.config.mock_mode,
        )

    # ------------------------------------------------------------------
    # Session wiring
    # ------------------------------------------------------------------

    def _build_sessions(self) -> None:
        if self.mqtt is not None:
            self.channel = MQTTBroadcastChannel(self.mqtt)
        else:
            self.channel = LocalBroadcastChannel()

        for pdu_cfg in self._pdu_configs:
            if not pdu_cfg.enabled:
                logger.info("Skipping disabled PDU: %s", pdu_cfg.device_id)
                continue
            session = PDUSession(pdu_cfg, self.config, channel=self.channel)
            self.sessions.append(session)
            self.web.register_session(session)
            if self.mqtt is not None:
                self.mqtt.register_device(
                    session.device_id,
                    lambda name, s=session: self._handle_trigger(s, name),
                )
                session.controls.add_listener(
                    lambda _what, s=session: self._schedule_state_publish(s)
                )

    def _handle_trigger(self, session: PDUSession, name: str) -> None:
        ok = session.trigger_group_by_name(name)
        if self.mqtt is not None:
            self.mqtt.publish_trigger_response(
                name, ok, None if ok else session.last_rejection,
                device_id=session.device_id,
            )

    def _schedule_state_publish(self, session: PDUSession) -> None:
        """Coalesce bursts of control changes into one retained publish."""
        if session.device_id in self._publish_handles:
            return
        loop = asyncio.get_running_loop()
        self._publish_handles[session.device_id] = loop.call_later(
            STATE_PUBLISH_DELAY, self._publish_state, session
        )

    def _publish_state(self, session: PDUSession) -> None:
        self._publish_handles.pop(session.device_id, None)
        if self.mqtt is None:
            return
        try:
            self.mqtt.publish_session_state(session.snapshot(), device_id=session.device_id)
        except Exception:
            logger.exception("[%s] Failed to publish state", session.device_id)

    async def _start_mocks(self) -> None:
        for pdu_cfg in self._pdu_configs:
            if not pdu_cfg.enabled:
                continue
            mock = MockPDU(
                username=pdu_cfg.username, password=pdu_cfg.password,
                prompt=pdu_cfg.prompt, host=pdu_cfg.host, port=pdu_cfg.port,
            )
            await mock.start()
            self.mocks.append(mock)
            logger.info("[%s] Mock PDU serving on %s:%d",
                        pdu_cfg.device_id, pdu_cfg.host, mock.port)

    # ------------------------------------------------------------------
    # Run / stop
    # ------------------------------------------------------------------

    async def run(self):
        """Start MQTT, mock servers, web API and sessions; wait for stop()."""
        self._running = True
        self._stop_event = asyncio.Event()

        if self.mqtt is not None:
            self.mqtt.connect()

        if self.config.mock_mode:
            await self._start_mocks()

        self._build_sessions()
        await self.web.start()

        # Staggered starts (~100ms apart)
        for i, session in enumerate(self.sessions):
            if i > 0:
                await asyncio.sleep(0.1)
            session.start()
            logger.info("Started session for %s (%d/%d)",
                        session.device_id, i + 1, len(self.sessions))

        await self._stop_event.wait()
        await self._async_stop()

    async def _async_stop(self):
        for session in self.sessions:
            session.stop()
        for handle in self._publish_handles.values():
            handle.cancel()
        self._publish_handles.clear()
        for mock in self.mocks:
            await mock.stop()
        await self.web.stop()
        if self.mqtt is not None:
            self.mqtt.disconnect()

    def stop(self):
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Set up ring buffer for web log viewer
    log_buffer = RingBufferHandler(1000)
    log_buffer.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(log_buffer)

    try:
        manager = BridgeManager(config)
    except ValueError as e:
        logger.error("%s", e)
        sys.exit(1)
    manager.web.set_log_buffer(log_buffer)

    loop = asyncio.new_event_loop()

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(manager.stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
        logger.info("Bridge stopped.")


if __name__ == "__main__":
    main()
