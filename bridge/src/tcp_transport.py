# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Raw TCP transport for the PDU telnet CLI.

Uses asyncio streams. ``connect()`` returns immediately and a background
task owns the socket: it reports the connection, feeds every received chunk
to the listener, and reports how the stream ended. Listener callbacks run on
the event loop, so the session state is only ever touched from one thread.
"""

import asyncio
import logging
import time

from .transport import TransportListener

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class TCPTransport:
    """Event-driven TCP byte stream with connect and idle-read timeouts.

    Provides health tracking in the same shape as the other bridge clients.
    """

    def __init__(self, listener: TransportListener, connect_timeout: float = 10.0,
                 read_timeout: float = 0.0, label: str = "pdu"):
        self._listener = listener
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout  # 0 = no idle timeout
        self._label = label

        self._host = ""
        self._port = 0
        self._task: asyncio.Task | None = None
        self._writer: asyncio.StreamWriter | None = None

        # Health tracking
        self._bytes_in = 0
        self._bytes_out = 0
        self._connects = 0
        self._failures = 0
        self._consecutive_failures = 0
        self._last_connect_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def get_health(self) -> dict:
        return {
            "host": self._host,
            "port": self._port,
            "connected": self.is_connected,
            "connects": self._connects,
            "failures": self._failures,
            "consecutive_failures": self._consecutive_failures,
            "bytes_in": self._bytes_in,
            "bytes_out": self._bytes_out,
            "last_connect": self._last_connect_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
        }

    def _record_success(self):
        self._connects += 1
        self._consecutive_failures = 0
        self._last_connect_time = time.time()

    def _record_failure(self, msg: str):
        self._failures += 1
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        if self._consecutive_failures == 1:
            logger.warning("[%s] TCP: %s", self._label, msg)
        elif self._consecutive_failures <= 5:
            logger.error("[%s] TCP: %s (failure %d)", self._label, msg,
                         self._consecutive_failures)
        elif self._consecutive_failures % 30 == 0:
            logger.error(
                "[%s] TCP: unreachable for %d consecutive failures: %s",
                self._label, self._consecutive_failures, msg,
            )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, host: str, port: int) -> None:
        self.disconnect()
        self._host = host
        self._port = port
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(
            self._run(host, port), name=f"tcp-{self._label}"
        )

    def disconnect(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._close_writer()

    def write(self, data: bytes) -> bool:
        if not self.is_connected:
            return False
        try:
            self._writer.write(data)
        except (OSError, RuntimeError) as e:
            self._record_failure(f"write failed: {e}")
            return False
        self._bytes_out += len(data)
        return True

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except Exception:
                logger.debug("[%s] Error closing TCP writer", self._label, exc_info=True)

    async def _run(self, host: str, port: int) -> None:
        logger.info("[%s] Connecting to %s:%d", self._label, host, port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(f"connect to {host}:{port} timed out")
            self._notify("on_timeout")
            return
        except OSError as e:
            self._record_failure(f"connect to {host}:{port} failed: {e}")
            self._notify("on_error", str(e) or e.__class__.__name__)
            return

        self._writer = writer
        self._record_success()
        logger.info("[%s] TCP connected to %s:%d", self._label, host, port)
        self._notify("on_connected")

        try:
            while True:
                if self._read_timeout > 0:
                    data = await asyncio.wait_for(
                        reader.read(READ_CHUNK), timeout=self._read_timeout
                    )
                else:
                    data = await reader.read(READ_CHUNK)
                if not data:
                    logger.info("[%s] Remote closed connection", self._label)
                    self._close_writer()
                    self._notify("on_closed")
                    return
                self._bytes_in += len(data)
                self._notify("on_data", data)
        except asyncio.TimeoutError:
            self._record_failure(f"no data for {self._read_timeout:.1f}s")
            self._close_writer()
            self._notify("on_timeout")
        except OSError as e:
            self._record_failure(f"read failed: {e}")
            self._close_writer()
            self._notify("on_error", str(e) or e.__class__.__name__)
        except asyncio.CancelledError:
            self._close_writer()
            raise

    def _notify(self, event: str, *args) -> None:
        try:
            getattr(self._listener, event)(*args)
        except Exception:
            logger.exception("[%s] Listener %s handler failed", self._label, event)
