# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated PDU CLI server for testing without real hardware.

Speaks the same plaintext protocol as the real unit over TCP: username and
password challenges, a Welcome banner, prompt-terminated command responses
and, optionally, a "Do you wish to continue? [y/n]" interjection before
power commands. Output can be written in small chunks to exercise framing.
"""

import asyncio
import logging
import random

from .pdu_model import (
    AUTH_FAILED_MARKER,
    CMD_SHOW_ACTIVE_POWER,
    CMD_SHOW_EXT_SENSOR_1,
    CMD_SHOW_EXT_SENSOR_2,
    CMD_SHOW_GROUPS,
    CMD_SHOW_INLETS,
    CMD_SHOW_OUTLETS,
    DEFAULT_PROMPT,
    LINE_ENDING,
    PASSWORD_CHALLENGE,
    POWER_ACTIONS,
    USERNAME_CHALLENGE,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUPS = {
    1: ("Lighting", [1, 2, 3]),
    2: ("Network", [4, 5]),
}


class MockPDU:
    """Simulates a PDU's telnet CLI.

    Every received line (credentials excluded) is recorded in ``commands``.
    """

    def __init__(self, num_outlets: int = 8,
                 groups: dict[int, tuple[str, list[int]]] | None = None,
                 username: str = "admin", password: str = "mock",
                 prompt: str = DEFAULT_PROMPT, confirm_power: bool = False,
                 chunk_size: int = 0, host: str = "127.0.0.1", port: int = 0):
        self.num_outlets = num_outlets
        self.username = username
        self.password = password
        self.prompt = prompt
        self.confirm_power = confirm_power
        self.chunk_size = chunk_size  # 0 = write each reply in one piece
        self.host = host
        self.port = port

        self.outlets: dict[int, bool] = {n: True for n in range(1, num_outlets + 1)}
        self.outlet_names: dict[int, str] = {
            n: f"Outlet {n}" for n in range(1, num_outlets + 1)
        }
        self.groups: dict[int, tuple[str, list[int]]] = dict(
            DEFAULT_GROUPS if groups is None else groups
        )
        self.commands: list[str] = []
        self.cycles: list[str] = []
        self.logins = 0
        self.failed_logins = 0

        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Listen and return the bound port."""
        self._server = await asyncio.start_server(self._handle, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Mock PDU listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        self.drop_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def drop_connections(self) -> None:
        """Close every client socket (simulates a link failure)."""
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _write(self, writer: asyncio.StreamWriter, text: str) -> None:
        data = text.encode("utf-8")
        if self.chunk_size <= 0:
            writer.write(data)
            await writer.drain()
            return
        for i in range(0, len(data), self.chunk_size):
            writer.write(data[i:i + self.chunk_size])
            await writer.drain()
            await asyncio.sleep(0.001)

    @staticmethod
    async def _readline(reader: asyncio.StreamReader) -> str | None:
        line = await reader.readline()
        if not line:
            return None
        return line.decode("utf-8", errors="replace").strip()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.add(writer)
        try:
            await self._write(writer, f"{USERNAME_CHALLENGE} ")
            user = await self._readline(reader)
            if user is None:
                return
            await self._write(writer, f"{PASSWORD_CHALLENGE} ")
            password = await self._readline(reader)
            if password is None:
                return
            if user != self.username or password != self.password:
                self.failed_logins += 1
                await self._write(writer, f"{LINE_ENDING}{AUTH_FAILED_MARKER}{LINE_ENDING}")
                return

            self.logins += 1
            await self._write(
                writer,
                f"{LINE_ENDING}Welcome to PDU CLI!{LINE_ENDING}{LINE_ENDING}{self.prompt} ",
            )
            while True:
                line = await self._readline(reader)
                if line is None:
                    return
                if not line:
                    await self._write(writer, f"{LINE_ENDING}{self.prompt} ")
                    continue
                self.commands.append(line)
                await self._execute(line, reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError):
            logger.debug("Mock PDU client went away")
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _execute(self, line: str, reader, writer) -> None:
        echo = f"{line}{LINE_ENDING}"
        apply = self._power_action(line)
        if apply is None:
            body = self.render(line)
        else:
            if self.confirm_power:
                await self._write(writer, f"{echo}Do you wish to continue? [y/n] ")
                echo = ""
                answer = await self._readline(reader)
                if answer is None:
                    return
                self.commands.append(answer)
                if answer.lower() != "y":
                    await self._write(
                        writer,
                        f"{answer}{LINE_ENDING}Operation cancelled.{LINE_ENDING}"
                        f"{LINE_ENDING}{self.prompt} ",
                    )
                    return
            body = apply()
        await self._write(writer, f"{echo}{body}{LINE_ENDING}{LINE_ENDING}{self.prompt} ")

    # ------------------------------------------------------------------
    # Command rendering
    # ------------------------------------------------------------------

    def _power_action(self, line: str):
        """Return a callable applying a valid power command, else None."""
        parts = line.split()
        if len(parts) != 4 or parts[0] != "power" or parts[3] not in POWER_ACTIONS:
            return None
        try:
            index = int(parts[2])
        except ValueError:
            return None
        action = parts[3]
        if parts[1] == "outlets" and index in self.outlets:
            return lambda: self._apply_outlet(index, action)
        if parts[1] == "outletgroup" and index in self.groups:
            return lambda: self._apply_group(index, action)
        return None

    def _apply_outlet(self, index: int, action: str) -> str:
        if action == "cycle":
            self.cycles.append(f"outlet {index}")
        self.outlets[index] = action != "off"
        return self._outlet_entry(index)

    def _apply_group(self, index: int, action: str) -> str:
        _name, members = self.groups[index]
        if action == "cycle":
            self.cycles.append(f"group {index}")
        for n in members:
            if n in self.outlets:
                self.outlets[n] = action != "off"
        return self._group_entry(index)

    def _outlet_entry(self, n: int) -> str:
        state = "On" if self.outlets[n] else "Off"
        return f"Outlet {n} - {self.outlet_names[n]}:{LINE_ENDING}Power state: {state}"

    def _group_entry(self, g: int) -> str:
        name, members = self.groups[g]
        lines = [f"Outlet Group {g} - {name}:"]
        on = off = 0
        for n in members:
            powered = self.outlets.get(n, False)
            on += powered
            off += not powered
            lines.append(f"  Outlet {n} - {self.outlet_names.get(n, '')}: "
                         f"{'On' if powered else 'Off'}")
        lines.append(f"State: {on} on {off} off")
        return LINE_ENDING.join(lines)

    def render(self, line: str) -> str:
        if line == CMD_SHOW_INLETS:
            current = 2.5 + random.uniform(-0.5, 0.5)
            return (f"Inlet I1:{LINE_ENDING}RMS Current: {current:.2f} A"
                    f"{LINE_ENDING}RMS Voltage: 230.0 V")
        if line == CMD_SHOW_EXT_SENSOR_1:
            return f"External Sensor 1 (Temperature):{LINE_ENDING}Reading: 22.10 deg C"
        if line == CMD_SHOW_EXT_SENSOR_2:
            return f"External Sensor 2 (Humidity):{LINE_ENDING}Reading: 45 %"
        if line == CMD_SHOW_ACTIVE_POWER:
            power = sum(self.outlets.values()) * 55.0
            return f"Inlet I1 Active Power:{LINE_ENDING}Reading: {power:.2f} W"
        if line == CMD_SHOW_OUTLETS:
            return LINE_ENDING.join(self._outlet_entry(n) for n in sorted(self.outlets))
        if line.startswith(CMD_SHOW_GROUPS):
            if not self.groups:
                return "No outlet groups defined."
            return LINE_ENDING.join(self._group_entry(g) for g in sorted(self.groups))
        return f"Error: Invalid command: {line}"
