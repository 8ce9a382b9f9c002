# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Byte-stream transport protocol for PDU CLI sessions.

The session never touches sockets directly. It drives a ByteTransport and
receives connect/data/closed/error/timeout events through the
TransportListener interface, which keeps the state machine testable with a
fake transport and no network.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class TransportListener(Protocol):
    """Receives transport events, always on the event loop thread."""

    def on_connected(self) -> None:
        ...

    def on_data(self, data: bytes) -> None:
        ...

    def on_closed(self) -> None:
        """Remote end closed the stream."""
        ...

    def on_error(self, detail: str) -> None:
        """Connect refused, reset, or another socket-level failure."""
        ...

    def on_timeout(self) -> None:
        """Connect or read deadline expired."""
        ...


@runtime_checkable
class ByteTransport(Protocol):
    """Protocol for an in-order, reliable byte stream to one PDU.

    Implementations: TCPTransport. Tests use an in-memory fake.
    """

    def connect(self, host: str, port: int) -> None:
        """Start connecting. Completion is reported via on_connected."""
        ...

    def disconnect(self) -> None:
        """Close the stream. A manual disconnect raises no listener event."""
        ...

    def write(self, data: bytes) -> bool:
        """Queue bytes for sending. Returns False if not connected."""
        ...

    @property
    def is_connected(self) -> bool:
        ...

    def get_health(self) -> dict:
        """Return transport health metrics."""
        ...
