"""Base transport interface for ConvoBridge.

Transports handle the raw I/O connection lifecycle. They are responsible
for connecting, sending, receiving, and disconnecting; they know nothing
about the frames they carry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseTransport(ABC):
    """Abstract base class for transport connections.

    Transports manage the network connection to either the telephony
    provider or the conversational AI service. ``recv`` raises
    ``websockets.exceptions.ConnectionClosed`` once the peer is gone.
    """

    @abstractmethod
    async def connect(self, **kwargs) -> None:
        """Establish the transport connection.

        Args:
            **kwargs: Transport-specific connection parameters.
        """
        ...

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send data over the transport."""
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next message from the transport.

        Raises:
            ConnectionClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport connection gracefully. Safe to call twice."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...
