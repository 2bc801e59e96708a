"""WebSocket transport for ConvoBridge.

Provides both client (outbound, to the conversational AI service) and
server (inbound, from the telephony provider) WebSocket transports using
the ``websockets`` library with asyncio.
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import urlencode

import websockets.asyncio.client
import websockets.asyncio.server
from loguru import logger
from websockets.exceptions import WebSocketException
from websockets.protocol import State

from convobridge.core.errors import UpstreamConnectError
from convobridge.transports.base import BaseTransport


def build_url(url: str, params: dict[str, str] | None = None) -> str:
    """Append query parameters to a WebSocket URL, skipping empty values."""
    query = {k: v for k, v in (params or {}).items() if v}
    if not query:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(query)}"


class WebSocketClientTransport(BaseTransport):
    """WebSocket client transport for connecting to a remote endpoint.

    Used for the upstream connection: ConvoBridge connects as a client to
    the conversational AI service, once per call.
    """

    def __init__(
        self,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
        **ws_kwargs: Any,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._connect_timeout = connect_timeout
        self._ws: Any | None = None
        self._ws_kwargs = ws_kwargs

    @property
    def url(self) -> str | None:
        return self._url

    async def connect(self, **kwargs) -> None:
        """Open the socket.

        Keyword Args:
            url: Override the URL given at construction.
            params: Query parameters appended to the URL.

        Raises:
            UpstreamConnectError: The handshake failed or timed out.
        """
        url = kwargs.get("url", self._url)
        if not url:
            raise ValueError("WebSocket URL is required")
        url = build_url(url, kwargs.get("params"))
        self._url = url
        logger.info(f"Connecting to WebSocket: {url.split('?')[0]}")
        try:
            self._ws = await asyncio.wait_for(
                websockets.asyncio.client.connect(
                    url,
                    additional_headers=self._headers or None,
                    **self._ws_kwargs,
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamConnectError(
                f"Timed out after {self._connect_timeout}s connecting to {url.split('?')[0]}"
            ) from e
        except (OSError, WebSocketException) as e:
            raise UpstreamConnectError(f"Could not connect to {url.split('?')[0]}: {e}") from e
        logger.info(f"Connected to {url.split('?')[0]}")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise RuntimeError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise RuntimeError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            ws, self._ws = self._ws, None
            await ws.close()
            logger.info("WebSocket client disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class WebSocketServerTransport(BaseTransport):
    """WebSocket server transport that wraps an already-accepted connection.

    Used for the downstream connection: the telephony provider connects to
    ConvoBridge's server, and this transport wraps that accepted WebSocket.
    """

    def __init__(self, websocket: Any = None) -> None:
        self._ws = websocket

    async def connect(self, **kwargs) -> None:
        ws = kwargs.get("websocket")
        if ws:
            self._ws = ws
        if not self._ws:
            raise ValueError("An accepted WebSocket connection is required")
        logger.info("Telephony WebSocket connection accepted")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise RuntimeError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise RuntimeError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing telephony WebSocket: {e}")
            logger.info("Telephony WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class WebSocketServer:
    """Standalone WebSocket server that accepts telephony connections.

    Runs a ``websockets`` server and dispatches each new connection to a
    handler callback. The callback receives a ``WebSocketServerTransport``
    wrapping the accepted connection.

    Usage:
        async def on_connection(transport: WebSocketServerTransport):
            ...

        server = WebSocketServer(host="0.0.0.0", port=8000, handler=on_connection)
        await server.serve_forever()
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8000,
        path: str = "/",
        handler=None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self._handler = handler
        self._server: Any = None

    async def _ws_handler(self, websocket) -> None:
        """Internal handler for each accepted WebSocket connection."""
        if self.path and self.path != "/":
            request = getattr(websocket, "request", None)
            request_path = getattr(request, "path", "/") or "/"
            if not request_path.startswith(self.path):
                logger.warning(f"Rejected connection to {request_path} (expected {self.path})")
                return

        transport = WebSocketServerTransport(websocket=websocket)
        if self._handler:
            try:
                await self._handler(transport)
            except Exception as e:
                logger.error(f"Handler error: {e}")
        else:
            logger.warning("No handler registered for incoming connections")

    async def start(self) -> None:
        """Start the WebSocket server."""
        logger.info(f"Starting WebSocket server on {self.host}:{self.port}{self.path}")
        self._server = await websockets.asyncio.server.serve(
            self._ws_handler,
            self.host,
            self.port,
        )
        logger.info(f"WebSocket server listening on ws://{self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket server stopped")

    async def serve_forever(self) -> None:
        """Start and run the server until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        except asyncio.CancelledError:
            await self.stop()
