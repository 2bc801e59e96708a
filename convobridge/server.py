"""Built-in HTTP/WebSocket server for ConvoBridge.

Provides a FastAPI-based server with:
- ``/incoming-call``: Twilio voice webhook that stores the call record and
  answers with TwiML connecting the call to the media stream
- the media stream WebSocket endpoint, routed to the bridge
- health check and status endpoints
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any
from xml.sax.saxutils import quoteattr

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from loguru import logger
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed

from convobridge.bridge import CallBridge
from convobridge.config import BridgeConfig, load_config
from convobridge.core.events import CallLocation
from convobridge.serializers.twilio import CALLER_PARAMETER, LOCATION_PARAMETERS

# Call notification fields echoed into the stream's customParameters
STREAM_PARAMETERS = ("From", "To", "CallSid", "Direction", *LOCATION_PARAMETERS.values())


def build_twiml(stream_url: str, parameters: dict[str, str]) -> str:
    """TwiML that connects the call to a bidirectional media stream."""
    param_lines = "".join(
        f"\n            <Parameter name={quoteattr(name)} value={quoteattr(value)} />"
        for name, value in parameters.items()
        if value
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(stream_url)}>{param_lines}
        </Stream>
    </Connect>
</Response>"""


def create_app(config: BridgeConfig | dict | str, bridge: CallBridge | None = None) -> FastAPI:
    """Create a FastAPI application serving the webhook and media stream.

    Args:
        config: Bridge configuration (YAML path, dict, or BridgeConfig).
        bridge: Pre-built bridge (tests inject one with fake collaborators).
    """
    bridge_config = load_config(config)
    bridge = bridge or CallBridge(bridge_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await bridge.close()

    app = FastAPI(
        title="ConvoBridge",
        description="Twilio Media Streams to ElevenLabs Conversational AI bridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.bridge = bridge

    @app.get("/")
    async def root():
        return JSONResponse({"message": "Server is running"})

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "active_calls": bridge.sessions.active_count})

    @app.get("/status")
    async def status():
        sessions = []
        for s in bridge.sessions.all_sessions:
            sessions.append({
                "session_id": s.session_id,
                "state": s.state.value,
                "call_sid": s.call_sid,
                "stream_sid": s.stream_sid,
                "caller": s.caller_identity,
                "conversation_id": s.conversation_id,
                "duration_ms": s.duration_ms,
            })
        return JSONResponse({
            "agent_id": bridge_config.agent.agent_id,
            "active_calls": bridge.sessions.active_count,
            "sessions": sessions,
        })

    @app.api_route("/incoming-call", methods=["GET", "POST"])
    async def incoming_call(request: Request):
        params: dict[str, str] = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({k: str(v) for k, v in form.items()})

        call_details = {name: params.get(name, "") for name in STREAM_PARAMETERS}
        logger.info(f"[Twilio] Call details: {call_details}")

        call_sid = call_details["CallSid"]
        if call_sid:
            location = CallLocation(
                **{field: call_details[param] for field, param in LOCATION_PARAMETERS.items()}
            )
            try:
                await bridge.store.upsert(
                    "call_sid",
                    call_sid,
                    phone_number=call_details[CALLER_PARAMETER],
                    location=location,
                )
                logger.info(f"[Store] Call record saved for {call_sid}")
            except Exception as e:
                logger.error(f"[Store] Error saving call record {call_sid}: {e}")

        host = bridge_config.server.public_host or request.headers.get("host", "localhost")
        stream_url = f"wss://{host}{bridge_config.server.listen_path}"
        return Response(build_twiml(stream_url, call_details), media_type="text/xml")

    @app.websocket(bridge_config.server.listen_path)
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        logger.info(f"[Twilio] Media stream connected: {websocket.client}")
        await bridge.handle_connection(_FastAPIWebSocketAdapter(websocket))

    return app


class _FastAPIWebSocketAdapter:
    """Adapter to make FastAPI's WebSocket work with the transport interface."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._connected = True

    async def connect(self, **kwargs) -> None:
        pass  # Already accepted by FastAPI

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            raise ConnectionClosed(None, None)
        if isinstance(data, bytes):
            await self._ws.send_bytes(data)
        else:
            await self._ws.send_text(data)

    async def recv(self) -> bytes | str:
        if not self._connected:
            raise ConnectionClosed(None, None)
        msg: dict[str, Any] = await self._ws.receive()
        if msg["type"] == "websocket.disconnect":
            self._connected = False
            raise ConnectionClosed(None, None)
        if msg.get("text") is not None:
            return msg["text"]
        if msg.get("bytes") is not None:
            return msg["bytes"]
        raise RuntimeError(f"Unexpected WebSocket message: {msg['type']}")

    async def disconnect(self) -> None:
        was_connected, self._connected = self._connected, False
        if was_connected and self._ws.application_state is not WebSocketState.DISCONNECTED:
            try:
                await self._ws.close()
            except RuntimeError as e:
                logger.debug(f"[Twilio] WebSocket already closed: {e}")

    def is_connected(self) -> bool:
        return self._connected


def run_server(config: BridgeConfig | dict | str, host: str | None = None, port: int | None = None) -> None:
    """Run the ConvoBridge server with uvicorn.

    Args:
        config: Bridge configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    import uvicorn

    bridge_config = load_config(config)
    app = create_app(bridge_config)

    uvicorn.run(
        app,
        host=host or bridge_config.server.listen_host,
        port=port or bridge_config.server.listen_port,
        log_config=None,
    )
