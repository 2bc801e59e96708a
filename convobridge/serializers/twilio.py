"""Twilio Media Streams WebSocket serializer.

Translates between Twilio's Media Streams WebSocket protocol and
ConvoBridge's event model. Audio arrives and leaves as base64-encoded
mu-law at 8kHz; the payload text is passed through untouched.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from convobridge.core.events import (
    AnyEvent,
    CallLocation,
    ClearPlayback,
    MarkReceived,
    MediaReceived,
    OutboundMedia,
    StreamStarted,
    StreamStopped,
)
from convobridge.serializers.base import BaseSerializer

# Call notification fields echoed back as <Parameter> values in the TwiML
CALLER_PARAMETER = "From"
LOCATION_PARAMETERS = {
    "city": "FromCity",
    "state": "FromState",
    "zip": "FromZip",
    "country": "FromCountry",
}


class TwilioSerializer(BaseSerializer):
    """Serializer for the Twilio Media Streams WebSocket protocol.

    Twilio sends JSON messages with an ``event`` field that indicates the
    message type. The caller's number is not part of the stream metadata,
    so the incoming-call webhook echoes it (and the location fields) as
    stream ``customParameters``, which this serializer lifts back out.
    """

    @property
    def name(self) -> str:
        return "twilio"

    # ------------------------------------------------------------------
    # Deserialization (Twilio -> ConvoBridge events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a Twilio Media Streams message into events.

        Message types handled:
            * ``connected`` -- initial handshake acknowledgement (ignored).
            * ``start``     -- stream metadata; produces :class:`StreamStarted`.
            * ``media``     -- audio payload; produces :class:`MediaReceived`.
            * ``mark``      -- playback checkpoint; produces :class:`MarkReceived`.
            * ``stop``      -- stream ended; produces :class:`StreamStopped`.

        Anything else is logged and ignored.
        """
        msg = self._parse_message(raw)
        event_type = msg.get("event", "")

        if event_type == "connected":
            return []

        if event_type == "start":
            return self._handle_start(msg)

        if event_type == "media":
            return self._handle_media(msg)

        if event_type == "mark":
            mark_data = msg.get("mark") or {}
            return [MarkReceived(name=str(mark_data.get("name", "")))]

        if event_type == "stop":
            return [StreamStopped()]

        logger.debug(f"[Twilio] Received unhandled event: {event_type!r}")
        return []

    # ------------------------------------------------------------------
    # Serialization (ConvoBridge events -> Twilio wire format)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to a Twilio Media Streams message.

        Supported outbound events:
            * :class:`OutboundMedia` -- a ``media`` message tagged with the
              stream SID.
            * :class:`ClearPlayback` -- a ``clear`` message.

        Returns ``None`` for event types that Twilio does not accept.
        """
        if isinstance(event, OutboundMedia):
            return json.dumps(
                {
                    "event": "media",
                    "streamSid": event.stream_sid,
                    "media": {
                        "payload": event.payload,
                    },
                }
            )

        if isinstance(event, ClearPlayback):
            return json.dumps(
                {
                    "event": "clear",
                    "streamSid": event.stream_sid,
                }
            )

        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_start(self, msg: dict) -> list[AnyEvent]:
        """Process a Twilio ``start`` message."""
        start_data = self._require(msg, "start", msg, "start")
        stream_sid = self._require(start_data, "streamSid", msg, "start.streamSid")

        custom_params: dict[str, Any] = start_data.get("customParameters") or {}
        location = CallLocation(
            **{
                field: str(custom_params.get(param, "") or "")
                for field, param in LOCATION_PARAMETERS.items()
            }
        )

        return [
            StreamStarted(
                stream_sid=str(stream_sid),
                call_sid=str(start_data.get("callSid", "") or ""),
                caller_identity=str(custom_params.get(CALLER_PARAMETER, "") or ""),
                custom_parameters=custom_params,
                location=location,
            )
        ]

    def _handle_media(self, msg: dict) -> list[AnyEvent]:
        """Process a Twilio ``media`` message."""
        media_data = self._require(msg, "media", msg, "media")
        payload = self._require(media_data, "payload", msg, "media.payload")
        return [MediaReceived(payload=self._check_base64(payload, msg, "media.payload"))]
