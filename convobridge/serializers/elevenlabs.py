"""ElevenLabs Conversational AI WebSocket serializer.

Translates between the ElevenLabs ConvAI socket protocol and ConvoBridge's
event model. Every inbound frame is a JSON object discriminated by its
``type`` field, with the event body nested under ``<type>_event``.

Protocol reference:
    https://elevenlabs.io/docs/conversational-ai/api-reference/conversational-ai/websocket
"""

from __future__ import annotations

import json

from loguru import logger

from convobridge.core.errors import DecodeError
from convobridge.core.events import (
    AgentAudio,
    AgentText,
    AnyEvent,
    ConversationInitiated,
    Interruption,
    Ping,
    Pong,
    UserAudioChunk,
)
from convobridge.serializers.base import BaseSerializer

# High-frequency diagnostics the agent emits; never worth a log line
_SILENT_TYPES = frozenset({
    "internal_vad_score",
    "internal_turn_probability",
    "internal_tentative_agent_response",
    "vad_score",
})

# type -> (event key, text key, role)
_TEXT_TYPES: dict[str, tuple[str, str, str]] = {
    "agent_response": ("agent_response_event", "agent_response", "agent"),
    "user_transcript": ("user_transcription_event", "user_transcript", "user"),
    "agent_response_correction": (
        "agent_response_correction_event",
        "corrected_agent_response",
        "agent",
    ),
}


class ElevenLabsSerializer(BaseSerializer):
    """Serializer for the ElevenLabs Conversational AI socket."""

    @property
    def name(self) -> str:
        return "elevenlabs"

    # ------------------------------------------------------------------
    # Deserialization (ElevenLabs -> ConvoBridge events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        msg = self._parse_message(raw)
        msg_type = msg.get("type", "")

        if msg_type == "conversation_initiation_metadata":
            body = self._require(
                msg,
                "conversation_initiation_metadata_event",
                msg,
                "conversation_initiation_metadata_event",
            )
            conversation_id = self._require(
                body, "conversation_id", msg,
                "conversation_initiation_metadata_event.conversation_id",
            )
            return [
                ConversationInitiated(
                    conversation_id=str(conversation_id),
                    agent_output_audio_format=str(body.get("agent_output_audio_format", "") or ""),
                    user_input_audio_format=str(body.get("user_input_audio_format", "") or ""),
                )
            ]

        if msg_type == "audio":
            body = self._require(msg, "audio_event", msg, "audio_event")
            payload = self._require(body, "audio_base_64", msg, "audio_event.audio_base_64")
            return [
                AgentAudio(
                    payload=self._check_base64(payload, msg, "audio_event.audio_base_64"),
                    event_id=self._optional_int(body.get("event_id"), msg),
                )
            ]

        if msg_type in _TEXT_TYPES:
            event_key, text_key, role = _TEXT_TYPES[msg_type]
            body = msg.get(event_key) or {}
            return [AgentText(role=role, content=str(body.get(text_key, "") or ""))]

        if msg_type == "interruption":
            body = msg.get("interruption_event") or {}
            return [Interruption(event_id=self._optional_int(body.get("event_id"), msg))]

        if msg_type == "ping":
            body = self._require(msg, "ping_event", msg, "ping_event")
            event_id = self._require(body, "event_id", msg, "ping_event.event_id")
            return [
                Ping(
                    event_id=self._optional_int(event_id, msg),
                    ping_ms=self._optional_int(body.get("ping_ms"), msg),
                )
            ]

        if msg_type not in _SILENT_TYPES:
            logger.debug(f"[ConvAI] Received unhandled message type: {msg_type!r}")
        return []

    # ------------------------------------------------------------------
    # Serialization (ConvoBridge events -> ElevenLabs wire format)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to an ElevenLabs client message.

        Supported outbound events:
            * :class:`UserAudioChunk` -- ``{"user_audio_chunk": <base64>}``.
            * :class:`Pong` -- ``{"type": "pong", "event_id": <id>}``.
        """
        if isinstance(event, UserAudioChunk):
            return json.dumps({"user_audio_chunk": event.payload})

        if isinstance(event, Pong):
            return json.dumps({"type": "pong", "event_id": event.event_id})

        return None

    @staticmethod
    def _optional_int(value, msg: dict) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Expected an integer event id, got {value!r}", msg) from e
