"""Tests for the Twilio and ElevenLabs serializers."""

import json

import pytest

from convobridge.core.errors import DecodeError
from convobridge.core.events import (
    AgentAudio,
    AgentText,
    ClearPlayback,
    ConversationInitiated,
    EventType,
    Interruption,
    MarkReceived,
    MediaReceived,
    OutboundMedia,
    Ping,
    Pong,
    StreamStarted,
    StreamStopped,
    UserAudioChunk,
)
from convobridge.serializers.elevenlabs import ElevenLabsSerializer
from convobridge.serializers.twilio import TwilioSerializer


class TestTwilioSerializer:

    @pytest.fixture
    def serializer(self):
        return TwilioSerializer()

    @pytest.mark.asyncio
    async def test_connected_event(self, serializer):
        events = await serializer.deserialize(json.dumps({"event": "connected", "protocol": "Call"}))
        assert events == []

    @pytest.mark.asyncio
    async def test_start_event(self, serializer):
        msg = {
            "event": "start",
            "start": {
                "streamSid": "MZ123",
                "callSid": "CA456",
                "customParameters": {
                    "From": "+15551234567",
                    "FromCity": "Austin",
                    "FromState": "TX",
                    "FromZip": "73301",
                    "FromCountry": "US",
                },
            },
        }
        events = await serializer.deserialize(json.dumps(msg))
        assert len(events) == 1
        start = events[0]
        assert isinstance(start, StreamStarted)
        assert start.stream_sid == "MZ123"
        assert start.call_sid == "CA456"
        assert start.caller_identity == "+15551234567"
        assert start.location.city == "Austin"
        assert start.location.country == "US"
        assert start.custom_parameters["FromState"] == "TX"

    @pytest.mark.asyncio
    async def test_start_without_custom_parameters(self, serializer):
        events = await serializer.deserialize({"event": "start", "start": {"streamSid": "S1"}})
        assert events[0].caller_identity == ""
        assert events[0].location.is_empty

    @pytest.mark.asyncio
    async def test_start_without_stream_sid_fails(self, serializer):
        with pytest.raises(DecodeError, match="start.streamSid"):
            await serializer.deserialize({"event": "start", "start": {"callSid": "CA1"}})

    @pytest.mark.asyncio
    async def test_media_event(self, serializer):
        events = await serializer.deserialize(
            json.dumps({"event": "media", "streamSid": "S1", "media": {"payload": "AAAA"}})
        )
        assert len(events) == 1
        assert isinstance(events[0], MediaReceived)
        assert events[0].payload == "AAAA"

    @pytest.mark.asyncio
    async def test_media_without_payload_fails(self, serializer):
        with pytest.raises(DecodeError):
            await serializer.deserialize({"event": "media", "media": {}})

    @pytest.mark.asyncio
    async def test_media_with_invalid_base64_fails(self, serializer):
        with pytest.raises(DecodeError, match="base64"):
            await serializer.deserialize({"event": "media", "media": {"payload": "not base64!"}})

    @pytest.mark.asyncio
    async def test_mark_event(self, serializer):
        events = await serializer.deserialize({"event": "mark", "mark": {"name": "turn-1"}})
        assert isinstance(events[0], MarkReceived)
        assert events[0].name == "turn-1"

    @pytest.mark.asyncio
    async def test_stop_event(self, serializer):
        events = await serializer.deserialize(json.dumps({"event": "stop", "stop": {}}))
        assert len(events) == 1
        assert isinstance(events[0], StreamStopped)

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, serializer):
        assert await serializer.deserialize({"event": "dtmf", "dtmf": {"digit": "1"}}) == []

    @pytest.mark.asyncio
    async def test_not_json_fails(self, serializer):
        with pytest.raises(DecodeError) as exc_info:
            await serializer.deserialize("{not json")
        assert exc_info.value.preview == "{not json"

    @pytest.mark.asyncio
    async def test_non_object_fails(self, serializer):
        with pytest.raises(DecodeError):
            await serializer.deserialize("[1, 2]")

    @pytest.mark.asyncio
    async def test_bytes_frame(self, serializer):
        events = await serializer.deserialize(b'{"event": "stop"}')
        assert isinstance(events[0], StreamStopped)

    @pytest.mark.asyncio
    async def test_serialize_media(self, serializer):
        raw = await serializer.serialize(OutboundMedia(stream_sid="S1", payload="BBBB"))
        assert json.loads(raw) == {"event": "media", "streamSid": "S1", "media": {"payload": "BBBB"}}

    @pytest.mark.asyncio
    async def test_serialize_clear(self, serializer):
        raw = await serializer.serialize(ClearPlayback(stream_sid="S1"))
        assert json.loads(raw) == {"event": "clear", "streamSid": "S1"}

    @pytest.mark.asyncio
    async def test_serialize_unsupported_returns_none(self, serializer):
        assert await serializer.serialize(Pong(event_id=1)) is None

    def test_properties(self, serializer):
        assert serializer.name == "twilio"


class TestElevenLabsSerializer:

    @pytest.fixture
    def serializer(self):
        return ElevenLabsSerializer()

    @pytest.mark.asyncio
    async def test_conversation_initiation(self, serializer):
        msg = {
            "type": "conversation_initiation_metadata",
            "conversation_initiation_metadata_event": {
                "conversation_id": "C1",
                "agent_output_audio_format": "ulaw_8000",
                "user_input_audio_format": "ulaw_8000",
            },
        }
        events = await serializer.deserialize(json.dumps(msg))
        assert len(events) == 1
        assert isinstance(events[0], ConversationInitiated)
        assert events[0].conversation_id == "C1"
        assert events[0].agent_output_audio_format == "ulaw_8000"

    @pytest.mark.asyncio
    async def test_initiation_without_conversation_id_fails(self, serializer):
        msg = {"type": "conversation_initiation_metadata", "conversation_initiation_metadata_event": {}}
        with pytest.raises(DecodeError, match="conversation_id"):
            await serializer.deserialize(msg)

    @pytest.mark.asyncio
    async def test_audio(self, serializer):
        events = await serializer.deserialize(
            {"type": "audio", "audio_event": {"audio_base_64": "BBBB", "event_id": 3}}
        )
        assert isinstance(events[0], AgentAudio)
        assert events[0].payload == "BBBB"
        assert events[0].event_id == 3

    @pytest.mark.asyncio
    async def test_audio_without_payload_fails(self, serializer):
        with pytest.raises(DecodeError, match="audio_base_64"):
            await serializer.deserialize({"type": "audio", "audio_event": {"event_id": 1}})

    @pytest.mark.asyncio
    async def test_interruption(self, serializer):
        events = await serializer.deserialize(
            {"type": "interruption", "interruption_event": {"event_id": 7}}
        )
        assert isinstance(events[0], Interruption)
        assert events[0].event_id == 7

    @pytest.mark.asyncio
    async def test_ping(self, serializer):
        events = await serializer.deserialize(
            {"type": "ping", "ping_event": {"event_id": 42, "ping_ms": 15}}
        )
        assert isinstance(events[0], Ping)
        assert events[0].event_id == 42
        assert events[0].ping_ms == 15

    @pytest.mark.asyncio
    async def test_ping_without_event_id_fails(self, serializer):
        with pytest.raises(DecodeError):
            await serializer.deserialize({"type": "ping", "ping_event": {}})

    @pytest.mark.asyncio
    async def test_ping_with_non_integer_event_id_fails(self, serializer):
        with pytest.raises(DecodeError):
            await serializer.deserialize({"type": "ping", "ping_event": {"event_id": "abc"}})

    @pytest.mark.asyncio
    async def test_text_events(self, serializer):
        agent = await serializer.deserialize(
            {"type": "agent_response", "agent_response_event": {"agent_response": "Hello"}}
        )
        user = await serializer.deserialize(
            {"type": "user_transcript", "user_transcription_event": {"user_transcript": "Hi"}}
        )
        assert isinstance(agent[0], AgentText)
        assert agent[0].role == "agent"
        assert agent[0].content == "Hello"
        assert user[0].role == "user"
        assert user[0].content == "Hi"

    @pytest.mark.asyncio
    async def test_unknown_and_diagnostic_types_ignored(self, serializer):
        assert await serializer.deserialize({"type": "vad_score", "vad_score_event": {}}) == []
        assert await serializer.deserialize({"type": "something_new"}) == []

    @pytest.mark.asyncio
    async def test_serialize_user_audio(self, serializer):
        raw = await serializer.serialize(UserAudioChunk(payload="AAAA"))
        assert json.loads(raw) == {"user_audio_chunk": "AAAA"}

    @pytest.mark.asyncio
    async def test_serialize_pong(self, serializer):
        raw = await serializer.serialize(Pong(event_id=42))
        assert json.loads(raw) == {"type": "pong", "event_id": 42}

    @pytest.mark.asyncio
    async def test_serialize_unsupported_returns_none(self, serializer):
        assert await serializer.serialize(ClearPlayback(stream_sid="S1")) is None

    def test_properties(self, serializer):
        assert serializer.name == "elevenlabs"


class TestEvents:

    def test_event_types(self):
        assert StreamStarted(stream_sid="S1").event_type == EventType.STREAM_STARTED
        assert Pong(event_id=1).event_type == EventType.PONG

    def test_location_is_empty(self):
        started = StreamStarted(stream_sid="S1")
        assert started.location.is_empty
        started.location.city = "Austin"
        assert not started.location.is_empty

    def test_decode_error_preview_truncates(self):
        err = DecodeError("bad", "x" * 500)
        assert len(err.preview) == 100
        assert DecodeError("bad").preview == ""
