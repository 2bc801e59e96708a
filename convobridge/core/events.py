"""Typed event model for ConvoBridge.

The bridge speaks two unrelated wire vocabularies: the telephony media
stream (downstream) and the conversational AI socket (upstream). Each
serializer turns its provider's JSON frames into these models and back, so
neither side's field names leak into the relay logic.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    # Downstream (telephony) inbound
    STREAM_STARTED = "stream_started"
    MEDIA_RECEIVED = "media_received"
    STREAM_STOPPED = "stream_stopped"
    MARK_RECEIVED = "mark_received"
    # Downstream outbound
    OUTBOUND_MEDIA = "outbound_media"
    CLEAR_PLAYBACK = "clear_playback"
    # Upstream (AI) inbound
    CONVERSATION_INITIATED = "conversation_initiated"
    AGENT_AUDIO = "agent_audio"
    AGENT_TEXT = "agent_text"
    INTERRUPTION = "interruption"
    PING = "ping"
    # Upstream outbound
    USER_AUDIO_CHUNK = "user_audio_chunk"
    PONG = "pong"


class Event(BaseModel):
    """Base event that all ConvoBridge events inherit from."""

    event_type: EventType
    timestamp: float = Field(default_factory=time.time)


class CallLocation(BaseModel):
    """Caller location as reported by the telephony provider."""

    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.city or self.state or self.zip or self.country)


# ---------------------------------------------------------------------------
# Downstream (telephony) events
# ---------------------------------------------------------------------------


class StreamStarted(Event):
    """The telephony side started a media stream for a call."""

    event_type: EventType = EventType.STREAM_STARTED
    stream_sid: str
    call_sid: str = ""
    caller_identity: str = ""
    custom_parameters: dict[str, Any] = Field(default_factory=dict)
    location: CallLocation = Field(default_factory=CallLocation)


class MediaReceived(Event):
    """A chunk of caller audio, still base64 encoded."""

    event_type: EventType = EventType.MEDIA_RECEIVED
    payload: str


class StreamStopped(Event):
    """The telephony side ended the media stream."""

    event_type: EventType = EventType.STREAM_STOPPED


class MarkReceived(Event):
    """Playback reached a named checkpoint."""

    event_type: EventType = EventType.MARK_RECEIVED
    name: str = ""


class OutboundMedia(Event):
    """Agent speech to play to the caller."""

    event_type: EventType = EventType.OUTBOUND_MEDIA
    stream_sid: str
    payload: str


class ClearPlayback(Event):
    """Control event: flush any audio buffered for playback.

    Sent downstream when the agent is interrupted so stale speech from the
    previous turn is never played after the caller barged in.
    """

    event_type: EventType = EventType.CLEAR_PLAYBACK
    stream_sid: str


# ---------------------------------------------------------------------------
# Upstream (conversational AI) events
# ---------------------------------------------------------------------------


class ConversationInitiated(Event):
    """The AI service created a conversation for this socket."""

    event_type: EventType = EventType.CONVERSATION_INITIATED
    conversation_id: str
    agent_output_audio_format: str = ""
    user_input_audio_format: str = ""


class AgentAudio(Event):
    """A chunk of agent speech, still base64 encoded."""

    event_type: EventType = EventType.AGENT_AUDIO
    payload: str
    event_id: int | None = None


class AgentText(Event):
    """Agent response, user transcript or correction text. Logged only."""

    event_type: EventType = EventType.AGENT_TEXT
    role: str = "agent"
    content: str = ""


class Interruption(Event):
    """The caller interrupted the agent."""

    event_type: EventType = EventType.INTERRUPTION
    event_id: int | None = None


class Ping(Event):
    """Liveness probe from the AI service; must be answered with a pong."""

    event_type: EventType = EventType.PING
    event_id: int
    ping_ms: int | None = None


class UserAudioChunk(Event):
    """Caller audio forwarded to the AI service."""

    event_type: EventType = EventType.USER_AUDIO_CHUNK
    payload: str


class Pong(Event):
    """Reply to a :class:`Ping`."""

    event_type: EventType = EventType.PONG
    event_id: int


# Type aliases for the four directions
DownstreamInbound = StreamStarted | MediaReceived | StreamStopped | MarkReceived
DownstreamOutbound = OutboundMedia | ClearPlayback
UpstreamInbound = ConversationInitiated | AgentAudio | AgentText | Interruption | Ping
UpstreamOutbound = UserAudioChunk | Pong

AnyEvent = DownstreamInbound | DownstreamOutbound | UpstreamInbound | UpstreamOutbound
