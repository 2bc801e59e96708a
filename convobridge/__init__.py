"""ConvoBridge - bridge Twilio phone calls to a conversational AI agent.

Relays caller audio from a Twilio Media Stream to an ElevenLabs
Conversational AI agent and the agent's speech back, then fetches the
call transcript and acts on any tool calls the agent made.

Quick start (config-driven):
    $ pip install convobridge
    $ convobridge init          # generates convobridge.yaml
    $ convobridge run --config convobridge.yaml

Quick start (programmatic):
    from convobridge import CallBridge

    bridge = CallBridge({"agent_id": "agent_123", "listen_port": 8000})
    bridge.run()
"""

__version__ = "0.1.0"

# Core
from convobridge.bridge import CallBridge
from convobridge.config import BridgeConfig, load_config
from convobridge.finalizer import CallFinalizer
from convobridge.relay import SessionRelay
from convobridge.session import CallSession, SessionRegistry, SessionState

# Errors
from convobridge.core.errors import (
    ConvoBridgeError,
    DecodeError,
    ProvisioningError,
    TranscriptFetchError,
    UpstreamConnectError,
)

# Events
from convobridge.core.events import (
    AgentAudio,
    AgentText,
    CallLocation,
    ClearPlayback,
    ConversationInitiated,
    Event,
    EventType,
    Interruption,
    MediaReceived,
    OutboundMedia,
    Ping,
    Pong,
    StreamStarted,
    StreamStopped,
    UserAudioChunk,
)

# Serializers
from convobridge.serializers.base import BaseSerializer
from convobridge.serializers.elevenlabs import ElevenLabsSerializer
from convobridge.serializers.twilio import TwilioSerializer

# Transports
from convobridge.transports.base import BaseTransport
from convobridge.transports.websocket import (
    WebSocketClientTransport,
    WebSocketServer,
    WebSocketServerTransport,
)

# Collaborators
from convobridge.provisioning import (
    BaseProvisioner,
    HttpProvisioner,
    InMemoryProvisioner,
    ProvisionedAddress,
)
from convobridge.store import BaseCallRecordStore, CallRecord, InMemoryCallRecordStore, TokenDeployment
from convobridge.transcripts import ToolInvocation, TranscriptClient, extract_tool_invocations

__all__ = [
    # Core
    "CallBridge",
    "BridgeConfig",
    "load_config",
    "CallFinalizer",
    "SessionRelay",
    "CallSession",
    "SessionRegistry",
    "SessionState",
    # Errors
    "ConvoBridgeError",
    "DecodeError",
    "ProvisioningError",
    "TranscriptFetchError",
    "UpstreamConnectError",
    # Events
    "Event",
    "EventType",
    "CallLocation",
    "StreamStarted",
    "MediaReceived",
    "StreamStopped",
    "OutboundMedia",
    "ClearPlayback",
    "ConversationInitiated",
    "AgentAudio",
    "AgentText",
    "Interruption",
    "Ping",
    "Pong",
    "UserAudioChunk",
    # Serializers
    "BaseSerializer",
    "TwilioSerializer",
    "ElevenLabsSerializer",
    # Transports
    "BaseTransport",
    "WebSocketClientTransport",
    "WebSocketServerTransport",
    "WebSocketServer",
    # Collaborators
    "BaseProvisioner",
    "InMemoryProvisioner",
    "HttpProvisioner",
    "ProvisionedAddress",
    "BaseCallRecordStore",
    "InMemoryCallRecordStore",
    "CallRecord",
    "TokenDeployment",
    "TranscriptClient",
    "ToolInvocation",
    "extract_tool_invocations",
]
