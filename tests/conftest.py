"""Shared fakes for ConvoBridge tests.

Nothing here touches the network: transports are in-memory queues and the
finalizer's collaborators record what they were asked to do.
"""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from convobridge.config import BridgeConfig
from convobridge.core.errors import ProvisioningError, TranscriptFetchError, UpstreamConnectError
from convobridge.provisioning import BaseProvisioner, ProvisionedAddress
from convobridge.store import InMemoryCallRecordStore
from convobridge.transports.base import BaseTransport

_CLOSE = object()


class FakeTransport(BaseTransport):
    """In-memory socket. Tests feed inbound frames and read ``sent``."""

    def __init__(self, connected=False, fail_connect=False, fail_send=False):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.connected = connected
        self.closed = False
        self.fail_connect = fail_connect
        self.fail_send = fail_send
        self.connect_params = None

    async def connect(self, **kwargs):
        self.connect_params = kwargs.get("params")
        if self.fail_connect:
            raise UpstreamConnectError("handshake refused")
        self.connected = True

    async def send(self, data):
        if not self.connected or self.fail_send:
            raise ConnectionClosed(None, None)
        self.sent.append(data)

    async def recv(self):
        if self.closed:
            raise ConnectionClosed(None, None)
        item = await self.inbox.get()
        if item is _CLOSE:
            self.connected = False
            raise ConnectionClosed(None, None)
        return item

    async def disconnect(self):
        self.connected = False
        self.closed = True
        self.inbox.put_nowait(_CLOSE)

    def is_connected(self):
        return self.connected

    # Test helpers

    def feed(self, *messages):
        for msg in messages:
            self.inbox.put_nowait(json.dumps(msg) if isinstance(msg, dict) else msg)

    def close_from_peer(self):
        self.inbox.put_nowait(_CLOSE)

    @property
    def sent_json(self):
        return [json.loads(s) for s in self.sent]


class FakeTranscriptClient:
    """Returns a canned transcript or raises a fetch error."""

    def __init__(self, transcript=None, error=None):
        self.transcript = transcript or []
        self.error = error
        self.requests: list[str] = []
        self.closed = False

    async def fetch(self, conversation_id):
        self.requests.append(conversation_id)
        if self.error:
            raise TranscriptFetchError(self.error, status=404)
        return self.transcript

    async def close(self):
        self.closed = True


class FakeProvisioner(BaseProvisioner):
    """Counts provisioning calls; optionally fails."""

    def __init__(self, address="0xabc", fail=False):
        self.address = address
        self.fail = fail
        self.calls: list[str] = []

    async def get_or_create(self, identity):
        self.calls.append(identity)
        if self.fail:
            raise ProvisioningError("service unavailable")
        return ProvisionedAddress(address=self.address, secret="s3cret")


# ---------------------------------------------------------------------------
# Twilio / ElevenLabs frame builders
# ---------------------------------------------------------------------------


def twilio_start(stream_sid="S1", caller="+1555", call_sid="", **params):
    custom = {"From": caller, **params}
    start = {"streamSid": stream_sid, "customParameters": custom}
    if call_sid:
        start["callSid"] = call_sid
    return {"event": "start", "start": start}


def twilio_media(payload):
    return {"event": "media", "media": {"payload": payload}}


def twilio_stop():
    return {"event": "stop"}


def agent_init(conversation_id):
    return {
        "type": "conversation_initiation_metadata",
        "conversation_initiation_metadata_event": {"conversation_id": conversation_id},
    }


def agent_audio(payload, event_id=1):
    return {"type": "audio", "audio_event": {"audio_base_64": payload, "event_id": event_id}}


def agent_ping(event_id):
    return {"type": "ping", "ping_event": {"event_id": event_id, "ping_ms": 20}}


def agent_interruption(event_id=1):
    return {"type": "interruption", "interruption_event": {"event_id": event_id}}


async def wait_until(predicate, timeout=2.0):
    """Poll until ``predicate()`` is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def config():
    return BridgeConfig.from_dict({
        "agent_id": "agent_123",
        "api_key": "xi-test",
        "grace_period_seconds": 0,
    })


@pytest.fixture
def store():
    return InMemoryCallRecordStore()


@pytest.fixture
def provisioner():
    return FakeProvisioner()
