"""Per-call relay engine for ConvoBridge.

A :class:`SessionRelay` drives one call through its states:

    CREATED -> AWAITING_START -> BRIDGING -> DRAINING -> CLOSED

It runs four tasks once bridging:

1. downstream reader: Twilio -> decode -> upstream queue
2. upstream writer:   upstream queue -> ElevenLabs socket
3. upstream reader:   ElevenLabs -> decode -> downstream queue
4. downstream writer: downstream queue -> Twilio socket

Each queue is bounded and drops its oldest frame when a stalled peer lets
it fill, so neither direction ever waits on the other. The first task to
finish (peer closed, ``stop`` received, write failed) tears the whole call
down: every task is cancelled and both sockets are closed in one step.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from websockets.exceptions import ConnectionClosed

from convobridge.core.errors import ConvoBridgeError, DecodeError
from convobridge.core.events import (
    AgentAudio,
    AgentText,
    AnyEvent,
    ClearPlayback,
    ConversationInitiated,
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
from convobridge.serializers.base import BaseSerializer
from convobridge.serializers.elevenlabs import ElevenLabsSerializer
from convobridge.serializers.twilio import TwilioSerializer
from convobridge.session import CallSession, SessionState
from convobridge.store import BaseCallRecordStore
from convobridge.transports.base import BaseTransport

UpstreamFactory = Callable[[], BaseTransport]

# Log a queue overflow on the first drop and then every Nth
_DROP_LOG_EVERY = 100

# Frames that may be evicted when a queue overflows
_AUDIO_FRAMES = (OutboundMedia, UserAudioChunk)


class SessionRelay:
    """Pumps frames between the two sockets of one call."""

    def __init__(
        self,
        session: CallSession,
        upstream_factory: UpstreamFactory,
        store: BaseCallRecordStore | None = None,
        upstream_params: dict[str, str] | None = None,
        caller_query_param: str = "caller_id",
        queue_size: int = 500,
        drain_timeout: float = 1.0,
        downstream_serializer: BaseSerializer | None = None,
        upstream_serializer: BaseSerializer | None = None,
    ) -> None:
        self.session = session
        self.store = store
        self._drain_timeout = drain_timeout
        self._upstream_factory = upstream_factory
        self._upstream_params = dict(upstream_params or {})
        self._caller_query_param = caller_query_param
        self.downstream_serializer = downstream_serializer or TwilioSerializer()
        self.upstream_serializer = upstream_serializer or ElevenLabsSerializer()

        self.to_downstream: asyncio.Queue[AnyEvent] = asyncio.Queue(maxsize=queue_size)
        self.to_upstream: asyncio.Queue[AnyEvent] = asyncio.Queue(maxsize=queue_size)

        self.upstream_opened = False
        self.connect_failed = False
        self._done = asyncio.Event()
        self._torn_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> CallSession:
        """Relay until either side ends, then tear both down."""
        session = self.session
        if session.downstream is None:
            raise ConvoBridgeError("Session has no downstream transport")

        session.transition(SessionState.AWAITING_START)
        self._spawn(self._downstream_reader(), "downstream-reader")
        self._spawn(self._writer(self.to_downstream, session.downstream, self.downstream_serializer), "downstream-writer")

        try:
            await self._done.wait()
        finally:
            await self.teardown()
        return session

    async def teardown(self, reason: str = "") -> None:
        """Cancel all relay tasks and close both sockets. Idempotent."""
        if self._torn_down:
            return
        self._torn_down = True
        session = self.session
        if reason and not session.close_reason:
            session.close_reason = reason
        session.transition(SessionState.DRAINING)

        await self._drain()

        cancelled = session.cancel_tasks()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        for transport in (session.upstream, session.downstream):
            if transport is None:
                continue
            try:
                await transport.disconnect()
            except Exception as e:
                session.log.debug(f"[Bridge] Error closing transport: {e}")

        session.transition(SessionState.CLOSED)
        session.log.info(
            f"[Bridge] Session closed ({session.close_reason or 'unknown'}): "
            f"in={session.audio_chunks_in} out={session.audio_chunks_out} "
            f"dropped={session.dropped_chunks}"
        )

    async def _drain(self) -> None:
        """Give the writers a bounded chance to flush frames already queued."""
        session = self.session
        pending = [
            queue.join()
            for queue, transport in (
                (self.to_upstream, session.upstream),
                (self.to_downstream, session.downstream),
            )
            if transport is not None and transport.is_connected() and not queue.empty()
        ]
        if not pending:
            return
        try:
            await asyncio.wait_for(asyncio.gather(*pending), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            session.log.warning(
                f"[Bridge] Gave up flushing queued frames after {self._drain_timeout}s"
            )

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}:{self.session.session_id}")
        task.add_done_callback(self._on_task_done)
        return self.session.track(task)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            if self.session.is_active:
                self.session.log.error(f"[Bridge] {task.get_name()} failed: {task.exception()}")
            if not self.session.close_reason:
                self.session.close_reason = f"{task.get_name().split(':')[0]} error"
        elif not task.cancelled() and not self.session.close_reason:
            self.session.close_reason = f"{task.get_name().split(':')[0]} ended"
        self._done.set()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def _downstream_reader(self) -> None:
        """Twilio -> events -> upstream queue."""
        session = self.session
        transport = session.downstream
        while True:
            try:
                raw = await transport.recv()
            except ConnectionClosed:
                session.log.info("[Twilio] Client disconnected")
                session.close_reason = session.close_reason or "telephony closed"
                return

            try:
                events = await self.downstream_serializer.deserialize(raw)
            except DecodeError as e:
                session.log.warning(f"[Twilio] Dropping malformed frame: {e} {e.preview}")
                continue

            for event in events:
                if isinstance(event, StreamStarted):
                    if not await self._on_stream_started(event):
                        return
                elif isinstance(event, MediaReceived):
                    self._on_caller_media(event)
                elif isinstance(event, StreamStopped):
                    session.log.info("[Twilio] Stream stopped")
                    session.close_reason = session.close_reason or "stream stopped"
                    return
                elif isinstance(event, MarkReceived):
                    session.log.debug(f"[Twilio] Mark reached: {event.name}")

    async def _upstream_reader(self) -> None:
        """ElevenLabs -> events -> downstream queue."""
        session = self.session
        transport = session.upstream
        while True:
            try:
                raw = await transport.recv()
            except ConnectionClosed:
                session.log.info("[ConvAI] Disconnected")
                session.close_reason = session.close_reason or "agent closed"
                return

            try:
                events = await self.upstream_serializer.deserialize(raw)
            except DecodeError as e:
                session.log.warning(f"[ConvAI] Dropping malformed frame: {e} {e.preview}")
                continue

            for event in events:
                if isinstance(event, AgentAudio):
                    self._on_agent_audio(event)
                elif isinstance(event, Interruption):
                    self._on_interruption()
                elif isinstance(event, Ping):
                    self._offer(self.to_upstream, Pong(event_id=event.event_id), "upstream")
                elif isinstance(event, ConversationInitiated):
                    await self._on_conversation_initiated(event)
                elif isinstance(event, AgentText):
                    session.log.info(f"[ConvAI] {event.role}: {event.content}")

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    async def _writer(
        self,
        queue: asyncio.Queue,
        transport: BaseTransport,
        serializer: BaseSerializer,
    ) -> None:
        """Drain one direction's queue in order. A failed send ends the call."""
        while True:
            event = await queue.get()
            try:
                wire_msg = await serializer.serialize(event)
                if wire_msg is None:
                    continue
                await transport.send(wire_msg)
                if isinstance(event, OutboundMedia):
                    self.session.audio_chunks_out += 1
            finally:
                queue.task_done()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_stream_started(self, event: StreamStarted) -> bool:
        """Record call metadata and open the upstream socket.

        Returns:
            False if the upstream could not be opened (the call is over).
        """
        session = self.session
        if session.state is not SessionState.AWAITING_START:
            session.log.warning("[Twilio] Duplicate start event ignored")
            return True

        session.stream_sid = event.stream_sid
        session.call_sid = event.call_sid
        session.caller_identity = event.caller_identity
        session.location = event.location
        session.custom_parameters = {k: str(v) for k, v in event.custom_parameters.items()}
        session.log.info(f"[Twilio] Stream started with ID: {event.stream_sid}")

        fields = {"phone_number": session.caller_identity}
        if not event.location.is_empty:
            fields["location"] = event.location
        await self._persist(**fields)

        upstream = self._upstream_factory()
        params = dict(self._upstream_params)
        params[self._caller_query_param] = session.caller_identity
        try:
            await upstream.connect(params=params)
        except (ConvoBridgeError, OSError) as e:
            session.log.error(f"[ConvAI] Connect failed, dropping call: {e}")
            self.connect_failed = True
            session.close_reason = "agent connect failed"
            return False

        session.upstream = upstream
        self.upstream_opened = True
        session.log.info("[ConvAI] Connected to Conversational AI")
        self._spawn(self._upstream_reader(), "upstream-reader")
        self._spawn(self._writer(self.to_upstream, upstream, self.upstream_serializer), "upstream-writer")
        session.transition(SessionState.BRIDGING)
        return True

    def _on_caller_media(self, event: MediaReceived) -> None:
        session = self.session
        if not session.is_bridging:
            session.log.debug("[Twilio] Media before bridging; dropped")
            return
        session.audio_chunks_in += 1
        self._offer(self.to_upstream, UserAudioChunk(payload=event.payload), "upstream")

    def _on_agent_audio(self, event: AgentAudio) -> None:
        session = self.session
        if not session.stream_sid:
            session.log.debug("[ConvAI] Audio before stream SID is known; dropped")
            return
        self._offer(
            self.to_downstream,
            OutboundMedia(stream_sid=session.stream_sid, payload=event.payload),
            "downstream",
        )

    def _on_interruption(self) -> None:
        """Flush queued agent speech and tell Twilio to drop its buffer.

        The clear goes through the same queue as audio, so it reaches
        Twilio before any audio from the next turn.
        """
        session = self.session
        flushed = 0
        while True:
            try:
                self.to_downstream.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.to_downstream.task_done()
            flushed += 1
        session.log.debug(f"[ConvAI] Interruption: flushed {flushed} queued chunk(s)")
        if session.stream_sid:
            self.to_downstream.put_nowait(ClearPlayback(stream_sid=session.stream_sid))

    async def _on_conversation_initiated(self, event: ConversationInitiated) -> None:
        session = self.session
        if session.set_conversation_id(event.conversation_id):
            session.log.info(f"[ConvAI] Conversation initiated: {event.conversation_id}")
            await self._persist(conversation_id=event.conversation_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _offer(self, queue: asyncio.Queue, event: AnyEvent, direction: str) -> None:
        """Enqueue without blocking; drop the oldest audio frame when full.

        Control frames (clear, pong) are only evicted when nothing but control
        frames is queued.
        """
        if not queue.full():
            queue.put_nowait(event)
            return
        pending = []
        while not queue.empty():
            pending.append(queue.get_nowait())
            queue.task_done()
        victim = next((i for i, item in enumerate(pending) if isinstance(item, _AUDIO_FRAMES)), None)
        if victim is not None:
            del pending[victim]
            pending.append(event)
        elif isinstance(event, _AUDIO_FRAMES):
            # Only control frames are queued; the new audio frame is the oldest audio
            pass
        else:
            self.session.log.warning(f"[Bridge] {direction} queue full of control frames; dropped oldest")
            pending = pending[1:] + [event]
        for item in pending:
            queue.put_nowait(item)
        if victim is None and not isinstance(event, _AUDIO_FRAMES):
            return
        self.session.dropped_chunks += 1
        if self.session.dropped_chunks % _DROP_LOG_EVERY == 1:
            self.session.log.warning(
                f"[Bridge] {direction} queue full; dropped oldest audio frame "
                f"({self.session.dropped_chunks} so far)"
            )

    async def _persist(self, **fields) -> None:
        """Write fields onto this call's record. Store failures never end the call."""
        session = self.session
        if self.store is None:
            return
        if session.call_sid:
            key_field, key = "call_sid", session.call_sid
        elif session.caller_identity:
            key_field, key = "phone_number", session.caller_identity
        else:
            return
        try:
            await self.store.upsert(key_field, key, **fields)
        except Exception as e:
            session.log.error(f"[Store] Could not update call record {key_field}={key}: {e}")
