"""ConvoBridge - Central bridge orchestrator.

The CallBridge class is the heart of the service. It wires together:
- The session registry (one CallSession per telephony connection)
- The per-call relay engine (Twilio <-> ElevenLabs ConvAI)
- The call record store
- The post-call finalizer (transcript, tool calls, provisioning)

Every telephony connection goes through :meth:`CallBridge.handle_connection`,
which relays until either side hangs up, runs the finalizer once, and always
removes the session from the registry on the way out.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from convobridge.config import BridgeConfig, load_config
from convobridge.finalizer import CallFinalizer
from convobridge.provisioning import BaseProvisioner, create_provisioner
from convobridge.relay import SessionRelay, UpstreamFactory
from convobridge.session import CallSession, SessionRegistry, SessionState
from convobridge.store import BaseCallRecordStore, InMemoryCallRecordStore
from convobridge.transcripts import TranscriptClient
from convobridge.transports.base import BaseTransport
from convobridge.transports.websocket import WebSocketClientTransport, WebSocketServer


class CallBridge:
    """Bridges Twilio Media Streams calls to an ElevenLabs ConvAI agent.

    Usage (config-driven):
        bridge = CallBridge("convobridge.yaml")
        bridge.run()

    Usage (programmatic):
        bridge = CallBridge({"agent_id": "agent_123", "listen_port": 8000})
        await bridge.handle_connection(transport)
    """

    def __init__(
        self,
        config: BridgeConfig | dict | str | Path,
        store: BaseCallRecordStore | None = None,
        provisioner: BaseProvisioner | None = None,
        transcripts: TranscriptClient | None = None,
        upstream_factory: UpstreamFactory | None = None,
    ) -> None:
        self.config = load_config(config)
        self.sessions = SessionRegistry()
        self.store = store or InMemoryCallRecordStore()
        self.provisioner = provisioner or create_provisioner(self.config.provisioning)
        self.transcripts = transcripts or TranscriptClient(
            api_key=self.config.agent.api_key,
            api_base=self.config.agent.api_base,
            timeout=self.config.finalizer.request_timeout_seconds,
        )
        self.finalizer = CallFinalizer(
            transcripts=self.transcripts,
            store=self.store,
            provisioner=self.provisioner,
            grace_period=self.config.finalizer.grace_period_seconds,
            tool_name=self.config.finalizer.tool_name,
        )
        self._upstream_factory = upstream_factory or self._default_upstream
        self._server: WebSocketServer | None = None

    def _default_upstream(self) -> BaseTransport:
        """Open a fresh ConvAI socket for one call."""
        agent = self.config.agent
        headers = {"xi-api-key": agent.api_key} if agent.api_key else None
        return WebSocketClientTransport(
            url=agent.ws_url,
            headers=headers,
            connect_timeout=agent.connect_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Main run loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the bridge (blocking) on a plain WebSocket server."""
        logger.info(f"ConvoBridge starting: agent={self.config.agent.agent_id}")
        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            logger.info("ConvoBridge stopped by user")

    async def run_async(self) -> None:
        """Start the bridge (async). Use this if you manage your own event loop."""
        self._server = WebSocketServer(
            host=self.config.server.listen_host,
            port=self.config.server.listen_port,
            path=self.config.server.listen_path,
            handler=self.handle_connection,
        )
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Release HTTP sessions held by the collaborators."""
        await self.transcripts.close()
        await self.provisioner.close()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handle_connection(self, downstream: BaseTransport) -> CallSession:
        """Handle one inbound telephony connection from accept to cleanup."""
        session = self.sessions.create(downstream=downstream)
        relay = SessionRelay(
            session,
            upstream_factory=self._upstream_factory,
            store=self.store,
            upstream_params={"agent_id": self.config.agent.agent_id},
            caller_query_param=self.config.agent.caller_query_param,
            queue_size=self.config.relay.queue_size,
            drain_timeout=self.config.relay.drain_timeout_seconds,
        )

        session.log.info("[Bridge] Twilio connected to media stream")
        try:
            await relay.run()
            await self._finalize(session, relay)
        except Exception as e:
            session.log.exception(f"[Bridge] Bridge error for session {session.session_id}: {e}")
        finally:
            # Covers cancellation and errors raised before the relay's own teardown
            await relay.teardown(reason="bridge exit")
            self.sessions.remove(session.session_id)
            session.log.info(
                f"[Bridge] Session ended: {session.session_id} "
                f"(duration: {session.duration_ms}ms)"
            )
        return session

    async def _finalize(self, session: CallSession, relay: SessionRelay) -> None:
        """Run the finalizer once for a closed session that reached the agent."""
        if session.state is not SessionState.CLOSED:
            return
        if relay.connect_failed or not relay.upstream_opened:
            session.log.info("[Bridge] Agent never connected; skipping finalization")
            return
        if not self.config.finalizer.enabled:
            return
        await self.finalizer.finalize(session)
