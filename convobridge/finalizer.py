"""Post-call finalization for ConvoBridge.

Runs once per session after both connections are closed:

1. Skip entirely if the AI service never assigned a conversation id.
2. Wait a grace period so the service can finish writing its transcript.
3. Fetch the transcript (single attempt) and store it on the call record.
4. Scan it for tool calls; a bad entry is skipped, not fatal.
5. If any were found, store the first one's parameters, provision the
   caller's address exactly once, and store the address.

Nothing here raises back into the bridge.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from convobridge.core.errors import ProvisioningError, TranscriptFetchError
from convobridge.provisioning import BaseProvisioner
from convobridge.session import CallSession
from convobridge.store import BaseCallRecordStore, CallRecord, TokenDeployment
from convobridge.transcripts import ToolInvocation, TranscriptClient, extract_tool_invocations

# Deployment fields copied from tool parameters onto the record
_DEPLOYMENT_FIELDS = ("name", "ticker", "description", "fid")


class CallFinalizer:
    """Fetches the transcript and applies its side effects for one call."""

    def __init__(
        self,
        transcripts: TranscriptClient,
        store: BaseCallRecordStore,
        provisioner: BaseProvisioner,
        grace_period: float = 5.0,
        tool_name: str = "",
    ) -> None:
        self.transcripts = transcripts
        self.store = store
        self.provisioner = provisioner
        self.grace_period = grace_period
        self.tool_name = tool_name

    async def finalize(self, session: CallSession) -> list[ToolInvocation]:
        """Run the post-call sequence for ``session``.

        Returns:
            The tool invocations found (empty when skipped or failed).
        """
        log = session.log
        conversation_id = session.conversation_id
        if not conversation_id:
            log.info("[Finalizer] No conversation id; nothing to finalize")
            return []

        try:
            return await self._finalize(session, conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"[Finalizer] Unexpected error finalizing {conversation_id}: {e}")
            return []

    async def _finalize(self, session: CallSession, conversation_id: str) -> list[ToolInvocation]:
        log = session.log

        if self.grace_period > 0:
            log.debug(f"[Finalizer] Waiting {self.grace_period}s before fetching transcript")
            await asyncio.sleep(self.grace_period)

        try:
            transcript = await self.transcripts.fetch(conversation_id)
        except TranscriptFetchError as e:
            log.error(f"[Finalizer] Transcript fetch failed for {conversation_id}: {e}")
            return []

        key_field, key = await self._store_transcript(session, conversation_id, transcript)
        log.info(f"[Finalizer] Stored transcript ({len(transcript)} entries)")

        invocations = extract_tool_invocations(transcript, tool_name=self.tool_name)
        session.tool_invocations = invocations
        if not invocations:
            log.info("[Finalizer] No tool calls in transcript")
            return invocations

        log.info(f"[Finalizer] Found {len(invocations)} tool call(s); using {invocations[0].name}")
        deployment = self._deployment_from(invocations[0])
        await self.store.upsert(key_field, key, token_deployment=deployment)

        try:
            provisioned = await self.provisioner.get_or_create(session.caller_identity)
        except ProvisioningError as e:
            log.error(f"[Finalizer] Provisioning failed for {session.caller_identity}: {e}")
            return invocations

        deployment = deployment.model_copy(update={"address": provisioned.address})
        await self.store.upsert(key_field, key, token_deployment=deployment)
        log.info(f"[Finalizer] Deployment address stored: {provisioned.address}")
        return invocations

    async def _store_transcript(
        self,
        session: CallSession,
        conversation_id: str,
        transcript: list[dict[str, Any]],
    ) -> tuple[str, str]:
        """Write the transcript onto the call's record and return its key.

        Prefers the record already tagged with the conversation id, then the
        record for this call SID, then the caller's latest record.
        """
        record: CallRecord | None = await self.store.find_one(conversation_id=conversation_id)
        if record is None and session.call_sid:
            record = await self.store.find_one(call_sid=session.call_sid)
        if record is None:
            record = await self.store.find_latest(session.caller_identity)

        if record is None:
            await self.store.upsert(
                "conversation_id",
                conversation_id,
                phone_number=session.caller_identity,
                call_sid=session.call_sid,
                transcript=transcript,
            )
        else:
            await self.store.upsert(
                "record_id",
                record.record_id,
                conversation_id=conversation_id,
                transcript=transcript,
            )
        return "conversation_id", conversation_id

    @staticmethod
    def _deployment_from(invocation: ToolInvocation) -> TokenDeployment:
        fields = {
            name: str(invocation.parameters[name])
            for name in _DEPLOYMENT_FIELDS
            if invocation.parameters.get(name) is not None
        }
        return TokenDeployment(
            **fields,
            request_id=invocation.request_id,
            requested_at=datetime.now(timezone.utc),
        )
