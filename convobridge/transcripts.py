"""Transcript retrieval and tool-call extraction.

After a call, the conversational AI service keeps the full transcript. The
finalizer fetches it with :class:`TranscriptClient` and scans it with
:func:`extract_tool_invocations` for tool calls the agent made during the
conversation.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from loguru import logger

from convobridge.core.errors import TranscriptFetchError


@dataclass
class ToolInvocation:
    """A tool call found in a transcript entry."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    request_id: str = ""


class TranscriptClient:
    """Client for the conversation history API.

    Authenticates with the ``xi-api-key`` header and fetches
    ``GET {api_base}/v1/convai/conversations/{conversation_id}``.
    """

    def __init__(self, api_key: str, api_base: str = "https://api.elevenlabs.io", timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"xi-api-key": self.api_key},
            )
        return self._session

    async def fetch(self, conversation_id: str) -> list[dict[str, Any]]:
        """Fetch the ordered transcript for a conversation.

        Returns:
            The transcript entries (possibly empty).

        Raises:
            TranscriptFetchError: Non-200 response, transport failure, or a
                body without a transcript list.
        """
        url = f"{self.api_base}/v1/convai/conversations/{conversation_id}"
        try:
            session = await self._get_session()
            async with session.get(url) as resp:
                if resp.status != 200:
                    error = await resp.text()
                    raise TranscriptFetchError(
                        f"Transcript request failed with {resp.status}: {error[:200]}",
                        status=resp.status,
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TranscriptFetchError(f"Could not fetch transcript: {e}") from e

        transcript = data.get("transcript") if isinstance(data, dict) else None
        if transcript is None:
            return []
        if not isinstance(transcript, list):
            raise TranscriptFetchError("Transcript field is not a list")
        logger.debug(f"[Transcript] Fetched {len(transcript)} entries for {conversation_id}")
        return transcript

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


def parse_tool_call(tool_call: Any) -> ToolInvocation:
    """Parse one ``tool_calls`` item.

    Raises:
        ValueError: The item is not an object, lacks a tool name, or its
            ``params_as_json`` is not a JSON object.
    """
    if not isinstance(tool_call, dict):
        raise ValueError(f"tool call is {type(tool_call).__name__}, not an object")
    name = tool_call.get("tool_name")
    if not name:
        raise ValueError("tool call has no tool_name")

    raw_params = tool_call.get("params_as_json")
    if raw_params in (None, ""):
        params: Any = {}
    elif isinstance(raw_params, dict):
        params = raw_params
    else:
        try:
            params = json.loads(raw_params)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"params_as_json is not valid JSON: {e}") from e
    if not isinstance(params, dict):
        raise ValueError("params_as_json is not a JSON object")

    return ToolInvocation(
        name=str(name),
        parameters=params,
        request_id=str(tool_call.get("request_id", "") or ""),
    )


def extract_tool_invocations(
    transcript: list[dict[str, Any]],
    tool_name: str = "",
) -> list[ToolInvocation]:
    """Collect every valid tool call in transcript order.

    A tool call that fails to parse is logged and skipped; it never stops
    the scan of the remaining entries.

    Args:
        transcript: Transcript entries as returned by the history API.
        tool_name: When set, only tool calls with this name are kept.
    """
    invocations: list[ToolInvocation] = []
    for index, entry in enumerate(transcript):
        if not isinstance(entry, dict):
            continue
        tool_calls = entry.get("tool_calls")
        if tool_calls is None:
            continue
        if not isinstance(tool_calls, list):
            logger.warning(
                f"[Transcript] Skipping entry {index}: tool_calls is "
                f"{type(tool_calls).__name__}, not a list"
            )
            continue
        for tool_call in tool_calls:
            try:
                invocation = parse_tool_call(tool_call)
            except ValueError as e:
                logger.warning(f"[Transcript] Skipping tool call in entry {index}: {e}")
                continue
            if tool_name and invocation.name != tool_name:
                continue
            invocations.append(invocation)
    return invocations
