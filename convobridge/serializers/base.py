"""Base serializer interface for ConvoBridge.

Both sides of the bridge implement this interface. Serializers are pure
message translators with no I/O - they convert between a provider's wire
format and ConvoBridge's typed event model.
"""

from __future__ import annotations

import base64
import binascii
import json
from abc import ABC, abstractmethod
from typing import Any

from convobridge.core.errors import DecodeError
from convobridge.core.events import AnyEvent


class BaseSerializer(ABC):
    """Abstract base class for wire-format serializers.

    Key principles:
    - Serializers do NO I/O (no network calls, no file access)
    - They keep only the state needed to address outbound frames
      (call state lives in CallSession)
    - Malformed frames raise :class:`DecodeError`; unknown frame types are
      not errors and deserialize to an empty list
    """

    @abstractmethod
    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a raw frame into ConvoBridge events.

        Args:
            raw: The raw WebSocket frame (text, bytes or already-parsed JSON).

        Returns:
            List of events. Empty list if the frame should be ignored.

        Raises:
            DecodeError: The frame is not JSON, not an object, or lacks a
                required field.
        """
        ...

    @abstractmethod
    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to the provider's wire format.

        Returns:
            The JSON text to send, or None if this event type does not
            apply to the provider.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this serializer (e.g. 'twilio')."""
        ...

    # ------------------------------------------------------------------
    # Shared decode helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Frame is not valid JSON: {e}", raw) from e
        if not isinstance(msg, dict):
            raise DecodeError("Frame is not a JSON object", raw)
        return msg

    @staticmethod
    def _require(container: Any, key: str, msg: dict, where: str) -> Any:
        """Fetch a required field or fail closed with a DecodeError."""
        if not isinstance(container, dict) or container.get(key) is None:
            raise DecodeError(f"Missing required field '{where}'", msg)
        return container[key]

    @staticmethod
    def _check_base64(payload: Any, msg: dict, where: str) -> str:
        """Validate a base64 audio payload without re-encoding it."""
        if not isinstance(payload, str):
            raise DecodeError(f"Field '{where}' must be a base64 string", msg)
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Field '{where}' is not valid base64: {e}", msg) from e
        return payload
