"""Call record persistence for ConvoBridge.

A call record is a small document keyed by the telephony call SID (written
when the call starts) and later by the AI conversation id (written once the
agent's conversation is known). The bridge only needs upsert-by-key and a
couple of lookups, so any document store can sit behind
:class:`BaseCallRecordStore`. :class:`InMemoryCallRecordStore` is the
reference implementation used by default and in tests.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from convobridge.core.events import CallLocation


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenDeployment(BaseModel):
    """Deployment parameters requested by the caller through a tool call."""

    name: str = ""
    ticker: str = ""
    description: str = ""
    fid: str = ""
    requested_at: datetime | None = None
    request_id: str = ""
    address: str = ""


class CallRecord(BaseModel):
    """Persisted state for one call."""

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    phone_number: str = ""
    call_sid: str = ""
    conversation_id: str | None = None
    location: CallLocation = Field(default_factory=CallLocation)
    transcript: list[dict[str, Any]] | None = None
    token_deployment: TokenDeployment | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BaseCallRecordStore(ABC):
    """Abstract document store for :class:`CallRecord`."""

    @abstractmethod
    async def upsert(self, key_field: str, key: str, **fields: Any) -> CallRecord:
        """Update the record whose ``key_field`` equals ``key``, or create it.

        Args:
            key_field: Record attribute used as the key (``call_sid``,
                ``conversation_id`` or ``phone_number``).
            key: Key value; must not be empty.
            **fields: Attributes to set on the record.

        Returns:
            The stored record after the update.
        """
        ...

    @abstractmethod
    async def find_one(self, **filters: Any) -> CallRecord | None:
        """Return the first record matching every filter, or None."""
        ...

    @abstractmethod
    async def find_latest(self, phone_number: str) -> CallRecord | None:
        """Return the most recently created record for a caller, or None."""
        ...


class InMemoryCallRecordStore(BaseCallRecordStore):
    """Process-local store. Records live as long as the process does."""

    _KEY_FIELDS = ("call_sid", "conversation_id", "phone_number", "record_id")

    def __init__(self) -> None:
        self._records: dict[str, CallRecord] = {}

    async def upsert(self, key_field: str, key: str, **fields: Any) -> CallRecord:
        if key_field not in self._KEY_FIELDS:
            raise ValueError(f"Unsupported key field: {key_field}")
        if not key:
            raise ValueError(f"Cannot upsert with an empty {key_field}")

        record = self._match(**{key_field: key})
        if record is None:
            record = CallRecord(**{key_field: key})
            logger.debug(f"[Store] Creating call record {key_field}={key}")

        # Validate the merged document so nested dicts become models
        updated = CallRecord.model_validate(
            {**record.model_dump(), **fields, "updated_at": _utcnow()}
        )
        self._records[updated.record_id] = updated.model_copy(deep=True)
        return updated.model_copy(deep=True)

    async def find_one(self, **filters: Any) -> CallRecord | None:
        record = self._match(**filters)
        return record.model_copy(deep=True) if record else None

    async def find_latest(self, phone_number: str) -> CallRecord | None:
        if not phone_number:
            return None
        candidates = [r for r in self._records.values() if r.phone_number == phone_number]
        if not candidates:
            return None
        # Later inserts win ties
        return max(reversed(candidates), key=lambda r: r.created_at).model_copy(deep=True)

    @property
    def records(self) -> list[CallRecord]:
        """Snapshot of all stored records."""
        return [r.model_copy(deep=True) for r in self._records.values()]

    def _match(self, **filters: Any) -> CallRecord | None:
        for record in self._records.values():
            if all(getattr(record, k, None) == v for k, v in filters.items()):
                return record
        return None
