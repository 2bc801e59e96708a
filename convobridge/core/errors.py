"""Exception hierarchy for ConvoBridge.

Every error the bridge raises on purpose derives from
:class:`ConvoBridgeError` so callers can tell bridge failures apart from
library or programming errors.
"""

from __future__ import annotations


class ConvoBridgeError(Exception):
    """Base class for all ConvoBridge errors."""


class DecodeError(ConvoBridgeError):
    """A wire frame could not be decoded into a typed event.

    Always recoverable: the relay logs the frame and keeps going.
    """

    def __init__(self, message: str, raw: bytes | str | dict | None = None) -> None:
        super().__init__(message)
        self.raw = raw

    @property
    def preview(self) -> str:
        """Short printable excerpt of the offending frame for logs."""
        if self.raw is None:
            return ""
        text = self.raw if isinstance(self.raw, str) else repr(self.raw)
        return text[:100]


class UpstreamConnectError(ConvoBridgeError):
    """The conversational AI socket could not be opened."""


class TranscriptFetchError(ConvoBridgeError):
    """The transcript query returned a non-success response or failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProvisioningError(ConvoBridgeError):
    """The provisioning service could not create or fetch an address."""
