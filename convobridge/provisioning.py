"""Address provisioning for ConvoBridge.

When a call's transcript contains a deployment tool call, the finalizer
asks a provisioner for the caller's address. Provisioners are
create-or-fetch and idempotent by caller identity, so a repeated
finalization (at-least-once) never mints a second address.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aiohttp
from loguru import logger

from convobridge.config import ProvisioningConfig
from convobridge.core.errors import ProvisioningError


@dataclass
class ProvisionedAddress:
    """An address and its secret, as returned by the provisioning service."""

    address: str
    secret: str

    def __repr__(self) -> str:
        return f"ProvisionedAddress(address={self.address!r}, secret='***')"


class BaseProvisioner(ABC):
    """Create-or-fetch an address keyed by caller identity."""

    @abstractmethod
    async def get_or_create(self, identity: str) -> ProvisionedAddress:
        """Return the caller's address, creating it on first use.

        Raises:
            ProvisioningError: The address could not be created or fetched.
        """
        ...

    async def close(self) -> None:
        """Release any held resources."""


class InMemoryProvisioner(BaseProvisioner):
    """Process-local provisioner that mints random hex addresses.

    Secrets are held in plaintext in process memory and are not encrypted
    at rest. A persistent backend must encrypt them before storing.
    """

    def __init__(self) -> None:
        self._addresses: dict[str, ProvisionedAddress] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, identity: str) -> ProvisionedAddress:
        if not identity:
            raise ProvisioningError("Cannot provision an address without a caller identity")
        async with self._lock:
            existing = self._addresses.get(identity)
            if existing:
                logger.info(f"[Provisioning] Found existing address for {identity}")
                return existing
            created = ProvisionedAddress(
                address="0x" + secrets.token_hex(20),
                secret="0x" + secrets.token_hex(32),
            )
            self._addresses[identity] = created
            logger.info(f"[Provisioning] Created new address for {identity}")
            return created

    @property
    def count(self) -> int:
        return len(self._addresses)


class HttpProvisioner(BaseProvisioner):
    """Provisioner backed by a remote HTTP service.

    Sends ``POST {url}`` with ``{"identity": ...}`` and expects
    ``{"address": ..., "secret": ...}`` back.
    """

    def __init__(self, url: str, api_key: str = "", timeout: float = 10.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )
        return self._session

    async def get_or_create(self, identity: str) -> ProvisionedAddress:
        if not identity:
            raise ProvisioningError("Cannot provision an address without a caller identity")
        try:
            session = await self._get_session()
            async with session.post(self.url, json={"identity": identity}) as resp:
                if resp.status not in (200, 201):
                    error = await resp.text()
                    raise ProvisioningError(
                        f"Provisioning service returned {resp.status}: {error[:200]}"
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProvisioningError(f"Could not reach provisioning service: {e}") from e

        address = data.get("address") if isinstance(data, dict) else None
        if not address:
            raise ProvisioningError("Provisioning response has no address")
        return ProvisionedAddress(address=str(address), secret=str(data.get("secret", "")))

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


def create_provisioner(config: ProvisioningConfig) -> BaseProvisioner:
    """Build the provisioner selected by ``config.backend``."""
    if config.backend == "memory":
        return InMemoryProvisioner()
    if config.backend == "http":
        return HttpProvisioner(
            url=config.url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
        )
    raise ValueError(f"Unknown provisioning backend: {config.backend}")
