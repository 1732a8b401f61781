"""
Platform adapter contract.

The adapter wraps whatever the host offers for scanning, pairing and
radio management. The rest of the stack only talks to this interface,
so tests and other platforms can plug in their own implementation.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod

from discovery.models import AdapterEvent, PeerDevice

logger = logging.getLogger(__name__)


class BluetoothAdapter(ABC):
    """Discovery, bonding and radio-state collaborator."""

    def __init__(self) -> None:
        self._event_callbacks: list = []  # fn(event, data), sync or async

    def on_event(self, callback) -> None:
        """Register callback: fn(event: AdapterEvent, data: dict)."""
        self._event_callbacks.append(callback)

    def _emit(self, event: AdapterEvent, data: dict) -> None:
        """Deliver an event to every subscriber without blocking the caller."""
        for cb in self._event_callbacks:
            try:
                result = cb(event, data)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Adapter event callback error: {e}")

    async def start(self) -> None:
        """Begin delivering asynchronous events."""

    async def close(self) -> None:
        """Stop delivering events and release platform resources."""

    async def is_supported(self) -> bool:
        """Whether the host has a Bluetooth stack at all."""
        return True

    @abstractmethod
    async def is_enabled(self) -> bool:
        """Whether the radio is present and powered on."""

    @abstractmethod
    async def list_bonded_peers(self) -> list[PeerDevice]:
        """Return the peers in the platform's bonded registry."""

    @abstractmethod
    async def start_scan(self) -> None:
        """Start an inquiry scan; results arrive as PEER_FOUND events."""

    @abstractmethod
    async def stop_scan(self) -> None: ...

    @property
    @abstractmethod
    def is_scanning(self) -> bool: ...

    @abstractmethod
    async def request_bond(self, peer: PeerDevice) -> None:
        """
        Ask the platform to pair with `peer`.

        Returns as soon as the request is issued; the outcome arrives later
        as a BOND_STATE_CHANGED event.
        """

    async def set_discoverable(self, seconds: int) -> None:
        """Make the local device visible to scans, if the platform allows it."""

    async def set_alias(self, name: str) -> None:
        """Change the name other devices see during their scans."""
