"""Registry of bonded and discovered peers."""

import asyncio
import inspect
import logging
from typing import Iterable

from discovery.models import PeerDevice

logger = logging.getLogger(__name__)


class DiscoveryCache:
    """
    Holds the peers the negotiator can choose from.

    Bonded peers mirror the platform registry and are replaced wholesale.
    Discovered peers accumulate during one discovery session and are
    deduplicated by address; the first observation of an address is kept.
    """

    def __init__(self) -> None:
        self._bonded: dict[str, PeerDevice] = {}
        self._discovered: dict[str, PeerDevice] = {}
        self._on_change: list = []  # callbacks: fn(event, data)

    def on_change(self, callback) -> None:
        """Register a callback for peer list changes."""
        self._on_change.append(callback)

    @property
    def bonded_peers(self) -> list[PeerDevice]:
        return list(self._bonded.values())

    @property
    def discovered_peers(self) -> list[PeerDevice]:
        return list(self._discovered.values())

    def set_bonded(self, peers: Iterable[PeerDevice]) -> None:
        self._bonded = {
            peer.address: peer.model_copy(update={"bonded": True})
            for peer in peers
        }
        self._notify()

    def add_discovered(self, peer: PeerDevice) -> bool:
        """Add a scan result. Returns False for an address already seen."""
        if peer.address in self._discovered:
            return False
        self._discovered[peer.address] = peer
        logger.info(f"Discovered peer: {peer.display_name} ({peer.address})")
        self._notify()
        return True

    def clear_discovered(self) -> None:
        if self._discovered:
            self._discovered = {}
            self._notify()

    def lookup(self, address: str) -> PeerDevice | None:
        address = address.strip().upper()
        return self._bonded.get(address) or self._discovered.get(address)

    def is_bonded(self, address: str) -> bool:
        return address.strip().upper() in self._bonded

    def snapshot(self) -> dict:
        return {
            "bonded": [p.model_dump() for p in self._bonded.values()],
            "discovered": [p.model_dump() for p in self._discovered.values()],
        }

    def _notify(self) -> None:
        data = self.snapshot()
        for cb in self._on_change:
            try:
                result = cb("peers_changed", data)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Peer change callback error: {e}")
