"""
Peer discovery service.

Drives the platform adapter's scan and bonded registry and feeds the
results into the DiscoveryCache that the negotiator picks peers from.
"""

import logging

from discovery.adapter import BluetoothAdapter
from discovery.cache import DiscoveryCache
from discovery.models import AdapterEvent, BondState, PeerDevice
from transport.errors import PermissionDenied, RadioUnavailable

logger = logging.getLogger(__name__)


class DiscoveryService:
    """Manages scanning and the bonded-device registry."""

    def __init__(self, adapter: BluetoothAdapter, cache: DiscoveryCache) -> None:
        self._adapter = adapter
        self.cache = cache
        adapter.on_event(self._on_adapter_event)

    @property
    def is_discovering(self) -> bool:
        return self._adapter.is_scanning

    async def start_discovery(self) -> bool:
        """Start a fresh discovery session. Returns False if it was skipped."""
        self.cache.clear_discovered()
        try:
            if self._adapter.is_scanning:
                await self._adapter.stop_scan()
            await self._adapter.start_scan()
        except PermissionDenied as e:
            logger.warning(f"Discovery skipped, missing permission: {e}")
            return False
        except RadioUnavailable as e:
            logger.warning(f"Discovery skipped, radio unavailable: {e}")
            return False
        logger.info("Discovery started")
        return True

    async def stop_discovery(self) -> None:
        if not self._adapter.is_scanning:
            return
        try:
            await self._adapter.stop_scan()
        except (PermissionDenied, RadioUnavailable) as e:
            logger.warning(f"Could not stop discovery: {e}")
            return
        logger.info("Discovery stopped")

    async def refresh_bonded(self) -> list[PeerDevice]:
        """Reload the bonded registry from the platform."""
        try:
            peers = await self._adapter.list_bonded_peers()
        except (PermissionDenied, RadioUnavailable) as e:
            logger.warning(f"Cannot list bonded peers: {e}")
            peers = []
        self.cache.set_bonded(peers)
        return self.cache.bonded_peers

    async def _on_adapter_event(self, event: AdapterEvent, data: dict) -> None:
        if event == AdapterEvent.PEER_FOUND:
            self.cache.add_discovered(data["peer"])
        elif event == AdapterEvent.DISCOVERY_FINISHED:
            logger.info(
                f"Discovery finished, {len(self.cache.discovered_peers)} peer(s) found"
            )
        elif event == AdapterEvent.BOND_STATE_CHANGED:
            if data["bond_state"] == BondState.BONDED:
                logger.info(f"Bonded with {data['peer'].display_name}")
                await self.refresh_bonded()
