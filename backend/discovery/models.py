"""Pydantic models for peer discovery."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator


class PeerDevice(BaseModel):
    """A remote Bluetooth device, as seen by a scan or the bonded registry."""

    model_config = ConfigDict(frozen=True)

    address: str  # hardware address, e.g. "AA:BB:CC:DD:EE:FF"
    name: str | None = None
    bonded: bool = False

    @field_validator("address")
    @classmethod
    def _normalise_address(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("address must not be empty")
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.address


class BondState(str, Enum):
    NONE = "none"
    BONDING = "bonding"
    BONDED = "bonded"
    FAILED = "failed"


class AdapterEvent(str, Enum):
    """Events pushed by a platform adapter to its subscribers."""
    PEER_FOUND = "peer_found"  # data: {"peer": PeerDevice}
    DISCOVERY_FINISHED = "discovery_finished"  # data: {}
    BOND_STATE_CHANGED = "bond_state_changed"  # data: {"peer", "bond_state"}
    RADIO_STATE_CHANGED = "radio_state_changed"  # data: {"enabled": bool}
    LINK_LOST = "link_lost"  # data: {"address": str}
