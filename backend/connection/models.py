"""Pydantic models for the connection lifecycle."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, model_validator

from discovery.models import PeerDevice


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    TRANSFER_COMPLETE = "transfer_complete"


# States that describe a link to a specific peer
PEER_STATES = frozenset({
    ConnectionStatus.CONNECTING,
    ConnectionStatus.CONNECTED,
    ConnectionStatus.TRANSFER_COMPLETE,
})


class ConnectionState(BaseModel):
    """Immutable snapshot of the single process-wide connection."""

    model_config = ConfigDict(frozen=True)

    status: ConnectionStatus = ConnectionStatus.IDLE
    peer: PeerDevice | None = None

    @model_validator(mode="after")
    def _check_peer(self) -> "ConnectionState":
        if self.status in PEER_STATES and self.peer is None:
            raise ValueError(f"{self.status.value} state requires a peer")
        if self.status not in PEER_STATES and self.peer is not None:
            raise ValueError(f"{self.status.value} state cannot carry a peer")
        return self
