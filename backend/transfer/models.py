"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel, Field


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class ReceiverPhase(str, Enum):
    """Position of the receive-side parser in the framed stream."""
    AWAITING_NAME = "awaiting_name"
    AWAITING_SIZE = "awaiting_size"
    RECEIVING_BODY = "receiving_body"


class TransferSession(BaseModel):
    """A file transfer in progress on the connected stream."""
    file_name: str
    declared_size: int = Field(ge=0)
    bytes_transferred: int = 0
    direction: TransferDirection

    @property
    def remaining(self) -> int:
        return self.declared_size - self.bytes_transferred

    @property
    def is_complete(self) -> bool:
        return self.bytes_transferred >= self.declared_size

    @property
    def progress(self) -> float:
        if self.declared_size == 0:
            return 1.0
        return min(1.0, max(0.0, self.bytes_transferred / self.declared_size))


class ReceivedFile(BaseModel):
    """A file written to disk by the receiver."""
    file_name: str  # sanitized name
    path: str
    size: int
    used_fallback: bool = False
