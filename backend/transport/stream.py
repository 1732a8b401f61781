"""
Stream, acceptor and socket-provider contracts.

A Stream is the duplex byte channel the framed protocol runs over. The
negotiator obtains streams from a SocketProvider, either by accepting on
an Acceptor or by connecting with a ConnectionStrategy.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from config import BUFFER_SIZE
from discovery.models import PeerDevice
from transport.errors import StreamIOError
from transport.models import ConnectionStrategy

logger = logging.getLogger(__name__)


class Stream(ABC):
    """A connected duplex byte stream to one peer."""

    peer: PeerDevice

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def read(self, max_bytes: int = BUFFER_SIZE) -> bytes | None:
        """
        Read one chunk of at most `max_bytes`.

        Returns None at end of stream. An empty chunk is a transient
        condition, not end of stream. Raises StreamIOError on failure or
        when the stream is closed underneath the reader.
        """

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write and flush one chunk. Raises StreamIOError on failure."""

    @abstractmethod
    def close(self) -> None:
        """Close the stream. Safe to call more than once."""


class Acceptor(ABC):
    """A bound listening endpoint."""

    @property
    @abstractmethod
    def closed(self) -> bool: ...

    @abstractmethod
    async def accept(self, timeout: float) -> Stream:
        """Wait for one incoming connection; asyncio.TimeoutError on timeout."""

    @abstractmethod
    def close(self) -> None: ...


class SocketProvider(ABC):
    """Creates acceptors and outgoing streams."""

    @abstractmethod
    def create_listener(self, service_id: str, secure: bool) -> Acceptor:
        """Bind an acceptor. Raises ConnectionAttemptFailed or OSError."""

    @abstractmethod
    async def connect(self, peer: PeerDevice, strategy: ConnectionStrategy) -> Stream:
        """
        Open a stream to `peer` using one strategy.

        Raises ConnectionAttemptFailed or OSError; the attempt socket is
        closed before the error propagates.
        """


class DuplexStream(Stream):
    """Stream over an asyncio StreamReader/StreamWriter pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: PeerDevice,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.peer = peer
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return not self._closed and not self._writer.is_closing()

    async def read(self, max_bytes: int = BUFFER_SIZE) -> bytes | None:
        if self._closed:
            raise StreamIOError("Stream closed")
        try:
            data = await self._reader.read(max_bytes)
        except (ConnectionError, OSError) as e:
            raise StreamIOError(str(e)) from e
        if self._closed:
            raise StreamIOError("Stream closed")
        if not data and self._reader.at_eof():
            return None
        return data

    async def write(self, data: bytes) -> None:
        if not self.is_connected:
            raise StreamIOError("Socket not connected")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise StreamIOError(str(e)) from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing stream: {e}")
        # Wake a reader blocked on this stream
        self._reader.feed_eof()
