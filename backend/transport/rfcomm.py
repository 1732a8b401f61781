"""
RFCOMM socket provider for Linux (BlueZ kernel sockets).

Sockets are created non-blocking and driven by the asyncio loop, then
wrapped in asyncio streams. Security mode is applied with the BT_SECURITY
socket option before bind/connect.
"""

import asyncio
import logging
import socket
import struct

from config import SERVICE_CHANNELS
from discovery.models import PeerDevice
from transport.errors import ConnectionAttemptFailed, RadioUnavailable
from transport.models import ConnectionStrategy, StrategyKind
from transport.stream import Acceptor, DuplexStream, SocketProvider, Stream

logger = logging.getLogger(__name__)

# From <bluetooth/bluetooth.h>; not exported by the socket module
SOL_BLUETOOTH = 274
BT_SECURITY = 4
BT_SECURITY_LOW = 1  # no authentication, no encryption
BT_SECURITY_MEDIUM = 2  # encrypted link

BDADDR_ANY = "00:00:00:00:00:00"


def _rfcomm_socket(secure: bool) -> socket.socket:
    family = getattr(socket, "AF_BLUETOOTH", None)
    proto = getattr(socket, "BTPROTO_RFCOMM", None)
    if family is None or proto is None:
        raise RadioUnavailable("This Python build has no Bluetooth socket support")
    try:
        sock = socket.socket(family, socket.SOCK_STREAM, proto)
    except OSError as e:
        raise RadioUnavailable(f"Cannot create RFCOMM socket: {e}") from e
    level = BT_SECURITY_MEDIUM if secure else BT_SECURITY_LOW
    try:
        sock.setsockopt(SOL_BLUETOOTH, BT_SECURITY, struct.pack("BB", level, 0))
    except OSError as e:
        sock.close()
        raise ConnectionAttemptFailed(f"Cannot set security level {level}: {e}") from e
    sock.setblocking(False)
    return sock


async def _wrap(sock: socket.socket, peer: PeerDevice) -> DuplexStream:
    reader, writer = await asyncio.open_connection(sock=sock)
    return DuplexStream(reader, writer, peer)


class RfcommAcceptor(Acceptor):
    def __init__(self, sock: socket.socket, service_id: str, secure: bool) -> None:
        self._sock = sock
        self.service_id = service_id
        self.secure = secure
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def accept(self, timeout: float) -> Stream:
        loop = asyncio.get_running_loop()
        conn, addr = await asyncio.wait_for(loop.sock_accept(self._sock), timeout)
        conn.setblocking(False)
        try:
            return await _wrap(conn, PeerDevice(address=addr[0]))
        except BaseException:
            conn.close()
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Ignoring error while closing acceptor: {e}")


class RfcommSocketProvider(SocketProvider):
    """SocketProvider over AF_BLUETOOTH / BTPROTO_RFCOMM."""

    def __init__(
        self,
        channel_map: dict[str, int] | None = None,
        local_address: str = BDADDR_ANY,
    ) -> None:
        self._channels = dict(SERVICE_CHANNELS if channel_map is None else channel_map)
        self._local_address = local_address

    def _channel_for(self, service_id: str) -> int:
        try:
            return self._channels[service_id]
        except KeyError:
            raise ConnectionAttemptFailed(f"No RFCOMM channel for service {service_id}")

    def create_listener(self, service_id: str, secure: bool) -> Acceptor:
        channel = self._channel_for(service_id)
        sock = _rfcomm_socket(secure)
        try:
            sock.bind((self._local_address, channel))
            sock.listen(1)
        except OSError as e:
            sock.close()
            raise ConnectionAttemptFailed(
                f"Cannot listen on channel {channel} for {service_id}: {e}"
            ) from e
        mode = "secure" if secure else "insecure"
        logger.info(f"Listening ({mode}) on RFCOMM channel {channel} for {service_id}")
        return RfcommAcceptor(sock, service_id, secure)

    async def connect(self, peer: PeerDevice, strategy: ConnectionStrategy) -> Stream:
        if strategy.kind == StrategyKind.RAW_CHANNEL:
            channel = strategy.channel
        else:
            channel = self._channel_for(strategy.service_id)

        sock = _rfcomm_socket(strategy.secure)
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_connect(sock, (peer.address, channel))
            return await _wrap(sock, peer)
        except OSError as e:
            sock.close()
            raise ConnectionAttemptFailed(
                f"{strategy.describe()} on channel {channel}: {e}"
            ) from e
        except BaseException:
            sock.close()
            raise
