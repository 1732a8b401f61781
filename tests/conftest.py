"""In-memory stand-ins for the platform collaborators."""

import asyncio

import pytest

from discovery.adapter import BluetoothAdapter
from discovery.models import PeerDevice
from transfer.manager import TransferManager
from transport.errors import ConnectionAttemptFailed, StreamIOError
from transport.stream import Acceptor, SocketProvider, Stream

_CLOSED = object()

PEER_A = PeerDevice(address="AA:AA:AA:AA:AA:01", name="Phone A", bonded=True)
PEER_B = PeerDevice(address="BB:BB:BB:BB:BB:02", name="Phone B", bonded=True)


class ChunkStream(Stream):
    """
    One end of an in-memory link that keeps write boundaries: every
    write() on one end is exactly one read() on the other.
    """

    def __init__(self, peer: PeerDevice) -> None:
        self.peer = peer
        self.remote: "ChunkStream | None" = None
        self.closed = False
        self.connected = True
        self.write_count = 0
        self.fail_writes_after: int | None = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pending = b""

    @property
    def is_connected(self) -> bool:
        return self.connected and not self.closed

    def inject(self, item) -> None:
        """Queue a raw read result: bytes, b"" or None (end of stream)."""
        self._inbox.put_nowait(item)

    async def read(self, max_bytes: int = 4096) -> bytes | None:
        if self.closed:
            raise StreamIOError("Stream closed")
        if self._pending:
            data, self._pending = self._pending[:max_bytes], self._pending[max_bytes:]
            return data
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StreamIOError("Stream closed")
        if item and len(item) > max_bytes:
            self._pending = item[max_bytes:]
            return item[:max_bytes]
        return item

    async def write(self, data: bytes) -> None:
        if not self.is_connected:
            raise StreamIOError("Socket not connected")
        if self.fail_writes_after is not None and self.write_count >= self.fail_writes_after:
            raise StreamIOError("Broken pipe")
        self.write_count += 1
        if self.remote is not None and not self.remote.closed:
            self.remote.inject(bytes(data))
        await asyncio.sleep(0)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(_CLOSED)
        if self.remote is not None:
            self.remote.inject(None)


def stream_pair(
    local_peer: PeerDevice = PEER_A, remote_peer: PeerDevice = PEER_B
) -> tuple[ChunkStream, ChunkStream]:
    """Return (local end talking to remote_peer, remote end talking to local_peer)."""
    local, remote = ChunkStream(remote_peer), ChunkStream(local_peer)
    local.remote, remote.remote = remote, local
    return local, remote


class FakeAdapter(BluetoothAdapter):
    def __init__(self, bonded=(), enabled: bool = True, supported: bool = True) -> None:
        super().__init__()
        self.bonded = list(bonded)
        self.enabled = enabled
        self.supported = supported
        self.scan_starts = 0
        self.bond_requests: list[PeerDevice] = []
        self.discoverable: list[int] = []
        self.aliases: list[str] = []
        self._scanning = False

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    async def is_supported(self) -> bool:
        return self.supported

    async def is_enabled(self) -> bool:
        return self.enabled

    async def list_bonded_peers(self) -> list[PeerDevice]:
        return list(self.bonded)

    async def start_scan(self) -> None:
        self.scan_starts += 1
        self._scanning = True

    async def stop_scan(self) -> None:
        self._scanning = False

    async def request_bond(self, peer: PeerDevice) -> None:
        self.bond_requests.append(peer)

    async def set_discoverable(self, seconds: int) -> None:
        self.discoverable.append(seconds)

    async def set_alias(self, name: str) -> None:
        self.aliases.append(name)

    def emit(self, event, data: dict) -> None:
        self._emit(event, data)


class FakeSocket:
    def __init__(self, strategy) -> None:
        self.strategy = strategy
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeAcceptor(Acceptor):
    def __init__(self, service_id: str, secure: bool) -> None:
        self.service_id = service_id
        self.secure = secure
        self._closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, stream: Stream) -> None:
        self._incoming.put_nowait(stream)

    async def accept(self, timeout: float) -> Stream:
        if self._closed:
            raise OSError("Acceptor closed")
        item = await asyncio.wait_for(self._incoming.get(), timeout)
        if item is _CLOSED:
            raise OSError("Acceptor closed")
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._incoming.put_nowait(_CLOSED)


class FakeProvider(SocketProvider):
    """
    Records every attempt. Connecting succeeds only for `succeed_on`;
    `dead_on` returns a stream that reports itself not connected;
    `hang` blocks every attempt until it is cancelled.
    """

    def __init__(self, succeed_on=None, dead_on=None, fail_bind=(), hang: bool = False) -> None:
        self.succeed_on = succeed_on
        self.dead_on = dead_on
        self.fail_bind = set(fail_bind)
        self.hang = hang
        self.attempts = []
        self.attempt_sockets: list[FakeSocket] = []
        self.dead_streams: list[ChunkStream] = []
        self.listeners: list[FakeAcceptor] = []
        self.remote_ends: list[ChunkStream] = []

    def create_listener(self, service_id: str, secure: bool) -> Acceptor:
        if (service_id, secure) in self.fail_bind:
            raise ConnectionAttemptFailed(f"bind failed for {service_id}")
        acceptor = FakeAcceptor(service_id, secure)
        self.listeners.append(acceptor)
        return acceptor

    async def connect(self, peer: PeerDevice, strategy) -> Stream:
        self.attempts.append(strategy)
        sock = FakeSocket(strategy)
        self.attempt_sockets.append(sock)
        await asyncio.sleep(0)
        if self.hang:
            try:
                await asyncio.Event().wait()
            finally:
                sock.close()
        if strategy == self.dead_on:
            local, _ = stream_pair(remote_peer=peer)
            local.connected = False
            self.dead_streams.append(local)
            return local
        if strategy != self.succeed_on:
            sock.close()
            raise ConnectionAttemptFailed(f"{strategy.describe()} refused")
        local, remote = stream_pair(remote_peer=peer)
        self.remote_ends.append(remote)
        return local


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event_type, data) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list[dict]:
        return [data for kind, data in self.events if kind == event_type]


@pytest.fixture
def save_dirs(tmp_path):
    return str(tmp_path / "downloads"), str(tmp_path / "fallback")


@pytest.fixture
def make_manager(save_dirs):
    """Build a TransferManager with fakes and test-sized timeouts."""
    save_dir, fallback_dir = save_dirs

    def factory(adapter=None, provider=None, **options):
        settings = {
            "save_dir": save_dir,
            "fallback_dir": fallback_dir,
            "chunk_delay": 0,
            "name_delay": 0,
            "size_delay": 0,
            "accept_timeout": 0.05,
            "listen_window": 0.3,
            "accept_retry_delay": 0.01,
            "connect_timeout": 1.0,
            "bond_timeout": 1.0,
        }
        settings.update(options)
        return TransferManager(
            adapter or FakeAdapter(bonded=[PEER_B]),
            provider or FakeProvider(),
            **settings,
        )

    return factory
