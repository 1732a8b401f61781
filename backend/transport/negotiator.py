"""
Transport negotiator.

Establishes the single duplex stream to one peer, either by listening
(accepting on every endpoint descriptor at once) or by connecting
(trying every ConnectionStrategy in a fixed order). Each negotiation
runs on its own worker task; only one may be in flight at a time.
"""

import asyncio
import logging

from config import (
    ACCEPT_RETRY_DELAY,
    ACCEPT_TIMEOUT,
    BOND_TIMEOUT,
    CONNECT_TIMEOUT,
    DISCOVERABLE_DURATION,
    LISTEN_WINDOW,
)
from connection.models import ConnectionStatus
from connection.state import ConnectionStateMachine
from discovery.adapter import BluetoothAdapter
from discovery.models import BondState, PeerDevice
from discovery.service import DiscoveryService
from transport.errors import (
    BluetoothError,
    ConnectionAttemptFailed,
    ConnectionExhausted,
    RadioUnavailable,
)
from transport.models import (
    ConnectionStrategy,
    ServiceEndpoint,
    connect_strategies,
    listen_endpoints,
)
from transport.stream import Acceptor, SocketProvider, Stream

logger = logging.getLogger(__name__)

CONNECT_FAILED_MESSAGE = "Could not connect to the device. Try again."


class TransportNegotiator:
    """Runs listen/connect negotiations and hands the winning stream over."""

    def __init__(
        self,
        adapter: BluetoothAdapter,
        provider: SocketProvider,
        state: ConnectionStateMachine,
        discovery: DiscoveryService,
        on_connected=None,
        notify=None,
        endpoints: list[ServiceEndpoint] | None = None,
        strategies: list[ConnectionStrategy] | None = None,
        accept_timeout: float = ACCEPT_TIMEOUT,
        listen_window: float = LISTEN_WINDOW,
        accept_retry_delay: float = ACCEPT_RETRY_DELAY,
        connect_timeout: float = CONNECT_TIMEOUT,
        bond_timeout: float = BOND_TIMEOUT,
        discoverable_duration: int = DISCOVERABLE_DURATION,
    ) -> None:
        """
        Args:
            on_connected: fn(stream) called once the state is Connected.
            notify: fn(kind, message) for user-visible notifications.
            endpoints: Listener descriptor, tried in order.
            strategies: Initiator strategies, tried in order.
        """
        self._adapter = adapter
        self._provider = provider
        self._state = state
        self._discovery = discovery
        self._on_connected = on_connected
        self._notify = notify or (lambda kind, message: None)
        self.endpoints = endpoints if endpoints is not None else listen_endpoints()
        self.strategies = strategies if strategies is not None else connect_strategies()
        self._accept_timeout = accept_timeout
        self._listen_window = listen_window
        self._accept_retry_delay = accept_retry_delay
        self._connect_timeout = connect_timeout
        self._bond_timeout = bond_timeout
        self._discoverable_duration = discoverable_duration

        self._task: asyncio.Task | None = None
        self._bond_waiter: tuple[str, asyncio.Future] | None = None

    @property
    def is_connecting(self) -> bool:
        """The exclusive in-progress flag."""
        return self._task is not None and not self._task.done()

    def _can_start(self, what: str) -> bool:
        if self.is_connecting:
            logger.info(f"A negotiation is already in progress, ignoring {what}")
            return False
        # A dead stream stays attached until the receive worker tears it down
        if self._state.is_connected or self._state.status in (
            ConnectionStatus.CONNECTED,
            ConnectionStatus.TRANSFER_COMPLETE,
        ):
            logger.info(f"Already connected, ignoring {what}")
            return False
        return True

    # --- Entry points ---

    def listen(self) -> bool:
        """Start accepting incoming connections. Returns False if rejected."""
        if not self._can_start("listen"):
            return False
        self._state.listening()
        self._task = asyncio.create_task(self._run(self._listen_worker()))
        return True

    def connect(self, peer: PeerDevice) -> bool:
        """
        Start connecting to `peer`. Returns False if rejected.

        Returns immediately. An unbonded peer is asked to pair first and
        the socket work resumes once resolve_bond() reports the outcome.
        """
        if not self._can_start(f"connect to {peer.address}"):
            return False
        logger.info(f"Connecting to device: {peer.address}")
        self._state.connecting(peer)
        self._task = asyncio.create_task(self._run(self._connect_worker(peer)))
        return True

    def resolve_bond(self, address: str, bond_state: BondState) -> None:
        """Bonding-completion trigger, fed from the adapter's bond events."""
        if bond_state not in (BondState.BONDED, BondState.FAILED):
            return
        if self._bond_waiter is None:
            return
        waiting_for, future = self._bond_waiter
        if waiting_for == address.upper() and not future.done():
            future.set_result(bond_state)

    def cancel(self) -> None:
        """Abandon the negotiation in flight, if any."""
        if self._bond_waiter is not None:
            self._bond_waiter[1].cancel()
            self._bond_waiter = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    # --- Workers ---

    async def _run(self, worker) -> None:
        try:
            await worker
        except asyncio.CancelledError:
            logger.info("Negotiation cancelled")
            raise
        except BluetoothError as e:
            logger.error(f"Negotiation failed: {e}")
            self._fail()
        except Exception as e:
            logger.error(f"Unexpected negotiation error: {e}", exc_info=True)
            self._fail()

    def _fail(self) -> None:
        if self._state.status in (ConnectionStatus.LISTENING, ConnectionStatus.CONNECTING):
            self._state.failed()
        self._notify("error", CONNECT_FAILED_MESSAGE)

    def _established(self, peer: PeerDevice, stream: Stream) -> None:
        stream.peer = peer
        self._state.connected(peer, stream)
        logger.info(f"Connected to {peer.display_name} ({peer.address})")
        if self._on_connected:
            self._on_connected(stream)

    async def _require_radio(self) -> None:
        if not await self._adapter.is_enabled():
            raise RadioUnavailable("Bluetooth is not enabled")

    async def _connect_worker(self, peer: PeerDevice) -> None:
        await self._discovery.stop_discovery()
        await self._require_radio()

        if not (peer.bonded or self._discovery.cache.is_bonded(peer.address)):
            logger.info(f"{peer.address} is not bonded, starting pairing")
            if not await self._await_bond(peer):
                raise ConnectionExhausted(f"Pairing with {peer.address} did not complete")
            peer = self._discovery.cache.lookup(peer.address) or peer.model_copy(
                update={"bonded": True}
            )

        stream = await self._try_strategies(peer)
        self._established(peer, stream)

    async def _await_bond(self, peer: PeerDevice) -> bool:
        future = asyncio.get_running_loop().create_future()
        self._bond_waiter = (peer.address, future)
        try:
            await self._adapter.request_bond(peer)
            self._notify("info", "Please accept the pairing request")
            bond_state = await asyncio.wait_for(future, timeout=self._bond_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Pairing with {peer.address} timed out")
            return False
        finally:
            self._bond_waiter = None
        logger.info(f"Pairing with {peer.address} finished: {bond_state.value}")
        return bond_state == BondState.BONDED

    async def _try_strategies(self, peer: PeerDevice) -> Stream:
        for strategy in self.strategies:
            logger.info(f"Trying {strategy.describe()} to {peer.address}")
            try:
                stream = await asyncio.wait_for(
                    self._provider.connect(peer, strategy), self._connect_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Connection attempt {strategy.describe()} timed out")
                continue
            except (ConnectionAttemptFailed, OSError) as e:
                logger.warning(f"Connection attempt {strategy.describe()} failed: {e}")
                continue

            if stream.is_connected:
                logger.info(f"Connected as client using {strategy.describe()}")
                return stream
            logger.warning(f"Stream from {strategy.describe()} is not connected")
            stream.close()

        raise ConnectionExhausted(
            f"All {len(self.strategies)} connection strategies to {peer.address} failed"
        )

    async def _listen_worker(self) -> None:
        await self._require_radio()
        try:
            await self._adapter.set_discoverable(self._discoverable_duration)
        except BluetoothError as e:
            logger.warning(f"Could not make the device discoverable: {e}")

        acceptors: list[Acceptor] = []
        for endpoint in self.endpoints:
            mode = "secure" if endpoint.secure else "insecure"
            try:
                acceptor = self._provider.create_listener(endpoint.service_id, endpoint.secure)
            except (ConnectionAttemptFailed, OSError) as e:
                logger.warning(f"Could not create {mode} listener for {endpoint.service_id}: {e}")
                continue
            self._state.track(acceptor)
            acceptors.append(acceptor)

        if not acceptors:
            raise ConnectionExhausted("Could not bind any listener")

        try:
            stream = await self._first_accepted(acceptors)
        finally:
            for acceptor in acceptors:
                acceptor.close()
                self._state.untrack(acceptor)

        if stream is None:
            raise ConnectionExhausted("No incoming connection within the listen window")
        logger.info("Connection accepted as server")
        peer = self._discovery.cache.lookup(stream.peer.address) or stream.peer
        self._established(peer, stream)

    async def _first_accepted(self, acceptors: list[Acceptor]) -> Stream | None:
        """Run every acceptor concurrently; the first stream wins."""
        deadline = asyncio.get_running_loop().time() + self._listen_window
        tasks = [asyncio.create_task(self._accept_loop(a, deadline)) for a in acceptors]
        winner = None
        try:
            for next_done in asyncio.as_completed(tasks):
                stream = await next_done
                if stream is not None:
                    winner = stream
                    break
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                # Lost the race: another acceptor already won
                if isinstance(result, Stream) and result is not winner:
                    result.close()
        return winner

    async def _accept_loop(self, acceptor: Acceptor, deadline: float) -> Stream | None:
        loop = asyncio.get_running_loop()
        while not acceptor.closed:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                logger.debug("Waiting for incoming connections...")
                return await acceptor.accept(min(self._accept_timeout, remaining))
            except asyncio.TimeoutError:
                continue
            except (BluetoothError, OSError) as e:
                if acceptor.closed:
                    return None
                logger.warning(f"Error accepting connection: {e}")
                await asyncio.sleep(self._accept_retry_delay)
        return None
