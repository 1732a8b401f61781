"""
Connection state machine.

Owns the single current connection: its state, the active stream, the
transfer session and every in-flight socket handle. The negotiator and
the transfer protocol drive transitions; observers only ever see
immutable snapshots. All mutation happens on the event loop thread, so
this object is the single writer of connection state.
"""

import asyncio
import inspect
import logging

from connection.models import ConnectionState, ConnectionStatus
from discovery.models import PeerDevice
from transfer.models import TransferSession
from transport.stream import Stream

logger = logging.getLogger(__name__)

Status = ConnectionStatus

# Transitions a worker may request; disconnect() bypasses this table
ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    Status.IDLE: frozenset({Status.LISTENING, Status.CONNECTING}),
    Status.LISTENING: frozenset({Status.CONNECTED, Status.FAILED}),
    Status.CONNECTING: frozenset({Status.CONNECTED, Status.FAILED}),
    Status.CONNECTED: frozenset({Status.TRANSFER_COMPLETE, Status.FAILED}),
    Status.TRANSFER_COMPLETE: frozenset({Status.TRANSFER_COMPLETE, Status.FAILED}),
    Status.FAILED: frozenset({Status.LISTENING, Status.CONNECTING}),
}


class IllegalTransition(RuntimeError):
    pass


class ConnectionStateMachine:
    """Single owner of the connection, its stream and its progress."""

    def __init__(self) -> None:
        self._state = ConnectionState()
        self._progress = 0.0
        self._stream: Stream | None = None
        self._session: TransferSession | None = None
        self._handles: list = []  # acceptors / sockets still being negotiated
        self._callbacks: list = []  # fn(event, data), sync or async

    # --- Observation ---

    def on_change(self, callback) -> None:
        """Register callback: fn(event_type: str, data: dict)."""
        self._callbacks.append(callback)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def stream(self) -> Stream | None:
        return self._stream

    @property
    def session(self) -> TransferSession | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._stream is not None and self._stream.is_connected

    def snapshot(self) -> dict:
        return {
            "state": self._state.model_dump(),
            "progress": self._progress,
            "session": self._session.model_dump() if self._session else None,
        }

    def _publish(self, event: str, data: dict) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event, data)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    # --- Transitions ---

    def _transition(self, status: ConnectionStatus, peer: PeerDevice | None = None) -> None:
        current = self._state.status
        if status not in ALLOWED_TRANSITIONS[current]:
            raise IllegalTransition(f"{current.value} -> {status.value}")
        self._state = ConnectionState(status=status, peer=peer)
        logger.info(f"Connection state: {current.value} -> {status.value}")
        self._publish("connection_state", self._state.model_dump())

    def listening(self) -> None:
        self._transition(Status.LISTENING)

    def connecting(self, peer: PeerDevice) -> None:
        self._transition(Status.CONNECTING, peer)

    def connected(self, peer: PeerDevice, stream: Stream) -> None:
        self._transition(Status.CONNECTED, peer)
        self._stream = stream

    def transfer_complete(self) -> None:
        self._transition(Status.TRANSFER_COMPLETE, self._state.peer)

    def failed(self) -> None:
        self._transition(Status.FAILED)
        stream, self._stream = self._stream, None
        if stream:
            stream.close()
        self._session = None

    # --- Progress and session ---

    def set_progress(self, value: float) -> None:
        value = min(1.0, max(0.0, value))
        if value == self._progress:
            return
        self._progress = value
        self._publish("transfer_progress", {"progress": value})

    def begin_session(self, session: TransferSession) -> None:
        self._session = session
        self.set_progress(0.0)

    def end_session(self) -> None:
        self._session = None

    # --- Handles ---

    def track(self, handle) -> None:
        """Hold a negotiation handle so disconnect() can close it."""
        self._handles.append(handle)

    def untrack(self, handle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    def disconnect(self) -> None:
        """
        Tear everything down and return to Idle.

        Callable from any state and idempotent. Closing the handles is what
        unblocks a worker still waiting in accept, connect or read.
        """
        handles, self._handles = self._handles, []
        stream, self._stream = self._stream, None
        for handle in handles + ([stream] if stream else []):
            try:
                handle.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing {handle!r}: {e}")

        self._session = None
        self.set_progress(0.0)
        if self._state.status != Status.IDLE:
            previous = self._state.status
            self._state = ConnectionState()
            logger.info(f"Connection state: {previous.value} -> idle")
            self._publish("connection_state", self._state.model_dump())
