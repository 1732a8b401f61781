"""
Transfer Manager: the application-facing facade.

Wires the discovery cache, the negotiator, the connection state machine
and the framed protocol together, and republishes their events to the
API layer.
"""

import asyncio
import inspect
import logging
import os
import re
from pathlib import Path

from config import (
    CHUNK_DELAY,
    DEFAULT_SAVE_DIR,
    DEVICE_NAME,
    FALLBACK_SAVE_DIR,
    NAME_SETTLE_DELAY,
    SIZE_SETTLE_DELAY,
)
from connection.models import ConnectionStatus
from connection.state import ConnectionStateMachine
from discovery.adapter import BluetoothAdapter
from discovery.cache import DiscoveryCache
from discovery.models import AdapterEvent, PeerDevice
from discovery.service import DiscoveryService
from transfer.models import ReceivedFile, TransferSession
from transfer.protocol import FrameReceiver
from transfer.service import receive_loop, send_file
from transfer.storage import FileSink, is_media_file
from transport.errors import (
    PermissionDenied,
    ProtocolViolation,
    RadioUnavailable,
    StreamIOError,
)
from transport.negotiator import TransportNegotiator
from transport.stream import SocketProvider, Stream

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class TransferManager:
    """Owns the Bluetooth connection and every transfer that runs over it."""

    def __init__(
        self,
        adapter: BluetoothAdapter,
        provider: SocketProvider,
        save_dir: str = DEFAULT_SAVE_DIR,
        fallback_dir: str = FALLBACK_SAVE_DIR,
        chunk_delay: float = CHUNK_DELAY,
        name_delay: float = NAME_SETTLE_DELAY,
        size_delay: float = SIZE_SETTLE_DELAY,
        media_indexer=None,
        **negotiator_options,
    ) -> None:
        """
        Args:
            adapter: Platform discovery/bonding collaborator.
            provider: Platform socket collaborator.
            media_indexer: Optional fn(path) told about received media files.
            negotiator_options: Timeouts and descriptors forwarded to
                TransportNegotiator.
        """
        self._adapter = adapter
        self.cache = DiscoveryCache()
        self.discovery = DiscoveryService(adapter, self.cache)
        self.state = ConnectionStateMachine()
        self.negotiator = TransportNegotiator(
            adapter,
            provider,
            self.state,
            self.discovery,
            on_connected=self._on_connected,
            notify=self._notify,
            **negotiator_options,
        )
        self._sink = FileSink(save_dir, fallback_dir)
        self._send_options = {
            "chunk_delay": chunk_delay,
            "name_delay": name_delay,
            "size_delay": size_delay,
        }
        self._media_indexer = media_indexer
        self._receive_task: asyncio.Task | None = None
        self._is_sending = False
        self._event_callbacks: list = []  # fn(event_type, data)
        self.device_name = DEVICE_NAME

        adapter.on_event(self._on_adapter_event)
        self.state.on_change(self._emit)
        self.cache.on_change(self._emit)

    @property
    def save_dir(self) -> str:
        return self._sink.save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._sink.save_dir = path

    @property
    def is_sending(self) -> bool:
        return self._is_sending

    async def set_device_name(self, name: str) -> None:
        """
        Rename the local adapter. Control characters are dropped; raises
        ValueError if nothing printable is left.
        """
        name = _CONTROL_CHARS.sub("", name).strip()
        if not name:
            raise ValueError("Device name must contain printable characters")
        try:
            await self._adapter.set_alias(name)
        except (PermissionDenied, RadioUnavailable) as e:
            logger.warning(f"Could not rename the adapter: {e}")
        self.device_name = name

    def on_event(self, callback) -> None:
        """Register callback: fn(event_type: str, data: dict), sync or async."""
        self._event_callbacks.append(callback)

    def _emit(self, event_type: str, data: dict) -> None:
        """Fan an event out to every callback without waiting on any of them."""
        for cb in self._event_callbacks:
            try:
                result = cb(event_type, data)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _notify(self, kind: str, message: str) -> None:
        self._emit("notification", {"type": kind, "message": message})

    # --- Lifecycle ---

    async def start(self) -> None:
        try:
            await self._adapter.start()
        except RadioUnavailable as e:
            logger.warning(f"Bluetooth adapter unavailable: {e}")
        await self.discovery.refresh_bonded()
        logger.info("Transfer manager started")

    async def stop(self) -> None:
        self.disconnect()
        await self.discovery.stop_discovery()
        await self._adapter.close()
        logger.info("Transfer manager stopped")

    async def is_bluetooth_enabled(self) -> bool:
        return await self._adapter.is_enabled()

    async def radio_status(self) -> dict:
        supported = await self._adapter.is_supported()
        enabled = supported and await self.is_bluetooth_enabled()
        return {"supported": supported, "enabled": enabled}

    async def refresh_devices(self) -> dict:
        """Re-read the bonded registry, picking up peers paired elsewhere."""
        await self.discovery.refresh_bonded()
        return self.cache.snapshot()

    # --- Operations ---

    async def start_server(self) -> bool:
        logger.info("Starting server...")
        return self.negotiator.listen()

    async def start_discovery(self) -> bool:
        started = await self.discovery.start_discovery()
        if not started:
            self._notify("warning", "Device discovery is not available")
        return started

    async def stop_discovery(self) -> None:
        await self.discovery.stop_discovery()

    async def connect_to_device(self, address: str) -> bool:
        peer = self.cache.lookup(address) or PeerDevice(address=address)
        return self.negotiator.connect(peer)

    async def send_file(self, file_path: str) -> bool:
        """Send one file over the current connection. Returns success."""
        stream = self.state.stream
        if stream is None or not stream.is_connected:
            logger.error("Not connected, cannot send file")
            return False
        if self._is_sending:
            logger.warning("A file is already being sent")
            return False

        self._is_sending = True
        self._emit("sending", {"is_sending": True})
        self.state.set_progress(0.0)
        try:
            session = await send_file(
                stream,
                file_path,
                progress_callback=self._on_send_progress,
                **self._send_options,
            )
        except (OSError, StreamIOError) as e:
            logger.error(f"Error sending file: {e}")
            self.state.set_progress(0.0)
            self._notify("error", f"Could not send {Path(file_path).name}: {e}")
            return False
        finally:
            self._is_sending = False
            self._emit("sending", {"is_sending": False})

        self.state.set_progress(1.0)
        self._emit("file_sent", session.model_dump())
        self._notify("success", f"'{session.file_name}' sent successfully!")
        return True

    def disconnect(self) -> None:
        """Drop the connection and anything in flight. Idempotent."""
        self.negotiator.cancel()
        task, self._receive_task = self._receive_task, None
        if task is not None and not task.done():
            task.cancel()
        self.state.disconnect()

    def snapshot(self) -> dict:
        return {
            **self.state.snapshot(),
            "is_connecting": self.negotiator.is_connecting,
            "is_sending": self._is_sending,
            "is_discovering": self.discovery.is_discovering,
            "peers": self.cache.snapshot(),
        }

    # --- Internals ---

    def _on_send_progress(self, session: TransferSession) -> None:
        self.state.set_progress(session.progress)

    def _on_connected(self, stream: Stream) -> None:
        self._notify("success", f"Connected to {stream.peer.display_name}")
        self._receive_task = asyncio.create_task(self._receive(stream))

    async def _receive(self, stream: Stream) -> None:
        """Receive loop worker for one connection."""
        receiver = FrameReceiver(self._sink)
        try:
            await receive_loop(stream, receiver, self._on_receiver_event)
        except ProtocolViolation as e:
            logger.error(f"Protocol violation, closing connection: {e}")
            self._notify("error", "Received malformed data, connection closed")
        except StreamIOError as e:
            logger.error(f"Error in read/write connection: {e}")
        except OSError as e:
            logger.error(f"Could not store incoming file: {e}")
            self._notify("error", f"Could not save the incoming file: {e}")
        except Exception as e:
            logger.error(f"Unexpected receive error: {e}", exc_info=True)

        if self.state.stream is stream:
            self._receive_task = None
            self.disconnect()

    async def _on_receiver_event(self, event_type: str, payload) -> None:
        if event_type == "transfer_started":
            self.state.begin_session(payload)
            self._emit("transfer_started", payload.model_dump())
        elif event_type == "transfer_progress":
            self.state.set_progress(payload.progress)
        elif event_type == "transfer_complete":
            self._on_file_received(payload)

    def _on_file_received(self, received: ReceivedFile) -> None:
        self.state.set_progress(1.0)
        self.state.end_session()
        self.state.transfer_complete()
        self._emit("file_received", received.model_dump())
        if received.used_fallback:
            self._notify(
                "warning",
                f"Could not write to {self.save_dir}; file saved in {received.path}",
            )
        else:
            self._notify("success", f"File saved: {received.path}")
        self._index_media(received.path)

    def _index_media(self, path: str) -> None:
        """Best effort; a failure here never affects the transfer."""
        try:
            if not is_media_file(path):
                return
            if self._media_indexer:
                self._media_indexer(path)
            self._emit("media_added", {"path": path})
        except Exception as e:
            logger.error(f"Error notifying media index about {path}: {e}")

    async def _on_adapter_event(self, event: AdapterEvent, data: dict) -> None:
        if event == AdapterEvent.BOND_STATE_CHANGED:
            self.negotiator.resolve_bond(data["peer"].address, data["bond_state"])
        elif event == AdapterEvent.RADIO_STATE_CHANGED:
            if not data["enabled"]:
                logger.info("Bluetooth turned off")
                self.disconnect()
        elif event == AdapterEvent.LINK_LOST:
            peer = self.state.state.peer
            if (
                self.state.status in (ConnectionStatus.CONNECTED, ConnectionStatus.TRANSFER_COMPLETE)
                and peer is not None
                and peer.address == data["address"].upper()
            ):
                logger.info(f"Link to {peer.address} lost")
                self.disconnect()
