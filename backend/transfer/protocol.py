"""
Framed transfer protocol.

The wire format is positional, with no framing bytes:

    chunk 1   UTF-8 file name
    chunk 2   file size as ASCII decimal digits
    chunk 3+  raw file bytes until `size` bytes have been carried

After the last body byte the receiver expects the next file's name, so
several files can be sent one after another over the same stream.
"""

import asyncio
import logging
from pathlib import Path
from typing import BinaryIO

from transfer.models import ReceivedFile, ReceiverPhase, TransferDirection, TransferSession
from transfer.storage import FileSink, sanitize_file_name
from transport.errors import ProtocolViolation

logger = logging.getLogger(__name__)


def encode_name(file_name: str) -> bytes:
    return file_name.encode("utf-8")


def encode_size(size: int) -> bytes:
    if size < 0:
        raise ValueError("size must be non-negative")
    return str(size).encode("ascii")


def parse_size(chunk: bytes) -> int:
    """Parse a size header. Anything but ASCII digits is a protocol violation."""
    try:
        text = chunk.decode("ascii").strip()
    except UnicodeDecodeError:
        raise ProtocolViolation(f"Size header is not ASCII: {chunk[:32]!r}")
    if not text.isdigit():
        raise ProtocolViolation(f"Size header is not a non-negative integer: {text[:32]!r}")
    return int(text)


class FrameReceiver:
    """
    Receive-side parser: AWAITING_NAME -> AWAITING_SIZE -> RECEIVING_BODY.

    Each call to feed() consumes one chunk read from the stream and returns
    the events it produced, as (event_type, payload) tuples:

        ("transfer_started", TransferSession)
        ("transfer_progress", TransferSession)
        ("transfer_complete", ReceivedFile)
    """

    def __init__(self, sink: FileSink) -> None:
        self._sink = sink
        self.phase = ReceiverPhase.AWAITING_NAME
        self.session: TransferSession | None = None
        self._raw_name: str | None = None
        self._file: BinaryIO | None = None
        self._path: Path | None = None
        self._used_fallback = False

    async def feed(self, chunk: bytes) -> list[tuple[str, object]]:
        events: list[tuple[str, object]] = []
        while chunk:
            if self.phase == ReceiverPhase.AWAITING_NAME:
                self._raw_name = chunk.decode("utf-8", errors="replace")
                logger.info(f"Incoming file name: {self._raw_name!r}")
                self.phase = ReceiverPhase.AWAITING_SIZE
                chunk = b""

            elif self.phase == ReceiverPhase.AWAITING_SIZE:
                size = parse_size(chunk)
                chunk = b""
                events.append(("transfer_started", await self._open(size)))
                if size == 0:
                    events.append(("transfer_complete", await self._finish()))

            else:
                session = self.session
                assert session is not None and self._file is not None
                # A chunk may run past the declared size; the overflow is the
                # start of the next file's name
                body, chunk = chunk[: session.remaining], chunk[session.remaining:]
                await asyncio.to_thread(self._file.write, body)
                session.bytes_transferred += len(body)
                logger.debug(
                    f"Received {session.bytes_transferred} of {session.declared_size} bytes "
                    f"({int(session.progress * 100)}%)"
                )
                events.append(("transfer_progress", session))
                if session.is_complete:
                    events.append(("transfer_complete", await self._finish()))
        return events

    async def _open(self, size: int) -> TransferSession:
        file_name = sanitize_file_name(self._raw_name or "")
        if file_name != self._raw_name:
            logger.warning(f"Sanitized incoming file name {self._raw_name!r} -> {file_name!r}")
        self._file, self._path, self._used_fallback = await asyncio.to_thread(
            self._sink.open, file_name
        )
        self.session = TransferSession(
            file_name=file_name,
            declared_size=size,
            direction=TransferDirection.RECEIVING,
        )
        self.phase = ReceiverPhase.RECEIVING_BODY
        logger.info(f"Receiving {file_name} ({size} bytes)")
        return self.session

    async def _finish(self) -> ReceivedFile:
        assert self.session is not None and self._file is not None
        await asyncio.to_thread(self._file.close)
        received = ReceivedFile(
            file_name=self.session.file_name,
            path=str(self._path),
            size=self.session.bytes_transferred,
            used_fallback=self._used_fallback,
        )
        logger.info(f"File received completely: {received.path}")
        self._reset()
        return received

    def _reset(self) -> None:
        self.phase = ReceiverPhase.AWAITING_NAME
        self.session = None
        self._raw_name = None
        self._file = None
        self._path = None
        self._used_fallback = False

    def abort(self) -> None:
        """Discard the session in progress, removing its partial file."""
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                logger.debug(f"Ignoring error while closing partial file: {e}")
            if self._path is not None:
                logger.info(f"Discarding partial file {self._path}")
                self._path.unlink(missing_ok=True)
        self._reset()
