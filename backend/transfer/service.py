"""
Stream-level file transfer.

send_file() writes one file over a connected stream using the framed
protocol; receive_loop() reads from a stream until it ends and feeds
every chunk through a FrameReceiver.
"""

import asyncio
import logging
from pathlib import Path

from config import BUFFER_SIZE, CHUNK_DELAY, NAME_SETTLE_DELAY, SIZE_SETTLE_DELAY
from transfer.models import TransferDirection, TransferSession
from transfer.protocol import FrameReceiver, encode_name, encode_size
from transport.stream import Stream

logger = logging.getLogger(__name__)


async def send_file(
    stream: Stream,
    file_path: str,
    progress_callback=None,
    chunk_size: int = BUFFER_SIZE,
    chunk_delay: float = CHUNK_DELAY,
    name_delay: float = NAME_SETTLE_DELAY,
    size_delay: float = SIZE_SETTLE_DELAY,
) -> TransferSession:
    """
    Send a single file to the peer.

    Args:
        stream: The connected stream (borrowed, not closed here).
        file_path: Local path of the file to send.
        progress_callback: fn(session) called after every body chunk.
        chunk_delay: Pause between body chunks. Constrained stacks drop
            data when flooded; zero is fine on a reliable stream.
        name_delay, size_delay: Pauses after the two header chunks so that
            the peer reads each of them as a chunk of its own.

    Returns:
        The completed TransferSession.

    Raises:
        OSError if the file cannot be read (nothing has been written then),
        StreamIOError if the stream fails part-way. Bytes already delivered
        are not retracted.
    """
    path = Path(file_path)
    size = (await asyncio.to_thread(path.stat)).st_size
    handle = await asyncio.to_thread(open, path, "rb")

    session = TransferSession(
        file_name=path.name,
        declared_size=size,
        direction=TransferDirection.SENDING,
    )
    logger.info(f"Sending {path.name} ({size} bytes)")

    try:
        await stream.write(encode_name(path.name))
        if name_delay:
            await asyncio.sleep(name_delay)

        await stream.write(encode_size(size))
        if size_delay:
            await asyncio.sleep(size_delay)

        while session.remaining > 0:
            # Never send more than was declared, even if the file grew
            chunk = await asyncio.to_thread(handle.read, min(chunk_size, session.remaining))
            if not chunk:
                break
            await stream.write(chunk)
            session.bytes_transferred += len(chunk)
            if progress_callback:
                progress_callback(session)
            if chunk_delay:
                await asyncio.sleep(chunk_delay)
    finally:
        await asyncio.to_thread(handle.close)

    if not session.is_complete:
        raise OSError(
            f"{path.name} shrank while sending: {session.bytes_transferred} of {size} bytes"
        )
    logger.info(f"File sent: {path.name}")
    return session


async def receive_loop(
    stream: Stream,
    receiver: FrameReceiver,
    event_callback,
    chunk_size: int = BUFFER_SIZE,
) -> None:
    """
    Read from `stream` until end of stream, dispatching receiver events.

    Args:
        event_callback: async fn(event_type, payload) for every event the
            FrameReceiver produces.

    Raises StreamIOError on a read failure and ProtocolViolation on a
    malformed header. Either way the session in progress is discarded.
    """
    try:
        while True:
            chunk = await stream.read(chunk_size)
            if chunk is None:
                logger.info(f"Stream from {stream.peer.address} ended")
                return
            if not chunk:
                continue
            for event_type, payload in await receiver.feed(chunk):
                await event_callback(event_type, payload)
    finally:
        receiver.abort()
