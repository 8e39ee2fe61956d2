"""
Bidirectional byte relay between two stream pairs.

A relay is two pump tasks, one per direction. Each pump copies until EOF
and then half-closes its destination; an error in either direction stops
both and closes both sides.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ByteCounter = Callable[[int], None]


@dataclass
class RelayResult:
    """Outcome of one relayed sub-connection."""
    bytes_sent: int = 0
    bytes_received: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _write_eof(writer: Any) -> None:
    try:
        if writer.can_write_eof():
            writer.write_eof()
    except (OSError, RuntimeError) as e:
        logger.debug(f"Could not half-close stream: {e}")


def close_writer(writer: Any) -> None:
    try:
        writer.close()
    except (OSError, RuntimeError) as e:
        logger.debug(f"Error closing stream: {e}")


async def pump(reader: Any, writer: Any, on_bytes: Optional[ByteCounter] = None,
               buffer_size: int = 65536) -> int:
    """Copy ``reader`` into ``writer`` until EOF; return the byte count."""
    total = 0
    while True:
        data = await reader.read(buffer_size)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        total += len(data)
        if on_bytes:
            on_bytes(len(data))
    _write_eof(writer)
    return total


async def relay(client_reader: Any, client_writer: Any,
                channel_reader: Any, channel_writer: Any,
                on_sent: Optional[ByteCounter] = None,
                on_received: Optional[ByteCounter] = None,
                buffer_size: int = 65536) -> RelayResult:
    """
    Relay bytes between a client stream pair and a channel stream pair.

    Args:
        client_reader, client_writer: The side that initiated the connection
        channel_reader, channel_writer: The onward side
        on_sent: Called with each chunk size copied client -> channel
        on_received: Called with each chunk size copied channel -> client
        buffer_size: Read size per chunk

    Returns:
        RelayResult with per-direction byte counts and the first error, if any
    """
    result = RelayResult()

    def count_sent(n: int) -> None:
        result.bytes_sent += n
        if on_sent:
            on_sent(n)

    def count_received(n: int) -> None:
        result.bytes_received += n
        if on_received:
            on_received(n)

    upstream = asyncio.ensure_future(
        pump(client_reader, channel_writer, count_sent, buffer_size))
    downstream = asyncio.ensure_future(
        pump(channel_reader, client_writer, count_received, buffer_size))

    try:
        await asyncio.gather(upstream, downstream)
    except Exception as e:
        result.error = str(e) or e.__class__.__name__
    finally:
        for task in (upstream, downstream):
            if not task.done():
                task.cancel()
        await asyncio.gather(upstream, downstream, return_exceptions=True)
        close_writer(client_writer)
        close_writer(channel_writer)

    return result
