"""
Wire Protocol

Design Decision: Framing
=========================

Options Considered:
1. Length-prefixed JSON header + binary body
   - Self-describing, easy to extend
   - Every message pays for a JSON encode/decode

2. Fixed-width primitives in a fixed order per command
   - Compact, no parsing beyond struct.unpack
   - Both sides must agree on the field order

Decision: Fixed-width primitives
- One command per connection, so there is no message boundary to find
- Each command has a small, fixed field layout (see below)
- Raw payloads are streamed after the header with no extra framing

Primitives:
```
string  : 2-byte big-endian length + UTF-8 bytes
int     : 4-byte big-endian signed
long    : 8-byte big-endian signed
boolean : 1 byte (0 or 1)
raw     : exactly N bytes, N known from an earlier field
```

Every connection starts with a command string and carries exactly one
command. The server closes the connection when the handler returns.
"""

import asyncio
import logging
import struct
from enum import Enum
from typing import Tuple

import aiofiles

from ..errors import ProtocolError, TransferConnectionError

logger = logging.getLogger(__name__)

# Read/write block size for raw payloads
BUFFER_SIZE = 4096

# Drain the writer after this many payload bytes
FLUSH_INTERVAL = BUFFER_SIZE * 10

MAX_STRING_BYTES = 0xFFFF

_SHORT = struct.Struct('>H')
_INT = struct.Struct('>i')
_LONG = struct.Struct('>q')


class Command(Enum):
    """Protocol commands, sent as the first string on a connection."""
    UPLOAD = "UPLOAD"
    UPLOAD_MULTI = "UPLOAD_MULTI"
    DOWNLOAD = "DOWNLOAD"
    RANGE_DOWNLOAD = "RANGE_DOWNLOAD"
    LIST = "LIST"
    BATCH_UPLOAD = "BATCH_UPLOAD"
    BATCH_DOWNLOAD = "BATCH_DOWNLOAD"

    # Metadata and parallel upload
    STAT = "STAT"
    RANGE_UPLOAD = "RANGE_UPLOAD"
    UPLOAD_COMMIT = "UPLOAD_COMMIT"
    UPLOAD_ABORT = "UPLOAD_ABORT"


class CommitStatus(Enum):
    """Reply byte of UPLOAD_COMMIT."""
    OK = 0
    DIGEST_MISMATCH = 1
    INCOMPLETE = 2


def encode_string(value: str) -> bytes:
    """Encode a length-prefixed UTF-8 string."""
    data = value.encode('utf-8')
    if len(data) > MAX_STRING_BYTES:
        raise ValueError(f"String too long: {len(data)} bytes")
    return _SHORT.pack(len(data)) + data


def encode_int(value: int) -> bytes:
    return _INT.pack(value)


def encode_long(value: int) -> bytes:
    return _LONG.pack(value)


def encode_bool(value: bool) -> bytes:
    return b'\x01' if value else b'\x00'


class DiskProtocol:
    """
    One client/server connection.

    Wraps an asyncio reader/writer pair with typed reads and writes.
    A short read raises ProtocolError; writes are buffered until drain().
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        """Close the connection."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing connection: {e}")

    async def __aenter__(self) -> 'DiskProtocol':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # === Reads ===

    async def read_exactly(self, n: int) -> bytes:
        """Read exactly n bytes or raise ProtocolError."""
        if n == 0:
            return b''
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError(
                f"Unexpected EOF: expected {n} bytes, got {len(e.partial)}"
            ) from e
        except (ConnectionError, OSError) as e:
            raise TransferConnectionError(str(e)) from e

    async def read_string(self) -> str:
        length = _SHORT.unpack(await self.read_exactly(_SHORT.size))[0]
        data = await self.read_exactly(length)
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Malformed string: {e}") from e

    async def read_int(self) -> int:
        return _INT.unpack(await self.read_exactly(_INT.size))[0]

    async def read_long(self) -> int:
        return _LONG.unpack(await self.read_exactly(_LONG.size))[0]

    async def read_bool(self) -> bool:
        return (await self.read_exactly(1)) != b'\x00'

    async def read_command(self) -> Command:
        name = await self.read_string()
        try:
            return Command(name)
        except ValueError as e:
            raise ProtocolError(f"Unknown command: {name!r}") from e

    async def read_into(self, sink, length: int,
                        buffer_size: int = BUFFER_SIZE) -> int:
        """
        Copy exactly `length` payload bytes into an aiofiles sink.

        Returns:
            Number of bytes written (always `length` unless an error is raised)
        """
        remaining = length
        while remaining > 0:
            block = await self.read_exactly(min(buffer_size, remaining))
            await sink.write(block)
            remaining -= len(block)
        return length

    # === Writes ===

    def write_raw(self, data: bytes):
        if self._closed:
            raise TransferConnectionError("Connection closed")
        self.writer.write(data)

    def write_string(self, value: str):
        self.write_raw(encode_string(value))

    def write_int(self, value: int):
        self.write_raw(encode_int(value))

    def write_long(self, value: int):
        self.write_raw(encode_long(value))

    def write_bool(self, value: bool):
        self.write_raw(encode_bool(value))

    def write_command(self, command: Command):
        self.write_string(command.value)

    async def drain(self):
        try:
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransferConnectionError(str(e)) from e

    async def send_file_range(self, path, start: int, length: int,
                              buffer_size: int = BUFFER_SIZE) -> int:
        """
        Stream up to `length` bytes of a local file starting at `start`.

        Stops early only at end of file. Drains every FLUSH_INTERVAL bytes.

        Returns:
            Number of bytes sent
        """
        sent = 0
        since_drain = 0
        async with aiofiles.open(path, 'rb') as f:
            await f.seek(start)
            while sent < length:
                block = await f.read(min(buffer_size, length - sent))
                if not block:
                    break
                self.write_raw(block)
                sent += len(block)
                since_drain += len(block)
                if since_drain >= FLUSH_INTERVAL:
                    await self.drain()
                    since_drain = 0
        await self.drain()
        return sent


async def open_connection(host: str, port: int,
                          timeout: float = 10.0) -> DiskProtocol:
    """
    Connect to a clouddisk server.

    Raises:
        TransferConnectionError: if the dial fails or times out
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise TransferConnectionError(
            f"Timed out connecting to {host}:{port}"
        ) from e
    except OSError as e:
        raise TransferConnectionError(
            f"Failed to connect to {host}:{port}: {e}"
        ) from e
    return DiskProtocol(reader, writer)

