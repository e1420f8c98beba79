"""
clouddisk Server

Accepts TCP connections, reads one command per connection, and runs the
registered handler for it. Handlers are plain coroutines keyed by
Command, so tests (or embedders) can swap one out with set_handler().

Connection Lifecycle:
```
accept -> read command -> handler(conn) -> close
```
A failing handler only affects its own connection; the error is logged
and the connection is closed.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

import aiofiles
import aiofiles.os

from .errors import DiskError, PathEscapeError, ProtocolError
from .file.digest import compute_file_digest, digests_match
from .file.storage import (
    RangeBuffer, ServerStorage, discard_buffers, merge_ranges, remove_quietly,
)
from .transfer.protocol import (
    BUFFER_SIZE, Command, CommitStatus, DiskProtocol,
)

logger = logging.getLogger(__name__)

# Type for command handlers
CommandHandler = Callable[[DiskProtocol], Awaitable[None]]


class DiskServer:
    """
    TCP file server over a ServerStorage data directory.

    Serves whole files, byte ranges, listings, and accepts single,
    multi-chunk, batch and parallel (staged) uploads.
    """

    def __init__(self, data_dir: Path, host: str = '127.0.0.1', port: int = 8888,
                 buffer_size: int = BUFFER_SIZE):
        """
        Initialize the server.

        Args:
            data_dir: Data directory; files/ inside it is the exposed tree
            host: Interface to bind
            port: TCP port (0 picks a free port, see .port after start())
            buffer_size: Block size for file I/O on the wire
        """
        self.storage = ServerStorage(data_dir)
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self.server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[Command, CommandHandler] = {}
        self._running = False

        # Statistics
        self.connections = 0
        self.bytes_sent = 0
        self.bytes_received = 0

        self._setup_handlers()

    def _setup_handlers(self):
        """Register the built-in command handlers."""
        self.set_handler(Command.UPLOAD, self.handle_upload)
        self.set_handler(Command.UPLOAD_MULTI, self.handle_upload_multi)
        self.set_handler(Command.DOWNLOAD, self.handle_download)
        self.set_handler(Command.RANGE_DOWNLOAD, self.handle_range_download)
        self.set_handler(Command.LIST, self.handle_list)
        self.set_handler(Command.BATCH_UPLOAD, self.handle_batch_upload)
        self.set_handler(Command.BATCH_DOWNLOAD, self.handle_batch_download)
        self.set_handler(Command.STAT, self.handle_stat)
        self.set_handler(Command.RANGE_UPLOAD, self.handle_range_upload)
        self.set_handler(Command.UPLOAD_COMMIT, self.handle_upload_commit)
        self.set_handler(Command.UPLOAD_ABORT, self.handle_upload_abort)

    def set_handler(self, command: Command, handler: CommandHandler):
        """Set (or replace) the handler for a command."""
        self._handlers[command] = handler

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start listening."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"clouddisk server listening on {addr[0]}:{addr[1]}")
        logger.info(f"  Serving: {self.storage.files_dir}")

    async def stop(self):
        """Stop the server."""
        self._running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info(
                f"clouddisk server stopped. {self.connections} connections, "
                f"{self.bytes_sent:,} bytes sent, {self.bytes_received:,} bytes received"
            )

    async def serve_forever(self):
        """Start (if needed) and run until cancelled."""
        if not self._running:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    async def __aenter__(self) -> 'DiskServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle one connection: one command, then close."""
        conn = DiskProtocol(reader, writer)
        peer = conn.remote_address
        self.connections += 1

        try:
            command = await conn.read_command()
            logger.debug(f"{command.value} from {peer}")

            handler = self._handlers.get(command)
            if handler:
                await handler(conn)
            else:
                logger.warning(f"No handler for {command.value}")

        except PathEscapeError as e:
            logger.warning(f"Rejected request from {peer}: {e}")
        except ProtocolError as e:
            logger.warning(f"Protocol error from {peer}: {e}")
        except (DiskError, OSError) as e:
            logger.error(f"Error handling connection from {peer}: {e}")
        finally:
            await conn.close()

    # === Helpers ===

    async def _receive_file(self, conn: DiskProtocol, remote_path: str,
                            size: int, digest: str) -> bool:
        """
        Receive `size` raw bytes into remote_path via a temp file.

        Returns:
            Whether the received bytes match `digest`
        """
        if size < 0:
            raise ProtocolError(f"Negative size: {size}")
        self.storage.resolve(remote_path)

        temp_path = self.storage.new_temp_path()
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await conn.read_into(f, size, self.buffer_size)
            self.bytes_received += size

            actual = await compute_file_digest(temp_path)
            await self.storage.commit(temp_path, remote_path)
        except BaseException:
            await remove_quietly(temp_path)
            raise

        match = digests_match(actual, digest)
        logger.info(
            f"Received {remote_path} ({size:,} bytes), "
            f"digest {'ok' if match else 'MISMATCH'}"
        )
        return match

    async def _send_file(self, conn: DiskProtocol, remote_path: str) -> bool:
        """Send the DOWNLOAD reply: exists flag, size, digest, payload."""
        try:
            path = self.storage.resolve(remote_path)
        except PathEscapeError as e:
            logger.warning(str(e))
            path = None

        if path is None or not path.is_file():
            conn.write_bool(False)
            await conn.drain()
            logger.info(f"Not found: {remote_path}")
            return False

        size = path.stat().st_size
        conn.write_bool(True)
        conn.write_long(size)
        conn.write_string(await compute_file_digest(path))

        sent = await conn.send_file_range(path, 0, size, self.buffer_size)
        self.bytes_sent += sent
        logger.info(f"Sent {remote_path} ({sent:,} bytes)")
        return True

    # === Single-file commands ===

    async def handle_upload(self, conn: DiskProtocol):
        """UPLOAD: path, size, digest, raw bytes -> digest match."""
        remote_path = await conn.read_string()
        size = await conn.read_long()
        digest = await conn.read_string()

        match = await self._receive_file(conn, remote_path, size, digest)
        conn.write_bool(match)
        await conn.drain()

    async def handle_download(self, conn: DiskProtocol):
        """DOWNLOAD: path -> exists [, size, digest, raw bytes]."""
        remote_path = await conn.read_string()
        await self._send_file(conn, remote_path)

    async def handle_stat(self, conn: DiskProtocol):
        """STAT: path -> exists [, size, digest]."""
        remote_path = await conn.read_string()
        try:
            size = self.storage.file_size(remote_path)
        except PathEscapeError as e:
            logger.warning(str(e))
            size = None

        if size is None:
            conn.write_bool(False)
        else:
            conn.write_bool(True)
            conn.write_long(size)
            conn.write_string(
                await compute_file_digest(self.storage.resolve(remote_path))
            )
        await conn.drain()

    async def handle_list(self, conn: DiskProtocol):
        """LIST: -> count, then (path, size) per file."""
        entries = self.storage.list_files()
        conn.write_int(len(entries))
        for entry in entries:
            conn.write_string(entry.path)
            conn.write_long(entry.size)
        await conn.drain()
        logger.info(f"Sent listing of {len(entries)} files")

    # === Ranges ===

    async def handle_range_download(self, conn: DiskProtocol):
        """RANGE_DOWNLOAD: path, start, length -> raw bytes, no preamble."""
        remote_path = await conn.read_string()
        start = await conn.read_long()
        length = await conn.read_long()
        await self.serve_range(remote_path, start, length, conn)

    async def serve_range(self, remote_path: str, start: int, length: int,
                          conn: DiskProtocol) -> int:
        """
        Stream exactly `length` bytes of a file starting at `start`.

        Sends nothing when the file is missing or start is out of bounds;
        the client detects the missing bytes as a short read. Read-only,
        so any number of ranges of one file can be served at once.

        Returns:
            Number of bytes sent
        """
        try:
            path = self.storage.resolve(remote_path)
        except PathEscapeError as e:
            logger.warning(f"Range request rejected: {e}")
            return 0

        if not path.is_file():
            logger.warning(f"Range request for missing file: {remote_path}")
            return 0

        size = path.stat().st_size
        if start < 0 or length < 0 or start >= size:
            logger.warning(
                f"Range request out of bounds: {remote_path} "
                f"start={start} length={length} size={size}"
            )
            return 0

        sent = await conn.send_file_range(path, start, length, self.buffer_size)
        self.bytes_sent += sent
        logger.debug(f"Served range of {remote_path}: start={start} length={sent}")
        return sent

    # === Multi-chunk upload ===

    async def handle_upload_multi(self, conn: DiskProtocol):
        """
        UPLOAD_MULTI: path, count, digest, then (index, length, bytes) per chunk.

        Chunks are placed by their index, not their arrival order. A
        missing, duplicate or out-of-range index fails the upload.
        """
        remote_path = await conn.read_string()
        count = await conn.read_int()
        digest = await conn.read_string()
        if count < 0:
            raise ProtocolError(f"Negative chunk count: {count}")
        target = self.storage.resolve(remote_path)

        staged: Dict[int, Path] = {}
        valid = True
        try:
            for _ in range(count):
                index = await conn.read_int()
                length = await conn.read_int()
                if length < 0:
                    raise ProtocolError(f"Negative chunk length: {length}")

                temp_path = self.storage.new_temp_path('.chunk')
                async with aiofiles.open(temp_path, 'wb') as f:
                    await conn.read_into(f, length, self.buffer_size)
                self.bytes_received += length

                if index < 0 or index >= count or index in staged:
                    logger.warning(f"Bad chunk index {index} for {remote_path}")
                    valid = False
                    await remove_quietly(temp_path)
                    continue
                staged[index] = temp_path
        except BaseException:
            await discard_buffers(list(staged.values()))
            raise

        if not valid or len(staged) != count:
            await discard_buffers(list(staged.values()))
            conn.write_bool(False)
            await conn.drain()
            return

        buffers = [RangeBuffer(index, path) for index, path in staged.items()]
        merged = await merge_ranges(buffers, target, work_dir=self.storage.temp_dir)
        match = merged and digests_match(await compute_file_digest(target), digest)

        logger.info(
            f"Received {remote_path} in {count} chunks, "
            f"digest {'ok' if match else 'MISMATCH'}"
        )
        conn.write_bool(match)
        await conn.drain()

    # === Batch ===

    async def handle_batch_upload(self, conn: DiskProtocol):
        """BATCH_UPLOAD: count, then UPLOAD payloads, one reply each."""
        count = await conn.read_int()
        logger.info(f"Batch upload of {count} files")

        for i in range(count):
            remote_path = await conn.read_string()
            size = await conn.read_long()
            digest = await conn.read_string()

            match = await self._receive_file(conn, remote_path, size, digest)
            conn.write_bool(match)
            await conn.drain()
            logger.debug(f"Batch upload [{i + 1}/{count}] {remote_path}")

    async def handle_batch_download(self, conn: DiskProtocol):
        """BATCH_DOWNLOAD: count, then DOWNLOAD request/reply per file."""
        count = await conn.read_int()
        logger.info(f"Batch download of {count} files")

        for i in range(count):
            remote_path = await conn.read_string()
            await self._send_file(conn, remote_path)
            logger.debug(f"Batch download [{i + 1}/{count}] {remote_path}")

    # === Parallel upload (staged ranges) ===

    async def handle_range_upload(self, conn: DiskProtocol):
        """RANGE_UPLOAD: session, start, length, raw bytes -> stored."""
        session_id = await conn.read_string()
        start = await conn.read_long()
        length = await conn.read_long()
        if start < 0 or length < 0:
            raise ProtocolError(f"Bad range: start={start} length={length}")

        part = self.storage.staged_part_path(session_id, start)
        await aiofiles.os.makedirs(part.parent, exist_ok=True)

        # A retried range overwrites its earlier attempt only once complete
        incoming = part.with_suffix('.incoming')
        try:
            async with aiofiles.open(incoming, 'wb') as f:
                await conn.read_into(f, length, self.buffer_size)
            await aiofiles.os.replace(incoming, part)
        except BaseException:
            await remove_quietly(incoming)
            raise
        self.bytes_received += length

        conn.write_bool(True)
        await conn.drain()
        logger.debug(f"Staged range start={start} length={length} for {session_id[:8]}")

    async def handle_upload_commit(self, conn: DiskProtocol):
        """UPLOAD_COMMIT: session, path, size, digest -> CommitStatus byte."""
        session_id = await conn.read_string()
        remote_path = await conn.read_string()
        size = await conn.read_long()
        digest = await conn.read_string()

        try:
            status = await self._commit_session(session_id, remote_path, size, digest)
        finally:
            self.storage.discard_session(session_id)

        conn.write_raw(bytes([status.value]))
        await conn.drain()

    async def _commit_session(self, session_id: str, remote_path: str,
                              size: int, digest: str) -> CommitStatus:
        target = self.storage.resolve(remote_path)
        parts = self.storage.staged_parts(session_id)

        # Staged ranges must tile [0, size) exactly
        expected = 0
        for start, path in parts:
            if start != expected:
                logger.error(
                    f"Commit of {remote_path}: gap or overlap at offset {expected}"
                )
                return CommitStatus.INCOMPLETE
            expected += path.stat().st_size
        if expected != size:
            logger.error(f"Commit of {remote_path}: have {expected} of {size} bytes")
            return CommitStatus.INCOMPLETE

        buffers = [RangeBuffer(i, path) for i, (_, path) in enumerate(parts)]
        if not await merge_ranges(buffers, target, work_dir=self.storage.temp_dir):
            return CommitStatus.INCOMPLETE

        if not digests_match(await compute_file_digest(target), digest):
            logger.error(f"Commit of {remote_path}: digest mismatch")
            return CommitStatus.DIGEST_MISMATCH

        logger.info(f"Committed {remote_path} ({size:,} bytes, {len(parts)} ranges)")
        return CommitStatus.OK

    async def handle_upload_abort(self, conn: DiskProtocol):
        """UPLOAD_ABORT: session -> whether anything was discarded."""
        session_id = await conn.read_string()
        discarded = self.storage.discard_session(session_id)
        conn.write_bool(discarded)
        await conn.drain()
        logger.info(f"Aborted upload session {session_id[:8]}")

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'connections': self.connections,
            'bytes_sent': self.bytes_sent,
            'bytes_received': self.bytes_received,
            'port': self.port,
        }


async def run_server(data_dir: Path, host: str = '127.0.0.1', port: int = 8888,
                     buffer_size: int = BUFFER_SIZE):
    """
    Run a server until interrupted (convenience function).
    """
    server = DiskServer(data_dir, host=host, port=port, buffer_size=buffer_size)
    try:
        await server.serve_forever()
    finally:
        await server.stop()
