"""
clouddisk Client

One method per protocol command. Every method opens its own connection
and closes it before returning; no connection is ever reused across
commands.

Single-connection methods log failures and return False/None, so a
batch keeps going past one bad file. The parallel methods return a
TransferOutcome that says exactly what went wrong.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os

from .config import Config, TransferPolicy
from .errors import DiskError, RemoteFileNotFound
from .file.chunker import plan_ranges
from .file.digest import compute_file_digest, digests_match
from .file.storage import FileEntry, remove_quietly
from .transfer.downloader import ParallelDownloader, fetch_metadata
from .transfer.pool import ProgressCallback, TransferOutcome, TransferRequest
from .transfer.protocol import BUFFER_SIZE, Command, DiskProtocol, open_connection
from .transfer.uploader import ParallelUploader

logger = logging.getLogger(__name__)


class DiskClient:
    """
    Client for a clouddisk server.

    Usage:
        client = DiskClient(Config(host='127.0.0.1', port=8888))
        await client.upload(Path('report.pdf'), 'docs/report.pdf')
        outcome = await client.download_parallel('docs/report.pdf', Path('out.pdf'))
    """

    def __init__(self, config: Config = None, policy: TransferPolicy = None):
        self.config = config or Config()
        self.host = self.config.host
        self.port = self.config.port
        self.buffer_size = self.config.buffer_size or BUFFER_SIZE
        self.policy = policy or self.config.transfer_policy()

    async def _connect(self) -> DiskProtocol:
        return await open_connection(self.host, self.port, self.policy.dial_timeout)

    # === Metadata ===

    async def stat(self, remote_path: str) -> Optional[TransferRequest]:
        """Size and digest of a remote file, or None if it does not exist."""
        try:
            return await fetch_metadata(
                self.host, self.port, remote_path, self.policy.dial_timeout,
                self.policy.per_attempt_timeout
            )
        except RemoteFileNotFound:
            return None

    async def list_files(self) -> List[FileEntry]:
        """
        List every file on the server.

        Retries on a fresh connection up to config.list_retries times.
        Returns an empty list if every attempt fails.
        """
        retries = max(1, self.config.list_retries)

        for attempt in range(1, retries + 1):
            if attempt > 1:
                logger.info(f"Retrying file list ({attempt - 1}/{retries - 1})...")
                await asyncio.sleep(self.config.list_retry_delay)

            try:
                async with await self._connect() as conn:
                    conn.write_command(Command.LIST)
                    await conn.drain()

                    count = await conn.read_int()
                    entries = []
                    for _ in range(count):
                        path = await conn.read_string()
                        size = await conn.read_long()
                        entries.append(FileEntry(path=path, size=size))

                logger.debug(f"Server returned {count} files")
                return entries

            except DiskError as e:
                logger.warning(f"Error listing files: {e}")

        logger.error(f"Could not list files after {retries} attempts")
        return []

    # === Single-connection transfers ===

    async def _write_upload(self, conn: DiskProtocol, local_path: Path,
                            remote_path: str):
        """UPLOAD payload: path, size, digest, raw bytes."""
        size = local_path.stat().st_size
        conn.write_string(remote_path)
        conn.write_long(size)
        conn.write_string(await compute_file_digest(local_path))
        await conn.send_file_range(local_path, 0, size, self.buffer_size)

    async def _read_download(self, conn: DiskProtocol, remote_path: str,
                             local_path: Path) -> bool:
        """
        DOWNLOAD reply into local_path; True if present and digest matches.

        The payload lands in a hidden sibling and replaces local_path only
        once every byte has arrived, so a failed transfer never touches an
        existing file. A digest mismatch still replaces it, for inspection.
        """
        if not await conn.read_bool():
            logger.error(f"Remote file not found: {remote_path}")
            return False

        size = await conn.read_long()
        expected = await conn.read_string()

        await aiofiles.os.makedirs(local_path.parent, exist_ok=True)
        suffix = uuid.uuid4().hex[:8]
        temp_path = local_path.parent / f".{local_path.name}.{suffix}.download"
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await conn.read_into(f, size, self.buffer_size)
            actual = await compute_file_digest(temp_path)
            await aiofiles.os.replace(temp_path, local_path)
        except BaseException:
            await remove_quietly(temp_path)
            raise

        if digests_match(actual, expected):
            logger.info(f"Downloaded {remote_path} -> {local_path}")
            return True

        logger.error(f"Download failed, digest mismatch: {remote_path}")
        return False

    async def upload(self, local_path: Path, remote_path: str) -> bool:
        """Upload one file over one connection (UPLOAD)."""
        local_path = Path(local_path)
        if not local_path.is_file():
            logger.error(f"Local file not found: {local_path}")
            return False

        try:
            async with await self._connect() as conn:
                conn.write_command(Command.UPLOAD)
                await self._write_upload(conn, local_path, remote_path)
                match = await conn.read_bool()
        except (DiskError, OSError) as e:
            logger.error(f"Error uploading {local_path}: {e}")
            return False

        if match:
            logger.info(f"Uploaded {local_path} -> {remote_path}")
        else:
            logger.error(f"Upload failed, digest mismatch: {local_path}")
        return match

    async def upload_multi(self, local_path: Path, remote_path: str,
                           chunk_count: int = None) -> bool:
        """
        Upload one file as indexed chunks over one connection (UPLOAD_MULTI).

        Chunks are read concurrently and sent in completion order; the
        server places them by index.
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            logger.error(f"Local file not found: {local_path}")
            return False

        ranges = plan_ranges(
            local_path.stat().st_size, chunk_count or self.policy.worker_count
        )

        async def read_chunk(rng):
            async with aiofiles.open(local_path, 'rb') as f:
                await f.seek(rng.start)
                return rng.index, await f.read(rng.length)

        try:
            digest = await compute_file_digest(local_path)
            async with await self._connect() as conn:
                conn.write_command(Command.UPLOAD_MULTI)
                conn.write_string(remote_path)
                conn.write_int(len(ranges))
                conn.write_string(digest)

                for next_chunk in asyncio.as_completed([read_chunk(r) for r in ranges]):
                    index, data = await next_chunk
                    conn.write_int(index)
                    conn.write_int(len(data))
                    conn.write_raw(data)
                    await conn.drain()

                match = await conn.read_bool()
        except (DiskError, OSError) as e:
            logger.error(f"Error uploading {local_path} in chunks: {e}")
            return False

        if match:
            logger.info(f"Uploaded {local_path} -> {remote_path} ({len(ranges)} chunks)")
        else:
            logger.error(f"Chunked upload failed, digest mismatch: {local_path}")
        return match

    async def download(self, remote_path: str, local_path: Path) -> bool:
        """Download one file over one connection (DOWNLOAD)."""
        local_path = Path(local_path)
        try:
            async with await self._connect() as conn:
                conn.write_command(Command.DOWNLOAD)
                conn.write_string(remote_path)
                await conn.drain()
                return await self._read_download(conn, remote_path, local_path)
        except (DiskError, OSError) as e:
            logger.error(f"Error downloading {remote_path}: {e}")
            return False

    # === Batch ===

    async def batch_upload(self, pairs: Sequence[Tuple[Path, str]]) -> List[bool]:
        """
        Upload (local, remote) pairs over one connection (BATCH_UPLOAD).

        Missing local files are skipped before the count is sent, so the
        server never waits for a file that will not come.

        Returns:
            One flag per input pair
        """
        results = [False] * len(pairs)
        present = []
        for i, (local, remote) in enumerate(pairs):
            local = Path(local)
            if local.is_file():
                present.append((i, local, remote))
            else:
                logger.error(f"Local file not found: {local}")

        try:
            async with await self._connect() as conn:
                conn.write_command(Command.BATCH_UPLOAD)
                conn.write_int(len(present))

                for i, local_path, remote_path in present:
                    await self._write_upload(conn, local_path, remote_path)
                    results[i] = await conn.read_bool()
                    if results[i]:
                        logger.info(f"Uploaded {local_path} -> {remote_path}")
                    else:
                        logger.error(f"Upload failed, digest mismatch: {local_path}")
        except (DiskError, OSError) as e:
            logger.error(f"Error in batch upload: {e}")

        return results

    async def batch_download(self, pairs: Sequence[Tuple[str, Path]]) -> List[bool]:
        """
        Download (remote, local) pairs over one connection (BATCH_DOWNLOAD).

        Returns:
            One flag per input pair
        """
        results = [False] * len(pairs)

        try:
            async with await self._connect() as conn:
                conn.write_command(Command.BATCH_DOWNLOAD)
                conn.write_int(len(pairs))

                for i, (remote_path, local_path) in enumerate(pairs):
                    conn.write_string(remote_path)
                    await conn.drain()
                    results[i] = await self._read_download(
                        conn, remote_path, Path(local_path)
                    )
        except (DiskError, OSError) as e:
            logger.error(f"Error in batch download: {e}")

        return results

    # === Parallel ===

    async def download_parallel(self, remote_path: str, local_path: Path,
                                progress_callback: ProgressCallback = None,
                                policy: TransferPolicy = None) -> TransferOutcome:
        """Download over several range connections (RANGE_DOWNLOAD)."""
        downloader = ParallelDownloader(
            self.host, self.port, policy or self.policy, self.buffer_size
        )
        return await downloader.download(remote_path, Path(local_path), progress_callback)

    async def upload_parallel(self, local_path: Path, remote_path: str,
                              progress_callback: ProgressCallback = None,
                              policy: TransferPolicy = None) -> TransferOutcome:
        """Upload over several range connections (RANGE_UPLOAD + UPLOAD_COMMIT)."""
        uploader = ParallelUploader(
            self.host, self.port, policy or self.policy, self.buffer_size
        )
        return await uploader.upload(Path(local_path), remote_path, progress_callback)
