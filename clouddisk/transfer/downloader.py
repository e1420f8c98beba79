"""
Parallel Range Downloader

Design Decision: Download Strategy
===================================

Options Considered:
1. Single connection, whole file
   - Simple, but one slow or reset connection restarts everything

2. One connection per range, reused for metadata too
   - The metadata reply and the range reply share a stream, so the
     client has to drain leftovers before reuse; this deadlocks when the
     server is still streaming

3. Metadata on its own connection, then a fresh connection per range
   attempt
   - Nothing is ever drained or reused
   - A failed range retries alone; finished ranges are kept

Decision: Option 3
- STAT (size + digest) on a dedicated connection, closed before ranges
- plan_ranges() splits [0, size) into worker_count ranges
- RangeWorkerPool runs them with the concurrency cap, retries and deadline
- Each range streams into its own hidden part file
- All ranges ok -> merge_ranges() -> verify_file(); otherwise discard parts

Download Flow:
1. STAT remote path -> TransferRequest
2. Plan ranges
3. RANGE_DOWNLOAD per range (retry with linear backoff)
4. Merge part files in index order
5. Compare digest with the one from STAT
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiofiles

from ..config import TransferPolicy
from ..errors import DiskError, RemoteFileNotFound, TransferConnectionError
from ..file.chunker import ByteRange, plan_ranges
from ..file.digest import verify_file
from ..file.storage import RangeBuffer, discard_buffers, merge_ranges, part_path
from .pool import (
    FailureKind, ProgressCallback, RangeResult, RangeWorkerPool,
    TransferOutcome, TransferProgress, TransferRequest,
)
from .protocol import BUFFER_SIZE, Command, open_connection

logger = logging.getLogger(__name__)


async def fetch_metadata(host: str, port: int, remote_path: str,
                         timeout: float = 10.0,
                         reply_timeout: float = 30.0) -> TransferRequest:
    """
    Ask the server for a file's size and digest over a dedicated connection.

    `timeout` bounds the dial, `reply_timeout` the request and reply. The
    connection is closed before this returns.

    Raises:
        RemoteFileNotFound: if the server has no such file
        TransferConnectionError, ProtocolError: on transport failure or a
            server that stops answering
    """
    async with await open_connection(host, port, timeout) as conn:
        async def exchange():
            conn.write_command(Command.STAT)
            conn.write_string(remote_path)
            await conn.drain()

            if not await conn.read_bool():
                raise RemoteFileNotFound(remote_path)
            return await conn.read_long(), await conn.read_string()

        try:
            size, digest = await asyncio.wait_for(exchange(), timeout=reply_timeout)
        except asyncio.TimeoutError as e:
            raise TransferConnectionError(
                f"No STAT reply for {remote_path} within {reply_timeout}s"
            ) from e

    return TransferRequest(path=remote_path, size=size, digest=digest)


class ParallelDownloader:
    """
    Downloads one remote file over several concurrent range connections.

    Each call to download() gets its own RangeWorkerPool, so nothing
    is shared between transfers.
    """

    def __init__(self, host: str, port: int, policy: TransferPolicy = None,
                 buffer_size: int = BUFFER_SIZE):
        """
        Initialize the downloader.

        Args:
            host: Server address
            port: Server port
            policy: Range count, concurrency cap, retries and timeouts
            buffer_size: Socket read size while streaming a range
        """
        self.host = host
        self.port = port
        self.policy = policy or TransferPolicy()
        self.buffer_size = buffer_size

        # Statistics
        self.files_downloaded = 0
        self.total_bytes = 0

    async def download(self, remote_path: str, output_path: Path,
                       progress_callback: ProgressCallback = None) -> TransferOutcome:
        """
        Fetch metadata, then download `remote_path` to `output_path`.

        Returns:
            TransferOutcome (never raises for transfer failures)
        """
        try:
            request = await fetch_metadata(
                self.host, self.port, remote_path, self.policy.dial_timeout,
                self.policy.per_attempt_timeout
            )
        except RemoteFileNotFound as e:
            logger.error(str(e))
            return TransferOutcome(
                request=None, failure=FailureKind.NOT_FOUND, error=str(e)
            )
        except DiskError as e:
            logger.error(f"Could not fetch metadata for {remote_path}: {e}")
            return TransferOutcome(
                request=None, failure=FailureKind.METADATA, error=str(e)
            )

        logger.info(
            f"Downloading {remote_path} ({request.size:,} bytes) "
            f"in up to {self.policy.worker_count} ranges"
        )
        return await self.download_request(request, output_path, progress_callback)

    async def download_request(self, request: TransferRequest, output_path: Path,
                               progress_callback: ProgressCallback = None
                               ) -> TransferOutcome:
        """
        Download a file whose size and digest are already known.

        The destination is only ever written by the merge step, after
        every range has succeeded. A file already at `output_path` is
        therefore left as it was on INCOMPLETE. Once the merge starts it
        is replaced: REASSEMBLY leaves no file there, INTEGRITY leaves
        the wrong bytes for inspection.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        ranges = plan_ranges(request.size, self.policy.worker_count)
        buffers = {rng.index: part_path(output_path, rng.index) for rng in ranges}

        progress = TransferProgress(
            total_ranges=len(ranges),
            total_bytes=request.size,
            phase='transferring',
        )
        if progress_callback:
            progress_callback(progress)

        def on_result(result: RangeResult):
            progress.record(result)
            if progress_callback:
                progress_callback(progress)

        async def attempt(rng: ByteRange, number: int) -> int:
            return await self._fetch_range(request.path, rng, buffers[rng.index])

        async with RangeWorkerPool(self.policy, label=request.path) as pool:
            results = await pool.run(ranges, attempt, on_result)

        outcome = TransferOutcome(request=request, results=results)

        failed = outcome.failed_ranges
        if failed:
            await discard_buffers(list(buffers.values()))
            outcome.failure = FailureKind.INCOMPLETE
            outcome.error = (
                f"{len(failed)} of {len(ranges)} ranges failed: "
                + ", ".join(str(r.range.index) for r in failed)
            )
            logger.error(f"Download of {request.path} incomplete: {outcome.error}")
            self._set_phase(progress, 'failed', progress_callback)
            return outcome

        # Reassemble
        self._set_phase(progress, 'merging', progress_callback)
        merged = await merge_ranges(
            [RangeBuffer(index, path) for index, path in buffers.items()],
            output_path
        )
        if not merged:
            outcome.failure = FailureKind.REASSEMBLY
            outcome.error = f"Could not merge ranges into {output_path}"
            self._set_phase(progress, 'failed', progress_callback)
            return outcome

        # Verify
        self._set_phase(progress, 'verifying', progress_callback)
        outcome.artifact = str(output_path)
        outcome.digest_match = await verify_file(output_path, request.digest)

        if not outcome.digest_match:
            outcome.failure = FailureKind.INTEGRITY
            outcome.error = f"Digest mismatch for {output_path}"
            logger.error(f"Download of {request.path} failed integrity check")
            self._set_phase(progress, 'failed', progress_callback)
            return outcome

        self.files_downloaded += 1
        self.total_bytes += request.size
        logger.info(f"Downloaded {request.path} -> {output_path}")
        self._set_phase(progress, 'complete', progress_callback)
        return outcome

    async def _fetch_range(self, remote_path: str, rng: ByteRange,
                           buffer_path: Path) -> int:
        """
        One attempt: fresh connection, RANGE_DOWNLOAD, exactly rng.length bytes.

        The part file is truncated first, so a retry never appends to the
        bytes of an earlier failed attempt.
        """
        async with await open_connection(
            self.host, self.port, self.policy.dial_timeout
        ) as conn:
            conn.write_command(Command.RANGE_DOWNLOAD)
            conn.write_string(remote_path)
            conn.write_long(rng.start)
            conn.write_long(rng.length)
            await conn.drain()

            async with aiofiles.open(buffer_path, 'wb') as sink:
                return await conn.read_into(sink, rng.length, self.buffer_size)

    @staticmethod
    def _set_phase(progress: TransferProgress, phase: str,
                callback: Optional[ProgressCallback]):
        progress.phase = phase
        if callback:
            callback(progress)

    def get_stats(self) -> dict:
        """Get downloader statistics."""
        return {
            'files_downloaded': self.files_downloaded,
            'total_bytes': self.total_bytes,
        }
