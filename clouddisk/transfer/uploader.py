"""
Parallel Range Uploader

The mirror image of ParallelDownloader: the local file is split into
ranges, each range is pushed over its own connection (RANGE_UPLOAD) and
staged by the server, and a final UPLOAD_COMMIT asks the server to merge
the staged ranges by offset and check the digest.

Upload Flow:
1. Digest the local file -> TransferRequest
2. Plan ranges, pick a random session id
3. RANGE_UPLOAD per range (retry with linear backoff)
4. All ranges ok: UPLOAD_COMMIT; otherwise UPLOAD_ABORT
"""

import asyncio
import logging
import uuid
from pathlib import Path

from ..config import TransferPolicy
from ..errors import DiskError, ProtocolError, TransferConnectionError
from ..file.chunker import ByteRange, plan_ranges
from ..file.digest import compute_file_digest
from .pool import (
    FailureKind, ProgressCallback, RangeResult, RangeWorkerPool,
    TransferOutcome, TransferProgress, TransferRequest,
)
from .protocol import BUFFER_SIZE, Command, CommitStatus, open_connection

logger = logging.getLogger(__name__)


class ParallelUploader:
    """
    Uploads one local file over several concurrent range connections.
    """

    def __init__(self, host: str, port: int, policy: TransferPolicy = None,
                 buffer_size: int = BUFFER_SIZE):
        self.host = host
        self.port = port
        self.policy = policy or TransferPolicy()
        self.buffer_size = buffer_size

        # Statistics
        self.files_uploaded = 0
        self.total_bytes = 0

    async def upload(self, local_path: Path, remote_path: str,
                     progress_callback: ProgressCallback = None) -> TransferOutcome:
        """
        Upload `local_path` to `remote_path`.

        Returns:
            TransferOutcome; `artifact` is the remote path on success
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            logger.error(f"Local file not found: {local_path}")
            return TransferOutcome(
                request=None, failure=FailureKind.NOT_FOUND,
                error=f"Local file not found: {local_path}"
            )

        request = TransferRequest(
            path=remote_path,
            size=local_path.stat().st_size,
            digest=await compute_file_digest(local_path),
        )
        session_id = uuid.uuid4().hex
        ranges = plan_ranges(request.size, self.policy.worker_count)

        logger.info(
            f"Uploading {local_path} -> {remote_path} "
            f"({request.size:,} bytes, {len(ranges)} ranges, session {session_id[:8]})"
        )

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
            return await self._push_range(local_path, session_id, rng)

        async with RangeWorkerPool(self.policy, label=remote_path) as pool:
            results = await pool.run(ranges, attempt, on_result)

        outcome = TransferOutcome(request=request, results=results)

        failed = outcome.failed_ranges
        if failed:
            await self._abort(session_id)
            outcome.failure = FailureKind.INCOMPLETE
            outcome.error = (
                f"{len(failed)} of {len(ranges)} ranges failed: "
                + ", ".join(str(r.range.index) for r in failed)
            )
            logger.error(f"Upload of {local_path} incomplete: {outcome.error}")
            progress.phase = 'failed'
            if progress_callback:
                progress_callback(progress)
            return outcome

        progress.phase = 'merging'
        if progress_callback:
            progress_callback(progress)

        try:
            status = await self._commit(session_id, request)
        except DiskError as e:
            logger.error(f"Commit of {remote_path} failed: {e}")
            status = CommitStatus.INCOMPLETE
            outcome.error = str(e)

        if status is CommitStatus.OK:
            outcome.artifact = remote_path
            outcome.digest_match = True
            self.files_uploaded += 1
            self.total_bytes += request.size
            logger.info(f"Uploaded {local_path} -> {remote_path}")
            progress.phase = 'complete'
        elif status is CommitStatus.DIGEST_MISMATCH:
            outcome.artifact = remote_path
            outcome.digest_match = False
            outcome.failure = FailureKind.INTEGRITY
            outcome.error = f"Server digest mismatch for {remote_path}"
            logger.error(outcome.error)
            progress.phase = 'failed'
        else:
            outcome.failure = FailureKind.REASSEMBLY
            outcome.error = outcome.error or f"Server could not merge {remote_path}"
            logger.error(outcome.error)
            progress.phase = 'failed'

        if progress_callback:
            progress_callback(progress)
        return outcome

    async def _push_range(self, local_path: Path, session_id: str,
                          rng: ByteRange) -> int:
        """One attempt: fresh connection, RANGE_UPLOAD, wait for the ack."""
        async with await open_connection(
            self.host, self.port, self.policy.dial_timeout
        ) as conn:
            conn.write_command(Command.RANGE_UPLOAD)
            conn.write_string(session_id)
            conn.write_long(rng.start)
            conn.write_long(rng.length)

            sent = await conn.send_file_range(
                local_path, rng.start, rng.length, self.buffer_size
            )
            if sent != rng.length:
                raise ProtocolError(
                    f"Local file ended early: sent {sent}/{rng.length} bytes"
                )

            if not await conn.read_bool():
                raise ProtocolError(f"Server rejected range {rng}")
            return sent

    async def _commit(self, session_id: str,
                      request: TransferRequest) -> CommitStatus:
        """UPLOAD_COMMIT; the reply is bounded by per_attempt_timeout."""
        async with await open_connection(
            self.host, self.port, self.policy.dial_timeout
        ) as conn:
            async def exchange() -> int:
                conn.write_command(Command.UPLOAD_COMMIT)
                conn.write_string(session_id)
                conn.write_string(request.path)
                conn.write_long(request.size)
                conn.write_string(request.digest)
                await conn.drain()
                return (await conn.read_exactly(1))[0]

            try:
                code = await asyncio.wait_for(
                    exchange(), timeout=self.policy.per_attempt_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransferConnectionError(
                    f"No commit reply for {request.path} "
                    f"within {self.policy.per_attempt_timeout}s"
                ) from e

            try:
                return CommitStatus(code)
            except ValueError as e:
                raise ProtocolError(f"Unknown commit status: {code}") from e

    async def _abort(self, session_id: str):
        """Ask the server to drop staged ranges; failures are only logged."""
        try:
            async with await open_connection(
                self.host, self.port, self.policy.dial_timeout
            ) as conn:
                conn.write_command(Command.UPLOAD_ABORT)
                conn.write_string(session_id)
                await conn.drain()
                await asyncio.wait_for(
                    conn.read_bool(), timeout=self.policy.per_attempt_timeout
                )
        except asyncio.TimeoutError:
            logger.warning(f"No abort reply for upload session {session_id[:8]}")
        except DiskError as e:
            logger.warning(f"Could not abort upload session {session_id[:8]}: {e}")

    def get_stats(self) -> dict:
        """Get uploader statistics."""
        return {
            'files_uploaded': self.files_uploaded,
            'total_bytes': self.total_bytes,
        }
